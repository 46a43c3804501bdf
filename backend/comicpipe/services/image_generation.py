"""Image generation via Gemini image models.

Generates panel artwork and character reference sheets from text prompts,
optionally grounded on reference images for character consistency. Each
call is one provider request; retries belong to the stage executor.
"""

import logging
from typing import Optional

from google.genai import types

from comicpipe.config import settings
from comicpipe.services.vertex_client import get_vertex_client, location_for_model

logger = logging.getLogger(__name__)

_REFERENCE_PREFIX = (
    "The following reference image(s) show the EXACT character(s) who must appear "
    "in the generated image. Match their face, hair, outfit and distinguishing "
    "features as closely as possible.\n\n"
)

_STYLE_PREFIX = (
    "The following image is a STYLE reference only. Match its line work, shading "
    "and level of detail, not its content.\n\n"
)


class ImageGenerator:
    """Text-to-image generation against a Gemini image model."""

    def __init__(self, model_id: Optional[str] = None):
        self.model_id = model_id or settings.models.image_gen

    async def generate(
        self,
        prompt: str,
        aspect_ratio: str = "2:3",
        reference_images: Optional[list[bytes]] = None,
        style_reference: Optional[bytes] = None,
    ) -> bytes:
        """Generate one PNG image.

        Args:
            prompt: Text description for image generation
            aspect_ratio: Image aspect ratio (e.g., "2:3", "1:1")
            reference_images: Optional PNG bytes for identity grounding
            style_reference: Optional PNG bytes of the style anchor

        Returns:
            PNG image data as bytes

        Raises:
            ValueError: If no image found in response
        """
        client = get_vertex_client(location=location_for_model(self.model_id))
        return await _generate_image_from_text(
            client, prompt, aspect_ratio, self.model_id, reference_images, style_reference
        )


async def _generate_image_from_text(
    client,
    prompt: str,
    aspect_ratio: str,
    image_model: str,
    reference_images: Optional[list[bytes]] = None,
    style_reference: Optional[bytes] = None,
) -> bytes:
    # Contents: [style instruction, style_ref, identity instruction, ref_image_1, ..., text_prompt]
    contents: list = []
    if style_reference:
        contents.append(_STYLE_PREFIX)
        contents.append(types.Part.from_bytes(data=style_reference, mime_type="image/png"))
    if reference_images:
        contents.append(_REFERENCE_PREFIX)
        for ref_bytes in reference_images:
            contents.append(types.Part.from_bytes(data=ref_bytes, mime_type="image/png"))
    contents.append(f"{prompt}\n\nAspect ratio: {aspect_ratio}.")

    response = await client.aio.models.generate_content(
        model=image_model,
        contents=contents,
        config=types.GenerateContentConfig(
            response_modalities=["IMAGE"],
        ),
    )

    for part in response.candidates[0].content.parts:
        if part.inline_data:
            return part.inline_data.data

    raise ValueError("No image generated in response")
