"""Vertex AI adapter for the LLM abstraction layer.

Wraps google-genai client with location-aware routing and structured output.
Every call is a single provider request; the stage executor owns retries.
"""

import logging
from typing import Optional, Type

from google.genai import types as genai_types

from comicpipe.services.llm.base import LLMAdapter, SchemaT
from comicpipe.services.vertex_client import get_vertex_client, location_for_model

logger = logging.getLogger(__name__)


class VertexAIAdapter(LLMAdapter):
    """LLM adapter backed by Google Vertex AI (google-genai SDK).

    Supports structured JSON output via response_schema and uses the
    location-aware client cache from vertex_client.py.
    """

    def __init__(self, model_id: str) -> None:
        self._model_id = model_id

    async def generate_text(
        self,
        prompt: str,
        schema: Type[SchemaT],
        *,
        temperature: float = 0.7,
        system_prompt: Optional[str] = None,
    ) -> SchemaT:
        config = genai_types.GenerateContentConfig(
            temperature=temperature,
            response_mime_type="application/json",
            response_schema=schema,
            system_instruction=system_prompt,
        )
        client = get_vertex_client(location=location_for_model(self._model_id))
        response = await client.aio.models.generate_content(
            model=self._model_id,
            contents=prompt,
            config=config,
        )
        return schema.model_validate_json(response.text)

    async def analyze_image(
        self,
        image_bytes: bytes,
        prompt: str,
        schema: Type[SchemaT],
        *,
        mime_type: str = "image/png",
        temperature: float = 0.2,
    ) -> SchemaT:
        image_part = genai_types.Part.from_bytes(data=image_bytes, mime_type=mime_type)
        config = genai_types.GenerateContentConfig(
            temperature=temperature,
            response_mime_type="application/json",
            response_schema=schema,
        )
        client = get_vertex_client(location=location_for_model(self._model_id))
        response = await client.aio.models.generate_content(
            model=self._model_id,
            contents=[image_part, prompt],
            config=config,
        )
        return schema.model_validate_json(response.text)
