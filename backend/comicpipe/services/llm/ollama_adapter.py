"""Ollama adapter for the LLM abstraction layer.

Connects via ollama.AsyncClient with optional auth headers, structured JSON
output via format='json' with schema instructions, and vision support via
base64-encoded images. Each call is a single request; the stage executor
owns retries.

format='json' is used instead of format=schema_dict because Ollama Cloud
does not reliably enforce JSON schema constraints. A concise schema
description is appended to the system prompt instead.
"""

import base64
import json
import logging
from typing import Optional, Type

from ollama import AsyncClient
from pydantic import BaseModel

from comicpipe.services.llm.base import LLMAdapter, SchemaT

logger = logging.getLogger(__name__)


def _schema_instruction(schema: Type[BaseModel]) -> str:
    """Build a concise JSON schema instruction to append to the system prompt."""
    schema_json = json.dumps(schema.model_json_schema(), indent=2)
    return (
        "\n\nIMPORTANT: You MUST respond with a single JSON object (no markdown, "
        "no commentary, no code fences). The JSON must conform to this schema:\n"
        f"```json\n{schema_json}\n```\n"
        "All string fields must be strings (not arrays). Return ONLY the JSON object."
    )


def strip_code_fences(raw: str) -> str:
    """Remove a markdown code fence some models wrap their JSON in."""
    stripped = raw.strip()
    if stripped.startswith("```") and "\n" in stripped:
        stripped = stripped[stripped.index("\n") + 1:]
        if stripped.endswith("```"):
            stripped = stripped[:-3].rstrip()
    return stripped


class OllamaAdapter(LLMAdapter):
    """LLM adapter backed by a local or cloud Ollama instance.

    Strips the "ollama/" prefix from model IDs before passing to the ollama
    library. Always passes stream=False to avoid async generator responses.
    """

    def __init__(
        self,
        model_id: str,
        base_url: str = "http://localhost:11434",
        api_key: Optional[str] = None,
    ) -> None:
        # The library uses bare model names
        self._ollama_model = model_id.removeprefix("ollama/")
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = AsyncClient(host=base_url, headers=headers)

    async def _chat(self, messages: list[dict], schema: Type[SchemaT], temperature: float) -> SchemaT:
        response = await self._client.chat(
            model=self._ollama_model,
            messages=messages,
            format="json",
            options={"temperature": temperature},
            stream=False,
        )
        return schema.model_validate_json(strip_code_fences(response.message.content))

    async def generate_text(
        self,
        prompt: str,
        schema: Type[SchemaT],
        *,
        temperature: float = 0.7,
        system_prompt: Optional[str] = None,
    ) -> SchemaT:
        schema_suffix = _schema_instruction(schema)
        system = system_prompt + schema_suffix if system_prompt else schema_suffix.lstrip()
        messages = [
            {"role": "system", "content": system},
            {"role": "user", "content": prompt},
        ]
        return await self._chat(messages, schema, temperature)

    async def analyze_image(
        self,
        image_bytes: bytes,
        prompt: str,
        schema: Type[SchemaT],
        *,
        mime_type: str = "image/png",
        temperature: float = 0.2,
    ) -> SchemaT:
        """Analyze an image using an Ollama vision model (e.g., llava)."""
        messages = [
            {"role": "system", "content": _schema_instruction(schema).lstrip()},
            {
                "role": "user",
                "content": prompt,
                "images": [base64.b64encode(image_bytes).decode()],
            },
        ]
        return await self._chat(messages, schema, temperature)
