"""LLM provider abstraction layer.

Provides a unified async interface for structured text generation and image
analysis across LLM providers (Vertex AI, Ollama).

Usage:
    from comicpipe.services.llm import get_adapter, LLMAdapter

    adapter = get_adapter("gemini-2.5-flash")
    script = await adapter.generate_text(prompt, Script)

    adapter = get_adapter("ollama/llama3.1")
    script = await adapter.generate_text(prompt, Script)
"""

from comicpipe.services.llm.base import LLMAdapter
from comicpipe.services.llm.registry import get_adapter

__all__ = ["LLMAdapter", "get_adapter"]
