"""comicpipe - AI-powered comic generation pipeline.

This module provides startup validation functions to ensure the configured
AI backends can be reached before pipeline execution begins.
Call validate_configuration() during application startup.
"""

import logging
import os

from dotenv import load_dotenv

__version__ = "0.1.0"

logger = logging.getLogger(__name__)


def validate_configuration() -> None:
    """Validate that the Google AI backend has credentials configured.

    Image generation always goes through google-genai, so this applies even
    when the text models are served by Ollama. Call it during application
    startup to fail fast with clear instructions instead of failing the
    first stage of every run.

    Raises:
        RuntimeError: If neither a Vertex AI project nor an API key is set.
    """
    from comicpipe.config import settings

    load_dotenv()
    if settings.google_cloud.use_vertex_ai:
        if not settings.google_cloud.project_id:
            raise RuntimeError(
                "google_cloud.project_id is not set. Configure it in config.yaml or set\n"
                "COMICPIPE_GOOGLE_CLOUD__PROJECT_ID, or disable Vertex AI with\n"
                "COMICPIPE_GOOGLE_CLOUD__USE_VERTEX_AI=false and provide GOOGLE_API_KEY."
            )
        logger.info(f"Using Vertex AI project {settings.google_cloud.project_id}")
    elif not (os.environ.get("GOOGLE_API_KEY") or os.environ.get("GEMINI_API_KEY")):
        raise RuntimeError(
            "GOOGLE_API_KEY is not set. Export it (or add it to .env) to use the\n"
            "Gemini Developer API, or enable Vertex AI in config.yaml."
        )
