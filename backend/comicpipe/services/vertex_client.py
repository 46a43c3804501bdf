"""Vertex AI client wrapper using google-genai SDK.

Provides location-aware clients for Google Generative AI using Vertex AI mode.
Authentication is handled via Application Default Credentials (ADC).

Usage:
    from comicpipe.services.vertex_client import get_vertex_client

    client = get_vertex_client()                    # default location
    client = get_vertex_client(location="global")   # global endpoint
"""

import os
from pathlib import Path

from dotenv import load_dotenv
from google import genai

from comicpipe.config import settings

# Load .env for GOOGLE_APPLICATION_CREDENTIALS (ADC)
load_dotenv(Path(__file__).resolve().parent.parent.parent.parent / ".env")

# Per-location client cache
_clients: dict[str, genai.Client] = {}

# Models that must use the global endpoint
GLOBAL_REGION_MODELS = {
    "gemini-3-flash-preview",
    "gemini-3-pro-preview",
    "gemini-3-pro-image-preview",
}


def location_for_model(model_id: str) -> str:
    """Return the Vertex AI location needed for a given model ID."""
    if model_id in GLOBAL_REGION_MODELS:
        return "global"
    return settings.google_cloud.location


def get_vertex_client(location: str | None = None) -> genai.Client:
    """Get or create a client for the given location.

    Without Vertex AI (``google_cloud.use_vertex_ai: false``) the Gemini
    Developer API is used, keyed by ``GOOGLE_API_KEY``.
    """
    loc = location or settings.google_cloud.location

    if loc not in _clients:
        if settings.google_cloud.use_vertex_ai:
            os.environ["GOOGLE_GENAI_USE_VERTEXAI"] = "true"
            os.environ["GOOGLE_CLOUD_PROJECT"] = settings.google_cloud.project_id
            _clients[loc] = genai.Client(
                vertexai=True,
                project=settings.google_cloud.project_id,
                location=loc,
            )
        else:
            _clients[loc] = genai.Client()

    return _clients[loc]
