"""Serve the API with uvicorn: python -m comicpipe.api"""
import uvicorn

from comicpipe.config import settings

if __name__ == "__main__":
    # Reloading would orphan in-process runs, so only in development
    uvicorn.run(
        "comicpipe.api.app:app",
        host=settings.server.host,
        port=settings.server.port,
        reload=settings.is_development,
        log_level="debug" if settings.is_development else "info",
    )
