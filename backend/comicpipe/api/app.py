"""FastAPI application setup with lifespan and exception handlers."""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from comicpipe import __version__, validate_configuration
from comicpipe.config import settings
from comicpipe.db import init_database, shutdown
from comicpipe.errors import ComicPipeError
from comicpipe.orchestrator.pipeline import PipelineOrchestrator
from comicpipe.pipeline.registry import default_registry
from comicpipe.api.routes import router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager.

    Startup:
        - Validate AI backend credentials
        - Initialize database schema
        - Fail runs left active by a previous process

    Shutdown:
        - Cancel in-process runs (recovered on next startup)
        - Close database connections
    """
    # Startup
    logger.info("Starting comicpipe API...")
    validate_configuration()
    await init_database()
    orchestrator = PipelineOrchestrator(default_registry())
    await orchestrator.recover_interrupted()
    app.state.orchestrator = orchestrator
    logger.info("API startup complete")

    yield

    # Shutdown
    logger.info("Shutting down comicpipe API...")
    await orchestrator.shutdown()
    await shutdown()
    logger.info("API shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="comicpipe API",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.server.cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include router with all endpoints
app.include_router(router)


@app.exception_handler(ComicPipeError)
async def comicpipe_exception_handler(request: Request, exc: ComicPipeError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content={"error": exc.public_message})
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Malformed request bodies are 400s, not 422s."""
    fields = {
        ".".join(str(part) for part in error["loc"] if part != "body"): error["msg"]
        for error in exc.errors()
    }
    return JSONResponse(
        status_code=400,
        content={"error": "Invalid request format", "fields": fields},
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Catch-all exception handler to prevent stack traces in API responses."""
    logger.exception(f"Unhandled exception in {request.method} {request.url.path}: {type(exc).__name__}")
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"},
    )
