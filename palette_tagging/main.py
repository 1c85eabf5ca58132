"""Main FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from palette_tagging.api import health, refinement, tagging
from palette_tagging.config import APP_VERSION, get_settings
from palette_tagging.db.session import init_db
from palette_tagging.middleware.rate_limit import limiter
from palette_tagging.services.prompts import TAGGING_PROMPT_VERSION

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    logger.info("Starting Palette Tagging Service...")

    try:
        await init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

    logger.info(
        f"Palette Tagging Service started (prompt version {TAGGING_PROMPT_VERSION}, "
        f"{len(settings.tagging_providers)} providers)"
    )

    yield

    logger.info("Shutting down Palette Tagging Service...")


app = FastAPI(
    title="Palette Tagging Service",
    description="""
## Multi-provider palette tagging and consensus refinement

For every registered palette seed the service:
- **Tags**: sends the palette's color description to many classification models at once
- **Aggregates**: counts how often each tag was chosen across models
- **Refines**: asks a stronger model to curate the consensus into one canonical tag set,
  either one seed at a time or as a bulk batch job

### Runs and prompt versions
Results are grouped by the hash of the tagging instructions and by run number.
Interrupted sweeps resume where they stopped; a finished sweep makes the next one start a new run.

### Rate Limiting
Endpoints that call paid model APIs are rate-limited per client IP.
    """,
    version=APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)

# Add rate limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle uncaught exceptions."""
    logger.exception(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "detail": str(exc) if settings.debug else "An unexpected error occurred",
        },
    )


app.include_router(health.router)
app.include_router(tagging.router)
app.include_router(refinement.router)


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint with service info."""
    return {
        "service": "Palette Tagging Service",
        "version": APP_VERSION,
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "palette_tagging.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )
