"""FastAPI application for the Personal OS AI gateway."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import __version__
from .config import Settings, get_settings
from .llm.providers import get_llm_metrics
from .api.deps import get_orchestrator
from .api.exception_handlers import register_exception_handlers
from .api.middleware.rate_limit import limiter
from .api.routes import chat, summary, usage
from .utils.log_sanitizer import configure_logging

# Sanitizing filter goes on before any logging occurs
configure_logging(get_settings().log_level)

logger = logging.getLogger(__name__)

API_PREFIX = "/api/ai"
DEFAULT_JWT_SECRET = "change-me-in-production"


def validate_configuration(settings: Settings) -> None:
    """Log what is and is not configured. Nothing here is fatal."""
    if settings.jwt_secret_key == DEFAULT_JWT_SECRET:
        logger.warning("JWT_SECRET_KEY is the development default. Set it before deploying.")
    else:
        logger.info("JWT_SECRET_KEY: configured")

    if not settings.openai_api_key:
        logger.warning(
            "OPENAI_API_KEY is not configured. Chat, voice and analysis requests will fail."
        )
    else:
        logger.info("OPENAI_API_KEY: configured")

    logger.info(
        f"Cost limits: daily=${settings.daily_ai_cost_limit:.2f} "
        f"monthly=${settings.monthly_ai_cost_limit:.2f} "
        f"per-request=${settings.per_request_cost_limit:.2f}"
    )
    logger.info(f"Usage ledger backend: {settings.usage_store_backend}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    settings = get_settings()
    logger.info(f"Starting Personal OS AI gateway v{__version__}")
    logger.info(f"Database: {settings.database_path}")
    validate_configuration(settings)

    yield

    logger.info("Shutting down Personal OS AI gateway")
    if get_orchestrator.cache_info().currsize:
        await get_orchestrator().drain_background_tasks()


app = FastAPI(
    title="Personal OS AI Gateway",
    description="Cost-governed AI chat over the Personal OS data",
    version=__version__,
    lifespan=lifespan,
    redirect_slashes=False,
)

# Rate limiting
app.state.limiter = limiter

# CORS middleware
settings = get_settings()
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

app.include_router(chat.router, prefix=API_PREFIX, tags=["chat"])
app.include_router(usage.router, prefix=API_PREFIX, tags=["usage"])
app.include_router(summary.router, prefix=API_PREFIX, tags=["summary"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Personal OS AI Gateway",
        "version": __version__,
        "status": "healthy",
    }


@app.get("/health")
async def health():
    """Health check endpoint, with provider call counters once the client is in use."""
    return {"status": "healthy", "llm": get_llm_metrics()}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)
