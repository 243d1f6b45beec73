"""FastAPI application entry point."""

import logging
from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, FastAPI

from chatpipe.api.chat import router as chat_router
from chatpipe.api.exceptions import build_exception_handlers
from chatpipe.configs.config import get_app_config
from chatpipe.core.container import build_container
from chatpipe.core.metrics import setup_metrics
from chatpipe.infra.lifespan import inject
from chatpipe.infra.logging import setup_logging
from chatpipe.infra.rate_limit import build_rate_limiter
from chatpipe.infra.telemetry import init_telemetry

logger = logging.getLogger(__name__)


async def lifespan(
    app: FastAPI,
    _handlers: Annotated[None, Depends(build_exception_handlers)],
    _rate_limiter: Annotated[None, Depends(build_rate_limiter)],
    _container: Annotated[None, Depends(build_container)],
) -> AsyncGenerator[None, None]:
    """Startup and shutdown live in the ``build_*`` dependencies."""
    logger.info("chatpipe started")
    yield
    logger.info("chatpipe shutting down")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    config = get_app_config()
    setup_logging(config.logging)

    app = FastAPI(
        title="chatpipe",
        description="Multi-provider chat pipeline: files, RAG, web search and agents",
        version="0.1.0",
        lifespan=inject(lifespan),
    )

    @app.get("/health", tags=["health"])
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    app.include_router(chat_router)
    setup_metrics(app, config)
    init_telemetry(app, config.tracing)
    return app


app = create_app()
