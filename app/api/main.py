"""
Main FastAPI application for the Prompt Composer API.

Administrative surface over prompt templates, assignments and overrides,
plus prompt composition for (tenant, flow) pairs.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
import logging

from app.api.middleware import error_handling, request_id, logging as log_middleware
from app.api.routers import health
from app.api.v1.routers import prompt_templates
from app.core.cache import InMemoryPromptCache, PromptCache
from app.core.config import settings
from app.core.database import init_database

logger = logging.getLogger(__name__)


def create_app(cache: Optional[PromptCache] = None, init_db: bool = True) -> FastAPI:
    """
    Build the application.

    Args:
        cache: Composition cache shared by all requests. Defaults to a
            process-local in-memory cache.
        init_db: Create tables on startup (disabled in tests)
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting Prompt Composer API")
        if init_db:
            try:
                await init_database()
                logger.info("Database initialized")
            except Exception as e:
                logger.error(f"Database initialization failed: {e}")
                raise
        logger.info(f"API Documentation: http://{settings.API_HOST}:{settings.API_PORT}/docs")
        yield
        logger.info("Shutting down Prompt Composer API...")

    app = FastAPI(
        title="Prompt Composer",
        description="Versioned prompt templates, tenant overrides and prompt composition",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.prompt_cache = cache if cache is not None else InMemoryPromptCache()

    # ========================================================================
    # MIDDLEWARE (last added = first executed)
    # ========================================================================

    app.add_middleware(log_middleware.LoggingMiddleware)
    app.add_middleware(request_id.RequestIDMiddleware)
    error_handling.add_exception_handlers(app)

    # ========================================================================
    # ROUTERS
    # ========================================================================

    app.include_router(health.router)
    app.include_router(prompt_templates.router)

    @app.get("/")
    async def root():
        """Service summary."""
        return {
            "name": "Prompt Composer",
            "status": "operational",
            "docs": "/docs",
            "health": "/health",
        }

    return app


app = create_app()


# ============================================================================
# DEVELOPMENT SERVER
# ============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "app.api.main:app",
        host=settings.API_HOST,
        port=settings.API_PORT,
        reload=True,
        log_level=settings.LOG_LEVEL.lower(),
    )
