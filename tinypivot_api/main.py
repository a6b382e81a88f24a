"""
TinyPivot API - FastAPI Application

Main entry point for the FastAPI application.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from tinypivot_api import __version__
from tinypivot_api.config import get_settings
from tinypivot_api.connectors import create_session_pool
from tinypivot_api.core.database import close_db, init_db
from tinypivot_api.core.security import get_credential_service
from tinypivot_api.routers import datasources_router, health_router
from tinypivot_api.services.org_datasources import load_org_datasources
from tinypivot_api.services.snowflake_oauth import SnowflakeOAuthClient

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Suppress noisy third-party loggers
logging.getLogger("snowflake.connector").setLevel(logging.WARNING)
logging.getLogger("httpx").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    # Startup
    logger.info("Starting TinyPivot API...")
    settings = get_settings()

    # Missing or short encryption key is fatal
    app.state.vault = get_credential_service()

    logger.info("Initializing database connection...")
    await init_db()
    logger.info("Database connection established")

    app.state.org_datasources = load_org_datasources(settings.get_org_datasources())
    app.state.session_pool = create_session_pool(settings)
    app.state.oauth_client = (
        SnowflakeOAuthClient.from_settings(settings) if settings.snowflake_oauth_configured else None
    )

    logger.info(f"TinyPivot API started in {settings.environment} mode")

    yield

    # Shutdown
    logger.info("Shutting down TinyPivot API...")

    await app.state.session_pool.close_all()
    await close_db()
    logger.info("TinyPivot API shutdown complete")


def create_app() -> FastAPI:
    """
    Create and configure FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    settings = get_settings()

    app = FastAPI(
        title="TinyPivot API",
        description="Datasource access API for TinyPivot",
        version=__version__,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        openapi_url="/openapi.json" if settings.is_development else None,
        lifespan=lifespan,
    )

    if settings.cors_origins_list:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_origins_list,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    # Register routers
    app.include_router(health_router)
    app.include_router(datasources_router)

    # Root endpoint
    @app.get("/")
    async def root():
        return {
            "name": "TinyPivot API",
            "version": __version__,
            "docs": "/docs" if settings.is_development else "disabled",
        }

    return app


# Create app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "tinypivot_api.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.is_development,
    )
