"""Main application entry point with app factory."""

from __future__ import annotations

from fastapi import FastAPI

from app.api.app import create_api_app
from app.core.config import settings
from app.core.logging import get_logger, setup_logging


logger = get_logger("main")


def create_app() -> FastAPI:
    """Create the root app with the API mounted under /api."""
    setup_logging()
    logger.info(f"Starting {settings.app_name} v{settings.app_version} ({settings.environment})")

    api_app = create_api_app()
    app = FastAPI(title=settings.app_name, version=settings.app_version, docs_url=None, redoc_url=None)
    app.mount("/api", api_app)

    @app.get("/")
    async def root():
        return {
            "name": settings.app_name,
            "version": settings.app_version,
            "docs": "/api/docs" if settings.debug else None,
            "health": "/api/health",
        }

    return app


# Application instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
