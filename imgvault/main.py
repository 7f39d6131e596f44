"""
imgvault Backup API

Full-system backup and restore for the image host: database export plus
the uploads tree, packed into a single zip archive.

Usage:
    uvicorn imgvault.main:app --reload
    imgvault-backup   # host, port and reload from settings

API Docs:
    http://localhost:8080/docs
"""
import logging
import os
import traceback
from contextlib import asynccontextmanager
from pathlib import Path

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse as StarletteJSONResponse

from imgvault.config import get_settings
from imgvault.api.v1.router import api_router
from imgvault.api.v1.auth import verify_token
from imgvault.db.database import init_db
from imgvault.services.task_manager import task_manager

logger = logging.getLogger("imgvault")


def _ensure_directories():
    """Create the backups, temp and uploads directories if missing."""
    settings = get_settings()
    for path in (settings.backups_dir, settings.temp_dir, settings.upload_dir):
        Path(path).mkdir(parents=True, exist_ok=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup and shutdown events."""
    settings = get_settings()
    _ensure_directories()
    await init_db()

    # Workers do not survive a restart
    try:
        await task_manager.sweep_stale_tasks_async(settings.stale_task_grace_minutes)
    except Exception as e:
        logger.warning(f"Stale task sweep failed (non-fatal): {e}")

    yield


def create_app() -> FastAPI:
    settings = get_settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    app = FastAPI(
        title="imgvault Backup API",
        description="Backup and restore for the imgvault image host",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # Allow-list mode; everything passes when AUTH_PASSWORD is empty
    class AuthMiddleware(BaseHTTPMiddleware):
        PUBLIC_PREFIXES = (
            "/health",
            "/docs",
            "/redoc",
            "/openapi.json",
            "/api/v1/auth/",
        )

        async def dispatch(self, request, call_next):
            path = request.url.path

            if path in ("/", "/health"):
                return await call_next(request)

            for prefix in self.PUBLIC_PREFIXES:
                if path.startswith(prefix):
                    return await call_next(request)

            if not os.environ.get("AUTH_PASSWORD"):
                return await call_next(request)

            auth_header = request.headers.get("authorization", "")
            if not auth_header.startswith("Bearer "):
                return StarletteJSONResponse(
                    status_code=401,
                    content={"detail": "Not authenticated"},
                )

            try:
                verify_token(auth_header[7:])
            except ValueError:
                return StarletteJSONResponse(
                    status_code=401,
                    content={"detail": "Invalid or expired token"},
                )

            return await call_next(request)

    app.add_middleware(AuthMiddleware)

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception on {request.method} {request.url.path}:\n{traceback.format_exc()}")
        return JSONResponse(status_code=500, content={"detail": str(exc)})

    # Routes
    app.include_router(api_router, prefix="/api/v1")

    @app.get("/health")
    async def health():
        return {"status": "healthy", "database_type": settings.database_type}

    @app.get("/")
    async def root():
        return {
            "name": "imgvault Backup API",
            "version": "1.0.0",
            "docs": "/docs",
            "endpoints": {
                "backup": "/api/v1/backup",
                "backup_list": "/api/v1/backup/list",
                "restore_list": "/api/v1/backup/restore/list",
                "auth": "/api/v1/auth",
            },
        }

    return app


app = create_app()


def run():
    """Console entry point: serve the app with host and port from settings."""
    settings = get_settings()
    uvicorn.run(
        "imgvault.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
