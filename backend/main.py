import logging
import sqlite3
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from backend.config import (
    CORS_ALLOW_METHODS,
    CORS_ALLOW_ORIGINS,
    LOG_LEVEL,
    PUBLIC_DIR,
    SERVER_HOST,
    SERVER_PORT,
    TERMINAL_IP,
    TERMINAL_PORT,
)
from backend.dependencies import Services, build_services
from backend.errors import ZKControlError
from backend.routers import attendance, core, device, fingerprint, people
from database.db import create_tables

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(services: Services | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        create_tables()
        if app.state.services is None:
            app.state.services = build_services()
        svc: Services = app.state.services

        svc.crash_guard.install()
        if svc.autostart_sync:
            svc.scheduler.start()

        logger.info("ZKControl ready")
        logger.info("  Terminal -> %s:%s", TERMINAL_IP, TERMINAL_PORT)
        logger.info(
            "  Reader   -> SDK %s",
            "AVAILABLE" if svc.capture.sdk_available else "NOT AVAILABLE (placeholder mode)",
        )

        yield

        await svc.scheduler.stop()
        svc.capture.close()
        svc.crash_guard.uninstall()
        logger.info("Shutting down...")

    app = FastAPI(title="ZKControl API", lifespan=lifespan)
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ALLOW_ORIGINS,
        allow_credentials=False,
        allow_methods=CORS_ALLOW_METHODS,
        allow_headers=["Content-Type", "Accept"],
    )

    @app.exception_handler(ZKControlError)
    async def _zkcontrol_error(request: Request, exc: ZKControlError):
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})

    @app.exception_handler(sqlite3.Error)
    async def _storage_error(request: Request, exc: sqlite3.Error):
        logger.error("Storage error on %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=500, content={"detail": str(exc)})

    @app.exception_handler(Exception)
    async def _unexpected_error(request: Request, exc: Exception):
        logger.error("Unexpected error on %s %s", request.method, request.url.path, exc_info=exc)
        return JSONResponse(status_code=500, content={"detail": str(exc) or exc.__class__.__name__})

    app.include_router(core.router)
    app.include_router(people.router)
    app.include_router(attendance.router)
    app.include_router(fingerprint.router)
    app.include_router(device.router)

    # Dashboard assets, when shipped alongside the API
    if PUBLIC_DIR.is_dir():
        app.mount("/", StaticFiles(directory=str(PUBLIC_DIR), html=True), name="public")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=SERVER_HOST, port=SERVER_PORT)
