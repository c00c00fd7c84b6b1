# src/signalhub/main.py
"""Main entry point for the SignalHub application."""

from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware

from signalhub.api.v1 import calls_router, conversations_router, users_router
from signalhub.api.ws import router as events_router
from signalhub.core.settings import settings
from signalhub.db.session import SessionLocal
from signalhub.services.hub import SignalHub
from signalhub.services.store import SqlStore

logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title=settings.app_name,
    description="Real-time messaging and call signaling core",
    version=settings.app_version,
)
app.state.hub = None

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=settings.cors_allow_methods,
    allow_headers=settings.cors_allow_headers,
)

# Add GZip middleware for compression
app.add_middleware(GZipMiddleware)

# Include API routers
app.include_router(conversations_router, prefix="/api/v1")
app.include_router(calls_router, prefix="/api/v1")
app.include_router(users_router, prefix="/api/v1")
app.include_router(events_router)


@app.on_event("startup")
async def on_startup() -> None:
    # Tests install their own hub before the app starts.
    if app.state.hub is None:
        app.state.hub = SignalHub.from_settings(SqlStore(SessionLocal), settings)
    logger.info("Signaling hub ready")


@app.on_event("shutdown")
async def on_shutdown() -> None:
    hub: SignalHub | None = getattr(app.state, "hub", None)
    if hub:
        await hub.close()
    app.state.hub = None


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint to verify the service is running."""
    return {"status": "ok"}


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint with basic information about the API."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "description": "Real-time messaging and call signaling core",
        "events": "/ws",
        "docs": "/docs",
    }


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.DEBUG if settings.debug else logging.INFO)
    uvicorn.run("signalhub.main:app", host="0.0.0.0", port=8000, reload=settings.debug)
