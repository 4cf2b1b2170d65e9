"""
Party Queue - FastAPI Backend
Main application entry point
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError
import uvicorn

from app.core.config import settings
from app.core.db import engine, Base, SessionLocal
from app.core.errors import PartyQueueError, error_payload
from app.api import routes_admin, routes_guest, routes_provider, routes_public, routes_superadmin, ws
from app.api.ws import WebSocketRelay
from app.services.account_service import AccountService
from app.services.event_service import EventService
from app.services.notifications import NotificationService
from app.services.rate_limiter import InMemorySubmissionGuard
from app.services.reconciliation import PlaybackReconciler
from app.services.request_service import RequestService
from app.services.token_service import ProviderRegistry
from app.utils.responses import error_response

# Configure logging
logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management"""
    # Create database tables
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created")

    db = SessionLocal()
    try:
        started = app.state.reconciler.start_connected(db)
    finally:
        db.close()
    logger.info(f"Playback reconciliation started for {started} tenants")

    yield

    await app.state.reconciler.shutdown()
    await app.state.provider_registry.aclose()
    logger.info("Application shutdown")

# Create FastAPI application
app = FastAPI(
    title="Party Queue",
    description="Multi-tenant song request queue for parties backed by Spotify",
    version="1.0.0",
    lifespan=lifespan
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOW_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Shared services
app.state.relay = WebSocketRelay()
app.state.notifier = NotificationService(app.state.relay)
app.state.event_service = EventService(app.state.notifier)
app.state.request_service = RequestService(app.state.notifier, InMemorySubmissionGuard())
app.state.account_service = AccountService(app.state.event_service)
app.state.provider_registry = ProviderRegistry()
app.state.reconciler = PlaybackReconciler(
    app.state.provider_registry,
    app.state.request_service,
    app.state.notifier
)

@app.exception_handler(PartyQueueError)
async def party_queue_error_handler(request: Request, exc: PartyQueueError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return error_response(**error_payload(exc))

@app.exception_handler(SQLAlchemyError)
async def storage_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error(f"Database error on {request.method} {request.url.path}: {exc}")
    return error_response(
        message="A storage error occurred. Please try again.",
        error_code="storage_error",
        status_code=500
    )

# Include routers
app.include_router(routes_public.router, tags=["public"])
app.include_router(routes_guest.router, tags=["guest"])
app.include_router(routes_admin.router, prefix="/admin", tags=["admin"])
app.include_router(routes_provider.router, prefix="/spotify", tags=["spotify"])
app.include_router(routes_superadmin.router, tags=["superadmin"])
app.include_router(ws.router, prefix="/ws", tags=["websocket"])

# Note: Run this ASGI app directly with Uvicorn or Hypercorn. For Gunicorn,
# use `uvicorn.workers.UvicornWorker` instead of wrapping the app.

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host="127.0.0.1",
        port=8000,
        reload=True
    )
