"""
Service dependencies resolved from application state
"""

from fastapi import Request

from app.api.ws import WebSocketRelay
from app.services.account_service import AccountService
from app.services.event_service import EventService
from app.services.notifications import NotificationService
from app.services.reconciliation import PlaybackReconciler
from app.services.request_service import RequestService
from app.services.token_service import ProviderRegistry


def get_relay(request: Request) -> WebSocketRelay:
    return request.app.state.relay


def get_notifier(request: Request) -> NotificationService:
    return request.app.state.notifier


def get_event_service(request: Request) -> EventService:
    return request.app.state.event_service


def get_request_service(request: Request) -> RequestService:
    return request.app.state.request_service


def get_account_service(request: Request) -> AccountService:
    return request.app.state.account_service


def get_registry(request: Request) -> ProviderRegistry:
    return request.app.state.provider_registry


def get_reconciler(request: Request) -> PlaybackReconciler:
    return request.app.state.reconciler
