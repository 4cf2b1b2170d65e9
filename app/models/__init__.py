"""
Database models package
"""

from .tenant import Tenant
from .event import Event, AccessCredential, EVENT_STATUSES
from .song_request import SongRequest, REQUEST_STATUSES
from .provider_token import ProviderToken
from .event_log import EventLogEntry
from .account_token import AccountToken, ACCOUNT_TOKEN_PURPOSES

__all__ = [
    "Tenant",
    "Event",
    "AccessCredential",
    "SongRequest",
    "ProviderToken",
    "EventLogEntry",
    "AccountToken",
    "EVENT_STATUSES",
    "REQUEST_STATUSES",
    "ACCOUNT_TOKEN_PURPOSES",
]
