"""
Pydantic schemas package
"""

from .common import *
from .event import *
from .song_request import *
from .tenant import *
from .provider import *

__all__ = [
    "StandardResponse",
    "ErrorResponse",
    "EventConfig",
    "EventConfigPatch",
    "EventUpdate",
    "EventResponse",
    "PublicEventResponse",
    "PagesEnabled",
    "PageToggle",
    "PinVerifyRequest",
    "BypassVerifyRequest",
    "BypassTokenCreate",
    "DisplayMessage",
    "AccessGranted",
    "IssuedCredential",
    "TrackInfo",
    "RequestSubmit",
    "ApproveOptions",
    "TenantCreate",
    "TenantStatusUpdate",
    "TenantResponse",
    "VerifyEmailRequest",
    "VolumeUpdate",
    "TransferPlayback",
    "PlaybackControl",
    "RelayAuthRequest",
]
