"""
Event-related Pydantic schemas
"""

from datetime import datetime
from typing import Optional, Literal
from pydantic import BaseModel, ConfigDict, Field

EventStatus = Literal["offline", "standby", "live"]
PageName = Literal["requests", "display"]

class PagesEnabled(BaseModel):
    """Which public pages are reachable"""
    requests: bool = False
    display: bool = False

class EventConfig(BaseModel):
    """Per-tenant display and request configuration stored on the event.

    Unknown keys are ignored so older rows written with extra fields still load.
    """
    model_config = ConfigDict(extra="ignore")

    pages_enabled: PagesEnabled = Field(default_factory=PagesEnabled)
    event_title: Optional[str] = Field(None, max_length=200)
    dj_name: Optional[str] = Field(None, max_length=100)
    venue_info: Optional[str] = Field(None, max_length=200)
    welcome_message: Optional[str] = Field(None, max_length=500)
    secondary_message: Optional[str] = Field(None, max_length=500)
    tertiary_message: Optional[str] = Field(None, max_length=500)
    show_qr_code: bool = True
    display_refresh_interval: int = Field(20, ge=5, le=300)
    request_limit: Optional[int] = Field(None, ge=1, le=100)
    auto_approve: bool = False
    decline_explicit: bool = False
    force_polling: bool = False
    # Timed display message, set through /admin/event/message only
    message_text: Optional[str] = Field(None, max_length=500)
    message_duration: Optional[int] = Field(None, ge=0)
    message_created_at: Optional[str] = None

class PagesEnabledPatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    requests: Optional[bool] = None
    display: Optional[bool] = None

class EventConfigPatch(BaseModel):
    """Partial config update; omitted fields keep their stored value"""
    model_config = ConfigDict(extra="forbid")

    pages_enabled: Optional[PagesEnabledPatch] = None
    event_title: Optional[str] = Field(None, max_length=200)
    dj_name: Optional[str] = Field(None, max_length=100)
    venue_info: Optional[str] = Field(None, max_length=200)
    welcome_message: Optional[str] = Field(None, max_length=500)
    secondary_message: Optional[str] = Field(None, max_length=500)
    tertiary_message: Optional[str] = Field(None, max_length=500)
    show_qr_code: Optional[bool] = None
    display_refresh_interval: Optional[int] = Field(None, ge=5, le=300)
    request_limit: Optional[int] = Field(None, ge=1, le=100)
    auto_approve: Optional[bool] = None
    decline_explicit: Optional[bool] = None
    force_polling: Optional[bool] = None

class EventUpdate(BaseModel):
    """Optimistic update of status and/or config"""
    model_config = ConfigDict(extra="forbid")

    status: Optional[EventStatus] = None
    config: Optional[EventConfigPatch] = None
    expected_version: int = Field(..., ge=0)

class PageToggle(BaseModel):
    enabled: bool
    expected_version: int = Field(..., ge=0)

class EventResponse(BaseModel):
    """Admin view of the event"""
    id: int
    status: EventStatus
    version: int
    config: EventConfig
    active_admin_session: bool
    updated_at: datetime

class PublicEventResponse(BaseModel):
    """What guests may see of an event"""
    username: str
    status: EventStatus
    pages_enabled: PagesEnabled
    event_title: Optional[str] = None
    dj_name: Optional[str] = None
    venue_info: Optional[str] = None
    welcome_message: Optional[str] = None
    secondary_message: Optional[str] = None
    tertiary_message: Optional[str] = None
    show_qr_code: bool = True
    display_refresh_interval: int = 20
    force_polling: bool = False
    message_text: Optional[str] = None
    message_duration: Optional[int] = None
    message_created_at: Optional[str] = None

class DisplayMessage(BaseModel):
    """Message shown on the display page; no duration keeps it until cleared"""
    message_text: str = Field(..., min_length=1, max_length=500)
    message_duration: Optional[int] = Field(None, ge=0, le=24 * 60 * 60)

class PinVerifyRequest(BaseModel):
    pin: str = Field(..., min_length=4, max_length=4, pattern=r"^\d{4}$")

class BypassVerifyRequest(BaseModel):
    bypass_token: str = Field(..., min_length=10, max_length=128)

class BypassTokenCreate(BaseModel):
    uses_remaining: Optional[int] = Field(3, ge=1, le=1000)
    hours_valid: int = Field(24, ge=1, le=24 * 30)

class AccessGranted(BaseModel):
    """Minimal descriptor returned after PIN/bypass verification"""
    event_id: int
    username: str
    status: EventStatus
    pages_enabled: PagesEnabled
    auth_method: Literal["pin", "bypass"]
    uses_remaining: Optional[int] = None

class IssuedCredential(BaseModel):
    """Plaintext credential, returned exactly once"""
    id: int
    kind: Literal["pin", "bypass"]
    value: str
    expires_at: datetime
    uses_remaining: Optional[int] = None
    share_url: Optional[str] = None
