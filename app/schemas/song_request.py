"""
Song request Pydantic schemas
"""

from typing import Optional, List, Literal
from pydantic import BaseModel, Field, model_validator

RequestStatus = Literal["pending", "approved", "rejected", "queued", "played"]

class TrackInfo(BaseModel):
    """Track metadata resolved from the provider"""
    id: str
    uri: str
    name: str
    artists: List[str] = Field(default_factory=list)
    album: Optional[str] = None
    album_art: Optional[str] = None
    duration_ms: Optional[int] = None
    explicit: bool = False

    @property
    def artist_name(self) -> str:
        return ", ".join(self.artists) if self.artists else "Unknown Artist"

class RequestSubmit(BaseModel):
    """Guest submission; either a track URI or an open.spotify.com URL"""
    track_uri: Optional[str] = Field(None, max_length=200)
    track_url: Optional[str] = Field(None, max_length=500)
    requester_nickname: Optional[str] = Field(None, max_length=50)

    @model_validator(mode="after")
    def require_reference(self):
        if not self.track_uri and not self.track_url:
            raise ValueError("Either track_uri or track_url is required")
        return self

    @property
    def reference(self) -> str:
        return self.track_uri or self.track_url

class ApproveOptions(BaseModel):
    enqueue: bool = True
