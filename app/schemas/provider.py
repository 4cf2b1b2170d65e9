"""
Provider control and relay schemas
"""

from typing import Optional
from pydantic import BaseModel, Field

class VolumeUpdate(BaseModel):
    volume_percent: int = Field(..., ge=0, le=100)

class TransferPlayback(BaseModel):
    device_id: str = Field(..., min_length=1, max_length=100)
    play: bool = True

class PlaybackControl(BaseModel):
    device_id: Optional[str] = None

class RelayAuthRequest(BaseModel):
    """Private-channel authorization handshake"""
    socket_id: str = Field(..., min_length=3, max_length=100)
    channel_name: str = Field(..., min_length=3, max_length=164)
