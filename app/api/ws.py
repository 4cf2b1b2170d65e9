"""
WebSocket relay for real-time updates
"""

import hashlib
import hmac
import itertools
import json
import logging
import secrets
from typing import Dict, List, Optional

from fastapi import APIRouter, Request, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder

from app.core.config import settings

logger = logging.getLogger(__name__)

PRIVATE_PREFIX = "private-"

class WebSocketRelay:
    """Channel broadcast relay.

    Clients subscribe to a channel by opening a socket on it. Private channels
    need an auth signature obtained from the admin API for the socket id the
    relay handed out on a previous public connection.
    """

    def __init__(self, app_key: str = None, secret: str = None):
        self.app_key = app_key or settings.RELAY_APP_KEY
        self.secret = secret or settings.SECRET_KEY
        # channel name -> list of websockets
        self.active_connections: Dict[str, List[WebSocket]] = {}
        self._socket_seq = itertools.count(1)

    def new_socket_id(self) -> str:
        return f"{next(self._socket_seq)}.{secrets.randbelow(10**9)}"

    def sign(self, socket_id: str, channel_name: str) -> str:
        return hmac.new(
            self.secret.encode(),
            f"{socket_id}:{channel_name}".encode(),
            hashlib.sha256
        ).hexdigest()

    def authorize_private_channel(self, socket_id: str, channel_name: str) -> dict:
        """Signed auth payload for a private channel subscription"""
        return {"auth": f"{self.app_key}:{self.sign(socket_id, channel_name)}"}

    def verify_private_auth(self, socket_id: str, channel_name: str, auth: Optional[str]) -> bool:
        if not auth or ":" not in auth:
            return False
        key, signature = auth.split(":", 1)
        if key != self.app_key:
            return False
        return hmac.compare_digest(signature, self.sign(socket_id, channel_name))

    async def connect(self, websocket: WebSocket, channel_name: str):
        """Accept WebSocket connection and add to channel"""
        await websocket.accept()

        if channel_name not in self.active_connections:
            self.active_connections[channel_name] = []

        self.active_connections[channel_name].append(websocket)
        logger.info(f"WebSocket subscribed to {channel_name}. Total connections: {len(self.active_connections[channel_name])}")

    def disconnect(self, websocket: WebSocket, channel_name: str):
        """Remove WebSocket connection from channel"""
        if channel_name in self.active_connections:
            try:
                self.active_connections[channel_name].remove(websocket)
                logger.info(f"WebSocket left {channel_name}. Remaining connections: {len(self.active_connections[channel_name])}")

                # Clean up empty channels
                if not self.active_connections[channel_name]:
                    del self.active_connections[channel_name]
            except ValueError:
                # WebSocket was not in the list
                pass

    async def send_personal_message(self, message: dict, websocket: WebSocket):
        """Send message to specific WebSocket"""
        try:
            await websocket.send_text(json.dumps(jsonable_encoder(message)))
        except Exception as e:
            logger.error(f"Error sending personal message: {e}")

    async def publish(self, channel_name: str, event_name: str, payload: dict):
        """Broadcast an event to every socket subscribed to a channel"""
        if channel_name not in self.active_connections:
            logger.debug(f"No subscribers on {channel_name} for {event_name}")
            return

        message = json.dumps(jsonable_encoder({"event": event_name, "channel": channel_name, "data": payload}))

        # Copy so disconnects during the loop do not mutate what we iterate
        connections = self.active_connections[channel_name].copy()

        disconnected = []
        for websocket in connections:
            try:
                await websocket.send_text(message)
            except Exception as e:
                logger.error(f"Error broadcasting to websocket: {e}")
                disconnected.append(websocket)

        for websocket in disconnected:
            self.disconnect(websocket, channel_name)

    def get_all_connection_counts(self) -> Dict[str, int]:
        return {
            channel_name: len(connections)
            for channel_name, connections in self.active_connections.items()
        }

# Router for WebSocket endpoints
router = APIRouter()

@router.websocket("/channels/{channel_name}")
async def websocket_endpoint(
    websocket: WebSocket,
    channel_name: str,
    socket_id: Optional[str] = None,
    auth: Optional[str] = None
):
    """Subscribe to a relay channel"""
    relay: WebSocketRelay = websocket.app.state.relay

    if channel_name.startswith(PRIVATE_PREFIX):
        if not socket_id or not relay.verify_private_auth(socket_id, channel_name, auth):
            await websocket.close(code=4003, reason="Channel authorization failed")
            return
    else:
        socket_id = relay.new_socket_id()

    await relay.connect(websocket, channel_name)

    try:
        await relay.send_personal_message({
            "event": "connection_established",
            "channel": channel_name,
            "data": {"socket_id": socket_id}
        }, websocket)

        # Keep connection alive and answer heartbeats
        while True:
            try:
                data = await websocket.receive_text()

                try:
                    client_message = json.loads(data)
                    if client_message.get("type") == "ping":
                        await relay.send_personal_message({
                            "event": "pong",
                            "data": {"timestamp": client_message.get("timestamp")}
                        }, websocket)
                except json.JSONDecodeError:
                    logger.warning(f"Invalid JSON received from WebSocket: {data}")

            except WebSocketDisconnect:
                break
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(f"WebSocket error: {e}")
    finally:
        relay.disconnect(websocket, channel_name)

@router.get("/stats")
async def websocket_stats(request: Request):
    """Connection statistics (for debugging)"""
    relay: WebSocketRelay = request.app.state.relay
    counts = relay.get_all_connection_counts()
    return {
        "total_channels": len(counts),
        "connection_counts": counts,
        "total_connections": sum(counts.values())
    }
