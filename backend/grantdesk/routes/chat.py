"""
GrantDesk Backend: Support Chat WebSocket Route
================================================

What:  Mounts the relay on WS_PATH (default /ws).
How:   Accepts the socket and hands it to a ConnectionSession, which owns it
       until it closes. All protocol handling lives in the services layer.

Client usage:
    const ws = new WebSocket("wss://host/ws");
    ws.send(JSON.stringify({type: "auth", token, userId}));
    ws.send(JSON.stringify({type: "send", message: "hello"}));
"""

import logging

from fastapi import APIRouter, Depends, WebSocket

from grantdesk.config import settings
from grantdesk.services.auth_service import TokenVerifier
from grantdesk.services.connection_service import ConnectionSession
from grantdesk.services.relay_service import RelayService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Chat"])


def get_relay(websocket: WebSocket) -> RelayService:
    """The process-wide relay created in the application lifespan."""
    return websocket.app.state.relay


def get_token_verifier(websocket: WebSocket) -> TokenVerifier:
    return websocket.app.state.token_verifier


async def chat_socket(
    websocket: WebSocket,
    relay: RelayService = Depends(get_relay),
    verifier: TokenVerifier = Depends(get_token_verifier),
) -> None:
    """Serve one support-chat connection until either side closes it."""
    await websocket.accept()
    session = ConnectionSession(
        transport=websocket,
        relay=relay,
        verifier=verifier,
        auth_timeout=settings.ws_auth_timeout,
    )
    await session.run()


router.add_api_websocket_route(settings.ws_path, chat_socket, name="chat")
