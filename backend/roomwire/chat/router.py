"""Chat router providing the realtime WebSocket endpoint.

Endpoint:
    - WebSocket /ws?token=<jwt>: one authenticated connection per socket

Protocol Flow:
    1. Client connects with a bearer token in the query string (or an
       ``Authorization: Bearer`` header).
       → Bad token / unknown / blocked user: socket closed with 1008 before
         it is accepted.
    2. Server accepts, subscribes the connection to every room the user is an
       active member of, and sends {event: "connected", data: {...}}.
    3. Client sends {event, data} frames (join_room, send_message, ...).
       Each frame is handled in arrival order; failures come back as
       {event: "error", data: {message, code}} and the socket stays open.
    4. On disconnect the connection is deregistered, rooms receive
       user_left and, for the user's last connection, user_status_updated.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from roomwire.errors import AuthenticationError, ChatError
from roomwire.realtime import ChatHub

logger = logging.getLogger(__name__)

router = APIRouter(tags=["chat"])

# 1008 = Policy Violation, 1011 = Internal Error
POLICY_VIOLATION = 1008
INTERNAL_ERROR = 1011


def _token_from(websocket: WebSocket, token: Optional[str]) -> Optional[str]:
    if token:
        return token
    header = websocket.headers.get("authorization", "")
    scheme, _, value = header.partition(" ")
    if scheme.lower() == "bearer" and value:
        return value.strip()
    return None


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    token: Optional[str] = Query(None, description="JWT access token"),
) -> None:
    """WebSocket endpoint for all realtime chat traffic of one client.

    Args:
        websocket: The WebSocket connection.
        token: Access token; falls back to the Authorization header.
    """
    hub: ChatHub = websocket.app.state.hub
    token = _token_from(websocket, token)

    try:
        await hub.authenticate(token)
    except ChatError as exc:
        logger.warning("[WS] Handshake rejected: %s", exc.message)
        await websocket.close(code=POLICY_VIOLATION)
        return

    await websocket.accept()
    try:
        connection = await hub.connect(websocket, token)
    except ChatError as exc:
        logger.warning("[WS] Connection setup failed: %s", exc.message)
        code = POLICY_VIOLATION if isinstance(exc, AuthenticationError) else INTERNAL_ERROR
        await websocket.close(code=code)
        return

    connection_id = connection.connection_id
    try:
        # Main message loop; frames are handled strictly in arrival order
        while True:
            raw = await websocket.receive_text()
            await hub.handle(connection_id, raw)
    except WebSocketDisconnect as exc:
        logger.info("[WS] Connection %s closed by client (code=%s)", connection_id, exc.code)
    finally:
        await hub.disconnect(connection_id)
