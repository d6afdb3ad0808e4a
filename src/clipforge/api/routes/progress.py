"""WebSocket endpoint for live generation progress.

Clients send JSON commands over the socket:

    {"action": "subscribe", "generationId": "gen_..."}
    {"action": "unsubscribe", "generationId": "gen_..."}
    {"action": "cancel", "generationId": "gen_..."}

and receive progress envelopes ``{generationId, event, payload}``.
"""

from typing import Any, Optional

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from clipforge.services.progress.gateway import ProgressGateway

logger = structlog.get_logger()
router = APIRouter(tags=["progress"])


class WebSocketConnection:
    """Adapts a Starlette WebSocket to the gateway's Connection protocol."""

    def __init__(self, websocket: WebSocket, user_id: str):
        self.websocket = websocket
        self.user_id = user_id

    async def send_json(self, data: Any) -> None:
        await self.websocket.send_json(data)


async def _send_error(conn: WebSocketConnection, error: str, generation_id: str = "") -> None:
    await conn.send_json(
        {
            "generationId": generation_id,
            "event": "error",
            "payload": {"generationId": generation_id, "error": error},
        }
    )


async def handle_command(
    gateway: ProgressGateway, conn: WebSocketConnection, message: Any
) -> None:
    if not isinstance(message, dict):
        await _send_error(conn, "Invalid message")
        return

    action = message.get("action")
    generation_id: Optional[str] = message.get("generationId")
    if not generation_id or not isinstance(generation_id, str):
        await _send_error(conn, "generationId is required")
        return

    if action == "subscribe":
        await gateway.subscribe(conn, generation_id)
    elif action == "unsubscribe":
        gateway.unsubscribe(conn, generation_id)
    elif action == "cancel":
        await gateway.cancel(conn, generation_id)
    else:
        await _send_error(conn, f"Unknown action: {action}", generation_id)


@router.websocket("/ws/progress")
async def progress_socket(websocket: WebSocket):
    user_id = websocket.headers.get("x-user-id") or websocket.query_params.get("user_id")
    if not user_id:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    gateway: ProgressGateway = websocket.app.state.services.gateway
    await websocket.accept()
    conn = WebSocketConnection(websocket, user_id)
    logger.info("ws.connected", user_id=user_id)

    try:
        while True:
            try:
                message = await websocket.receive_json()
            except ValueError:
                await _send_error(conn, "Invalid JSON")
                continue
            await handle_command(gateway, conn, message)
    except WebSocketDisconnect:
        logger.info("ws.disconnected", user_id=user_id)
    finally:
        gateway.disconnect(conn)
