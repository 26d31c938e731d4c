from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from ..services.relay import Relay, RelayConnection, get_relay

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])


@router.websocket("/ws")
async def relay_socket(websocket: WebSocket, relay: Relay = Depends(get_relay)) -> None:
    """
    Live reply feed.

    Client frames: {"type": "init", "botId": ...} and {"type": "ping"},
    as text or binary (UTF-8 JSON) frames.
    Server frames: connection / init / pong / message envelopes.
    """
    await websocket.accept()
    conn: Optional[RelayConnection] = None
    try:
        conn = await relay.connect(websocket)
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            await relay.handle_client_message(conn, message.get("text") or message.get("bytes"))
    except WebSocketDisconnect:
        pass
    except Exception:
        logger.warning("Relay socket closed after an unexpected error", exc_info=True)
    finally:
        if conn is not None:
            relay.disconnect(conn)
