from __future__ import annotations

import itertools
import json
import logging
from typing import Any, Dict, List, Optional, Protocol, Set

from starlette.requests import HTTPConnection

from ..models.message_history import MessageHistory, utcnow_iso
from ..store import MemoryStore

logger = logging.getLogger(__name__)

# Envelope types
CONNECTION = "connection"
INIT = "init"
PING = "ping"
PONG = "pong"
MESSAGE = "message"


def envelope(type_: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    out: Dict[str, Any] = {"type": type_, "timestamp": utcnow_iso()}
    if data is not None:
        out["data"] = data
    return out


class JsonSender(Protocol):
    async def send_json(self, data: Any) -> None: ...


class RelayConnection:
    """One live observer. bot_id is None until the observer sends init."""

    _ids = itertools.count(1)

    def __init__(self, sender: JsonSender) -> None:
        self.id = next(self._ids)
        self.sender = sender
        self.bot_id: Optional[str] = None

    async def send(self, message: Dict[str, Any]) -> None:
        await self.sender.send_json(message)

    def __repr__(self) -> str:
        return f"RelayConnection(id={self.id}, bot_id={self.bot_id!r})"


class Relay:
    """
    Fan-out of inbound replies to live observers.

    Observers are indexed by the bot id they declared in init. Observers that
    never declared one get every event. Delivery is best-effort: no replay for
    late joiners, and an observer that fails a send is dropped.
    """

    def __init__(self, store: MemoryStore) -> None:
        self._store = store
        self._connections: Dict[int, RelayConnection] = {}
        self._topics: Dict[str, Set[int]] = {}

    @property
    def observer_count(self) -> int:
        return len(self._connections)

    async def connect(self, sender: JsonSender) -> RelayConnection:
        conn = RelayConnection(sender)
        self._connections[conn.id] = conn
        logger.debug("Relay observer %s connected (%s live)", conn.id, self.observer_count)
        try:
            await conn.send(envelope(CONNECTION, {"status": "connected"}))
        except Exception:
            self.disconnect(conn)
            raise
        return conn

    def subscribe(self, conn: RelayConnection, bot_id: str) -> None:
        self._unsubscribe(conn)
        conn.bot_id = bot_id
        self._topics.setdefault(bot_id, set()).add(conn.id)

    def disconnect(self, conn: RelayConnection) -> None:
        self._unsubscribe(conn)
        if self._connections.pop(conn.id, None) is not None:
            logger.debug("Relay observer %s disconnected (%s live)", conn.id, self.observer_count)

    def _unsubscribe(self, conn: RelayConnection) -> None:
        if conn.bot_id is None:
            return
        ids = self._topics.get(conn.bot_id)
        if ids is not None:
            ids.discard(conn.id)
            if not ids:
                del self._topics[conn.bot_id]
        conn.bot_id = None

    def observers_for(self, bot_id: str) -> List[RelayConnection]:
        scoped = self._topics.get(bot_id, set())
        return [c for cid, c in self._connections.items() if cid in scoped or c.bot_id is None]

    async def handle_client_message(self, conn: RelayConnection, raw: Any) -> None:
        """Handle one client->server frame (init / ping). Anything else is ignored."""
        msg = raw
        if isinstance(raw, (str, bytes)):
            try:
                msg = json.loads(raw)
            except ValueError:
                logger.debug("Relay observer %s sent non-JSON frame; ignored", conn.id)
                return

        if not isinstance(msg, dict):
            return

        kind = msg.get("type")
        if kind == INIT:
            bot_id = msg.get("botId")
            if not bot_id:
                logger.debug("Relay observer %s sent init without botId; ignored", conn.id)
                return
            self.subscribe(conn, str(bot_id))
            await conn.send(envelope(INIT, {"botId": conn.bot_id}))
        elif kind == PING:
            await conn.send(envelope(PONG))
        else:
            logger.debug("Relay observer %s sent unknown type %r; ignored", conn.id, kind)

    async def broadcast(self, bot_id: str, payload: Dict[str, Any]) -> int:
        """Send a message event to every observer of bot_id. Returns deliveries."""
        event = envelope(MESSAGE, {**payload, "botId": bot_id})
        delivered = 0
        for conn in self.observers_for(bot_id):
            try:
                await conn.send(event)
            except Exception:
                logger.warning("Relay send to observer %s failed; dropping it", conn.id, exc_info=True)
                self.disconnect(conn)
                continue
            delivered += 1
        return delivered

    async def ingest_reply(
        self,
        *,
        bot_id: str,
        user_id: str,
        username: str,
        content: str,
        timestamp: Optional[str] = None,
        message_id: Optional[str] = None,
    ) -> MessageHistory:
        """Record an inbound reply in history, then fan it out."""
        sent_at = timestamp or utcnow_iso()
        record = await self._store.save_message_history(
            MessageHistory(
                bot_id=bot_id,
                content=content,
                sent_at=sent_at,
                sender_user_id=user_id,
                sender_username=username,
                is_reply=True,
            )
        )

        payload: Dict[str, Any] = {
            "id": record.id,
            "userId": user_id,
            "username": username,
            "content": content,
            "timestamp": sent_at,
        }
        if message_id:
            payload["messageId"] = message_id

        delivered = await self.broadcast(bot_id, payload)
        logger.info("Reply from user=%s for bot=%s relayed to %s observers", user_id, bot_id, delivered)
        return record


def get_relay(conn: HTTPConnection) -> Relay:
    return conn.app.state.relay
