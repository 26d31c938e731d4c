from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from starlette.requests import HTTPConnection

from ..models.bot import Bot
from ..models.message_history import MessageHistory
from ..store import MemoryStore
from .discord_rest import DiscordRestClient

logger = logging.getLogger(__name__)


class BatchInProgressError(ValueError):
    """A batch with the same id is already being dispatched."""


@dataclass
class RecipientResult:
    user_id: str
    success: bool
    details: Optional[Dict[str, Any]] = None

    def public(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"userId": self.user_id, "success": self.success}
        if self.details is not None:
            out["details"] = self.details
        return out


@dataclass
class BatchOutcome:
    batch_id: str
    requested: int
    results: List[RecipientResult] = field(default_factory=list)
    cancelled: bool = False
    history: Optional[MessageHistory] = None

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def attempted(self) -> int:
        return len(self.results)

    @property
    def message(self) -> str:
        msg = f"Sent messages to {self.success_count} out of {self.requested} users"
        if self.cancelled:
            msg += " (cancelled)"
        return msg


class BatchRegistry:
    """In-flight batches by id, each with its cancellation flag."""

    def __init__(self) -> None:
        self._active: Dict[str, asyncio.Event] = {}

    def open(self, batch_id: str) -> asyncio.Event:
        if batch_id in self._active:
            raise BatchInProgressError(f"Batch {batch_id} is already running")
        flag = asyncio.Event()
        self._active[batch_id] = flag
        return flag

    def close(self, batch_id: str) -> None:
        self._active.pop(batch_id, None)

    def cancel(self, batch_id: str) -> bool:
        flag = self._active.get(batch_id)
        if flag is None:
            return False
        flag.set()
        return True

    def is_active(self, batch_id: str) -> bool:
        return batch_id in self._active


class BulkDispatcher:
    """
    Sends one content string to many recipients, one at a time.

    Rules:
    - recipients are contacted in list order (duplicates included)
    - delay_ms is waited between consecutive sends, never before the first
    - a failed recipient never stops the batch
    - cancellation stops new sends; finished results are still reported
    - exactly one history row per batch (recipient_count = successes)
    """

    def __init__(
        self,
        store: MemoryStore,
        discord: DiscordRestClient,
        registry: Optional[BatchRegistry] = None,
    ) -> None:
        self._store = store
        self._discord = discord
        self.registry = registry or BatchRegistry()

    async def dispatch(
        self,
        bot: Bot,
        user_ids: Sequence[str],
        content: str,
        *,
        delay_ms: int = 0,
        batch_id: Optional[str] = None,
    ) -> BatchOutcome:
        batch_id = batch_id or uuid.uuid4().hex
        cancel = self.registry.open(batch_id)
        outcome = BatchOutcome(batch_id=batch_id, requested=len(user_ids))

        logger.info(
            "Batch %s for bot=%s: %s recipients, delay=%sms",
            batch_id,
            bot.id,
            len(user_ids),
            delay_ms,
        )

        try:
            await self._run(bot, user_ids, content, delay_ms / 1000.0, cancel, outcome)
        finally:
            self.registry.close(batch_id)

        outcome.history = await self._store.save_message_history(
            MessageHistory(
                bot_id=bot.id,
                content=content,
                recipient_count=outcome.success_count,
            )
        )

        logger.info("Batch %s for bot=%s finished: %s", batch_id, bot.id, outcome.message)
        return outcome

    async def _run(
        self,
        bot: Bot,
        user_ids: Sequence[str],
        content: str,
        delay_s: float,
        cancel: asyncio.Event,
        outcome: BatchOutcome,
    ) -> None:
        for index, user_id in enumerate(user_ids):
            if index and delay_s > 0:
                # Sleep out the pacing delay, waking early only on cancellation
                try:
                    await asyncio.wait_for(cancel.wait(), timeout=delay_s)
                except asyncio.TimeoutError:
                    pass

            if cancel.is_set():
                outcome.cancelled = True
                logger.info("Batch %s cancelled after %s of %s", outcome.batch_id, index, len(user_ids))
                return

            outcome.results.append(await self._send_one(bot, user_id, content))

    async def _send_one(self, bot: Bot, user_id: str, content: str) -> RecipientResult:
        try:
            res = await self._discord.send_direct_message(bot.token, user_id, content)
        except Exception as e:
            logger.exception("DM to user=%s via bot=%s raised", user_id, bot.id)
            return RecipientResult(user_id=user_id, success=False, details={"success": False, "error": str(e)})

        if res.success:
            return RecipientResult(user_id=user_id, success=True)

        logger.warning("DM to user=%s via bot=%s failed: %s", user_id, bot.id, res.details())
        return RecipientResult(user_id=user_id, success=False, details=res.details())


def get_dispatcher(conn: HTTPConnection) -> BulkDispatcher:
    return conn.app.state.dispatcher
