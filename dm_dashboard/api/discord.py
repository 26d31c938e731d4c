from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request
from pydantic import BaseModel, ConfigDict, Field as PydField

from ..config import Settings
from ..models.bot import Bot
from ..services.discord_rest import DiscordRestClient, get_discord
from ..services.dispatcher import BatchInProgressError, BulkDispatcher, get_dispatcher
from ..services.relay import Relay, get_relay
from ..services.user_refresh import UserRefresher, get_refresher
from ..store import MemoryStore, get_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/discord", tags=["discord"])

# Discord rejects message content above this length
MAX_CONTENT_LENGTH = 2000


# -----------------------------
# Schemas
# -----------------------------

class ValidateTokenRequest(BaseModel):
    token: str = PydField(..., min_length=1)


class SendMessagesRequest(BaseModel):
    """
    One bulk DM batch.
    userIds keeps caller order; duplicates are sent twice.
    """
    model_config = ConfigDict(populate_by_name=True)

    bot_id: str = PydField(..., min_length=1, alias="botId")
    user_ids: List[str] = PydField(..., min_length=1, alias="userIds")
    content: str = PydField(..., min_length=1, max_length=MAX_CONTENT_LENGTH)
    delay_ms: Optional[int] = PydField(default=None, ge=0, alias="delayMs")
    batch_id: Optional[str] = PydField(default=None, min_length=1, max_length=128, alias="batchId")


class MessageReceivedRequest(BaseModel):
    """Inbound reply pushed by the reply webhook."""
    model_config = ConfigDict(populate_by_name=True)

    bot_id: str = PydField(..., min_length=1, alias="botId")
    user_id: str = PydField(..., min_length=1, alias="userId")
    username: str = PydField(..., min_length=1)
    content: str = PydField(..., min_length=1)
    timestamp: Optional[str] = None
    message_id: Optional[str] = PydField(default=None, alias="messageId")


# -----------------------------
# Helpers
# -----------------------------

def _app_settings(request: Request) -> Settings:
    return request.app.state.settings


def _fail(status_code: int, message: str, details: Any = None) -> HTTPException:
    detail: Dict[str, Any] = {"message": message}
    if details is not None:
        detail["details"] = details
    return HTTPException(status_code=status_code, detail=detail)


async def _require_bot(store: MemoryStore, bot_id: str) -> Bot:
    bot = await store.get_bot(bot_id)
    if bot is None:
        raise _fail(404, "Bot not found")
    return bot


# -----------------------------
# Routes
# -----------------------------

@router.post("/validate-token")
async def validate_token(
    payload: ValidateTokenRequest,
    request: Request,
    store: MemoryStore = Depends(get_store),
    discord: DiscordRestClient = Depends(get_discord),
) -> Dict[str, Any]:
    """
    Check a bot token against Discord and remember the bot.
    Upstream rejection -> 400; Discord unreachable -> 502.
    """
    res = await discord.validate_token(payload.token)
    if not res.success:
        details = {"valid": False, **res.details()}
        if res.is_upstream_error:
            raise _fail(400, "Invalid Discord token", details)
        raise _fail(502, "Failed to validate token", details)

    identity = res.data
    bot_id = str(identity["id"])
    bot = await store.save_bot(
        Bot(
            id=bot_id,
            username=identity.get("username") or "",
            token=payload.token,
            avatar_url=_app_settings(request).avatar_url(bot_id, identity.get("avatar")),
        )
    )
    logger.info("Validated bot=%s (%s)", bot.id, bot.username)

    return {"success": True, "message": "Token validated successfully", "bot": bot.public()}


@router.get("/users")
async def fetch_users(
    background_tasks: BackgroundTasks,
    bot_id: str = Query(..., min_length=1, alias="botId"),
    store: MemoryStore = Depends(get_store),
    refresher: UserRefresher = Depends(get_refresher),
) -> Dict[str, Any]:
    """
    Return the cached users right away and refresh them from Discord
    after the response is sent.
    """
    bot = await _require_bot(store, bot_id)
    users = await store.get_users_by_bot_id(bot.id)

    background_tasks.add_task(refresher.refresh, bot)

    return {
        "success": True,
        "message": "Users served from cache; refresh scheduled",
        "users": [u.public() for u in users],
    }


@router.get("/users/{bot_id}")
async def get_users_by_bot_id(
    bot_id: str,
    store: MemoryStore = Depends(get_store),
) -> Dict[str, Any]:
    users = await store.get_users_by_bot_id(bot_id)
    return {"success": True, "users": [u.public() for u in users]}


@router.post("/send-messages")
async def send_messages(
    payload: SendMessagesRequest,
    request: Request,
    store: MemoryStore = Depends(get_store),
    dispatcher: BulkDispatcher = Depends(get_dispatcher),
) -> Dict[str, Any]:
    """
    Send content to every userId, in order, pacing by delayMs.
    Individual failures are reported per recipient; the batch itself succeeds.
    """
    cfg = _app_settings(request)

    delay_ms = cfg.send_delay_default_ms if payload.delay_ms is None else payload.delay_ms
    if delay_ms > cfg.send_delay_max_ms:
        raise _fail(
            400,
            "Invalid input data",
            [{
                "loc": ["body", "delayMs"],
                "msg": f"delayMs must be between 0 and {cfg.send_delay_max_ms}",
                "type": "value_error",
            }],
        )

    bot = await _require_bot(store, payload.bot_id)

    try:
        outcome = await dispatcher.dispatch(
            bot,
            payload.user_ids,
            payload.content,
            delay_ms=delay_ms,
            batch_id=payload.batch_id,
        )
    except BatchInProgressError as e:
        raise _fail(409, str(e))

    return {
        "success": True,
        "message": outcome.message,
        "batchId": outcome.batch_id,
        "successCount": outcome.success_count,
        "attempted": outcome.attempted,
        "cancelled": outcome.cancelled,
        "results": [r.public() for r in outcome.results],
    }


@router.post("/send-messages/{batch_id}/cancel")
async def cancel_batch(
    batch_id: str,
    dispatcher: BulkDispatcher = Depends(get_dispatcher),
) -> Dict[str, Any]:
    if not dispatcher.registry.cancel(batch_id):
        raise _fail(404, "Batch not found or already finished")
    return {"success": True, "message": "Cancellation requested", "batchId": batch_id}


@router.post("/message-received")
async def message_received(
    payload: MessageReceivedRequest,
    relay: Relay = Depends(get_relay),
) -> Dict[str, Any]:
    """
    Reply webhook. The reply is stored in history and pushed to live observers.
    Bot ids are not checked against known bots.
    """
    record = await relay.ingest_reply(
        bot_id=payload.bot_id,
        user_id=payload.user_id,
        username=payload.username,
        content=payload.content,
        timestamp=payload.timestamp,
        message_id=payload.message_id,
    )
    return {"success": True, "message": "Message received", "id": record.id}


@router.get("/message-history/{bot_id}")
async def get_message_history(
    bot_id: str,
    store: MemoryStore = Depends(get_store),
) -> Dict[str, Any]:
    messages = await store.get_message_history_by_bot_id(bot_id)
    return {"success": True, "messages": [m.public() for m in messages]}
