from __future__ import annotations

import asyncio
import logging
import re
from typing import List, Optional

from fastapi import APIRouter, Depends, Path, Request, WebSocket, WebSocketDisconnect
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from errors import AppError, NotFoundError, ValidationError
from models import User
from routers.auth import get_current_user, user_from_token
from utils.chat_session import ChatSession, SlowModeStore
from utils.chat_storage import ChatStorage
from utils.chat_types import ChatMessage, MessageKind, PollData


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/chat", tags=["chat"])

SCOPE_PATTERN = r"^[a-z0-9_-]{1,32}$"
REGION_SCOPES = {"regional"}


def get_chat_storage(request: Request) -> ChatStorage:
    return request.app.state.chat_storage


def get_slow_modes(request: Request) -> SlowModeStore:
    return request.app.state.slow_modes


def _resolve_region(scope: str, user: User, region: Optional[str]) -> Optional[str]:
    if scope not in REGION_SCOPES:
        return None
    region = (region or getattr(user, "region", None) or "").strip() or None
    if not region:
        raise ValidationError("Region required for regional chat")
    return region


def _open_session(
    storage: ChatStorage,
    slow_modes: SlowModeStore,
    user: User,
    scope: str,
    region: Optional[str],
) -> ChatSession:
    return ChatSession(
        storage,
        slow_modes,
        user_id=str(user.id),
        user_name=user.full_name,
        user_type=user.user_type,
        scope=scope,
        region=_resolve_region(scope, user, region),
    )


def chat_session(
    scope: str = Path(..., pattern=SCOPE_PATTERN),
    region: Optional[str] = None,
    user: User = Depends(get_current_user),
    storage: ChatStorage = Depends(get_chat_storage),
    slow_modes: SlowModeStore = Depends(get_slow_modes),
) -> ChatSession:
    return _open_session(storage, slow_modes, user, scope, region)


def _dump(messages: List[ChatMessage]) -> List[dict]:
    return [m.model_dump(mode="json") for m in messages]


@router.get("/{scope}/messages")
def get_messages(session: ChatSession = Depends(chat_session)):
    session.touch()
    return {
        "ok": True,
        "region": session.region,
        "messages": _dump(session.messages()),
        "online": session.online_count(),
        "slow_mode_remaining": session.slow_mode_remaining(),
    }


class PollIn(BaseModel):
    question: str
    options: List[str]


class MessageIn(BaseModel):
    text: str = ""
    kind: MessageKind = MessageKind.text
    media_url: Optional[str] = None
    poll: Optional[PollIn] = None


@router.post("/{scope}/messages")
def post_message(payload: MessageIn, session: ChatSession = Depends(chat_session)):
    poll = PollData.create(payload.poll.question, payload.poll.options) if payload.poll else None
    message = session.send(payload.text, payload.kind, payload.media_url, poll)
    if message is None:
        # Slow mode: not an error, the client just waits.
        return {"ok": True, "sent": False, "retry_after": session.slow_mode_remaining()}
    return {"ok": True, "sent": True, "message": message.model_dump(mode="json")}


class VoteIn(BaseModel):
    option_id: str


@router.post("/{scope}/messages/{message_id}/vote")
def vote_poll(message_id: str, payload: VoteIn, session: ChatSession = Depends(chat_session)):
    message = session.vote_poll(message_id, payload.option_id)
    if message is None:
        raise NotFoundError("Message not found")
    return {"ok": True, "message": message.model_dump(mode="json")}


def _slow_mode_body(session: ChatSession) -> dict:
    settings = session.slow_mode()
    return {
        "ok": True,
        "enabled": settings.enabled,
        "interval_seconds": settings.interval_seconds,
        "remaining": session.slow_mode_remaining(),
    }


@router.get("/{scope}/slow-mode")
def get_slow_mode(session: ChatSession = Depends(chat_session)):
    return _slow_mode_body(session)


class SlowModeIn(BaseModel):
    enabled: Optional[bool] = None
    interval_seconds: Optional[int] = None


@router.put("/{scope}/slow-mode")
def put_slow_mode(payload: SlowModeIn, session: ChatSession = Depends(chat_session)):
    session.set_slow_mode(enabled=payload.enabled, interval_seconds=payload.interval_seconds)
    return _slow_mode_body(session)


@router.get("/{scope}/online")
def online(session: ChatSession = Depends(chat_session)):
    return {"ok": True, "online": session.online_count()}


@router.websocket("/{scope}/ws")
async def chat_stream(websocket: WebSocket, scope: str, token: str = "", region: Optional[str] = None):
    """
    Live message feed for one chat.

    Sends the current list on connect and the full list again after every
    change. Any frame from the client counts as a presence ping.
    """
    app = websocket.app
    try:
        if not re.match(SCOPE_PATTERN, scope):
            raise ValidationError("Unknown chat")
        user = await run_in_threadpool(user_from_token, token, app.state.users)
        session = _open_session(app.state.chat_storage, app.state.slow_modes, user, scope, region)
    except AppError as exc:
        logger.info("Rejected chat stream for %s: %s", scope, exc.message)
        await websocket.close(code=1008)
        return

    await websocket.accept()
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()

    def on_change(messages: List[ChatMessage]) -> None:
        # Called from whichever thread wrote the change.
        loop.call_soon_threadsafe(queue.put_nowait, _dump(messages))

    unsubscribe = session.storage.subscribe(session.scope, on_change, session.region)

    async def pump() -> None:
        while True:
            messages = await queue.get()
            await websocket.send_json({"type": "messages", "messages": messages})

    sender = None
    try:
        await run_in_threadpool(session.touch)
        initial = await run_in_threadpool(session.messages)
        await websocket.send_json({"type": "messages", "messages": _dump(initial)})
        sender = asyncio.create_task(pump())
        while True:
            await websocket.receive_text()
            await run_in_threadpool(session.touch)
    except WebSocketDisconnect:
        pass
    finally:
        unsubscribe()
        if sender is not None:
            sender.cancel()
            try:
                await sender
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.exception("Chat stream for %s stopped pushing updates", scope)
