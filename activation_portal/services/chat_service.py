from __future__ import annotations

import asyncio
import logging
from collections import defaultdict

from fastapi import WebSocket
from sqlalchemy import select
from sqlalchemy.orm import Session

from activation_portal.auth import Principal
from activation_portal.errors import ValidationFailed
from activation_portal.models import ChatMessage, ChatRoom
from activation_portal.services import document_service
from activation_portal.services.authorization_service import Action, authorize

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 4000


def _find_room(db: Session, document_id: int) -> ChatRoom | None:
    return db.execute(select(ChatRoom).where(ChatRoom.document_id == document_id)).scalar_one_or_none()


def join(db: Session, principal: Principal, document_id: int) -> ChatRoom | None:
    """Check the caller may follow a document's chat.

    Returns the room, or ``None`` while nobody has written yet; rooms are only
    created by the first message.
    """
    authorize(principal, Action.CHAT_JOIN)
    document_service.get_document(db, principal, document_id)
    return _find_room(db, document_id)


def send(db: Session, principal: Principal, document_id: int, text: str | None) -> ChatMessage:
    authorize(principal, Action.CHAT_SEND)
    body = (text or '').strip()
    if not body:
        raise ValidationFailed('Message cannot be empty')
    if len(body) > MAX_MESSAGE_LENGTH:
        raise ValidationFailed(f'Message is longer than {MAX_MESSAGE_LENGTH} characters')
    room = join(db, principal, document_id)
    if room is None:
        room = ChatRoom(document_id=document_id)
        db.add(room)
        db.flush()
    message = ChatMessage(
        room_id=room.id,
        sender_kind=principal.kind.value,
        sender_id=principal.id,
        sender_name=principal.display_name,
        body=body,
    )
    db.add(message)
    db.flush()
    return message


def history(db: Session, principal: Principal, document_id: int) -> list[ChatMessage]:
    room = join(db, principal, document_id)
    if room is None:
        return []
    return db.execute(
        select(ChatMessage)
        .where(ChatMessage.room_id == room.id)
        .order_by(ChatMessage.created_at.asc(), ChatMessage.id.asc())
    ).scalars().all()


def serialize_message(message: ChatMessage, document_id: int) -> dict:
    return {
        'id': message.id,
        'document_id': document_id,
        'sender_kind': message.sender_kind,
        'sender_id': message.sender_id,
        'sender_name': message.sender_name,
        'body': message.body,
        'created_at': message.created_at.isoformat() if message.created_at else None,
    }


class ChatHub:
    """In-process fan-out of persisted chat messages to open sockets.

    Delivery is best effort: history is the source of truth and a socket that
    fails on send is dropped.
    """

    def __init__(self) -> None:
        self._rooms: dict[int, set[WebSocket]] = defaultdict(set)
        self._lock = asyncio.Lock()

    async def connect(self, document_id: int, websocket: WebSocket) -> None:
        async with self._lock:
            self._rooms[document_id].add(websocket)

    async def disconnect(self, document_id: int, websocket: WebSocket) -> None:
        async with self._lock:
            sockets = self._rooms.get(document_id)
            if not sockets:
                return
            sockets.discard(websocket)
            if not sockets:
                del self._rooms[document_id]

    def listeners(self, document_id: int) -> int:
        return len(self._rooms.get(document_id, ()))

    async def broadcast(self, document_id: int, payload: dict) -> None:
        async with self._lock:
            sockets = list(self._rooms.get(document_id, ()))
        dead = []
        for websocket in sockets:
            try:
                await websocket.send_json(payload)
            except Exception:
                logger.warning('dropping chat socket for document %s', document_id, exc_info=True)
                dead.append(websocket)
        for websocket in dead:
            await self.disconnect(document_id, websocket)
