from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, status
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from activation_portal.auth import Principal
from activation_portal.db import get_db
from activation_portal.dependencies import get_chat_hub, get_current_principal
from activation_portal.errors import PortalError, error_body
from activation_portal.schemas import ChatMessageCreate
from activation_portal.security.sessions import load_principal_from_token
from activation_portal.services import chat_service
from activation_portal.services.chat_service import ChatHub

logger = logging.getLogger(__name__)

router = APIRouter(tags=['chat'])


def _persist_message(db: Session, principal: Principal, document_id: int, text: str | None) -> dict:
    try:
        message = chat_service.send(db, principal, document_id, text)
        db.commit()
    except PortalError:
        db.rollback()
        raise
    return chat_service.serialize_message(message, document_id)


def _open_socket_session(db: Session, token: str | None, document_id: int) -> Principal | None:
    principal = load_principal_from_token(db, token)
    if principal is None:
        db.commit()
        return None
    try:
        chat_service.join(db, principal, document_id)
    except PortalError:
        db.rollback()
        return None
    db.commit()
    return principal


def _send_from_socket(db: Session, token: str | None, document_id: int, text: str | None) -> dict | None:
    """Persist one socket message; ``None`` means the session behind the socket is gone."""
    # logout, expiry and deactivation all end the socket at the next message
    principal = load_principal_from_token(db, token)
    if principal is None:
        db.commit()
        return None
    return _persist_message(db, principal, document_id, text)


@router.get('/api/chat/{document_id}/messages')
def chat_history(
    document_id: int,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    messages = chat_service.history(db, principal, document_id)
    return [chat_service.serialize_message(message, document_id) for message in messages]


@router.post('/api/chat/{document_id}/messages', status_code=201)
async def chat_send(
    document_id: int,
    body: ChatMessageCreate,
    principal: Principal = Depends(get_current_principal),
    hub: ChatHub = Depends(get_chat_hub),
    db: Session = Depends(get_db),
):
    payload = await run_in_threadpool(_persist_message, db, principal, document_id, body.body)
    await hub.broadcast(document_id, payload)
    return payload


@router.websocket('/ws/documents/{document_id}/chat')
async def chat_socket(websocket: WebSocket, document_id: int, db: Session = Depends(get_db)):
    hub: ChatHub = websocket.app.state.chat_hub
    token = websocket.query_params.get('token')
    principal = await run_in_threadpool(_open_socket_session, db, token, document_id)
    if principal is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    await hub.connect(document_id, websocket)
    try:
        while True:
            data = await websocket.receive_json()
            text = data.get('body') if isinstance(data, dict) else None
            try:
                payload = await run_in_threadpool(_send_from_socket, db, token, document_id, text)
            except PortalError as exc:
                await websocket.send_json(error_body(exc))
                continue
            if payload is None:
                await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
                break
            await hub.broadcast(document_id, payload)
    except WebSocketDisconnect:
        logger.debug('chat socket closed for document %s', document_id)
    finally:
        await hub.disconnect(document_id, websocket)
