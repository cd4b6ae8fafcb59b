from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from activation_portal.auth import Principal, describe
from activation_portal.db import get_db
from activation_portal.dependencies import bearer_token, get_client_ip, get_current_principal
from activation_portal.errors import Unauthenticated
from activation_portal.schemas import LoginRequest
from activation_portal.security.sessions import create_session_for, delete_session
from activation_portal.services.audit_service import log_audit, log_auth_event
from activation_portal.services.identity_service import authenticate

router = APIRouter(prefix='/api/auth', tags=['auth'])


@router.post('/login')
def login(body: LoginRequest, request: Request, db: Session = Depends(get_db)):
    username = body.username.strip()
    ip = get_client_ip(request)
    user_agent = request.headers.get('user-agent')

    principal, failure_reason = authenticate(db, username, body.password)
    if principal is None:
        log_auth_event(
            db,
            attempted_username=username,
            success=False,
            failure_reason=failure_reason,
            ip=ip,
            user_agent=user_agent,
        )
        db.commit()
        raise Unauthenticated()

    token = create_session_for(db, principal)
    log_auth_event(
        db,
        attempted_username=username,
        success=True,
        principal=principal,
        ip=ip,
        user_agent=user_agent,
    )
    log_audit(db, actor=principal, action='AUTH_LOGIN', ip=ip, metadata={'username': username})
    db.commit()
    return {'token': token, 'token_type': 'bearer', 'principal': describe(principal)}


@router.post('/logout')
def logout(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    delete_session(db, bearer_token(request))
    log_audit(db, actor=principal, action='AUTH_LOGOUT', ip=get_client_ip(request))
    db.commit()
    return {'ok': True}


@router.get('/me')
def me(principal: Principal = Depends(get_current_principal)):
    return describe(principal)
