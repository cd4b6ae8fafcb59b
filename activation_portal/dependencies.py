from __future__ import annotations

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from activation_portal.auth import Principal
from activation_portal.config import CarrierFieldRules
from activation_portal.db import get_db
from activation_portal.errors import Unauthenticated
from activation_portal.security.sessions import load_principal_from_token
from activation_portal.services.authorization_service import Action, authorize
from activation_portal.services.chat_service import ChatHub


def get_client_ip(request: Request) -> str | None:
    forwarded_for = request.headers.get('x-forwarded-for')
    if forwarded_for:
        return forwarded_for.split(',')[0].strip()
    if request.client:
        return request.client.host
    return None


def bearer_token(request: Request) -> str | None:
    header = request.headers.get('authorization', '')
    scheme, _, token = header.partition(' ')
    if scheme.lower() != 'bearer' or not token.strip():
        return None
    return token.strip()


def get_current_principal(request: Request, db: Session = Depends(get_db)) -> Principal:
    principal = load_principal_from_token(db, bearer_token(request))
    if principal is None:
        # an expired session row was deleted on lookup
        db.commit()
        raise Unauthenticated()
    request.state.principal = principal
    return principal


def require_action(action: Action):
    def dependency(principal: Principal = Depends(get_current_principal)) -> Principal:
        authorize(principal, action)
        return principal

    return dependency


def get_carrier_rules(request: Request) -> CarrierFieldRules:
    return request.app.state.carrier_rules


def get_chat_hub(request: Request) -> ChatHub:
    return request.app.state.chat_hub
