from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from activation_portal.auth import Principal, SalesManagerPrincipal
from activation_portal.config import settings
from activation_portal.models import AuthSession, PrincipalKind
from activation_portal.services.identity_service import load_principal


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _session_expiry(created_at: datetime) -> datetime:
    # fixed lifetime from creation; access does not extend it
    return created_at + timedelta(hours=settings.session_ttl_hours)


def create_session(
    db: Session,
    *,
    principal_id: int,
    principal_kind: PrincipalKind,
    manager_id: int | None = None,
    team_id: int | None = None,
    role_tag: str | None = None,
) -> str:
    token = secrets.token_urlsafe(48)
    created_at = _now()
    db.add(
        AuthSession(
            id=token,
            principal_id=principal_id,
            principal_kind=principal_kind,
            manager_id=manager_id,
            team_id=team_id,
            role_tag=role_tag,
            created_at=created_at,
            expires_at=_session_expiry(created_at),
        )
    )
    db.flush()
    return token


def create_session_for(db: Session, principal: Principal) -> str:
    manager_id = None
    team_id = None
    if isinstance(principal, SalesManagerPrincipal):
        manager_id = principal.id
        team_id = principal.team_id
    return create_session(
        db,
        principal_id=principal.id,
        principal_kind=principal.kind,
        manager_id=manager_id,
        team_id=team_id,
        role_tag=principal.role_tag,
    )


def get_session(db: Session, token: str | None) -> AuthSession | None:
    if not token:
        return None
    web_session = db.execute(select(AuthSession).where(AuthSession.id == token)).scalar_one_or_none()
    if web_session is None:
        return None
    if web_session.expires_at <= _now():
        db.delete(web_session)
        db.flush()
        return None
    return web_session


def delete_session(db: Session, token: str | None) -> None:
    if not token:
        return
    db.execute(delete(AuthSession).where(AuthSession.id == token))


def load_principal_from_token(db: Session, token: str | None) -> Principal | None:
    web_session = get_session(db, token)
    if web_session is None:
        return None
    return load_principal(db, web_session.principal_kind, web_session.principal_id)
