from __future__ import annotations

from sqlalchemy.orm import Session

from activation_portal.auth import Principal
from activation_portal.models import AuditLog, AuthEvent


def log_auth_event(
    db: Session,
    *,
    attempted_username: str,
    success: bool,
    ip: str | None,
    user_agent: str | None,
    principal: Principal | None = None,
    failure_reason: str | None = None,
) -> None:
    db.add(
        AuthEvent(
            attempted_username=attempted_username,
            success=success,
            failure_reason=failure_reason,
            principal_kind=principal.kind.value if principal else None,
            principal_id=principal.id if principal else None,
            ip=ip,
            user_agent=user_agent,
        )
    )


def log_audit(
    db: Session,
    *,
    actor: Principal | None,
    action: str,
    document_id: int | None = None,
    ip: str | None = None,
    metadata: dict | None = None,
) -> None:
    db.add(
        AuditLog(
            actor_kind=actor.kind.value if actor else None,
            actor_id=actor.id if actor else None,
            action=action,
            document_id=document_id,
            ip=ip,
            meta=metadata or {},
        )
    )
