from __future__ import annotations

import logging

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from activation_portal.auth import AdminPrincipal, Principal, SalesManagerPrincipal, WorkerPrincipal
from activation_portal.errors import Conflict, NotFound, ValidationFailed
from activation_portal.models import (
    Admin,
    ManagerPosition,
    PrincipalKind,
    SalesManager,
    SalesTeam,
    WorkerRole,
    WorkerUser,
    utcnow,
)
from activation_portal.security.passwords import hash_password, verify_password

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 6

_ACCOUNT_MODELS = {
    PrincipalKind.ADMIN: Admin,
    PrincipalKind.SALES_MANAGER: SalesManager,
    PrincipalKind.WORKER: WorkerUser,
}


def _clean_username(username: str) -> str:
    clean = username.strip()
    if not clean:
        raise ValidationFailed('Username is required')
    return clean


def _check_password(password: str) -> None:
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationFailed(f'Password must be at least {MIN_PASSWORD_LENGTH} characters')


def username_taken(db: Session, username: str) -> bool:
    for model in _ACCOUNT_MODELS.values():
        exists = db.execute(
            select(model.id).where(func.lower(model.username) == username.strip().lower())
        ).scalar_one_or_none()
        if exists is not None:
            return True
    return False


def _ensure_username_free(db: Session, username: str) -> None:
    if username_taken(db, username):
        raise Conflict('Username is already in use')


def create_admin(db: Session, *, username: str, password: str, display_name: str) -> Admin:
    username = _clean_username(username)
    _check_password(password)
    _ensure_username_free(db, username)
    admin = Admin(
        username=username,
        password_hash=hash_password(password),
        display_name=display_name.strip() or username,
        active=True,
    )
    db.add(admin)
    db.flush()
    logger.info('admin account created: %s', username)
    return admin


def create_sales_team(db: Session, *, team_name: str, team_code: str) -> SalesTeam:
    team_code = team_code.strip()
    if not team_name.strip() or not team_code:
        raise ValidationFailed('Team name and team code are required')
    existing = db.execute(select(SalesTeam.id).where(SalesTeam.team_code == team_code)).scalar_one_or_none()
    if existing is not None:
        raise Conflict('Team code is already in use')
    team = SalesTeam(team_name=team_name.strip(), team_code=team_code, active=True)
    db.add(team)
    db.flush()
    return team


def create_sales_manager(
    db: Session,
    *,
    team_id: int,
    manager_name: str,
    manager_code: str,
    username: str,
    password: str,
    position: ManagerPosition = ManagerPosition.ASSOCIATE,
    contact_phone: str | None = None,
    email: str | None = None,
) -> SalesManager:
    username = _clean_username(username)
    _check_password(password)
    manager_code = manager_code.strip()
    if not manager_name.strip() or not manager_code:
        raise ValidationFailed('Manager name and manager code are required')

    team = db.execute(select(SalesTeam).where(SalesTeam.id == team_id, SalesTeam.active.is_(True))).scalar_one_or_none()
    if not team:
        raise NotFound('Sales team not found')
    _ensure_username_free(db, username)
    code_taken = db.execute(
        select(SalesManager.id).where(SalesManager.manager_code == manager_code)
    ).scalar_one_or_none()
    if code_taken is not None:
        raise Conflict('Manager code is already in use')

    manager = SalesManager(
        team_id=team.id,
        manager_name=manager_name.strip(),
        manager_code=manager_code,
        username=username,
        password_hash=hash_password(password),
        position=position,
        contact_phone=contact_phone,
        email=email,
        active=True,
    )
    db.add(manager)
    db.flush()
    logger.info('sales manager account created: %s (%s)', username, manager_code)
    return manager


def create_worker_user(
    db: Session,
    *,
    username: str,
    password: str,
    display_name: str,
    role: WorkerRole,
    dealer_scope: str | None = None,
) -> WorkerUser:
    username = _clean_username(username)
    _check_password(password)
    _ensure_username_free(db, username)
    user = WorkerUser(
        username=username,
        password_hash=hash_password(password),
        display_name=display_name.strip() or username,
        role=role,
        dealer_scope=dealer_scope.strip() if dealer_scope and dealer_scope.strip() else None,
        active=True,
    )
    db.add(user)
    db.flush()
    logger.info('%s account created: %s', role.value.lower(), username)
    return user


def to_principal(account: Admin | SalesManager | WorkerUser) -> Principal:
    match account:
        case Admin():
            return AdminPrincipal(id=account.id, username=account.username, display_name=account.display_name)
        case SalesManager():
            return SalesManagerPrincipal(
                id=account.id,
                username=account.username,
                display_name=account.manager_name,
                team_id=account.team_id,
                manager_code=account.manager_code,
                position=account.position,
            )
        case WorkerUser():
            return WorkerPrincipal(
                id=account.id,
                username=account.username,
                display_name=account.display_name,
                role=account.role,
                dealer_scope=account.dealer_scope,
            )
    raise TypeError(f'Unsupported account type: {type(account).__name__}')


def _find_account(db: Session, kind: PrincipalKind, username: str):
    model = _ACCOUNT_MODELS[kind]
    return db.execute(select(model).where(model.username == username)).scalar_one_or_none()


def authenticate(db: Session, username: str, password: str) -> tuple[Principal | None, str | None]:
    """Try administrator, then sales manager, then worker credentials.

    Returns ``(principal, None)`` on success and ``(None, failure_reason)``
    otherwise. The failure reason is for the audit trail only.
    """
    username = username.strip()
    if not username or not password:
        return None, 'MISSING_CREDENTIALS'

    failure = 'UNKNOWN_USERNAME'
    for kind in (PrincipalKind.ADMIN, PrincipalKind.SALES_MANAGER, PrincipalKind.WORKER):
        account = _find_account(db, kind, username)
        if account is None:
            continue
        if not verify_password(password, account.password_hash):
            failure = 'BAD_PASSWORD'
            continue
        if not account.active:
            failure = 'INACTIVE_PRINCIPAL'
            continue
        return to_principal(account), None

    if failure == 'UNKNOWN_USERNAME':
        verify_password(password, None)
    return None, failure


def get_account(db: Session, kind: PrincipalKind, principal_id: int):
    model = _ACCOUNT_MODELS[kind]
    return db.execute(select(model).where(model.id == principal_id)).scalar_one_or_none()


def load_principal(db: Session, kind: PrincipalKind, principal_id: int) -> Principal | None:
    account = get_account(db, kind, principal_id)
    if account is None or not account.active:
        return None
    return to_principal(account)


def set_active(db: Session, *, kind: PrincipalKind, principal_id: int, active: bool) -> None:
    account = get_account(db, kind, principal_id)
    if account is None:
        raise NotFound('Account not found')
    account.active = active
    if hasattr(account, 'updated_at'):
        account.updated_at = utcnow()


def reset_password(db: Session, *, kind: PrincipalKind, principal_id: int, new_password: str) -> None:
    _check_password(new_password)
    account = get_account(db, kind, principal_id)
    if account is None:
        raise NotFound('Account not found')
    account.password_hash = hash_password(new_password)
    if hasattr(account, 'updated_at'):
        account.updated_at = utcnow()


def list_sales_teams(db: Session) -> list[SalesTeam]:
    return db.execute(select(SalesTeam).order_by(SalesTeam.team_name.asc())).scalars().all()


def list_principals(db: Session) -> list[dict]:
    rows: list[dict] = []
    for admin in db.execute(select(Admin).order_by(Admin.username.asc())).scalars():
        rows.append(
            {
                'id': admin.id,
                'username': admin.username,
                'display_name': admin.display_name,
                'principal_kind': PrincipalKind.ADMIN.value,
                'role_tag': None,
                'active': admin.active,
            }
        )
    for manager in db.execute(select(SalesManager).order_by(SalesManager.username.asc())).scalars():
        rows.append(
            {
                'id': manager.id,
                'username': manager.username,
                'display_name': manager.manager_name,
                'principal_kind': PrincipalKind.SALES_MANAGER.value,
                'role_tag': None,
                'manager_code': manager.manager_code,
                'team_id': manager.team_id,
                'position': manager.position.value,
                'active': manager.active,
            }
        )
    for user in db.execute(select(WorkerUser).order_by(WorkerUser.username.asc())).scalars():
        rows.append(
            {
                'id': user.id,
                'username': user.username,
                'display_name': user.display_name,
                'principal_kind': PrincipalKind.WORKER.value,
                'role_tag': user.role.value,
                'dealer_scope': user.dealer_scope,
                'active': user.active,
            }
        )
    return rows
