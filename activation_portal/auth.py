from __future__ import annotations

from dataclasses import dataclass, field

from activation_portal.models import ManagerPosition, PrincipalKind, WorkerRole


@dataclass(frozen=True)
class AdminPrincipal:
    id: int
    username: str
    display_name: str
    kind: PrincipalKind = field(default=PrincipalKind.ADMIN, init=False)

    @property
    def role_tag(self) -> str | None:
        return None


@dataclass(frozen=True)
class SalesManagerPrincipal:
    id: int
    username: str
    display_name: str
    team_id: int
    manager_code: str
    position: ManagerPosition
    kind: PrincipalKind = field(default=PrincipalKind.SALES_MANAGER, init=False)

    @property
    def role_tag(self) -> str | None:
        return None


@dataclass(frozen=True)
class WorkerPrincipal:
    id: int
    username: str
    display_name: str
    role: WorkerRole
    dealer_scope: str | None = None
    kind: PrincipalKind = field(default=PrincipalKind.WORKER, init=False)

    @property
    def role_tag(self) -> str | None:
        return self.role.value


Principal = AdminPrincipal | SalesManagerPrincipal | WorkerPrincipal


def is_admin(principal: Principal) -> bool:
    return principal.kind == PrincipalKind.ADMIN


def describe(principal: Principal) -> dict:
    owner_scope_id: int | str | None
    match principal:
        case SalesManagerPrincipal():
            owner_scope_id = principal.team_id
        case WorkerPrincipal():
            owner_scope_id = principal.dealer_scope
        case _:
            owner_scope_id = None
    return {
        'id': principal.id,
        'username': principal.username,
        'display_name': principal.display_name,
        'principal_kind': principal.kind.value,
        'role_tag': principal.role_tag,
        'owner_scope_id': owner_scope_id,
    }
