"""Role and scope decisions for the document surface.

Everything here is a pure function of the principal, the requested action and
(for transitions) the document's current activation status. Denials raise
``Forbidden`` without saying which rule fired.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from activation_portal.auth import AdminPrincipal, Principal, SalesManagerPrincipal, WorkerPrincipal
from activation_portal.errors import Conflict, Forbidden
from activation_portal.models import ActivationStatus, Document, WorkerRole


class Action(str, Enum):
    VIEW_DOCUMENTS = 'VIEW_DOCUMENTS'
    CREATE_DOCUMENT = 'CREATE_DOCUMENT'
    TRANSITION = 'TRANSITION'
    UPDATE_NOTES = 'UPDATE_NOTES'
    UPDATE_INTAKE_STATUS = 'UPDATE_INTAKE_STATUS'
    DELETE_DOCUMENT = 'DELETE_DOCUMENT'
    OVERRIDE_SETTLEMENT = 'OVERRIDE_SETTLEMENT'
    MANAGE_PRICES = 'MANAGE_PRICES'
    MANAGE_CATALOG = 'MANAGE_CATALOG'
    MANAGE_CONTACT_CODES = 'MANAGE_CONTACT_CODES'
    MANAGE_ACCOUNTS = 'MANAGE_ACCOUNTS'
    CHAT_JOIN = 'CHAT_JOIN'
    CHAT_SEND = 'CHAT_SEND'


READ_ONLY_ACTIONS = frozenset({Action.VIEW_DOCUMENTS, Action.CHAT_JOIN})

DEALER_STORE_ACTIONS = frozenset(
    {Action.VIEW_DOCUMENTS, Action.CREATE_DOCUMENT, Action.UPDATE_NOTES, Action.CHAT_JOIN, Action.CHAT_SEND}
)

DEALER_WORKER_ACTIONS = frozenset(
    {Action.VIEW_DOCUMENTS, Action.TRANSITION, Action.UPDATE_NOTES, Action.CHAT_JOIN, Action.CHAT_SEND}
)

_S = ActivationStatus

ALLOWED_TRANSITIONS: dict[ActivationStatus, frozenset[ActivationStatus]] = {
    _S.WAITING: frozenset(
        {_S.IN_PROGRESS, _S.ACTIVATED, _S.NEEDS_SUPPLEMENT, _S.CANCELLED, _S.DISCARDED, _S.OTHER_COMPLETED}
    ),
    _S.IN_PROGRESS: frozenset(
        {_S.IN_PROGRESS, _S.ACTIVATED, _S.NEEDS_SUPPLEMENT, _S.CANCELLED, _S.DISCARDED, _S.OTHER_COMPLETED}
    ),
    _S.NEEDS_SUPPLEMENT: frozenset(
        {_S.IN_PROGRESS, _S.ACTIVATED, _S.NEEDS_SUPPLEMENT, _S.CANCELLED, _S.DISCARDED, _S.OTHER_COMPLETED}
    ),
    _S.OTHER_COMPLETED: frozenset({_S.IN_PROGRESS, _S.NEEDS_SUPPLEMENT, _S.CANCELLED, _S.OTHER_COMPLETED}),
    _S.ACTIVATED: frozenset({_S.ACTIVATED, _S.CANCELLED}),
    _S.CANCELLED: frozenset({_S.CANCELLED}),
    _S.DISCARDED: frozenset({_S.DISCARDED}),
}

TRANSITION_TARGETS = frozenset(ActivationStatus) - {ActivationStatus.WAITING}


def is_allowed(principal: Principal, action: Action) -> bool:
    match principal:
        case SalesManagerPrincipal():
            return action in READ_ONLY_ACTIONS
        case AdminPrincipal():
            return True
        case WorkerPrincipal(role=WorkerRole.DEALER_STORE):
            return action in DEALER_STORE_ACTIONS
        case WorkerPrincipal(role=WorkerRole.DEALER_WORKER):
            return action in DEALER_WORKER_ACTIONS
    return False


def authorize(principal: Principal, action: Action) -> None:
    if not is_allowed(principal, action):
        raise Forbidden()


def check_transition(principal: Principal, current: ActivationStatus, target: ActivationStatus) -> None:
    """Role check first (``Forbidden``), then state check (``Conflict``)."""
    authorize(principal, Action.TRANSITION)
    if target not in TRANSITION_TARGETS:
        raise Conflict(f'{target.value} is not a transition target')
    if isinstance(principal, AdminPrincipal):
        # administrators may correct terminal states
        return
    if target not in ALLOWED_TRANSITIONS[current]:
        raise Conflict(f'Cannot move a {current.value} document to {target.value}')


@dataclass(frozen=True)
class DocumentScope:
    """Visibility filter for list and lookup queries.

    A document is visible when the scope is unrestricted or when any of the
    populated criteria matches it.
    """

    unrestricted: bool = False
    contact_codes: frozenset[str] = frozenset()
    store_name: str | None = None
    submitted_by: tuple[str, int] | None = None


def document_scope(
    principal: Principal,
    *,
    owned_codes: set[str] | frozenset[str] = frozenset(),
    dealer_codes: set[str] | frozenset[str] = frozenset(),
) -> DocumentScope:
    match principal:
        case AdminPrincipal():
            return DocumentScope(unrestricted=True)
        case SalesManagerPrincipal():
            return DocumentScope(contact_codes=frozenset(owned_codes))
        case WorkerPrincipal(role=WorkerRole.DEALER_WORKER, dealer_scope=None):
            return DocumentScope(unrestricted=True)
        case WorkerPrincipal(role=WorkerRole.DEALER_WORKER):
            return DocumentScope(contact_codes=frozenset(dealer_codes), store_name=principal.dealer_scope)
        case WorkerPrincipal(role=WorkerRole.DEALER_STORE):
            return DocumentScope(
                contact_codes=frozenset(dealer_codes) if principal.dealer_scope else frozenset(),
                store_name=principal.dealer_scope,
                submitted_by=(principal.kind.value, principal.id),
            )
    return DocumentScope()


def scope_allows(scope: DocumentScope, document: Document) -> bool:
    if scope.unrestricted:
        return True
    if document.contact_code and document.contact_code in scope.contact_codes:
        return True
    if scope.store_name and document.store_name == scope.store_name:
        return True
    if scope.submitted_by and (document.submitted_by_kind, document.submitted_by_id) == scope.submitted_by:
        return True
    return False
