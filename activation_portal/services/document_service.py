from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from decimal import Decimal

from sqlalchemy import ColumnElement, and_, delete, false, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from activation_portal.auth import Principal, SalesManagerPrincipal, WorkerPrincipal
from activation_portal.config import CarrierFieldRules, settings
from activation_portal.errors import Conflict, Forbidden, NotFound, ValidationFailed
from activation_portal.models import (
    ActivationStatus,
    BundleMode,
    ChatMessage,
    ChatRoom,
    CustomerType,
    Document,
    DocumentSequence,
    IntakeStatus,
    RegistrationFeeMode,
    SimFeeMode,
    WorkerRole,
)
from activation_portal.services import contact_code_service, pricing_service
from activation_portal.services.authorization_service import (
    Action,
    DocumentScope,
    authorize,
    check_transition,
    document_scope,
    scope_allows,
)

logger = logging.getLogger(__name__)

WORK_REQUESTED = 'WORK_REQUESTED'


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


@dataclass
class DocumentIntake:
    customer_name: str
    customer_phone: str
    customer_type: CustomerType
    carrier: str
    customer_email: str | None = None
    contact_code: str | None = None
    store_name: str | None = None
    desired_number: str | None = None
    previous_carrier: str | None = None
    bundle_number: str | None = None
    bundle_carrier: str | None = None
    notes: str | None = None
    file_path: str | None = None
    file_name: str | None = None
    file_size: int | None = None


@dataclass
class TransitionPayload:
    subscription_number: str | None = None
    device_model: str | None = None
    sim_number: str | None = None
    service_plan_id: int | None = None
    additional_service_ids: list[int] = field(default_factory=list)
    registration_fee_mode: RegistrationFeeMode = RegistrationFeeMode.UNSET
    sim_fee_mode: SimFeeMode = SimFeeMode.UNSET
    bundle_mode: BundleMode = BundleMode.UNSET
    total_monthly_fee: Decimal | None = None
    dealer_notes: str | None = None
    supplement_notes: str | None = None
    discard_reason: str | None = None
    expected_version: int | None = None


@dataclass
class DocumentFilters:
    status: IntakeStatus | None = None
    activation_status: str | None = None
    search: str | None = None
    contact_code: str | None = None
    carrier: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    mine: bool = False
    limit: int = 200
    offset: int = 0


def next_document_number(db: Session, now: datetime | None = None) -> str:
    """Allocate ``<date>-<NNNN>``; the counter restarts every UTC day."""
    now = now or _now()
    day = now.astimezone(timezone.utc).date()
    bump = (
        update(DocumentSequence)
        .where(DocumentSequence.day == day)
        .values(last_number=DocumentSequence.last_number + 1)
    )
    if not db.execute(bump).rowcount:
        try:
            with db.begin_nested():
                db.add(DocumentSequence(day=day, last_number=1))
            return _format_number(day, 1)
        except IntegrityError:
            # another intake created the day's row between our update and insert
            if not db.execute(bump).rowcount:
                raise
    number = db.execute(select(DocumentSequence.last_number).where(DocumentSequence.day == day)).scalar_one()
    return _format_number(day, number)


def _format_number(day: date, number: int) -> str:
    return f'{day.strftime(settings.document_number_date_format)}-{number:04d}'


def _validate_intake(data: DocumentIntake, rules: CarrierFieldRules) -> None:
    if not _clean(data.customer_name):
        raise ValidationFailed('Customer name is required')
    if not _clean(data.customer_phone):
        raise ValidationFailed('Customer phone is required')
    if not _clean(data.carrier):
        raise ValidationFailed('Carrier is required')

    if data.customer_type == CustomerType.PORT_IN:
        if not _clean(data.previous_carrier):
            raise ValidationFailed('Previous carrier is required for port-in customers')
        if _clean(data.desired_number):
            raise ValidationFailed('Desired number only applies to new customers')
    elif _clean(data.previous_carrier):
        raise ValidationFailed('Previous carrier only applies to port-in customers')

    values = {
        'customer_phone': data.customer_phone,
        'customer_email': data.customer_email,
        'contact_code': data.contact_code,
        'store_name': data.store_name,
        'previous_carrier': data.previous_carrier,
        'desired_number': data.desired_number,
        'bundle_number': data.bundle_number,
        'bundle_carrier': data.bundle_carrier,
        'attachment': data.file_path,
    }
    missing = sorted(name for name in rules.required_for(data.carrier) if not _clean(values.get(name)))
    if missing:
        raise ValidationFailed(f'Required for {data.carrier.strip()}: {", ".join(missing)}')


def create_document(
    db: Session,
    principal: Principal,
    data: DocumentIntake,
    rules: CarrierFieldRules,
) -> Document:
    authorize(principal, Action.CREATE_DOCUMENT)
    _validate_intake(data, rules)

    contact_code = contact_code_service.normalize_code(data.contact_code)
    store_name = _clean(data.store_name)
    resolved = contact_code_service.resolve(db, contact_code)
    if resolved is not None:
        store_name = resolved.dealer_name
    elif isinstance(principal, WorkerPrincipal) and principal.dealer_scope and not store_name:
        store_name = principal.dealer_scope

    now = _now()
    document = Document(
        document_number=next_document_number(db, now),
        customer_name=data.customer_name.strip(),
        customer_phone=data.customer_phone.strip(),
        customer_email=_clean(data.customer_email),
        customer_type=data.customer_type,
        desired_number=_clean(data.desired_number),
        previous_carrier=_clean(data.previous_carrier),
        contact_code=contact_code,
        store_name=store_name,
        carrier=data.carrier.strip(),
        bundle_number=_clean(data.bundle_number),
        bundle_carrier=_clean(data.bundle_carrier),
        submitted_by_kind=principal.kind.value,
        submitted_by_id=principal.id,
        uploaded_at=now,
        file_path=_clean(data.file_path),
        file_name=_clean(data.file_name),
        file_size=data.file_size,
        notes=_clean(data.notes),
        status=IntakeStatus.RECEIVED,
        activation_status=ActivationStatus.WAITING,
        additional_service_ids=[],
        created_at=now,
        updated_at=now,
    )
    db.add(document)
    db.flush()
    logger.info(
        'document %s received from %s:%s (contact code %s)',
        document.document_number,
        principal.kind.value,
        principal.id,
        contact_code or '-',
    )
    return document


def scope_for(db: Session, principal: Principal) -> DocumentScope:
    owned_codes: set[str] = set()
    dealer_codes: set[str] = set()
    match principal:
        case SalesManagerPrincipal():
            owned_codes = contact_code_service.list_codes_owned_by(db, principal.id)
        case WorkerPrincipal(dealer_scope=str()):
            dealer_codes = contact_code_service.list_codes_for_dealer(db, principal.dealer_scope)
    return document_scope(principal, owned_codes=owned_codes, dealer_codes=dealer_codes)


def _scope_clause(scope: DocumentScope) -> ColumnElement[bool] | None:
    if scope.unrestricted:
        return None
    criteria = []
    if scope.contact_codes:
        criteria.append(Document.contact_code.in_(sorted(scope.contact_codes)))
    if scope.store_name:
        criteria.append(Document.store_name == scope.store_name)
    if scope.submitted_by:
        kind, principal_id = scope.submitted_by
        criteria.append(and_(Document.submitted_by_kind == kind, Document.submitted_by_id == principal_id))
    if not criteria:
        return false()
    return or_(*criteria)


def parse_activation_filter(raw: str | None) -> tuple[set[ActivationStatus], bool]:
    """Split ``waiting,in-progress`` style input; also reports the work-requested view."""
    statuses: set[ActivationStatus] = set()
    work_requested = False
    if not raw:
        return statuses, work_requested
    for token in raw.split(','):
        name = token.strip().upper().replace('-', '_')
        if not name:
            continue
        if name == WORK_REQUESTED:
            work_requested = True
            continue
        try:
            statuses.add(ActivationStatus(name))
        except ValueError as exc:
            raise ValidationFailed(f'Unknown activation status: {token.strip()}') from exc
    return statuses, work_requested


def _work_requested_clause() -> ColumnElement[bool]:
    return and_(
        Document.activation_status == ActivationStatus.IN_PROGRESS,
        Document.assigned_worker_id.is_not(None),
        Document.status != IntakeStatus.NEEDS_SUPPLEMENT,
    )


def list_documents(db: Session, principal: Principal, filters: DocumentFilters | None = None) -> list[Document]:
    authorize(principal, Action.VIEW_DOCUMENTS)
    filters = filters or DocumentFilters()

    query = select(Document)
    scope_clause = _scope_clause(scope_for(db, principal))
    if scope_clause is not None:
        query = query.where(scope_clause)

    if filters.status is not None:
        query = query.where(Document.status == filters.status)

    statuses, work_requested = parse_activation_filter(filters.activation_status)
    status_criteria = []
    if statuses:
        status_criteria.append(Document.activation_status.in_(sorted(statuses, key=lambda s: s.value)))
    if work_requested:
        status_criteria.append(_work_requested_clause())
    if status_criteria:
        query = query.where(or_(*status_criteria))

    search = _clean(filters.search)
    if search:
        pattern = f'%{search}%'
        query = query.where(
            or_(Document.customer_name.ilike(pattern), Document.document_number.ilike(pattern))
        )
    if _clean(filters.contact_code):
        query = query.where(Document.contact_code == filters.contact_code.strip())
    if _clean(filters.carrier):
        query = query.where(Document.carrier == filters.carrier.strip())
    if filters.date_from is not None:
        query = query.where(Document.uploaded_at >= filters.date_from)
    if filters.date_to is not None:
        query = query.where(Document.uploaded_at <= filters.date_to)
    if filters.mine:
        query = query.where(
            Document.activated_by_kind == principal.kind.value,
            Document.activated_by_id == principal.id,
        )

    query = query.order_by(Document.uploaded_at.desc(), Document.id.desc())
    query = query.offset(max(filters.offset, 0)).limit(max(min(filters.limit, 1000), 1))
    return db.execute(query).scalars().all()


def day_bounds(value: date) -> tuple[datetime, datetime]:
    start = datetime.combine(value, time.min, tzinfo=timezone.utc)
    end = datetime.combine(value, time.max, tzinfo=timezone.utc)
    return start, end


def _load(db: Session, document_id: int) -> Document:
    document = db.execute(select(Document).where(Document.id == document_id)).scalar_one_or_none()
    if not document:
        raise NotFound('Document not found')
    return document


def _ensure_visible(db: Session, principal: Principal, document: Document) -> None:
    if not scope_allows(scope_for(db, principal), document):
        raise Forbidden()


def get_document(db: Session, principal: Principal, document_id: int) -> Document:
    authorize(principal, Action.VIEW_DOCUMENTS)
    document = _load(db, document_id)
    _ensure_visible(db, principal, document)
    return document


def check_duplicates(
    db: Session,
    principal: Principal,
    *,
    customer_name: str,
    customer_phone: str,
    store_name: str | None = None,
    contact_code: str | None = None,
) -> list[Document]:
    authorize(principal, Action.VIEW_DOCUMENTS)
    if not _clean(customer_name) or not _clean(customer_phone):
        raise ValidationFailed('Customer name and phone are required')

    query = select(Document).where(
        Document.customer_name == customer_name.strip(),
        Document.customer_phone == customer_phone.strip(),
    )
    scope_clause = _scope_clause(scope_for(db, principal))
    if scope_clause is not None:
        query = query.where(scope_clause)
    if _clean(store_name):
        query = query.where(Document.store_name == store_name.strip())
    if _clean(contact_code):
        query = query.where(Document.contact_code == contact_code.strip())
    return db.execute(query.order_by(Document.uploaded_at.desc())).scalars().all()


def _stamp_actor(document: Document, principal: Principal, now: datetime) -> None:
    document.activated_at = now
    document.activated_by_kind = principal.kind.value
    document.activated_by_id = principal.id
    document.activated_by_name = principal.display_name


def _apply_activation(db: Session, document: Document, principal: Principal, payload: TransitionPayload, now: datetime):
    subscription_number = _clean(payload.subscription_number)
    if not subscription_number:
        raise ValidationFailed('Subscription number is required for activation')
    if payload.service_plan_id is not None:
        pricing_service.get_service_plan(db, payload.service_plan_id)
    additional_ids = pricing_service.validate_additional_service_ids(db, payload.additional_service_ids or [])

    already_settled = (
        document.activation_status == ActivationStatus.ACTIVATED
        and document.settlement_amount is not None
        and document.service_plan_id == payload.service_plan_id
        and sorted(document.additional_service_ids or []) == sorted(additional_ids)
    )

    _stamp_actor(document, principal, now)
    document.subscription_number = subscription_number
    document.device_model = _clean(payload.device_model)
    document.sim_number = _clean(payload.sim_number)
    document.service_plan_id = payload.service_plan_id
    document.additional_service_ids = additional_ids
    # one enum per pair, so selecting a mode replaces any previous one
    document.registration_fee_mode = payload.registration_fee_mode
    document.sim_fee_mode = payload.sim_fee_mode
    document.bundle_mode = payload.bundle_mode
    if payload.total_monthly_fee is not None:
        document.total_monthly_fee = payload.total_monthly_fee
    else:
        document.total_monthly_fee = pricing_service.monthly_fee_total(db, payload.service_plan_id, additional_ids)

    if not already_settled:
        document.settlement_amount = pricing_service.compute_settlement_amount(
            db, payload.service_plan_id, document.customer_type, now, additional_ids
        )


def apply_activation_transition(
    db: Session,
    principal: Principal,
    document_id: int,
    target: ActivationStatus,
    payload: TransitionPayload | None = None,
) -> Document:
    payload = payload or TransitionPayload()
    authorize(principal, Action.TRANSITION)
    document = _load(db, document_id)
    _ensure_visible(db, principal, document)

    if payload.expected_version is not None and payload.expected_version != document.version:
        raise Conflict('Document was changed by someone else; reload and retry')

    current = document.activation_status
    check_transition(principal, current, target)

    if (
        isinstance(principal, WorkerPrincipal)
        and principal.role == WorkerRole.DEALER_WORKER
        and document.assigned_worker_id is not None
        and document.assigned_worker_id != principal.id
    ):
        raise Conflict('Document is assigned to another worker')

    now = _now()
    match target:
        case ActivationStatus.IN_PROGRESS:
            if isinstance(principal, WorkerPrincipal):
                document.assigned_worker_id = principal.id
                document.assigned_at = now
        case ActivationStatus.ACTIVATED:
            _apply_activation(db, document, principal, payload, now)
        case ActivationStatus.OTHER_COMPLETED:
            _stamp_actor(document, principal, now)
        case ActivationStatus.NEEDS_SUPPLEMENT:
            notes = _clean(payload.supplement_notes)
            if not notes:
                raise ValidationFailed('Supplement notes are required')
            document.supplement_notes = notes
            document.supplement_required_by_id = principal.id
            document.supplement_required_at = now
        case ActivationStatus.CANCELLED:
            # fulfilment data stays so activated-then-cancelled remains visible
            document.cancelled_by_kind = principal.kind.value
            document.cancelled_by_id = principal.id
            document.cancelled_at = now
        case ActivationStatus.DISCARDED:
            reason = _clean(payload.discard_reason)
            if not reason:
                raise ValidationFailed('Discard reason is required')
            document.discard_reason = reason
            document.discarded_at = now

    if payload.dealer_notes is not None:
        document.dealer_notes = _clean(payload.dealer_notes)
    document.activation_status = target
    document.updated_at = now
    _flush_versioned(db)
    logger.info(
        'document %s moved %s -> %s by %s:%s',
        document.document_number,
        current.value,
        target.value,
        principal.kind.value,
        principal.id,
    )
    return document


def _flush_versioned(db: Session) -> None:
    try:
        db.flush()
    except StaleDataError as exc:
        raise Conflict('Document was changed by someone else; reload and retry') from exc


def update_intake_status(
    db: Session,
    principal: Principal,
    document_id: int,
    status: IntakeStatus,
    notes: str | None = None,
) -> Document:
    authorize(principal, Action.UPDATE_INTAKE_STATUS)
    document = _load(db, document_id)
    document.status = status
    if notes is not None:
        document.notes = _clean(notes)
    document.updated_at = _now()
    _flush_versioned(db)
    return document


def update_notes(db: Session, principal: Principal, document_id: int, notes: str | None) -> Document:
    authorize(principal, Action.UPDATE_NOTES)
    document = _load(db, document_id)
    _ensure_visible(db, principal, document)
    match principal:
        case WorkerPrincipal(role=WorkerRole.DEALER_WORKER):
            document.dealer_notes = _clean(notes)
        case _:
            document.notes = _clean(notes)
    document.updated_at = _now()
    _flush_versioned(db)
    return document


def override_settlement_amount(
    db: Session,
    principal: Principal,
    document_id: int,
    amount: Decimal | None,
) -> Document:
    authorize(principal, Action.OVERRIDE_SETTLEMENT)
    document = _load(db, document_id)
    if document.activation_status != ActivationStatus.ACTIVATED:
        raise Conflict('Only activated documents carry a settlement amount')
    if amount is not None and amount < 0:
        raise ValidationFailed('Settlement amount cannot be negative')
    previous = document.settlement_amount
    document.settlement_amount = amount
    document.updated_at = _now()
    _flush_versioned(db)
    logger.info(
        'settlement for document %s overridden %s -> %s by admin %s',
        document.document_number,
        previous,
        amount,
        principal.id,
    )
    return document


def delete_document(db: Session, principal: Principal, document_id: int) -> str:
    authorize(principal, Action.DELETE_DOCUMENT)
    document = _load(db, document_id)
    if document.status != IntakeStatus.RECEIVED:
        raise Conflict('Only documents still in RECEIVED can be deleted')
    number = document.document_number
    room_ids = select(ChatRoom.id).where(ChatRoom.document_id == document.id)
    db.execute(delete(ChatMessage).where(ChatMessage.room_id.in_(room_ids)))
    db.execute(delete(ChatRoom).where(ChatRoom.document_id == document.id))
    db.delete(document)
    db.flush()
    logger.info('document %s deleted by admin %s', number, principal.id)
    return number


def serialize_document(document: Document) -> dict:
    attachment = None
    if document.file_path:
        attachment = {'path': document.file_path, 'name': document.file_name, 'size': document.file_size}
    return {
        'id': document.id,
        'document_number': document.document_number,
        'version': document.version,
        'customer_name': document.customer_name,
        'customer_phone': document.customer_phone,
        'customer_email': document.customer_email,
        'customer_type': document.customer_type.value,
        'desired_number': document.desired_number,
        'previous_carrier': document.previous_carrier,
        'contact_code': document.contact_code,
        'store_name': document.store_name,
        'carrier': document.carrier,
        'bundle_number': document.bundle_number,
        'bundle_carrier': document.bundle_carrier,
        'submitted_by_kind': document.submitted_by_kind,
        'submitted_by_id': document.submitted_by_id,
        'uploaded_at': document.uploaded_at,
        'attachment': attachment,
        'notes': document.notes,
        'status': document.status.value,
        'activation_status': document.activation_status.value,
        'assigned_worker_id': document.assigned_worker_id,
        'assigned_at': document.assigned_at,
        'activated_at': document.activated_at,
        'activated_by_id': document.activated_by_id,
        'activated_by_name': document.activated_by_name,
        'device_model': document.device_model,
        'sim_number': document.sim_number,
        'subscription_number': document.subscription_number,
        'service_plan_id': document.service_plan_id,
        'additional_service_ids': list(document.additional_service_ids or []),
        'registration_fee_mode': document.registration_fee_mode.value,
        'registration_fee_prepaid': document.registration_fee_mode == RegistrationFeeMode.PREPAID,
        'registration_fee_postpaid': document.registration_fee_mode == RegistrationFeeMode.POSTPAID,
        'registration_fee_installment': document.registration_fee_mode == RegistrationFeeMode.INSTALLMENT,
        'sim_fee_mode': document.sim_fee_mode.value,
        'sim_fee_prepaid': document.sim_fee_mode == SimFeeMode.PREPAID,
        'sim_fee_postpaid': document.sim_fee_mode == SimFeeMode.POSTPAID,
        'bundle_mode': document.bundle_mode.value,
        'bundle_applied': document.bundle_mode == BundleMode.APPLIED,
        'bundle_not_applied': document.bundle_mode == BundleMode.NOT_APPLIED,
        'total_monthly_fee': document.total_monthly_fee,
        'dealer_notes': document.dealer_notes,
        'cancelled_by_id': document.cancelled_by_id,
        'cancelled_at': document.cancelled_at,
        'discard_reason': document.discard_reason,
        'discarded_at': document.discarded_at,
        'supplement_notes': document.supplement_notes,
        'supplement_required_by_id': document.supplement_required_by_id,
        'supplement_required_at': document.supplement_required_at,
        'settlement_amount': document.settlement_amount,
        'created_at': document.created_at,
        'updated_at': document.updated_at,
    }
