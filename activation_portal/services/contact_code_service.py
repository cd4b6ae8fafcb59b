from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.orm import Session

from activation_portal.errors import Conflict, NotFound, ValidationFailed
from activation_portal.models import ContactCode, SalesManager, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedContactCode:
    code: str
    dealer_name: str
    carrier: str
    owning_manager_id: int | None


def normalize_code(code: str | None) -> str | None:
    if code is None:
        return None
    clean = code.strip()
    return clean or None


def resolve(db: Session, code: str | None) -> ResolvedContactCode | None:
    code = normalize_code(code)
    if not code:
        return None
    row = db.execute(
        select(ContactCode).where(ContactCode.code == code, ContactCode.active.is_(True))
    ).scalar_one_or_none()
    if not row:
        return None
    return ResolvedContactCode(
        code=row.code,
        dealer_name=row.dealer_name,
        carrier=row.carrier,
        owning_manager_id=row.sales_manager_id,
    )


def list_codes_owned_by(db: Session, manager_id: int) -> set[str]:
    # soft-deleted codes stay attributed; old documents still carry them
    rows = db.execute(select(ContactCode.code).where(ContactCode.sales_manager_id == manager_id)).all()
    return {row[0] for row in rows}


def list_codes_for_dealer(db: Session, dealer_name: str) -> set[str]:
    rows = db.execute(select(ContactCode.code).where(ContactCode.dealer_name == dealer_name)).all()
    return {row[0] for row in rows}


def _get_manager(db: Session, manager_id: int) -> SalesManager:
    manager = db.execute(select(SalesManager).where(SalesManager.id == manager_id)).scalar_one_or_none()
    if not manager:
        raise NotFound('Sales manager not found')
    return manager


def get_contact_code(db: Session, contact_code_id: int) -> ContactCode:
    row = db.execute(select(ContactCode).where(ContactCode.id == contact_code_id)).scalar_one_or_none()
    if not row:
        raise NotFound('Contact code not found')
    return row


def create_contact_code(
    db: Session,
    *,
    code: str,
    dealer_name: str,
    carrier: str,
    real_sales_pos: str | None = None,
    sales_manager_id: int | None = None,
) -> ContactCode:
    code = normalize_code(code)
    if not code or not dealer_name.strip() or not carrier.strip():
        raise ValidationFailed('Code, dealer name and carrier are required')

    existing = db.execute(select(ContactCode).where(ContactCode.code == code)).scalar_one_or_none()
    if existing:
        raise Conflict('Contact code already exists')

    manager = _get_manager(db, sales_manager_id) if sales_manager_id else None
    row = ContactCode(
        code=code,
        dealer_name=dealer_name.strip(),
        carrier=carrier.strip(),
        real_sales_pos=real_sales_pos.strip() if real_sales_pos and real_sales_pos.strip() else None,
        sales_manager_id=manager.id if manager else None,
        sales_manager_name=manager.manager_name if manager else None,
        active=True,
    )
    db.add(row)
    db.flush()
    logger.info('contact code %s created for %s', code, row.dealer_name)
    return row


_UNSET = object()


def update_contact_code(
    db: Session,
    *,
    contact_code_id: int,
    dealer_name: str | None = None,
    carrier: str | None = None,
    real_sales_pos: str | None | object = _UNSET,
    sales_manager_id: int | None | object = _UNSET,
    active: bool | None = None,
) -> ContactCode:
    row = get_contact_code(db, contact_code_id)
    if dealer_name is not None:
        if not dealer_name.strip():
            raise ValidationFailed('Dealer name cannot be empty')
        row.dealer_name = dealer_name.strip()
    if carrier is not None:
        if not carrier.strip():
            raise ValidationFailed('Carrier cannot be empty')
        row.carrier = carrier.strip()
    if real_sales_pos is not _UNSET:
        row.real_sales_pos = real_sales_pos.strip() if real_sales_pos and real_sales_pos.strip() else None
    if sales_manager_id is not _UNSET:
        if sales_manager_id is None:
            row.sales_manager_id = None
            row.sales_manager_name = None
        else:
            manager = _get_manager(db, sales_manager_id)
            row.sales_manager_id = manager.id
            row.sales_manager_name = manager.manager_name
    if active is not None:
        row.active = active
    row.updated_at = utcnow()
    db.flush()
    return row


def deactivate_contact_code(db: Session, *, contact_code_id: int) -> ContactCode:
    row = get_contact_code(db, contact_code_id)
    row.active = False
    row.updated_at = utcnow()
    db.flush()
    logger.info('contact code %s deactivated', row.code)
    return row


def list_contact_codes(db: Session, *, active_only: bool = True, carrier: str | None = None) -> list[ContactCode]:
    query = select(ContactCode).order_by(ContactCode.code.asc())
    if active_only:
        query = query.where(ContactCode.active.is_(True))
    if carrier:
        query = query.where(ContactCode.carrier == carrier.strip())
    return db.execute(query).scalars().all()


def search_contact_codes(db: Session, *, prefix: str, limit: int = 20) -> list[ContactCode]:
    prefix = prefix.strip()
    if not prefix:
        return []
    return db.execute(
        select(ContactCode)
        .where(ContactCode.active.is_(True), ContactCode.code.startswith(prefix, autoescape=True))
        .order_by(ContactCode.code.asc())
        .limit(limit)
    ).scalars().all()


def upsert_contact_code(
    db: Session,
    *,
    code: str,
    dealer_name: str,
    carrier: str,
    real_sales_pos: str | None,
    manager_code: str | None,
) -> tuple[ContactCode, bool]:
    """Create or refresh a code from an import row; returns ``(row, created)``."""
    manager_id = None
    if manager_code and manager_code.strip():
        manager_id = db.execute(
            select(SalesManager.id).where(SalesManager.manager_code == manager_code.strip())
        ).scalar_one_or_none()
        if manager_id is None:
            raise NotFound(f'Unknown manager code {manager_code.strip()}')

    clean = normalize_code(code)
    existing = db.execute(select(ContactCode).where(ContactCode.code == clean)).scalar_one_or_none() if clean else None
    if existing is None:
        return (
            create_contact_code(
                db,
                code=code,
                dealer_name=dealer_name,
                carrier=carrier,
                real_sales_pos=real_sales_pos,
                sales_manager_id=manager_id,
            ),
            True,
        )
    row = update_contact_code(
        db,
        contact_code_id=existing.id,
        dealer_name=dealer_name,
        carrier=carrier,
        real_sales_pos=real_sales_pos,
        sales_manager_id=manager_id,
        active=True,
    )
    return row, False


def serialize_contact_code(row: ContactCode) -> dict:
    return {
        'id': row.id,
        'code': row.code,
        'dealer_name': row.dealer_name,
        'carrier': row.carrier,
        'real_sales_pos': row.real_sales_pos,
        'sales_manager_id': row.sales_manager_id,
        'sales_manager_name': row.sales_manager_name,
        'active': row.active,
    }
