from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from activation_portal.auth import Principal
from activation_portal.errors import NotFound, ValidationFailed
from activation_portal.models import (
    AdditionalService,
    AdditionalServiceDeduction,
    CustomerType,
    ServicePlan,
    SettlementUnitPrice,
    utcnow,
)
from activation_portal.services.authorization_service import Action, authorize

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _money(value: Decimal | int | str, label: str) -> Decimal:
    try:
        amount = Decimal(str(value))
    except ArithmeticError as exc:
        raise ValidationFailed(f'{label} is not a number') from exc
    if not amount.is_finite():
        raise ValidationFailed(f'{label} is not a number')
    if amount < 0:
        raise ValidationFailed(f'{label} cannot be negative')
    return amount.quantize(Decimal('0.01'))


def get_service_plan(db: Session, service_plan_id: int, *, active_only: bool = False) -> ServicePlan:
    query = select(ServicePlan).where(ServicePlan.id == service_plan_id)
    if active_only:
        query = query.where(ServicePlan.active.is_(True))
    plan = db.execute(query).scalar_one_or_none()
    if not plan:
        raise NotFound('Service plan not found')
    return plan


def get_active_price(db: Session, service_plan_id: int) -> SettlementUnitPrice | None:
    return db.execute(
        select(SettlementUnitPrice).where(
            SettlementUnitPrice.service_plan_id == service_plan_id,
            SettlementUnitPrice.active.is_(True),
        )
    ).scalar_one_or_none()


def compute_settlement_amount(
    db: Session,
    service_plan_id: int | None,
    customer_type: CustomerType,
    activation_timestamp: datetime | None = None,
    additional_service_ids: Sequence[int] = (),
) -> Decimal | None:
    """Settlement for an activation, or ``None`` when the plan is unpriced.

    The currently active price row is used regardless of
    ``activation_timestamp``: a new price only applies to activations made
    after it was set, and already-settled documents keep their amount.
    Active deductions for the chosen additional services are subtracted and
    the result never drops below zero.
    """
    if service_plan_id is None:
        return None
    price = get_active_price(db, service_plan_id)
    if price is None:
        return None
    if customer_type == CustomerType.PORT_IN:
        base = price.port_in_price
    else:
        base = price.new_customer_price
    return max(base - total_deduction(db, additional_service_ids), Decimal('0'))


def set_price(
    db: Session,
    principal: Principal,
    *,
    service_plan_id: int,
    new_customer_price: Decimal | int | str,
    port_in_price: Decimal | int | str,
    memo: str | None = None,
) -> SettlementUnitPrice:
    authorize(principal, Action.MANAGE_PRICES)
    plan = get_service_plan(db, service_plan_id)
    new_amount = _money(new_customer_price, 'New customer price')
    port_in_amount = _money(port_in_price, 'Port-in price')

    now = _now()
    current = get_active_price(db, plan.id)
    if current is not None:
        current.active = False
        current.effective_until = now
        # the partial unique index needs the old row inactive before the insert
        db.flush()

    price = SettlementUnitPrice(
        service_plan_id=plan.id,
        new_customer_price=new_amount,
        port_in_price=port_in_amount,
        effective_from=now,
        effective_until=None,
        memo=memo.strip() if memo and memo.strip() else None,
        active=True,
        created_by_id=principal.id,
    )
    db.add(price)
    db.flush()
    logger.info(
        'settlement price for plan %s set to new=%s port_in=%s (previous row %s)',
        plan.id,
        new_amount,
        port_in_amount,
        current.id if current else None,
    )
    return price


def retire_price(db: Session, principal: Principal, *, service_plan_id: int) -> SettlementUnitPrice:
    authorize(principal, Action.MANAGE_PRICES)
    current = get_active_price(db, service_plan_id)
    if current is None:
        raise NotFound('No active settlement price for this plan')
    current.active = False
    current.effective_until = _now()
    db.flush()
    return current


def list_active_prices(db: Session) -> list[tuple[SettlementUnitPrice, ServicePlan]]:
    return db.execute(
        select(SettlementUnitPrice, ServicePlan)
        .join(ServicePlan, ServicePlan.id == SettlementUnitPrice.service_plan_id)
        .where(SettlementUnitPrice.active.is_(True))
        .order_by(ServicePlan.carrier.asc(), ServicePlan.plan_name.asc())
    ).all()


def price_history(db: Session, service_plan_id: int) -> list[SettlementUnitPrice]:
    get_service_plan(db, service_plan_id)
    return db.execute(
        select(SettlementUnitPrice)
        .where(SettlementUnitPrice.service_plan_id == service_plan_id)
        .order_by(SettlementUnitPrice.effective_from.asc(), SettlementUnitPrice.id.asc())
    ).scalars().all()


def serialize_price(price: SettlementUnitPrice, plan: ServicePlan | None = None) -> dict:
    row = {
        'id': price.id,
        'service_plan_id': price.service_plan_id,
        'new_customer_price': price.new_customer_price,
        'port_in_price': price.port_in_price,
        'effective_from': price.effective_from,
        'effective_until': price.effective_until,
        'memo': price.memo,
        'active': price.active,
        'created_by_id': price.created_by_id,
    }
    if plan is not None:
        row['plan_name'] = plan.plan_name
        row['carrier'] = plan.carrier
    return row


def create_service_plan(
    db: Session,
    principal: Principal,
    *,
    carrier: str,
    plan_name: str,
    plan_type: str,
    monthly_fee: Decimal | int | str,
    data_allowance: str | None = None,
) -> ServicePlan:
    authorize(principal, Action.MANAGE_CATALOG)
    if not carrier.strip() or not plan_name.strip() or not plan_type.strip():
        raise ValidationFailed('Carrier, plan name and plan type are required')
    plan = ServicePlan(
        carrier=carrier.strip(),
        plan_name=plan_name.strip(),
        plan_type=plan_type.strip(),
        data_allowance=data_allowance.strip() if data_allowance and data_allowance.strip() else None,
        monthly_fee=_money(monthly_fee, 'Monthly fee'),
        active=True,
    )
    db.add(plan)
    db.flush()
    return plan


def update_service_plan(
    db: Session,
    principal: Principal,
    *,
    service_plan_id: int,
    plan_name: str | None = None,
    plan_type: str | None = None,
    monthly_fee: Decimal | int | str | None = None,
    data_allowance: str | None = None,
    active: bool | None = None,
) -> ServicePlan:
    authorize(principal, Action.MANAGE_CATALOG)
    plan = get_service_plan(db, service_plan_id)
    if plan_name is not None:
        if not plan_name.strip():
            raise ValidationFailed('Plan name cannot be empty')
        plan.plan_name = plan_name.strip()
    if plan_type is not None:
        if not plan_type.strip():
            raise ValidationFailed('Plan type cannot be empty')
        plan.plan_type = plan_type.strip()
    if monthly_fee is not None:
        plan.monthly_fee = _money(monthly_fee, 'Monthly fee')
    if data_allowance is not None:
        plan.data_allowance = data_allowance.strip() or None
    if active is not None:
        plan.active = active
    plan.updated_at = utcnow()
    db.flush()
    return plan


def deactivate_service_plan(db: Session, principal: Principal, *, service_plan_id: int) -> ServicePlan:
    authorize(principal, Action.MANAGE_CATALOG)
    plan = get_service_plan(db, service_plan_id)
    plan.active = False
    plan.updated_at = utcnow()
    db.flush()
    logger.info('service plan %s deactivated', plan.id)
    return plan


def list_service_plans(db: Session, *, carrier: str | None = None, active_only: bool = True) -> list[ServicePlan]:
    query = select(ServicePlan).order_by(ServicePlan.carrier.asc(), ServicePlan.plan_name.asc())
    if active_only:
        query = query.where(ServicePlan.active.is_(True))
    if carrier and carrier.strip():
        query = query.where(ServicePlan.carrier == carrier.strip())
    return db.execute(query).scalars().all()


def serialize_service_plan(plan: ServicePlan) -> dict:
    return {
        'id': plan.id,
        'carrier': plan.carrier,
        'plan_name': plan.plan_name,
        'plan_type': plan.plan_type,
        'data_allowance': plan.data_allowance,
        'monthly_fee': plan.monthly_fee,
        'active': plan.active,
    }


def create_additional_service(
    db: Session,
    principal: Principal,
    *,
    carrier: str,
    service_name: str,
    service_type: str,
    monthly_fee: Decimal | int | str,
) -> AdditionalService:
    authorize(principal, Action.MANAGE_CATALOG)
    if not carrier.strip() or not service_name.strip() or not service_type.strip():
        raise ValidationFailed('Carrier, service name and service type are required')
    service = AdditionalService(
        carrier=carrier.strip(),
        service_name=service_name.strip(),
        service_type=service_type.strip(),
        monthly_fee=_money(monthly_fee, 'Monthly fee'),
        active=True,
    )
    db.add(service)
    db.flush()
    return service


def deactivate_additional_service(db: Session, principal: Principal, *, service_id: int) -> AdditionalService:
    authorize(principal, Action.MANAGE_CATALOG)
    service = get_additional_service(db, service_id)
    service.active = False
    db.flush()
    return service


def list_additional_services(db: Session, *, carrier: str | None = None) -> list[AdditionalService]:
    query = (
        select(AdditionalService)
        .where(AdditionalService.active.is_(True))
        .order_by(AdditionalService.carrier.asc(), AdditionalService.service_name.asc())
    )
    if carrier and carrier.strip():
        query = query.where(AdditionalService.carrier == carrier.strip())
    return db.execute(query).scalars().all()


def serialize_additional_service(service: AdditionalService) -> dict:
    return {
        'id': service.id,
        'carrier': service.carrier,
        'service_name': service.service_name,
        'service_type': service.service_type,
        'monthly_fee': service.monthly_fee,
        'active': service.active,
    }


def validate_additional_service_ids(db: Session, service_ids: list[int]) -> list[int]:
    unique_ids = list(dict.fromkeys(service_ids))
    if not unique_ids:
        return []
    found = set(
        db.execute(select(AdditionalService.id).where(AdditionalService.id.in_(unique_ids))).scalars().all()
    )
    missing = [service_id for service_id in unique_ids if service_id not in found]
    if missing:
        raise NotFound(f'Additional services not found: {missing}')
    return unique_ids


def monthly_fee_total(db: Session, service_plan_id: int | None, additional_service_ids: list[int]) -> Decimal | None:
    if service_plan_id is None:
        return None
    plan = get_service_plan(db, service_plan_id)
    total = plan.monthly_fee
    if additional_service_ids:
        fees = db.execute(
            select(AdditionalService.monthly_fee).where(AdditionalService.id.in_(additional_service_ids))
        ).scalars().all()
        total += sum(fees, Decimal('0'))
    return total


def get_additional_service(db: Session, service_id: int) -> AdditionalService:
    service = db.execute(select(AdditionalService).where(AdditionalService.id == service_id)).scalar_one_or_none()
    if not service:
        raise NotFound('Additional service not found')
    return service


def _deduction_for(db: Session, service_id: int) -> AdditionalServiceDeduction | None:
    return db.execute(
        select(AdditionalServiceDeduction).where(AdditionalServiceDeduction.additional_service_id == service_id)
    ).scalar_one_or_none()


def set_deduction(
    db: Session,
    principal: Principal,
    *,
    additional_service_id: int,
    deduction_amount: Decimal | int | str,
) -> AdditionalServiceDeduction:
    """Create or replace the deduction for one additional service."""
    authorize(principal, Action.MANAGE_PRICES)
    service = get_additional_service(db, additional_service_id)
    amount = _money(deduction_amount, 'Deduction amount')

    deduction = _deduction_for(db, service.id)
    if deduction is None:
        deduction = AdditionalServiceDeduction(
            additional_service_id=service.id,
            deduction_amount=amount,
            active=True,
            created_by_id=principal.id,
        )
        db.add(deduction)
    else:
        deduction.deduction_amount = amount
        deduction.active = True
        deduction.updated_by_id = principal.id
        deduction.updated_at = utcnow()
    db.flush()
    logger.info('deduction for additional service %s set to %s', service.id, amount)
    return deduction


def remove_deduction(db: Session, principal: Principal, *, additional_service_id: int) -> AdditionalServiceDeduction:
    authorize(principal, Action.MANAGE_PRICES)
    deduction = _deduction_for(db, additional_service_id)
    if deduction is None or not deduction.active:
        raise NotFound('No active deduction for this additional service')
    deduction.active = False
    deduction.updated_by_id = principal.id
    deduction.updated_at = utcnow()
    db.flush()
    return deduction


def list_deductions(db: Session) -> list[tuple[AdditionalServiceDeduction, AdditionalService]]:
    return db.execute(
        select(AdditionalServiceDeduction, AdditionalService)
        .join(AdditionalService, AdditionalService.id == AdditionalServiceDeduction.additional_service_id)
        .where(AdditionalServiceDeduction.active.is_(True))
        .order_by(AdditionalService.carrier.asc(), AdditionalService.service_name.asc())
    ).all()


def total_deduction(db: Session, additional_service_ids: Sequence[int]) -> Decimal:
    if not additional_service_ids:
        return Decimal('0')
    amounts = dict(
        db.execute(
            select(AdditionalServiceDeduction.additional_service_id, AdditionalServiceDeduction.deduction_amount).where(
                AdditionalServiceDeduction.additional_service_id.in_(list(additional_service_ids)),
                AdditionalServiceDeduction.active.is_(True),
            )
        ).all()
    )
    return sum((amounts.get(service_id, Decimal('0')) for service_id in additional_service_ids), Decimal('0'))


def serialize_deduction(deduction: AdditionalServiceDeduction, service: AdditionalService | None = None) -> dict:
    row = {
        'id': deduction.id,
        'additional_service_id': deduction.additional_service_id,
        'deduction_amount': deduction.deduction_amount,
        'active': deduction.active,
        'updated_at': deduction.updated_at,
    }
    if service is not None:
        row['service_name'] = service.service_name
        row['carrier'] = service.carrier
    return row
