from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from activation_portal.auth import Principal
from activation_portal.db import get_db
from activation_portal.dependencies import get_client_ip, get_current_principal, require_action
from activation_portal.models import PrincipalKind
from activation_portal.schemas import (
    AccountActiveRequest,
    AdditionalServiceCreate,
    AdminCreate,
    ContactCodeCreate,
    ContactCodeUpdate,
    DeductionRequest,
    PasswordResetRequest,
    PriceRequest,
    SalesManagerCreate,
    SalesTeamCreate,
    ServicePlanCreate,
    ServicePlanUpdate,
    WorkerUserCreate,
)
from activation_portal.services import contact_code_service, identity_service, pricing_service
from activation_portal.services.audit_service import log_audit
from activation_portal.services.authorization_service import Action

router = APIRouter(prefix='/api', tags=['admin'])

manage_accounts = require_action(Action.MANAGE_ACCOUNTS)
manage_contact_codes = require_action(Action.MANAGE_CONTACT_CODES)
manage_prices = require_action(Action.MANAGE_PRICES)


@router.get('/admin/accounts')
def list_accounts(_: Principal = Depends(manage_accounts), db: Session = Depends(get_db)):
    return identity_service.list_principals(db)


def _account_created(db: Session, request: Request, principal: Principal, kind: PrincipalKind, account) -> dict:
    log_audit(
        db,
        actor=principal,
        action='ACCOUNT_CREATED',
        ip=get_client_ip(request),
        metadata={'principal_kind': kind.value, 'principal_id': account.id, 'username': account.username},
    )
    db.commit()
    return {'id': account.id, 'username': account.username, 'principal_kind': kind.value}


@router.post('/admin/accounts/admins', status_code=201)
def create_admin_account(
    body: AdminCreate,
    request: Request,
    principal: Principal = Depends(manage_accounts),
    db: Session = Depends(get_db),
):
    admin = identity_service.create_admin(
        db, username=body.username, password=body.password, display_name=body.display_name
    )
    return _account_created(db, request, principal, PrincipalKind.ADMIN, admin)


@router.post('/admin/accounts/sales-managers', status_code=201)
def create_sales_manager_account(
    body: SalesManagerCreate,
    request: Request,
    principal: Principal = Depends(manage_accounts),
    db: Session = Depends(get_db),
):
    manager = identity_service.create_sales_manager(db, **body.model_dump())
    return _account_created(db, request, principal, PrincipalKind.SALES_MANAGER, manager)


@router.post('/admin/accounts/workers', status_code=201)
def create_worker_account(
    body: WorkerUserCreate,
    request: Request,
    principal: Principal = Depends(manage_accounts),
    db: Session = Depends(get_db),
):
    user = identity_service.create_worker_user(db, **body.model_dump())
    return _account_created(db, request, principal, PrincipalKind.WORKER, user)


@router.put('/admin/accounts/{principal_id}/active')
def set_account_active(
    principal_id: int,
    body: AccountActiveRequest,
    request: Request,
    principal: Principal = Depends(manage_accounts),
    db: Session = Depends(get_db),
):
    identity_service.set_active(db, kind=body.principal_kind, principal_id=principal_id, active=body.active)
    log_audit(
        db,
        actor=principal,
        action='ACCOUNT_ACTIVATED' if body.active else 'ACCOUNT_DEACTIVATED',
        ip=get_client_ip(request),
        metadata={'principal_kind': body.principal_kind.value, 'principal_id': principal_id},
    )
    db.commit()
    return {'ok': True}


@router.put('/admin/accounts/{principal_id}/password')
def reset_account_password(
    principal_id: int,
    body: PasswordResetRequest,
    request: Request,
    principal: Principal = Depends(manage_accounts),
    db: Session = Depends(get_db),
):
    identity_service.reset_password(
        db, kind=body.principal_kind, principal_id=principal_id, new_password=body.new_password
    )
    log_audit(
        db,
        actor=principal,
        action='ACCOUNT_PASSWORD_RESET',
        ip=get_client_ip(request),
        metadata={'principal_kind': body.principal_kind.value, 'principal_id': principal_id},
    )
    db.commit()
    return {'ok': True}


@router.get('/admin/sales-teams')
def list_sales_teams(_: Principal = Depends(manage_accounts), db: Session = Depends(get_db)):
    return [
        {'id': team.id, 'team_name': team.team_name, 'team_code': team.team_code, 'active': team.active}
        for team in identity_service.list_sales_teams(db)
    ]


@router.post('/admin/sales-teams', status_code=201)
def create_sales_team(
    body: SalesTeamCreate,
    _: Principal = Depends(manage_accounts),
    db: Session = Depends(get_db),
):
    team = identity_service.create_sales_team(db, team_name=body.team_name, team_code=body.team_code)
    db.commit()
    return {'id': team.id, 'team_name': team.team_name, 'team_code': team.team_code, 'active': team.active}


@router.get('/contact-codes')
def list_contact_codes(
    active_only: bool = True,
    carrier: str | None = None,
    _: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    rows = contact_code_service.list_contact_codes(db, active_only=active_only, carrier=carrier)
    return [contact_code_service.serialize_contact_code(row) for row in rows]


@router.get('/contact-codes/search')
def search_contact_codes(
    q: str = '',
    limit: int = Query(default=20, ge=1, le=100),
    _: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    rows = contact_code_service.search_contact_codes(db, prefix=q, limit=limit)
    return [contact_code_service.serialize_contact_code(row) for row in rows]


@router.get('/contact-codes/resolve/{code}')
def resolve_contact_code(
    code: str,
    _: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    resolved = contact_code_service.resolve(db, code)
    if resolved is None:
        return {'found': False}
    return {
        'found': True,
        'code': resolved.code,
        'dealer_name': resolved.dealer_name,
        'carrier': resolved.carrier,
    }


@router.post('/contact-codes', status_code=201)
def create_contact_code(
    body: ContactCodeCreate,
    request: Request,
    principal: Principal = Depends(manage_contact_codes),
    db: Session = Depends(get_db),
):
    row = contact_code_service.create_contact_code(db, **body.model_dump())
    log_audit(
        db,
        actor=principal,
        action='CONTACT_CODE_CREATED',
        ip=get_client_ip(request),
        metadata={'code': row.code, 'dealer_name': row.dealer_name},
    )
    db.commit()
    return contact_code_service.serialize_contact_code(row)


@router.put('/contact-codes/{contact_code_id}')
def update_contact_code(
    contact_code_id: int,
    body: ContactCodeUpdate,
    request: Request,
    principal: Principal = Depends(manage_contact_codes),
    db: Session = Depends(get_db),
):
    # only fields present in the body are touched; an explicit null clears the manager
    changes = body.model_dump(include=body.model_fields_set)
    row = contact_code_service.update_contact_code(db, contact_code_id=contact_code_id, **changes)
    log_audit(
        db,
        actor=principal,
        action='CONTACT_CODE_UPDATED',
        ip=get_client_ip(request),
        metadata={'code': row.code, 'fields': sorted(changes)},
    )
    db.commit()
    return contact_code_service.serialize_contact_code(row)


@router.delete('/contact-codes/{contact_code_id}')
def delete_contact_code(
    contact_code_id: int,
    request: Request,
    principal: Principal = Depends(manage_contact_codes),
    db: Session = Depends(get_db),
):
    row = contact_code_service.deactivate_contact_code(db, contact_code_id=contact_code_id)
    log_audit(
        db,
        actor=principal,
        action='CONTACT_CODE_DEACTIVATED',
        ip=get_client_ip(request),
        metadata={'code': row.code},
    )
    db.commit()
    return contact_code_service.serialize_contact_code(row)


@router.get('/service-plans')
def list_service_plans(
    carrier: str | None = None,
    active_only: bool = True,
    _: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    plans = pricing_service.list_service_plans(db, carrier=carrier, active_only=active_only)
    return [pricing_service.serialize_service_plan(plan) for plan in plans]


@router.post('/service-plans', status_code=201)
def create_service_plan(
    body: ServicePlanCreate,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    plan = pricing_service.create_service_plan(db, principal, **body.model_dump())
    db.commit()
    return pricing_service.serialize_service_plan(plan)


@router.put('/service-plans/{service_plan_id}')
def update_service_plan(
    service_plan_id: int,
    body: ServicePlanUpdate,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    plan = pricing_service.update_service_plan(db, principal, service_plan_id=service_plan_id, **body.model_dump())
    db.commit()
    return pricing_service.serialize_service_plan(plan)


@router.delete('/service-plans/{service_plan_id}')
def delete_service_plan(
    service_plan_id: int,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    plan = pricing_service.deactivate_service_plan(db, principal, service_plan_id=service_plan_id)
    db.commit()
    return pricing_service.serialize_service_plan(plan)


@router.get('/additional-services')
def list_additional_services(
    carrier: str | None = None,
    _: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    services = pricing_service.list_additional_services(db, carrier=carrier)
    return [pricing_service.serialize_additional_service(service) for service in services]


@router.post('/additional-services', status_code=201)
def create_additional_service(
    body: AdditionalServiceCreate,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    service = pricing_service.create_additional_service(db, principal, **body.model_dump())
    db.commit()
    return pricing_service.serialize_additional_service(service)


@router.delete('/additional-services/{service_id}')
def delete_additional_service(
    service_id: int,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    service = pricing_service.deactivate_additional_service(db, principal, service_id=service_id)
    db.commit()
    return pricing_service.serialize_additional_service(service)


@router.get('/settlement-unit-prices')
def list_settlement_prices(_: Principal = Depends(manage_prices), db: Session = Depends(get_db)):
    return [pricing_service.serialize_price(price, plan) for price, plan in pricing_service.list_active_prices(db)]


@router.get('/settlement-unit-prices/{service_plan_id}/history')
def settlement_price_history(
    service_plan_id: int,
    _: Principal = Depends(manage_prices),
    db: Session = Depends(get_db),
):
    return [pricing_service.serialize_price(price) for price in pricing_service.price_history(db, service_plan_id)]


@router.post('/settlement-unit-prices', status_code=201)
def set_settlement_price(
    body: PriceRequest,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    price = pricing_service.set_price(db, principal, **body.model_dump())
    log_audit(
        db,
        actor=principal,
        action='SETTLEMENT_PRICE_SET',
        ip=get_client_ip(request),
        metadata={
            'service_plan_id': price.service_plan_id,
            'new_customer_price': str(price.new_customer_price),
            'port_in_price': str(price.port_in_price),
        },
    )
    db.commit()
    return pricing_service.serialize_price(price)


@router.delete('/settlement-unit-prices/{service_plan_id}')
def retire_settlement_price(
    service_plan_id: int,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    price = pricing_service.retire_price(db, principal, service_plan_id=service_plan_id)
    log_audit(
        db,
        actor=principal,
        action='SETTLEMENT_PRICE_RETIRED',
        ip=get_client_ip(request),
        metadata={'service_plan_id': service_plan_id, 'price_id': price.id},
    )
    db.commit()
    return pricing_service.serialize_price(price)


@router.get('/additional-service-deductions')
def list_deductions(_: Principal = Depends(manage_prices), db: Session = Depends(get_db)):
    return [
        pricing_service.serialize_deduction(deduction, service)
        for deduction, service in pricing_service.list_deductions(db)
    ]


@router.put('/additional-service-deductions/{additional_service_id}')
def set_deduction(
    additional_service_id: int,
    body: DeductionRequest,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    deduction = pricing_service.set_deduction(
        db, principal, additional_service_id=additional_service_id, deduction_amount=body.deduction_amount
    )
    log_audit(
        db,
        actor=principal,
        action='SETTLEMENT_DEDUCTION_SET',
        ip=get_client_ip(request),
        metadata={'additional_service_id': additional_service_id, 'deduction_amount': str(deduction.deduction_amount)},
    )
    db.commit()
    return pricing_service.serialize_deduction(deduction)


@router.delete('/additional-service-deductions/{additional_service_id}')
def remove_deduction(
    additional_service_id: int,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    deduction = pricing_service.remove_deduction(db, principal, additional_service_id=additional_service_id)
    log_audit(
        db,
        actor=principal,
        action='SETTLEMENT_DEDUCTION_REMOVED',
        ip=get_client_ip(request),
        metadata={'additional_service_id': additional_service_id},
    )
    db.commit()
    return pricing_service.serialize_deduction(deduction)
