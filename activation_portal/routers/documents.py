from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from activation_portal.auth import Principal
from activation_portal.config import CarrierFieldRules
from activation_portal.db import get_db
from activation_portal.dependencies import get_carrier_rules, get_client_ip, get_current_principal, require_action
from activation_portal.models import IntakeStatus
from activation_portal.schemas import (
    DocumentCreate,
    DuplicateCheckRequest,
    IntakeStatusRequest,
    NotesRequest,
    SettlementOverrideRequest,
    TransitionRequest,
)
from activation_portal.services import document_service
from activation_portal.services.audit_service import log_audit
from activation_portal.services.authorization_service import Action
from activation_portal.services.document_service import DocumentFilters, DocumentIntake, TransitionPayload

router = APIRouter(prefix='/api/documents', tags=['documents'])

# roles without TRANSITION get 403 before any document lookup
transition_guard = require_action(Action.TRANSITION)


@router.post('', status_code=201)
def create_document(
    body: DocumentCreate,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    rules: CarrierFieldRules = Depends(get_carrier_rules),
    db: Session = Depends(get_db),
):
    fields = body.model_dump(exclude={'attachment'})
    if body.attachment is not None:
        fields.update(
            file_path=body.attachment.path,
            file_name=body.attachment.name,
            file_size=body.attachment.size,
        )
    document = document_service.create_document(db, principal, DocumentIntake(**fields), rules)
    log_audit(
        db,
        actor=principal,
        action='DOCUMENT_CREATED',
        document_id=document.id,
        ip=get_client_ip(request),
        metadata={'document_number': document.document_number, 'contact_code': document.contact_code},
    )
    db.commit()
    return document_service.serialize_document(document)


@router.get('')
def list_documents(
    status: IntakeStatus | None = None,
    activation_status: str | None = None,
    search: str | None = None,
    contact_code: str | None = None,
    carrier: str | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    mine: bool = False,
    limit: int = Query(default=200, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    filters = DocumentFilters(
        status=status,
        activation_status=activation_status,
        search=search,
        contact_code=contact_code,
        carrier=carrier,
        date_from=document_service.day_bounds(date_from)[0] if date_from else None,
        date_to=document_service.day_bounds(date_to)[1] if date_to else None,
        mine=mine,
        limit=limit,
        offset=offset,
    )
    documents = document_service.list_documents(db, principal, filters)
    return [document_service.serialize_document(document) for document in documents]


@router.post('/check-duplicate')
def check_duplicate(
    body: DuplicateCheckRequest,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    documents = document_service.check_duplicates(
        db,
        principal,
        customer_name=body.customer_name,
        customer_phone=body.customer_phone,
        store_name=body.store_name,
        contact_code=body.contact_code,
    )
    return {
        'duplicate': bool(documents),
        'documents': [document_service.serialize_document(document) for document in documents],
    }


@router.get('/{document_id}')
def get_document(
    document_id: int,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return document_service.serialize_document(document_service.get_document(db, principal, document_id))


@router.put('/{document_id}/activation-status')
def change_activation_status(
    document_id: int,
    body: TransitionRequest,
    request: Request,
    principal: Principal = Depends(transition_guard),
    db: Session = Depends(get_db),
):
    payload = TransitionPayload(**body.model_dump(exclude={'activation_status'}))
    document = document_service.get_document(db, principal, document_id)
    previous = document.activation_status
    document = document_service.apply_activation_transition(
        db, principal, document_id, body.activation_status, payload
    )
    log_audit(
        db,
        actor=principal,
        action='DOCUMENT_ACTIVATION_STATUS_CHANGED',
        document_id=document.id,
        ip=get_client_ip(request),
        metadata={
            'from': previous.value,
            'to': document.activation_status.value,
            'settlement_amount': str(document.settlement_amount) if document.settlement_amount is not None else None,
        },
    )
    db.commit()
    return document_service.serialize_document(document)


@router.patch('/{document_id}/status')
def change_intake_status(
    document_id: int,
    body: IntakeStatusRequest,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    document = document_service.update_intake_status(db, principal, document_id, body.status, body.notes)
    log_audit(
        db,
        actor=principal,
        action='DOCUMENT_STATUS_CHANGED',
        document_id=document.id,
        ip=get_client_ip(request),
        metadata={'status': document.status.value},
    )
    db.commit()
    return document_service.serialize_document(document)


@router.patch('/{document_id}/notes')
def change_notes(
    document_id: int,
    body: NotesRequest,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    document = document_service.update_notes(db, principal, document_id, body.notes)
    db.commit()
    return document_service.serialize_document(document)


@router.patch('/{document_id}/settlement-amount')
def change_settlement_amount(
    document_id: int,
    body: SettlementOverrideRequest,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    document = document_service.override_settlement_amount(db, principal, document_id, body.settlement_amount)
    log_audit(
        db,
        actor=principal,
        action='DOCUMENT_SETTLEMENT_OVERRIDDEN',
        document_id=document.id,
        ip=get_client_ip(request),
        metadata={'settlement_amount': str(body.settlement_amount) if body.settlement_amount is not None else None},
    )
    db.commit()
    return document_service.serialize_document(document)


@router.delete('/{document_id}')
def delete_document(
    document_id: int,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    number = document_service.delete_document(db, principal, document_id)
    log_audit(
        db,
        actor=principal,
        action='DOCUMENT_DELETED',
        document_id=document_id,
        ip=get_client_ip(request),
        metadata={'document_number': number},
    )
    db.commit()
    return {'ok': True, 'document_number': number}
