from __future__ import annotations

from decimal import Decimal

from pydantic import BaseModel, Field

from activation_portal.models import (
    ActivationStatus,
    BundleMode,
    CustomerType,
    IntakeStatus,
    ManagerPosition,
    PrincipalKind,
    RegistrationFeeMode,
    SimFeeMode,
    WorkerRole,
)


class LoginRequest(BaseModel):
    username: str = ''
    password: str = ''


class AttachmentRef(BaseModel):
    path: str
    name: str | None = None
    size: int | None = Field(default=None, ge=0)


class DocumentCreate(BaseModel):
    customer_name: str
    customer_phone: str
    customer_type: CustomerType = CustomerType.NEW
    carrier: str
    customer_email: str | None = None
    contact_code: str | None = None
    store_name: str | None = None
    desired_number: str | None = None
    previous_carrier: str | None = None
    bundle_number: str | None = None
    bundle_carrier: str | None = None
    notes: str | None = None
    attachment: AttachmentRef | None = None


class DuplicateCheckRequest(BaseModel):
    customer_name: str
    customer_phone: str
    store_name: str | None = None
    contact_code: str | None = None


class TransitionRequest(BaseModel):
    activation_status: ActivationStatus
    expected_version: int | None = None
    subscription_number: str | None = None
    device_model: str | None = None
    sim_number: str | None = None
    service_plan_id: int | None = None
    additional_service_ids: list[int] = Field(default_factory=list)
    registration_fee_mode: RegistrationFeeMode = RegistrationFeeMode.UNSET
    sim_fee_mode: SimFeeMode = SimFeeMode.UNSET
    bundle_mode: BundleMode = BundleMode.UNSET
    total_monthly_fee: Decimal | None = None
    dealer_notes: str | None = None
    supplement_notes: str | None = None
    discard_reason: str | None = None


class IntakeStatusRequest(BaseModel):
    status: IntakeStatus
    notes: str | None = None


class NotesRequest(BaseModel):
    notes: str | None = None


class SettlementOverrideRequest(BaseModel):
    settlement_amount: Decimal | None = None


class AdminCreate(BaseModel):
    username: str
    password: str
    display_name: str


class SalesTeamCreate(BaseModel):
    team_name: str
    team_code: str


class SalesManagerCreate(BaseModel):
    team_id: int
    manager_name: str
    manager_code: str
    username: str
    password: str
    position: ManagerPosition = ManagerPosition.ASSOCIATE
    contact_phone: str | None = None
    email: str | None = None


class WorkerUserCreate(BaseModel):
    username: str
    password: str
    display_name: str
    role: WorkerRole
    dealer_scope: str | None = None


class AccountActiveRequest(BaseModel):
    principal_kind: PrincipalKind
    active: bool


class PasswordResetRequest(BaseModel):
    principal_kind: PrincipalKind
    new_password: str


class ContactCodeCreate(BaseModel):
    code: str
    dealer_name: str
    carrier: str
    real_sales_pos: str | None = None
    sales_manager_id: int | None = None


class ContactCodeUpdate(BaseModel):
    dealer_name: str | None = None
    carrier: str | None = None
    real_sales_pos: str | None = None
    sales_manager_id: int | None = None
    active: bool | None = None


class ServicePlanCreate(BaseModel):
    carrier: str
    plan_name: str
    plan_type: str
    monthly_fee: Decimal
    data_allowance: str | None = None


class ServicePlanUpdate(BaseModel):
    plan_name: str | None = None
    plan_type: str | None = None
    monthly_fee: Decimal | None = None
    data_allowance: str | None = None
    active: bool | None = None


class AdditionalServiceCreate(BaseModel):
    carrier: str
    service_name: str
    service_type: str
    monthly_fee: Decimal


class PriceRequest(BaseModel):
    service_plan_id: int
    new_customer_price: Decimal
    port_in_price: Decimal
    memo: str | None = None


class DeductionRequest(BaseModel):
    deduction_amount: Decimal


class ChatMessageCreate(BaseModel):
    body: str
