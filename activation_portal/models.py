from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Date,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC timestamps on every backend, SQLite included."""

    impl = DateTime
    cache_ok = True

    def __init__(self) -> None:
        super().__init__(timezone=True)

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


# SQLite stores bigint primary keys as plain INTEGER so rowid autoincrement still works.
BigIntId = BigInteger().with_variant(Integer(), 'sqlite')
Money = Numeric(14, 2)


class Base(DeclarativeBase):
    pass


class PrincipalKind(str, Enum):
    ADMIN = 'ADMIN'
    SALES_MANAGER = 'SALES_MANAGER'
    WORKER = 'WORKER'


class WorkerRole(str, Enum):
    DEALER_STORE = 'DEALER_STORE'
    DEALER_WORKER = 'DEALER_WORKER'


class ManagerPosition(str, Enum):
    TEAM_LEAD = 'TEAM_LEAD'
    MANAGER = 'MANAGER'
    ASSOCIATE = 'ASSOCIATE'


class CustomerType(str, Enum):
    NEW = 'NEW'
    PORT_IN = 'PORT_IN'


class IntakeStatus(str, Enum):
    RECEIVED = 'RECEIVED'
    NEEDS_SUPPLEMENT = 'NEEDS_SUPPLEMENT'
    COMPLETED = 'COMPLETED'


class ActivationStatus(str, Enum):
    WAITING = 'WAITING'
    IN_PROGRESS = 'IN_PROGRESS'
    ACTIVATED = 'ACTIVATED'
    NEEDS_SUPPLEMENT = 'NEEDS_SUPPLEMENT'
    CANCELLED = 'CANCELLED'
    DISCARDED = 'DISCARDED'
    OTHER_COMPLETED = 'OTHER_COMPLETED'


class RegistrationFeeMode(str, Enum):
    UNSET = 'UNSET'
    PREPAID = 'PREPAID'
    POSTPAID = 'POSTPAID'
    INSTALLMENT = 'INSTALLMENT'


class SimFeeMode(str, Enum):
    UNSET = 'UNSET'
    PREPAID = 'PREPAID'
    POSTPAID = 'POSTPAID'


class BundleMode(str, Enum):
    UNSET = 'UNSET'
    APPLIED = 'APPLIED'
    NOT_APPLIED = 'NOT_APPLIED'


class Admin(Base):
    __tablename__ = 'admins'

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    username: Mapped[str] = mapped_column(String(120), nullable=False, unique=True)
    password_hash: Mapped[str] = mapped_column(Text, nullable=False)
    display_name: Mapped[str] = mapped_column(Text, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow, server_default=func.now())


class SalesTeam(Base):
    __tablename__ = 'sales_teams'

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    team_name: Mapped[str] = mapped_column(Text, nullable=False)
    team_code: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow, server_default=func.now())


class SalesManager(Base):
    __tablename__ = 'sales_managers'

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    team_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('sales_teams.id'), nullable=False)
    manager_name: Mapped[str] = mapped_column(Text, nullable=False)
    manager_code: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    username: Mapped[str] = mapped_column(String(120), nullable=False, unique=True)
    password_hash: Mapped[str] = mapped_column(Text, nullable=False)
    position: Mapped[ManagerPosition] = mapped_column(
        SQLEnum(ManagerPosition, name='manager_position'),
        nullable=False,
        default=ManagerPosition.ASSOCIATE,
        server_default='ASSOCIATE',
    )
    contact_phone: Mapped[str | None] = mapped_column(Text)
    email: Mapped[str | None] = mapped_column(Text)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow, server_default=func.now())


class WorkerUser(Base):
    __tablename__ = 'worker_users'

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    username: Mapped[str] = mapped_column(String(120), nullable=False, unique=True)
    password_hash: Mapped[str] = mapped_column(Text, nullable=False)
    display_name: Mapped[str] = mapped_column(Text, nullable=False)
    role: Mapped[WorkerRole] = mapped_column(SQLEnum(WorkerRole, name='worker_role'), nullable=False)
    # dealer display name this account belongs to; NULL means every dealer
    dealer_scope: Mapped[str | None] = mapped_column(Text)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow, server_default=func.now())


class AuthSession(Base):
    __tablename__ = 'auth_sessions'

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    principal_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    principal_kind: Mapped[PrincipalKind] = mapped_column(SQLEnum(PrincipalKind, name='principal_kind'), nullable=False)
    manager_id: Mapped[int | None] = mapped_column(BigInteger)
    team_id: Mapped[int | None] = mapped_column(BigInteger)
    role_tag: Mapped[str | None] = mapped_column(String(32))
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow, server_default=func.now())
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)


class AuthEvent(Base):
    __tablename__ = 'auth_events'

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    attempted_username: Mapped[str] = mapped_column(Text, nullable=False)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    failure_reason: Mapped[str | None] = mapped_column(Text)
    principal_kind: Mapped[str | None] = mapped_column(String(32))
    principal_id: Mapped[int | None] = mapped_column(BigInteger)
    ip: Mapped[str | None] = mapped_column(String(64))
    user_agent: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow, server_default=func.now())


class AuditLog(Base):
    __tablename__ = 'audit_log'

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    actor_kind: Mapped[str | None] = mapped_column(String(32))
    actor_id: Mapped[int | None] = mapped_column(BigInteger)
    action: Mapped[str] = mapped_column(Text, nullable=False)
    document_id: Mapped[int | None] = mapped_column(BigInteger)
    ip: Mapped[str | None] = mapped_column(String(64))
    meta: Mapped[dict] = mapped_column('metadata', JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow, server_default=func.now())


class ContactCode(Base):
    __tablename__ = 'contact_codes'

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    code: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    dealer_name: Mapped[str] = mapped_column(Text, nullable=False)
    carrier: Mapped[str] = mapped_column(Text, nullable=False)
    real_sales_pos: Mapped[str | None] = mapped_column(Text)
    sales_manager_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('sales_managers.id'))
    sales_manager_name: Mapped[str | None] = mapped_column(Text)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow, server_default=func.now())


class ServicePlan(Base):
    __tablename__ = 'service_plans'

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    carrier: Mapped[str] = mapped_column(Text, nullable=False)
    plan_name: Mapped[str] = mapped_column(Text, nullable=False)
    plan_type: Mapped[str] = mapped_column(Text, nullable=False)
    data_allowance: Mapped[str | None] = mapped_column(Text)
    monthly_fee: Mapped[Decimal] = mapped_column(Money, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow, server_default=func.now())


class AdditionalService(Base):
    __tablename__ = 'additional_services'

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    carrier: Mapped[str] = mapped_column(Text, nullable=False)
    service_name: Mapped[str] = mapped_column(Text, nullable=False)
    service_type: Mapped[str] = mapped_column(Text, nullable=False)
    monthly_fee: Mapped[Decimal] = mapped_column(Money, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow, server_default=func.now())


class SettlementUnitPrice(Base):
    __tablename__ = 'settlement_unit_prices'
    __table_args__ = (
        Index(
            'settlement_unit_prices_one_active_per_plan',
            'service_plan_id',
            unique=True,
            postgresql_where=text('active'),
            sqlite_where=text('active = 1'),
        ),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    service_plan_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('service_plans.id'), nullable=False)
    new_customer_price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    port_in_price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    effective_from: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    effective_until: Mapped[datetime | None] = mapped_column(UTCDateTime())
    memo: Mapped[str | None] = mapped_column(Text)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    created_by_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('admins.id'))
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow, server_default=func.now())


class AdditionalServiceDeduction(Base):
    """Amount taken off the settlement for each activation carrying the service."""

    __tablename__ = 'additional_service_deductions'

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    additional_service_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey('additional_services.id'), nullable=False, unique=True
    )
    deduction_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    created_by_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('admins.id'))
    updated_by_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('admins.id'))
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow, server_default=func.now())


class DocumentSequence(Base):
    __tablename__ = 'document_sequences'

    day: Mapped[date] = mapped_column(Date, primary_key=True)
    last_number: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')


class Document(Base):
    __tablename__ = 'documents'
    __table_args__ = (
        UniqueConstraint('document_number', name='documents_document_number_key'),
        Index('documents_contact_code_idx', 'contact_code'),
        Index('documents_activation_status_idx', 'activation_status'),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    document_number: Mapped[str] = mapped_column(String(32), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    customer_name: Mapped[str] = mapped_column(Text, nullable=False)
    customer_phone: Mapped[str] = mapped_column(Text, nullable=False)
    customer_email: Mapped[str | None] = mapped_column(Text)
    customer_type: Mapped[CustomerType] = mapped_column(SQLEnum(CustomerType, name='customer_type'), nullable=False)
    desired_number: Mapped[str | None] = mapped_column(Text)
    previous_carrier: Mapped[str | None] = mapped_column(Text)

    contact_code: Mapped[str | None] = mapped_column(String(64))
    store_name: Mapped[str | None] = mapped_column(Text)
    carrier: Mapped[str] = mapped_column(Text, nullable=False)
    bundle_number: Mapped[str | None] = mapped_column(Text)
    bundle_carrier: Mapped[str | None] = mapped_column(Text)

    submitted_by_kind: Mapped[str] = mapped_column(String(32), nullable=False)
    submitted_by_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    uploaded_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow, server_default=func.now())
    file_path: Mapped[str | None] = mapped_column(Text)
    file_name: Mapped[str | None] = mapped_column(Text)
    file_size: Mapped[int | None] = mapped_column(BigInteger)
    notes: Mapped[str | None] = mapped_column(Text)

    status: Mapped[IntakeStatus] = mapped_column(
        SQLEnum(IntakeStatus, name='intake_status'),
        nullable=False,
        default=IntakeStatus.RECEIVED,
        server_default='RECEIVED',
    )
    activation_status: Mapped[ActivationStatus] = mapped_column(
        SQLEnum(ActivationStatus, name='activation_status'),
        nullable=False,
        default=ActivationStatus.WAITING,
        server_default='WAITING',
    )
    assigned_worker_id: Mapped[int | None] = mapped_column(BigInteger)
    assigned_at: Mapped[datetime | None] = mapped_column(UTCDateTime())

    activated_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    activated_by_kind: Mapped[str | None] = mapped_column(String(32))
    activated_by_id: Mapped[int | None] = mapped_column(BigInteger)
    activated_by_name: Mapped[str | None] = mapped_column(Text)
    device_model: Mapped[str | None] = mapped_column(Text)
    sim_number: Mapped[str | None] = mapped_column(Text)
    subscription_number: Mapped[str | None] = mapped_column(Text)
    service_plan_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('service_plans.id'))
    additional_service_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    registration_fee_mode: Mapped[RegistrationFeeMode] = mapped_column(
        SQLEnum(RegistrationFeeMode, name='registration_fee_mode'),
        nullable=False,
        default=RegistrationFeeMode.UNSET,
        server_default='UNSET',
    )
    sim_fee_mode: Mapped[SimFeeMode] = mapped_column(
        SQLEnum(SimFeeMode, name='sim_fee_mode'),
        nullable=False,
        default=SimFeeMode.UNSET,
        server_default='UNSET',
    )
    bundle_mode: Mapped[BundleMode] = mapped_column(
        SQLEnum(BundleMode, name='bundle_mode'),
        nullable=False,
        default=BundleMode.UNSET,
        server_default='UNSET',
    )
    total_monthly_fee: Mapped[Decimal | None] = mapped_column(Money)
    dealer_notes: Mapped[str | None] = mapped_column(Text)

    cancelled_by_kind: Mapped[str | None] = mapped_column(String(32))
    cancelled_by_id: Mapped[int | None] = mapped_column(BigInteger)
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    discard_reason: Mapped[str | None] = mapped_column(Text)
    discarded_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    supplement_notes: Mapped[str | None] = mapped_column(Text)
    supplement_required_by_id: Mapped[int | None] = mapped_column(BigInteger)
    supplement_required_at: Mapped[datetime | None] = mapped_column(UTCDateTime())

    settlement_amount: Mapped[Decimal | None] = mapped_column(Money)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow, server_default=func.now())

    __mapper_args__ = {'version_id_col': version}


class ChatRoom(Base):
    __tablename__ = 'chat_rooms'

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    document_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey('documents.id', ondelete='CASCADE'), nullable=False, unique=True
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow, server_default=func.now())


class ChatMessage(Base):
    __tablename__ = 'chat_messages'

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    room_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('chat_rooms.id', ondelete='CASCADE'), nullable=False)
    sender_kind: Mapped[str] = mapped_column(String(32), nullable=False)
    sender_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    sender_name: Mapped[str] = mapped_column(Text, nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow, server_default=func.now())
