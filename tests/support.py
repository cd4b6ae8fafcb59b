from __future__ import annotations

import unittest
from decimal import Decimal

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from activation_portal.config import CarrierFieldRules
from activation_portal.models import Base, CustomerType, WorkerRole
from activation_portal.services import identity_service, pricing_service
from activation_portal.services.contact_code_service import create_contact_code
from activation_portal.services.document_service import DocumentIntake

NO_RULES = CarrierFieldRules()


def make_engine():
    return create_engine(
        'sqlite://',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )


class DatabaseTestCase(unittest.TestCase):
    """Fresh in-memory schema per test, plus a small cast of accounts."""

    def make_bind(self):
        return make_engine()

    def setUp(self) -> None:
        self.engine = self.make_bind()
        Base.metadata.create_all(self.engine)
        self.SessionLocal = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)
        self.db = self.SessionLocal()

    def tearDown(self) -> None:
        self.db.close()
        Base.metadata.drop_all(self.engine)
        self.engine.dispose()

    def make_admin(self, username: str = 'admin'):
        account = identity_service.create_admin(self.db, username=username, password='adminpass', display_name='Admin')
        return identity_service.to_principal(account)

    def make_team(self, code: str = 'TEAM-A'):
        return identity_service.create_sales_team(self.db, team_name=f'Team {code}', team_code=code)

    def make_manager(self, username: str = 'manager', code: str = 'MGR001', team=None):
        team = team or self.make_team(f'TEAM-{code}')
        account = identity_service.create_sales_manager(
            self.db,
            team_id=team.id,
            manager_name=f'Manager {code}',
            manager_code=code,
            username=username,
            password='managerpass',
        )
        return identity_service.to_principal(account)

    def make_store(self, username: str = 'store1', dealer_scope: str | None = 'Acme Store'):
        account = identity_service.create_worker_user(
            self.db,
            username=username,
            password='storepass',
            display_name=f'{username} desk',
            role=WorkerRole.DEALER_STORE,
            dealer_scope=dealer_scope,
        )
        return identity_service.to_principal(account)

    def make_worker(self, username: str = 'worker1', dealer_scope: str | None = None):
        account = identity_service.create_worker_user(
            self.db,
            username=username,
            password='workerpass',
            display_name=f'{username} desk',
            role=WorkerRole.DEALER_WORKER,
            dealer_scope=dealer_scope,
        )
        return identity_service.to_principal(account)

    def make_code(self, code: str = 'MCC001', dealer_name: str = 'Acme Store', manager=None):
        return create_contact_code(
            self.db,
            code=code,
            dealer_name=dealer_name,
            carrier='KT',
            sales_manager_id=manager.id if manager else None,
        )

    def make_plan(self, admin, *, new_price: str | None = '30000', port_in_price: str = '50000', fee: str = '69000'):
        plan = pricing_service.create_service_plan(
            self.db,
            admin,
            carrier='KT',
            plan_name=f'Plan {fee}',
            plan_type='5G',
            monthly_fee=Decimal(fee),
        )
        if new_price is not None:
            pricing_service.set_price(
                self.db,
                admin,
                service_plan_id=plan.id,
                new_customer_price=Decimal(new_price),
                port_in_price=Decimal(port_in_price),
            )
        return plan


def intake(**overrides) -> DocumentIntake:
    fields = {
        'customer_name': 'Kim',
        'customer_phone': '010-1111-2222',
        'customer_type': CustomerType.NEW,
        'carrier': 'KT',
        'contact_code': 'MCC001',
    }
    fields.update(overrides)
    return DocumentIntake(**fields)
