from decimal import Decimal

from sqlalchemy import select

from activation_portal.db import SessionLocal, init_db
from activation_portal.models import (
    Admin,
    ContactCode,
    SalesManager,
    SalesTeam,
    ServicePlan,
    WorkerRole,
    WorkerUser,
)
from activation_portal.services import identity_service, pricing_service
from activation_portal.services.contact_code_service import create_contact_code

DEALER_NAME = 'Acme Store'


def seed() -> None:
    init_db()
    with SessionLocal() as db:
        admin = db.execute(select(Admin).where(Admin.username == 'admin')).scalar_one_or_none()
        if not admin:
            admin = identity_service.create_admin(db, username='admin', password='adminpass', display_name='Administrator')

        team = db.execute(select(SalesTeam).where(SalesTeam.team_code == 'TEAM-A')).scalar_one_or_none()
        if not team:
            team = identity_service.create_sales_team(db, team_name='Team A', team_code='TEAM-A')

        manager = db.execute(select(SalesManager).where(SalesManager.username == 'manager')).scalar_one_or_none()
        if not manager:
            manager = identity_service.create_sales_manager(
                db,
                team_id=team.id,
                manager_name='Lee Manager',
                manager_code='MGR001',
                username='manager',
                password='managerpass',
            )

        if not db.execute(select(WorkerUser).where(WorkerUser.username == 'store1')).scalar_one_or_none():
            identity_service.create_worker_user(
                db,
                username='store1',
                password='storepass',
                display_name='Acme Front Desk',
                role=WorkerRole.DEALER_STORE,
                dealer_scope=DEALER_NAME,
            )

        if not db.execute(select(WorkerUser).where(WorkerUser.username == 'worker1')).scalar_one_or_none():
            identity_service.create_worker_user(
                db,
                username='worker1',
                password='workerpass',
                display_name='Activation Desk',
                role=WorkerRole.DEALER_WORKER,
            )

        if not db.execute(select(ContactCode).where(ContactCode.code == 'MCC001')).scalar_one_or_none():
            create_contact_code(db, code='MCC001', dealer_name=DEALER_NAME, carrier='KT', sales_manager_id=manager.id)

        plan = db.execute(
            select(ServicePlan).where(ServicePlan.carrier == 'KT', ServicePlan.plan_name == '5G Standard')
        ).scalar_one_or_none()
        if not plan:
            principal = identity_service.to_principal(admin)
            plan = pricing_service.create_service_plan(
                db,
                principal,
                carrier='KT',
                plan_name='5G Standard',
                plan_type='5G',
                data_allowance='110GB',
                monthly_fee=Decimal('69000'),
            )
            pricing_service.set_price(
                db,
                principal,
                service_plan_id=plan.id,
                new_customer_price=Decimal('30000'),
                port_in_price=Decimal('50000'),
                memo='initial price',
            )

        db.commit()


if __name__ == '__main__':
    seed()
