from __future__ import annotations

import os
import tempfile
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import patch

from sqlalchemy import create_engine, event, select

from activation_portal.config import CarrierFieldRules
from activation_portal.errors import Conflict, Forbidden, NotFound, ValidationFailed
from activation_portal.models import (
    ActivationStatus,
    ContactCode,
    CustomerType,
    IntakeStatus,
    RegistrationFeeMode,
    SimFeeMode,
)
from activation_portal.services import document_service, pricing_service
from activation_portal.services.contact_code_service import deactivate_contact_code, get_contact_code
from activation_portal.services.document_service import DocumentFilters, TransitionPayload
from tests.support import NO_RULES, DatabaseTestCase, intake


class DocumentServiceTests(DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.admin = self.make_admin()
        self.manager = self.make_manager()
        self.store = self.make_store(dealer_scope='Acme Store')
        self.worker = self.make_worker()
        self.make_code('MCC001', 'Acme Store', manager=self.manager)
        self.plan = self.make_plan(self.admin, new_price='30000', port_in_price='50000')

    def _create(self, principal=None, **overrides):
        return document_service.create_document(self.db, principal or self.store, intake(**overrides), NO_RULES)

    def _activate(self, document, principal=None, **payload):
        fields = {'subscription_number': 'SUB123', 'service_plan_id': self.plan.id}
        fields.update(payload)
        return document_service.apply_activation_transition(
            self.db, principal or self.worker, document.id, ActivationStatus.ACTIVATED, TransitionPayload(**fields)
        )

    def test_intake_then_activation_settles_at_active_price(self) -> None:
        document = self._create()

        self.assertEqual(document.store_name, 'Acme Store')
        self.assertEqual(document.activation_status, ActivationStatus.WAITING)
        self.assertEqual(document.status, IntakeStatus.RECEIVED)

        document = self._activate(document)

        self.assertEqual(document.activation_status, ActivationStatus.ACTIVATED)
        self.assertEqual(document.settlement_amount, Decimal('30000'))
        self.assertEqual(document.activated_by_id, self.worker.id)
        self.assertEqual(document.activated_by_name, self.worker.display_name)

    def test_repricing_is_not_retroactive(self) -> None:
        first = self._activate(self._create())

        pricing_service.set_price(
            self.db,
            self.admin,
            service_plan_id=self.plan.id,
            new_customer_price=Decimal('35000'),
            port_in_price=Decimal('55000'),
        )
        second = self._activate(self._create(customer_name='Park', customer_phone='010-3333-4444'))

        self.assertEqual(first.settlement_amount, Decimal('30000'))
        self.assertEqual(second.settlement_amount, Decimal('35000'))

    def test_reapplying_activation_keeps_settled_amount(self) -> None:
        document = self._activate(self._create())
        pricing_service.set_price(
            self.db,
            self.admin,
            service_plan_id=self.plan.id,
            new_customer_price=Decimal('35000'),
            port_in_price=Decimal('55000'),
        )

        document = self._activate(document, device_model='Galaxy S24')

        self.assertEqual(document.settlement_amount, Decimal('30000'))
        self.assertEqual(document.device_model, 'Galaxy S24')

    def test_port_in_settles_at_port_in_price(self) -> None:
        document = self._create(customer_type=CustomerType.PORT_IN, previous_carrier='SKT')

        self.assertEqual(self._activate(document).settlement_amount, Decimal('50000'))

    def test_activation_subtracts_additional_service_deductions(self) -> None:
        insurance = pricing_service.create_additional_service(
            self.db, self.admin, carrier='KT', service_name='Insurance', service_type='device', monthly_fee=Decimal('5500')
        )
        pricing_service.set_deduction(self.db, self.admin, additional_service_id=insurance.id, deduction_amount='4000')
        document = self._activate(self._create())

        document = self._activate(document, additional_service_ids=[insurance.id])

        self.assertEqual(document.settlement_amount, Decimal('26000'))
        self.assertEqual(document.total_monthly_fee, Decimal('74500'))

    def test_unpriced_plan_activates_without_settlement(self) -> None:
        unpriced = self.make_plan(self.admin, new_price=None, fee='55000')

        document = self._activate(self._create(), service_plan_id=unpriced.id)

        self.assertEqual(document.activation_status, ActivationStatus.ACTIVATED)
        self.assertIsNone(document.settlement_amount)
        self.assertEqual(document.total_monthly_fee, Decimal('55000'))

    def test_activation_requires_subscription_number(self) -> None:
        document = self._create()

        with self.assertRaises(ValidationFailed):
            self._activate(document, subscription_number='  ')

    def test_fee_modes_are_single_valued(self) -> None:
        document = self._activate(
            self._create(),
            registration_fee_mode=RegistrationFeeMode.PREPAID,
            sim_fee_mode=SimFeeMode.POSTPAID,
        )
        document = self._activate(document, registration_fee_mode=RegistrationFeeMode.INSTALLMENT)

        view = document_service.serialize_document(document)
        self.assertEqual(view['registration_fee_mode'], 'INSTALLMENT')
        self.assertTrue(view['registration_fee_installment'])
        self.assertFalse(view['registration_fee_prepaid'])
        self.assertFalse(view['registration_fee_postpaid'])
        self.assertFalse(view['sim_fee_postpaid'])

    def test_cancellation_keeps_fulfilment_data(self) -> None:
        document = self._activate(self._create())

        document = document_service.apply_activation_transition(
            self.db, self.worker, document.id, ActivationStatus.CANCELLED
        )

        self.assertEqual(document.activation_status, ActivationStatus.CANCELLED)
        self.assertEqual(document.cancelled_by_id, self.worker.id)
        self.assertEqual(document.subscription_number, 'SUB123')
        self.assertEqual(document.settlement_amount, Decimal('30000'))

    def test_supplement_and_discard_need_reasons(self) -> None:
        document = self._create()

        with self.assertRaises(ValidationFailed):
            document_service.apply_activation_transition(
                self.db, self.worker, document.id, ActivationStatus.NEEDS_SUPPLEMENT, TransitionPayload()
            )
        with self.assertRaises(ValidationFailed):
            document_service.apply_activation_transition(
                self.db, self.worker, document.id, ActivationStatus.DISCARDED, TransitionPayload(discard_reason='')
            )

        document = document_service.apply_activation_transition(
            self.db,
            self.worker,
            document.id,
            ActivationStatus.NEEDS_SUPPLEMENT,
            TransitionPayload(supplement_notes='ID copy is unreadable'),
        )
        self.assertEqual(document.supplement_required_by_id, self.worker.id)
        self.assertIsNotNone(document.supplement_required_at)

    def test_every_transition_stamps_updated_at(self) -> None:
        document = self._create()
        later = datetime(2030, 1, 1, tzinfo=timezone.utc)

        with patch('activation_portal.services.document_service._now', return_value=later):
            document = document_service.apply_activation_transition(
                self.db, self.worker, document.id, ActivationStatus.IN_PROGRESS
            )
            self.assertEqual(document.updated_at, later)
            document = document_service.apply_activation_transition(
                self.db, self.worker, document.id, ActivationStatus.IN_PROGRESS
            )

        self.assertEqual(document.updated_at, later)
        self.assertEqual(document.assigned_worker_id, self.worker.id)

    def test_sales_manager_cannot_mutate(self) -> None:
        document = self._create()

        with self.assertRaises(Forbidden):
            document_service.apply_activation_transition(
                self.db, self.manager, document.id, ActivationStatus.IN_PROGRESS
            )
        with self.assertRaises(Forbidden):
            document_service.update_notes(self.db, self.manager, document.id, 'hello')
        with self.assertRaises(Forbidden):
            self._create(principal=self.manager)

    def test_dealer_store_cannot_transition(self) -> None:
        document = self._create()

        with self.assertRaises(Forbidden):
            document_service.apply_activation_transition(
                self.db, self.store, document.id, ActivationStatus.IN_PROGRESS
            )

    def test_terminal_states_need_admin(self) -> None:
        document = self._create()
        document_service.apply_activation_transition(
            self.db, self.worker, document.id, ActivationStatus.DISCARDED, TransitionPayload(discard_reason='dup')
        )

        with self.assertRaises(Conflict):
            document_service.apply_activation_transition(
                self.db, self.worker, document.id, ActivationStatus.IN_PROGRESS
            )
        document = document_service.apply_activation_transition(
            self.db, self.admin, document.id, ActivationStatus.IN_PROGRESS
        )
        self.assertEqual(document.activation_status, ActivationStatus.IN_PROGRESS)

    def test_claimed_document_is_closed_to_other_workers(self) -> None:
        other = self.make_worker(username='worker2')
        document = self._create()
        document_service.apply_activation_transition(self.db, self.worker, document.id, ActivationStatus.IN_PROGRESS)

        with self.assertRaises(Conflict):
            document_service.apply_activation_transition(self.db, other, document.id, ActivationStatus.IN_PROGRESS)

    def test_stale_expected_version_conflicts(self) -> None:
        document = self._create()
        version = document.version
        document_service.apply_activation_transition(self.db, self.worker, document.id, ActivationStatus.IN_PROGRESS)

        self.assertGreater(document.version, version)
        with self.assertRaises(Conflict):
            self._activate(document, expected_version=version)
        self.assertEqual(self._activate(document, expected_version=document.version).activation_status, ActivationStatus.ACTIVATED)

    def test_unknown_document_is_not_found(self) -> None:
        with self.assertRaises(NotFound):
            document_service.get_document(self.db, self.admin, 12345)

    def test_explicit_store_name_kept_when_code_unknown(self) -> None:
        document = self._create(contact_code='NOPE', store_name='Walk-in Branch')

        self.assertEqual(document.store_name, 'Walk-in Branch')

    def test_customer_type_field_rules(self) -> None:
        with self.assertRaises(ValidationFailed):
            self._create(customer_type=CustomerType.PORT_IN)
        with self.assertRaises(ValidationFailed):
            self._create(customer_type=CustomerType.NEW, previous_carrier='SKT')
        with self.assertRaises(ValidationFailed):
            self._create(customer_type=CustomerType.PORT_IN, previous_carrier='SKT', desired_number='010-0000-0000')

    def test_carrier_field_rules(self) -> None:
        rules = CarrierFieldRules.from_mapping({'KT': ['customer_email', 'attachment']})

        with self.assertRaises(ValidationFailed):
            document_service.create_document(self.db, self.store, intake(), rules)
        document = document_service.create_document(
            self.db, self.store, intake(customer_email='kim@example.com', file_path='blobs/abc.pdf'), rules
        )
        self.assertEqual(document.file_path, 'blobs/abc.pdf')
        with self.assertRaises(ValueError):
            CarrierFieldRules.from_mapping({'KT': ['shoe_size']})

    def test_document_numbers_are_sequential_per_day(self) -> None:
        day_one = datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc)
        day_two = datetime(2024, 3, 2, 10, 0, tzinfo=timezone.utc)

        numbers = [
            document_service.next_document_number(self.db, day_one),
            document_service.next_document_number(self.db, day_one),
            document_service.next_document_number(self.db, day_two),
        ]

        self.assertEqual(numbers, ['20240301-0001', '20240301-0002', '20240302-0001'])

    def test_first_number_of_the_day_survives_a_concurrent_insert(self) -> None:
        now = datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc)
        raced = []

        @event.listens_for(self.engine, 'after_cursor_execute')
        def other_intake_inserts_first(conn, cursor, statement, parameters, context, executemany):
            if statement.startswith('UPDATE document_sequences') and not raced:
                raced.append(statement)
                cursor.connection.cursor().execute(
                    'INSERT INTO document_sequences (day, last_number) VALUES (?, 1)', ('2024-03-01',)
                )

        number = document_service.next_document_number(self.db, now)

        self.assertEqual(len(raced), 1)
        self.assertEqual(number, '20240301-0002')
        self.assertEqual(document_service.next_document_number(self.db, now), '20240301-0003')

    def test_visibility_scoping(self) -> None:
        other_store = self.make_store(username='store2', dealer_scope='Other Store')
        self.make_code('OTH001', 'Other Store')
        acme = self._create()
        other = self._create(principal=other_store, contact_code='OTH001', customer_name='Choi')

        def visible(principal):
            return {document.id for document in document_service.list_documents(self.db, principal)}

        self.assertEqual(visible(self.admin), {acme.id, other.id})
        self.assertEqual(visible(self.worker), {acme.id, other.id})
        self.assertEqual(visible(self.store), {acme.id})
        self.assertEqual(visible(other_store), {other.id})
        self.assertEqual(visible(self.manager), {acme.id})
        with self.assertRaises(Forbidden):
            document_service.get_document(self.db, self.manager, other.id)

    def test_manager_still_sees_documents_of_deactivated_codes(self) -> None:
        document = self._create()
        code = self.db.execute(select(ContactCode).where(ContactCode.code == 'MCC001')).scalar_one()
        deactivate_contact_code(self.db, contact_code_id=code.id)

        self.assertFalse(get_contact_code(self.db, code.id).active)
        self.assertEqual([row.id for row in document_service.list_documents(self.db, self.manager)], [document.id])

    def test_list_filters(self) -> None:
        waiting = self._create()
        claimed = self._create(customer_name='Park', customer_phone='010-3333-4444')
        document_service.apply_activation_transition(self.db, self.worker, claimed.id, ActivationStatus.IN_PROGRESS)
        done = self._activate(self._create(customer_name='Lee', customer_phone='010-5555-6666'))

        def ids(**filters):
            return {row.id for row in document_service.list_documents(self.db, self.admin, DocumentFilters(**filters))}

        self.assertEqual(ids(activation_status='waiting'), {waiting.id})
        self.assertEqual(ids(activation_status='waiting,in-progress'), {waiting.id, claimed.id})
        self.assertEqual(ids(activation_status='work-requested'), {claimed.id})
        self.assertEqual(ids(search='par'), {claimed.id})
        self.assertEqual(ids(search=waiting.document_number), {waiting.id})
        self.assertEqual(ids(mine=True), set())
        self.assertEqual(
            {row.id for row in document_service.list_documents(self.db, self.worker, DocumentFilters(mine=True))},
            {done.id},
        )
        with self.assertRaises(ValidationFailed):
            ids(activation_status='bogus')

    def test_work_requested_excludes_outstanding_supplements(self) -> None:
        document = self._create()
        document_service.apply_activation_transition(self.db, self.worker, document.id, ActivationStatus.IN_PROGRESS)
        document_service.update_intake_status(self.db, self.admin, document.id, IntakeStatus.NEEDS_SUPPLEMENT)

        rows = document_service.list_documents(self.db, self.admin, DocumentFilters(activation_status='work-requested'))

        self.assertEqual(rows, [])

    def test_check_duplicates(self) -> None:
        document = self._create()

        found = document_service.check_duplicates(
            self.db, self.store, customer_name='Kim', customer_phone='010-1111-2222'
        )
        missing = document_service.check_duplicates(
            self.db, self.store, customer_name='Kim', customer_phone='010-9999-9999'
        )

        self.assertEqual([row.id for row in found], [document.id])
        self.assertEqual(missing, [])

    def test_delete_only_while_received(self) -> None:
        keep = self._create()
        drop = self._create(customer_name='Park', customer_phone='010-3333-4444')

        with self.assertRaises(Forbidden):
            document_service.delete_document(self.db, self.worker, drop.id)
        document_service.delete_document(self.db, self.admin, drop.id)
        document_service.update_intake_status(self.db, self.admin, keep.id, IntakeStatus.COMPLETED)

        with self.assertRaises(Conflict):
            document_service.delete_document(self.db, self.admin, keep.id)
        with self.assertRaises(NotFound):
            document_service.get_document(self.db, self.admin, drop.id)

    def test_settlement_override_is_admin_only_and_needs_activation(self) -> None:
        document = self._create()

        with self.assertRaises(Conflict):
            document_service.override_settlement_amount(self.db, self.admin, document.id, Decimal('1000'))

        self._activate(document)
        with self.assertRaises(Forbidden):
            document_service.override_settlement_amount(self.db, self.worker, document.id, Decimal('1000'))
        document = document_service.override_settlement_amount(self.db, self.admin, document.id, Decimal('42000'))
        self.assertEqual(document.settlement_amount, Decimal('42000'))

    def test_other_completed_stamps_actor_without_settlement(self) -> None:
        document = document_service.apply_activation_transition(
            self.db, self.worker, self._create().id, ActivationStatus.OTHER_COMPLETED
        )

        self.assertEqual(document.activated_by_id, self.worker.id)
        self.assertIsNotNone(document.activated_at)
        self.assertIsNone(document.settlement_amount)


class ConcurrentClaimTests(DatabaseTestCase):
    """Two sessions on one database file, each with its own connection."""

    def make_bind(self):
        directory = tempfile.TemporaryDirectory()
        self.addCleanup(directory.cleanup)
        return create_engine(f"sqlite:///{os.path.join(directory.name, 'portal.db')}")

    def test_claim_from_a_stale_read_conflicts(self) -> None:
        store = self.make_store(dealer_scope='Acme Store')
        first = self.make_worker()
        second = self.make_worker(username='worker2')
        self.make_code('MCC001', 'Acme Store')
        document = document_service.create_document(self.db, store, intake(), NO_RULES)
        self.db.commit()

        other = self.SessionLocal()
        try:
            stale = document_service.get_document(other, second, document.id)
            self.assertEqual(stale.activation_status, ActivationStatus.WAITING)

            document_service.apply_activation_transition(self.db, first, document.id, ActivationStatus.IN_PROGRESS)
            self.db.commit()

            with self.assertRaises(Conflict):
                document_service.apply_activation_transition(
                    other, second, document.id, ActivationStatus.IN_PROGRESS
                )
        finally:
            other.rollback()
            other.close()

        fresh = self.SessionLocal()
        try:
            claimed = document_service.get_document(fresh, first, document.id)
            self.assertEqual(claimed.assigned_worker_id, first.id)
            self.assertEqual(claimed.version, 2)
        finally:
            fresh.close()
