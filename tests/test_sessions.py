from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from sqlalchemy import select

from activation_portal.auth import AdminPrincipal, SalesManagerPrincipal
from activation_portal.models import AuthSession, PrincipalKind
from activation_portal.security import sessions
from activation_portal.services import identity_service
from tests.support import DatabaseTestCase

T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


class SessionManagerTests(DatabaseTestCase):
    def _create_at(self, moment: datetime, **kwargs) -> str:
        with patch('activation_portal.security.sessions._now', return_value=moment):
            token = sessions.create_session(self.db, **kwargs)
        self.db.commit()
        return token

    def _get_at(self, moment: datetime, token: str):
        with patch('activation_portal.security.sessions._now', return_value=moment):
            return sessions.get_session(self.db, token)

    def test_session_lives_for_twenty_four_hours(self) -> None:
        token = self._create_at(T0, principal_id=1, principal_kind=PrincipalKind.ADMIN)

        row = self._get_at(T0 + timedelta(hours=24) - timedelta(seconds=1), token)

        self.assertIsNotNone(row)
        self.assertEqual(row.expires_at, T0 + timedelta(hours=24))

    def test_expired_session_is_absent_and_deleted(self) -> None:
        token = self._create_at(T0, principal_id=1, principal_kind=PrincipalKind.ADMIN)

        self.assertIsNone(self._get_at(T0 + timedelta(hours=24, seconds=1), token))
        self.assertIsNone(self.db.execute(select(AuthSession).where(AuthSession.id == token)).scalar_one_or_none())

    def test_access_does_not_extend_lifetime(self) -> None:
        token = self._create_at(T0, principal_id=1, principal_kind=PrincipalKind.ADMIN)

        self.assertIsNotNone(self._get_at(T0 + timedelta(hours=23), token))
        self.assertIsNone(self._get_at(T0 + timedelta(hours=24, seconds=1), token))

    def test_unknown_and_missing_tokens_are_absent(self) -> None:
        self.assertIsNone(sessions.get_session(self.db, 'no-such-token'))
        self.assertIsNone(sessions.get_session(self.db, None))
        self.assertIsNone(sessions.get_session(self.db, ''))

    def test_tokens_are_unique_and_opaque(self) -> None:
        first = self._create_at(T0, principal_id=1, principal_kind=PrincipalKind.ADMIN)
        second = self._create_at(T0, principal_id=1, principal_kind=PrincipalKind.ADMIN)

        self.assertNotEqual(first, second)
        self.assertGreaterEqual(len(first), 48)

    def test_delete_session_is_idempotent(self) -> None:
        token = self._create_at(T0, principal_id=1, principal_kind=PrincipalKind.ADMIN)

        sessions.delete_session(self.db, token)
        sessions.delete_session(self.db, token)
        self.db.commit()

        self.assertIsNone(self._get_at(T0, token))

    def test_manager_session_carries_manager_and_team(self) -> None:
        manager = self.make_manager()
        self.db.commit()

        with patch('activation_portal.security.sessions._now', return_value=T0):
            token = sessions.create_session_for(self.db, manager)
            row = sessions.get_session(self.db, token)

        self.assertEqual(row.principal_kind, PrincipalKind.SALES_MANAGER)
        self.assertEqual(row.manager_id, manager.id)
        self.assertEqual(row.team_id, manager.team_id)

    def test_principal_is_rebuilt_from_token(self) -> None:
        admin = self.make_admin()
        token = sessions.create_session_for(self.db, admin)
        self.db.commit()

        principal = sessions.load_principal_from_token(self.db, token)

        self.assertIsInstance(principal, AdminPrincipal)
        self.assertEqual(principal.id, admin.id)

    def test_deactivated_account_no_longer_authenticates_its_session(self) -> None:
        manager = self.make_manager()
        token = sessions.create_session_for(self.db, manager)
        identity_service.set_active(self.db, kind=PrincipalKind.SALES_MANAGER, principal_id=manager.id, active=False)
        self.db.commit()

        self.assertIsNone(sessions.load_principal_from_token(self.db, token))
        self.assertIsInstance(manager, SalesManagerPrincipal)
