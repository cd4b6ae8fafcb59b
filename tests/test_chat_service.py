from __future__ import annotations

import unittest
from unittest.mock import AsyncMock

from sqlalchemy import func, select

from activation_portal.errors import Forbidden, ValidationFailed
from activation_portal.models import ChatRoom
from activation_portal.services import chat_service, document_service
from activation_portal.services.chat_service import ChatHub
from tests.support import NO_RULES, DatabaseTestCase, intake


class ChatServiceTests(DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.manager = self.make_manager()
        self.store = self.make_store(dealer_scope='Acme Store')
        self.worker = self.make_worker()
        self.make_code('MCC001', 'Acme Store', manager=self.manager)
        self.document = document_service.create_document(self.db, self.store, intake(), NO_RULES)

    def test_messages_are_persisted_in_order(self) -> None:
        chat_service.send(self.db, self.store, self.document.id, 'Customer ID attached')
        chat_service.send(self.db, self.worker, self.document.id, '  Received, working on it  ')

        messages = chat_service.history(self.db, self.worker, self.document.id)

        self.assertEqual([message.body for message in messages], ['Customer ID attached', 'Received, working on it'])
        self.assertEqual(messages[0].sender_kind, 'WORKER')
        self.assertEqual(messages[1].sender_name, self.worker.display_name)

    def test_room_is_created_by_the_first_message(self) -> None:
        self.assertIsNone(chat_service.join(self.db, self.store, self.document.id))

        chat_service.send(self.db, self.store, self.document.id, 'hello')
        chat_service.send(self.db, self.worker, self.document.id, 'hi')
        first = chat_service.join(self.db, self.store, self.document.id)
        second = chat_service.join(self.db, self.worker, self.document.id)

        self.assertEqual(first.id, second.id)
        self.assertEqual(self.db.execute(select(func.count(ChatRoom.id))).scalar_one(), 1)

    def test_reading_an_empty_chat_leaves_no_room_behind(self) -> None:
        self.assertEqual(chat_service.history(self.db, self.manager, self.document.id), [])
        self.assertEqual(chat_service.history(self.db, self.worker, self.document.id), [])

        self.assertEqual(self.db.execute(select(func.count(ChatRoom.id))).scalar_one(), 0)

    def test_empty_message_is_rejected(self) -> None:
        with self.assertRaises(ValidationFailed):
            chat_service.send(self.db, self.store, self.document.id, '   ')

    def test_sales_manager_reads_but_cannot_send(self) -> None:
        chat_service.send(self.db, self.store, self.document.id, 'hello')

        self.assertEqual(len(chat_service.history(self.db, self.manager, self.document.id)), 1)
        with self.assertRaises(Forbidden):
            chat_service.send(self.db, self.manager, self.document.id, 'hi')

    def test_join_follows_document_visibility(self) -> None:
        outsider = self.make_store(username='store2', dealer_scope='Other Store')

        with self.assertRaises(Forbidden):
            chat_service.join(self.db, outsider, self.document.id)


class ChatHubTests(unittest.IsolatedAsyncioTestCase):
    async def test_broadcast_reaches_every_socket_in_the_room(self) -> None:
        hub = ChatHub()
        first, second, elsewhere = AsyncMock(), AsyncMock(), AsyncMock()
        await hub.connect(1, first)
        await hub.connect(1, second)
        await hub.connect(2, elsewhere)

        await hub.broadcast(1, {'body': 'hello'})

        first.send_json.assert_awaited_once_with({'body': 'hello'})
        second.send_json.assert_awaited_once_with({'body': 'hello'})
        elsewhere.send_json.assert_not_awaited()

    async def test_failing_socket_is_dropped(self) -> None:
        hub = ChatHub()
        healthy, broken = AsyncMock(), AsyncMock()
        broken.send_json.side_effect = RuntimeError('socket closed')
        await hub.connect(1, healthy)
        await hub.connect(1, broken)

        await hub.broadcast(1, {'body': 'hello'})

        self.assertEqual(hub.listeners(1), 1)
        healthy.send_json.assert_awaited_once()

    async def test_disconnect_empties_room(self) -> None:
        hub = ChatHub()
        socket = AsyncMock()
        await hub.connect(3, socket)

        await hub.disconnect(3, socket)
        await hub.disconnect(3, socket)

        self.assertEqual(hub.listeners(3), 0)
