"""
Pruebas unitarias para MessageService.
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, Mock

import pytest

from crm_ops.services.message_service import MessageService, compute_message_fixes, group_duplicates
from crm_ops.services.metrics_service import ServiceType, metrics_service


class TestComputeMessageFixes:
    """Pruebas para la normalización de un mensaje."""

    def test_complete_message(self):
        """Un mensaje completo no necesita cambios."""
        data = {
            "sender": "client", "isFromMe": False, "timestamp": datetime.now(timezone.utc),
            "messageId": "A1", "content": "oi", "type": "conversation", "pushName": "Maria"
        }

        assert compute_message_fixes(data) == {}

    def test_sender_from_is_from_me(self):
        """isFromMe define el remitente."""
        assert compute_message_fixes({"isFromMe": True, "pushName": "x"}) == {"sender": "agent"}
        assert compute_message_fixes({"sender": "undefined", "isFromMe": False, "pushName": "x"}) == {
            "sender": "client"
        }

    def test_sender_from_key(self):
        """Sin isFromMe se usa key.fromMe y se completa isFromMe."""
        updates = compute_message_fixes({"key": {"fromMe": True, "id": "K1"}})

        assert updates["sender"] == "agent"
        assert updates["isFromMe"] is True
        assert updates["messageId"] == "K1"
        assert updates["pushName"] == "Agente"

    def test_default_sender(self):
        """Sin información el mensaje se atribuye al cliente."""
        updates = compute_message_fixes({})

        assert updates == {"sender": "client", "isFromMe": False, "pushName": "Cliente"}

    def test_copies_legacy_fields(self):
        """Se copian messageTimestamp, body, messageType y senderName."""
        updates = compute_message_fixes({
            "sender": "client",
            "messageTimestamp": "1700000000",
            "body": "Olá",
            "messageType": "conversation",
            "senderName": "Maria",
        })

        assert updates == {
            "timestamp": datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc),
            "content": "Olá",
            "type": "conversation",
            "pushName": "Maria",
        }

    def test_millisecond_timestamp(self):
        """messageTimestamp en milisegundos (Date.now()) se convierte igual que en segundos."""
        updates = compute_message_fixes({
            "sender": "client", "pushName": "Maria", "messageTimestamp": 1700000000000
        })

        assert updates == {"timestamp": datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)}

    @pytest.mark.parametrize("value", ["abc", "1e400", {"low": 1}])
    def test_invalid_timestamp_is_skipped(self, value):
        """Un messageTimestamp inválido no impide corregir los demás campos."""
        updates = compute_message_fixes({"messageTimestamp": value, "body": "oi"})

        assert "timestamp" not in updates
        assert updates["content"] == "oi"


def _doc(doc_id, data):
    doc = Mock()
    doc.id = doc_id
    doc.to_dict.return_value = data
    return doc


class TestGroupDuplicates:
    """Pruebas para la agrupación de duplicados."""

    def test_oldest_copy_first(self):
        """La copia más antigua queda primero; en empate, el menor ID."""
        docs = [
            _doc("c", {"messageId": "M1", "messageTimestamp": 300}),
            _doc("b", {"messageId": "M1", "messageTimestamp": 100}),
            _doc("a", {"key": {"id": "M1"}, "messageTimestamp": 100}),
            _doc("d", {"messageId": "M2"}),
            _doc("e", {"content": "sin id"}),
        ]

        groups = group_duplicates(docs)

        assert [d.id for d in groups["M1"]] == ["a", "b", "c"]
        assert [d.id for d in groups["M2"]] == ["d"]
        assert len(groups) == 2

    def test_undated_copy_is_not_kept(self):
        """Una copia sin fecha nunca se conserva frente a una fechada."""
        docs = [
            _doc("a", {"messageId": "M1"}),
            _doc("z", {"messageId": "M1", "timestamp": datetime(2024, 1, 1)}),
        ]

        assert [d.id for d in group_duplicates(docs)["M1"]] == ["z", "a"]


class TestMessageService:
    """Pruebas para la clase MessageService."""

    @pytest.mark.asyncio
    async def test_repair_commits_in_batches_of_500(self, fake_firestore):
        """Las escrituras se confirman en lotes de hasta 500."""
        db = fake_firestore({
            "messages": {f"m{i:04d}": {"key": {"id": f"K{i}", "fromMe": False}} for i in range(1201)}
        })
        service = MessageService(db)

        result = await service.repair_messages()

        assert result["total"] == 1201
        assert result["needs_fix"] == 1201
        assert result["fixed"] == 1201
        assert result["fields"]["messageId"] == 1201
        assert db.commits == [500, 500, 201]
        assert db.data["messages"]["m0000"]["sender"] == "client"
        assert db.data["messages"]["m0000"]["messageId"] == "K0"

    @pytest.mark.asyncio
    async def test_repair_dry_run(self, fake_firestore):
        """El dry-run no escribe."""
        db = fake_firestore({"messages": {"m1": {}, "m2": {"sender": "agent", "pushName": "Ana"}}})
        service = MessageService(db)

        result = await service.repair_messages(dry_run=True)

        assert result["needs_fix"] == 1
        assert result["fixed"] == 0
        assert db.commits == []

    @pytest.mark.asyncio
    async def test_repair_continues_after_bad_timestamps(self, fake_firestore):
        """Los mensajes con timestamps en milisegundos o inválidos no abortan la reparación."""
        db = fake_firestore({
            "messages": {
                "ms": {"sender": "client", "pushName": "Maria", "messageTimestamp": 1700000000000},
                "bad": {"sender": "client", "pushName": "Maria", "messageTimestamp": "ontem", "body": "oi"},
            }
        })
        service = MessageService(db)

        result = await service.repair_messages()

        assert result["fixed"] == 2
        assert db.data["messages"]["ms"]["timestamp"] == datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)
        assert "timestamp" not in db.data["messages"]["bad"]
        assert db.data["messages"]["bad"]["content"] == "oi"
        metrics = metrics_service.get_service_metrics(ServiceType.FIRESTORE)
        assert metrics["successful_requests"] == 2

    @pytest.mark.asyncio
    async def test_find_and_remove_duplicates(self, fake_firestore):
        """Prueba el reporte y la eliminación de duplicados."""
        db = fake_firestore({
            "messages": {
                "a": {"messageId": "M1", "messageTimestamp": 100},
                "b": {"messageId": "M1", "messageTimestamp": 200},
                "c": {"messageId": "M1", "messageTimestamp": 300},
                "d": {"messageId": "M2", "messageTimestamp": 100},
            }
        })
        service = MessageService(db)

        report = await service.find_duplicates()

        assert report["total_messages"] == 4
        assert report["unique_message_ids"] == 2
        assert report["duplicate_messages"] == 2
        assert report["duplicate_rate"] == 50.0
        assert report["top_duplicates"] == [{"messageId": "M1", "count": 3, "keep": "a", "remove": ["b", "c"]}]

        dry = await service.remove_duplicates(dry_run=True)
        assert dry["to_delete"] == 2
        assert dry["deleted"] == 0
        assert len(db.data["messages"]) == 4

        result = await service.remove_duplicates()
        assert result["deleted"] == 2
        assert sorted(db.data["messages"]) == ["a", "d"]

    @pytest.mark.asyncio
    async def test_find_duplicates_empty(self, fake_firestore):
        """Sin mensajes la tasa es cero."""
        report = await MessageService(fake_firestore()).find_duplicates()

        assert report["duplicate_rate"] == 0.0
        assert report["top_duplicates"] == []

    @pytest.mark.asyncio
    async def test_check_sent_messages(self):
        """Solo cuentan como recientes los mensajes del bot dentro de la ventana."""
        now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        base = int(now.timestamp())
        evolution = Mock()
        evolution.find_messages = AsyncMock(return_value=[
            {"key": {"id": "B1", "fromMe": True}, "messageTimestamp": base - 60,
             "message": {"conversation": "Olá, posso ajudar?"}},
            {"key": {"id": "B2", "fromMe": True}, "messageTimestamp": base - 3600},
            {"key": {"id": "C1", "fromMe": False}, "messageTimestamp": base - 30},
            {"key": {"id": "B3", "fromMe": True}},
        ])
        service = MessageService(evolution_client=evolution)

        result = await service.check_sent_messages("loja", "5511999998888", window_minutes=10, now=now)

        evolution.find_messages.assert_awaited_once_with("loja", "5511999998888", 10)
        assert result["total"] == 4
        assert result["bot_messages"] == 3
        assert result["recent_bot_messages"] == [{
            "id": "B1",
            "sent_at": "2024-05-01T11:59:00+00:00",
            "text": "Olá, posso ajudar?"
        }]

    @pytest.mark.asyncio
    async def test_check_sent_messages_millisecond_timestamps(self):
        """Los timestamps en milisegundos también entran en la ventana."""
        now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        evolution = Mock()
        evolution.find_messages = AsyncMock(return_value=[
            {"key": {"id": "B1", "fromMe": True}, "messageTimestamp": int(now.timestamp() * 1000) - 60000},
            {"key": {"id": "B2", "fromMe": True}, "messageTimestamp": "invalido"},
        ])
        service = MessageService(evolution_client=evolution)

        result = await service.check_sent_messages("loja", "5511999998888", now=now)

        assert [m["id"] for m in result["recent_bot_messages"]] == ["B1"]
