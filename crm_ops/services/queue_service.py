"""
Servicio de diagnóstico de RabbitMQ: topología, estado de colas y ruta de envío del CRM.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from crm_ops.config import settings
from crm_ops.integrations.crm_client import CRMAPIError
from crm_ops.integrations.rabbitmq_client import RabbitMQError, dlq_name, publish_key

logger = logging.getLogger(__name__)


class QueueService:
    """Servicio para operar sobre las colas de mensajes del CRM."""

    def __init__(self, rabbitmq_client, crm_client=None):
        self.rabbitmq = rabbitmq_client
        self.crm_client = crm_client
        self.queues = dict(settings.RABBITMQ_QUEUES)

    async def setup_topology(self) -> Dict[str, Any]:
        """Declara el exchange, las colas y sus DLQs."""
        return self.rabbitmq.declare_topology(queues=list(self.queues.values()))

    async def publish_test_message(self, queue: str = "outbound") -> Dict[str, Any]:
        """
        Publica un mensaje de prueba con la routing key que enruta a la cola
        (message.outbound, message.inbound o webhook.test).

        Args:
            queue: Alias (outbound, inbound, webhooks) o nombre completo de la cola
        """
        target = self.queues.get(queue, queue)
        routing_key = publish_key(target)
        message = {
            "type": "test",
            "id": str(uuid.uuid4()),
            "text": "Mensaje de prueba de crm-ops",
            "createdAt": datetime.now(timezone.utc).isoformat()
        }
        message_id = self.rabbitmq.publish(routing_key, message, message_id=message["id"])
        return {"queue": target, "routing_key": routing_key, "message_id": message_id}

    async def queue_report(self) -> List[Dict[str, Any]]:
        """Mensajes y consumidores de cada cola y su DLQ."""
        report = []
        for alias, queue in self.queues.items():
            for name in (queue, dlq_name(queue)):
                try:
                    stats = self.rabbitmq.queue_stats(name)
                    report.append({"alias": alias, **stats, "exists": True})
                except RabbitMQError as e:
                    logger.warning(f"⚠️ {e}")
                    report.append({"alias": alias, "queue": name, "exists": False})
        return report

    async def check_api_route(self, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Verifica la ruta /api/rabbitmq/send-message del CRM (GET y, si hay payload, POST)."""
        result: Dict[str, Any] = {}
        try:
            result["status"] = await self.crm_client.rabbitmq_status()
            result["get_ok"] = True
        except CRMAPIError as e:
            result["get_ok"] = False
            result["get_error"] = str(e)

        if payload is not None:
            try:
                result["send"] = await self.crm_client.rabbitmq_send(payload)
                result["post_ok"] = True
            except CRMAPIError as e:
                result["post_ok"] = False
                result["post_error"] = str(e)
        return result
