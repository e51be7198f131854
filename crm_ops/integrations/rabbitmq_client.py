"""
Cliente bloqueante de RabbitMQ (pika) para declarar la topología del CRM,
publicar mensajes de prueba y consultar el estado de las colas.
"""
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

import pika
import pika.exceptions

from crm_ops.config import settings
from crm_ops.utils.error_handler import with_error_handling

logger = logging.getLogger(__name__)


class RabbitMQError(Exception):
    """Error al operar con RabbitMQ."""
    pass


# Argumentos con los que la aplicación del CRM declara sus colas; redeclarar con
# otros valores provoca PRECONDITION_FAILED (406) en el broker
QUEUE_MESSAGE_TTL_MS = 3_600_000
DLQ_MESSAGE_TTL_MS = 86_400_000


def dlq_name(queue: str) -> str:
    """Nombre de la dead-letter queue de una cola."""
    return f"{queue}.dlq"


def binding_key(queue: str) -> str:
    """Routing key con la que la aplicación enlaza cada cola al exchange."""
    if "outbound" in queue:
        return "message.outbound"
    if "inbound" in queue:
        return "message.inbound"
    return "webhook.*"


def publish_key(queue: str, event: str = "test") -> str:
    """Routing key para publicar un mensaje que llegue a la cola."""
    return binding_key(queue).replace("*", event)


class RabbitMQClient:
    """Cliente para RabbitMQ basado en pika.BlockingConnection."""

    def __init__(self, url: Optional[str] = None, exchange: Optional[str] = None):
        self.url = url or settings.RABBITMQ_URL
        self.exchange = exchange or settings.RABBITMQ_EXCHANGE
        self.connection = None
        self.channel = None

    @with_error_handling("rabbitmq", context={"operation": "connect"})
    def connect(self):
        """
        Abre la conexión y el canal.

        Raises:
            RabbitMQError: Si RABBITMQ_URL no está configurada
        """
        if not self.url:
            raise RabbitMQError("RABBITMQ_URL no está configurada")
        if self.channel is not None and self.channel.is_open:
            return self.channel

        if self.connection is None or not self.connection.is_open:
            self.connection = pika.BlockingConnection(pika.URLParameters(self.url))
            logger.info("✅ Conectado a RabbitMQ")
        self.channel = self.connection.channel()
        return self.channel

    @with_error_handling("rabbitmq", context={"operation": "declare_topology"})
    def declare_topology(self, exchange: Optional[str] = None,
                         queues: Optional[Iterable[str]] = None) -> Dict[str, Any]:
        """
        Declara el exchange topic, las colas con su DLQ y los bindings.

        Igual que la aplicación del CRM: cada cola es durable con x-message-ttl de
        1 hora, x-dead-letter-exchange=<exchange> y x-dead-letter-routing-key=<cola>.dlq,
        enlazada con message.outbound, message.inbound o webhook.*; la DLQ es
        durable con x-message-ttl de 24 horas y se enlaza con su propio nombre.
        """
        channel = self.connect()
        exchange = exchange or self.exchange
        queue_names = list(queues) if queues is not None else list(settings.RABBITMQ_QUEUES.values())

        channel.exchange_declare(exchange=exchange, exchange_type="topic", durable=True)

        declared = []
        for queue in queue_names:
            dead_letter = dlq_name(queue)
            channel.queue_declare(
                queue=dead_letter,
                durable=True,
                arguments={"x-message-ttl": DLQ_MESSAGE_TTL_MS}
            )
            channel.queue_bind(queue=dead_letter, exchange=exchange, routing_key=dead_letter)

            channel.queue_declare(
                queue=queue,
                durable=True,
                arguments={
                    "x-message-ttl": QUEUE_MESSAGE_TTL_MS,
                    "x-dead-letter-exchange": exchange,
                    "x-dead-letter-routing-key": dead_letter
                }
            )
            routing_key = binding_key(queue)
            channel.queue_bind(queue=queue, exchange=exchange, routing_key=routing_key)
            declared.append({"queue": queue, "dlq": dead_letter, "routing_key": routing_key})
            logger.info(f"Cola declarada: {queue} (DLQ {dead_letter})")

        return {"exchange": exchange, "queues": declared}

    @with_error_handling("rabbitmq", context={"operation": "publish"})
    def publish(self, routing_key: str, message: Dict[str, Any],
                message_id: Optional[str] = None) -> str:
        """
        Publica un mensaje JSON persistente en el exchange.

        Returns:
            El message_id usado
        """
        channel = self.connect()
        message_id = message_id or str(uuid.uuid4())
        properties = pika.BasicProperties(
            content_type="application/json",
            delivery_mode=2,
            message_id=message_id,
            timestamp=int(datetime.now(timezone.utc).timestamp())
        )
        channel.basic_publish(
            exchange=self.exchange,
            routing_key=routing_key,
            body=json.dumps(message, ensure_ascii=False, default=str).encode("utf-8"),
            properties=properties
        )
        logger.info(f"Mensaje {message_id} publicado en {self.exchange} -> {routing_key}")
        return message_id

    @with_error_handling("rabbitmq", context={"operation": "queue_stats"})
    def queue_stats(self, queue: str) -> Dict[str, Any]:
        """
        Consulta mensajes y consumidores de una cola mediante una declaración pasiva.

        Raises:
            RabbitMQError: Si la cola no existe
        """
        channel = self.connect()
        try:
            result = channel.queue_declare(queue=queue, passive=True)
        except pika.exceptions.ChannelClosedByBroker as e:
            # El broker cierra el canal cuando la cola no existe (404)
            self.channel = None
            raise RabbitMQError(f"La cola {queue} no existe: {e}")
        return {
            "queue": queue,
            "messages": result.method.message_count,
            "consumers": result.method.consumer_count
        }

    def close(self) -> None:
        """Cierra la conexión si está abierta."""
        if self.connection is not None and self.connection.is_open:
            self.connection.close()
        self.connection = None
        self.channel = None
