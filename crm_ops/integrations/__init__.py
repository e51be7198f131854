"""
Módulo de integraciones con los sistemas externos.
"""
from .crm_client import CRMAPIError, CRMClient
from .evolution_client import EvolutionAPIError, EvolutionClient
from .firestore_client import FirestoreConfigError, get_firestore_client
from .postgres_client import DatabaseConfigError, EvoAIDatabase, get_connection
from .rabbitmq_client import RabbitMQClient, RabbitMQError
from .redis_client import RedisCheckError, RedisClient

__all__ = [
    "CRMAPIError",
    "CRMClient",
    "EvolutionAPIError",
    "EvolutionClient",
    "FirestoreConfigError",
    "get_firestore_client",
    "DatabaseConfigError",
    "EvoAIDatabase",
    "get_connection",
    "RabbitMQClient",
    "RabbitMQError",
    "RedisCheckError",
    "RedisClient",
]
