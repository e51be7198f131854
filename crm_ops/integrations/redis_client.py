"""
Cliente de Redis para verificar la caché del CRM.
"""
import logging
import time
from typing import Any, Dict, Optional

import redis

from crm_ops.config import settings
from crm_ops.utils.error_handler import with_error_handling

logger = logging.getLogger(__name__)


class RedisCheckError(Exception):
    """Error durante la verificación de Redis."""
    pass


class RedisClient:
    """Cliente de diagnóstico de Redis."""

    def __init__(self, host: Optional[str] = None, port: Optional[int] = None,
                 username: Optional[str] = None, password: Optional[str] = None):
        self.client = redis.Redis(
            host=host or settings.REDIS_HOST,
            port=port or settings.REDIS_PORT,
            username=username or settings.REDIS_USERNAME,
            password=password or settings.REDIS_PASSWORD,
            socket_connect_timeout=settings.API_TIMEOUT,
            socket_timeout=settings.API_TIMEOUT,
            decode_responses=True
        )

    @with_error_handling("redis", context={"operation": "ping"})
    def ping(self) -> bool:
        """Envía PING al servidor."""
        return bool(self.client.ping())

    @with_error_handling("redis", context={"operation": "server_info"})
    def server_info(self) -> Dict[str, Any]:
        """Retorna versión, modo y uptime del servidor."""
        info = self.client.info("server")
        return {
            "redis_version": info.get("redis_version"),
            "redis_mode": info.get("redis_mode"),
            "uptime_in_seconds": info.get("uptime_in_seconds")
        }

    @with_error_handling("redis", context={"operation": "round_trip"})
    def round_trip(self, key: str = "crm-ops:healthcheck", ttl: int = 30) -> Dict[str, Any]:
        """
        Escribe, lee y borra una clave de prueba con TTL.

        Raises:
            RedisCheckError: Si el valor leído no coincide con el escrito
        """
        value = f"ok-{int(time.time())}"
        self.client.set(key, value, ex=ttl)
        read_back = self.client.get(key)
        self.client.delete(key)

        if read_back != value:
            raise RedisCheckError(f"Valor inesperado en {key}: {read_back!r}")
        return {"key": key, "value": value, "ttl": ttl}

    def close(self) -> None:
        self.client.close()
