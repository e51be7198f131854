"""
Servicio de diagnóstico general: puertos locales del CRM, endpoints críticos
y estado de cada sistema externo.
"""
import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import aiohttp

from crm_ops.config import settings
from crm_ops.integrations.firestore_client import stream_documents

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINTS = [
    "/api/webhooks/evolution/messages-upsert",
    "/api/v1/a2a",
    "/api/health",
]

STATUS_OK = "OK"
STATUS_ERROR = "ERROR"
STATUS_SKIPPED = "SKIPPED"


class HealthService:
    """Servicio de verificación de salud del sistema."""

    def __init__(self, crm_client=None, evolution_client=None, redis_client=None,
                 firestore_factory=None, rabbitmq_client=None, timeout: int = 5):
        """
        Los componentes no configurados (None) se reportan como SKIPPED.
        firestore_factory es un callable que retorna el cliente de Firestore.
        """
        self.crm_client = crm_client
        self.evolution_client = evolution_client
        self.redis_client = redis_client
        self.firestore_factory = firestore_factory
        self.rabbitmq_client = rabbitmq_client
        self.timeout = timeout

    async def _check_port(self, session: aiohttp.ClientSession, port: int) -> Dict[str, Any]:
        url = f"http://localhost:{port}/"
        try:
            async with session.get(url, timeout=aiohttp.ClientTimeout(total=self.timeout)) as response:
                return {"port": port, "status": "online", "status_code": response.status}
        except asyncio.TimeoutError:
            return {"port": port, "status": "timeout"}
        except aiohttp.ClientError as e:
            return {"port": port, "status": "offline", "error": str(e)}

    async def check_ports(self, ports: Optional[Sequence[int]] = None) -> List[Dict[str, Any]]:
        """Verifica en paralelo qué puertos locales responden."""
        ports = list(ports or settings.CRM_PORTS)
        async with aiohttp.ClientSession() as session:
            return list(await asyncio.gather(*[self._check_port(session, port) for port in ports]))

    async def check_endpoints(self, ports: Optional[Sequence[int]] = None,
                              endpoints: Optional[Sequence[str]] = None) -> List[Dict[str, Any]]:
        """
        Prueba los endpoints críticos en cada puerto.

        Returns:
            Lista con status_code y los primeros 200 caracteres del cuerpo
        """
        ports = list(ports or settings.CRM_PORTS)
        endpoints = list(endpoints or DEFAULT_ENDPOINTS)
        results = []

        async with aiohttp.ClientSession() as session:
            for port in ports:
                for endpoint in endpoints:
                    url = f"http://localhost:{port}{endpoint}"
                    try:
                        async with session.get(url, timeout=aiohttp.ClientTimeout(total=self.timeout)) as response:
                            body = await response.text()
                            results.append({
                                "port": port,
                                "endpoint": endpoint,
                                "status_code": response.status,
                                "body": body[:200]
                            })
                    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                        results.append({
                            "port": port,
                            "endpoint": endpoint,
                            "status_code": None,
                            "error": str(e) or type(e).__name__
                        })
        return results

    async def _run_check(self, name: str, component: Any,
                         check: Callable[[], Awaitable[str]]) -> Dict[str, Any]:
        if component is None:
            return {"component": name, "status": STATUS_SKIPPED, "detail": "no configurado"}
        try:
            detail = await check()
            logger.info(f"✅ {name}: {detail}")
            return {"component": name, "status": STATUS_OK, "detail": detail}
        except Exception as e:
            logger.error(f"❌ {name}: {e}")
            return {"component": name, "status": STATUS_ERROR, "detail": str(e)}

    async def _check_crm(self) -> str:
        tickets = await self.crm_client.list_tickets()
        return f"{len(tickets)} tickets"

    async def _check_evolution(self) -> str:
        instances = await self.evolution_client.fetch_instances()
        return f"{len(instances)} instancias"

    async def _check_redis(self) -> str:
        self.redis_client.ping()
        return "PONG"

    async def _check_firestore(self) -> str:
        db = self.firestore_factory()
        docs = stream_documents(db.collection("tickets").limit(1))
        return f"lectura OK ({len(docs)} documento)"

    async def _check_rabbitmq(self) -> str:
        self.rabbitmq_client.connect()
        return "conexión OK"

    async def diagnose(self) -> Dict[str, Any]:
        """
        Verifica cada componente del sistema.

        Returns:
            Reporte con el estado (OK, ERROR, SKIPPED) de cada componente;
            ok es True si ninguno está en ERROR
        """
        components = [
            await self._run_check("crm", self.crm_client, self._check_crm),
            await self._run_check("evolution", self.evolution_client, self._check_evolution),
            await self._run_check("redis", self.redis_client, self._check_redis),
            await self._run_check("firestore", self.firestore_factory, self._check_firestore),
            await self._run_check("rabbitmq", self.rabbitmq_client, self._check_rabbitmq),
        ]
        return {
            "timestamp": datetime.now().isoformat(),
            "ok": all(c["status"] != STATUS_ERROR for c in components),
            "components": components
        }
