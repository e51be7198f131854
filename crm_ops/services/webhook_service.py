"""
Servicio de configuración y prueba del webhook de la Evolution API.

Reduce los reintentos del webhook (de 10 a 1, política lineal) para evitar
loops de reentrega, verifica la conectividad del receptor del CRM y permite
simular mensajes entrantes.
"""
import logging
import time
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, Field

from crm_ops.config import settings
from crm_ops.integrations.evolution_client import EvolutionAPIError
from crm_ops.utils.identifiers import jid_to_phone, normalize_jid

logger = logging.getLogger(__name__)

DEFAULT_EVENTS = [
    "MESSAGES_UPSERT",
    "MESSAGES_UPDATE",
    "CHATS_UPSERT",
    "CHATS_UPDATE",
    "CONNECTION_UPDATE",
    "PRESENCE_UPDATE",
]


class WebhookSettings(BaseModel):
    """Configuración del webhook de una instancia de Evolution."""
    enabled: bool = Field(True, description="Webhook activo")
    url: str = Field(..., description="URL del receptor del CRM")
    webhook_by_events: bool = Field(True, description="Una ruta por evento")
    webhook_base64: bool = Field(True, description="Medios en base64")
    events: List[str] = Field(default_factory=lambda: list(DEFAULT_EVENTS), description="Eventos suscritos")
    webhook_timeout: int = Field(3000, description="Timeout de entrega (ms)")
    webhook_retry_count: int = Field(1, description="Reintentos de entrega")
    webhook_retry_interval: int = Field(2000, description="Intervalo entre reintentos (ms)")
    webhook_delay: int = Field(500, description="Retardo entre webhooks (ms)")
    webhook_retry_policy: str = Field("linear", description="Política de reintentos")


def build_optimized_config(url: str, events: Optional[List[str]] = None) -> Dict[str, Any]:
    """Cuerpo de /webhook/set con la configuración optimizada."""
    webhook = WebhookSettings(url=url, events=events or list(DEFAULT_EVENTS))
    return {"webhook": webhook.model_dump()}


def build_disabled_config(url: str) -> Dict[str, Any]:
    """Cuerpo de /webhook/set con el webhook desactivado (configuración de respaldo)."""
    webhook = WebhookSettings(enabled=False, url=url)
    return {"webhook": webhook.model_dump()}


def build_test_event(instance: str, remote_jid: str, text: str,
                     push_name: str = "Cliente Teste") -> Dict[str, Any]:
    """Construye un evento messages.upsert como los que envía la Evolution API."""
    jid = normalize_jid(remote_jid)
    return {
        "event": "messages.upsert",
        "instance": instance,
        "data": {
            "key": {
                "remoteJid": jid,
                "fromMe": False,
                "id": f"TEST_MESSAGE_{int(time.time() * 1000)}"
            },
            "messageType": "conversation",
            "message": {"conversation": text},
            "messageTimestamp": int(time.time()),
            "pushName": push_name
        }
    }


class WebhookService:
    """Servicio para diagnosticar y ajustar el webhook de Evolution."""

    def __init__(self, evolution_client, crm_client=None):
        self.evolution_client = evolution_client
        self.crm_client = crm_client
        self.timeout = 5

    async def check_connectivity(self, url: str) -> Dict[str, Any]:
        """
        Verifica que la URL del webhook responda.

        Cualquier respuesta HTTP cuenta como alcanzable.
        """
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(url)
            logger.info(f"✅ Webhook accesible - status {response.status_code}")
            return {"reachable": True, "status_code": response.status_code}
        except httpx.HTTPError as e:
            logger.warning(f"❌ Webhook no accesible: {e}")
            return {"reachable": False, "error": str(e)}

    async def check_instance_status(self, name: str) -> Optional[Dict[str, Any]]:
        """Retorna la instancia con su estado de conexión, o None si no existe."""
        instance = await self.evolution_client.find_instance(name)
        if instance is None:
            logger.warning(f"⚠️ Instancia '{name}' no encontrada")
            return None

        state = await self.evolution_client.connection_state(name)
        status = (state.get("instance") or {}).get("state") or state.get("state")
        return {"name": name, "state": status, "instance": instance}

    async def configure_optimized_webhook(self, name: str, url: str) -> Dict[str, Any]:
        """
        Aplica la configuración optimizada.

        Si falla, intenta dejar el webhook desactivado para cortar los loops de
        reentrega y reporta success=False con fallback_configured.
        """
        config = build_optimized_config(url)
        try:
            response = await self.evolution_client.set_webhook(name, config)
            logger.info(f"✅ Webhook optimizado configurado en '{name}' (1 reintento, lineal)")
            return {"success": True, "config": config["webhook"], "response": response}
        except EvolutionAPIError as e:
            logger.error(f"❌ Error al configurar webhook optimizado: {e}")
            original_error = str(e)

        try:
            await self.evolution_client.set_webhook(name, build_disabled_config(url))
            logger.warning(f"⚠️ Webhook de '{name}' desactivado como respaldo")
            return {"success": False, "fallback_configured": True, "error": original_error}
        except EvolutionAPIError as e:
            logger.error(f"❌ Tampoco se pudo desactivar el webhook: {e}")
            return {"success": False, "fallback_configured": False, "error": original_error}

    async def recent_retry_errors(self, name: str, limit: int = 5) -> Dict[str, Any]:
        """Últimos errores de reintento ("Tentativa") en los logs de la instancia."""
        try:
            logs = await self.evolution_client.fetch_logs(name)
        except EvolutionAPIError as e:
            return {"available": False, "errors": [], "note": f"Logs no disponibles: {e}"}

        errors = [
            log for log in logs
            if log.get("level") == "ERROR" and "Tentativa" in (log.get("message") or "")
        ]
        return {"available": True, "errors": errors[-limit:]}

    async def fix_retries(self, name: Optional[str] = None, url: Optional[str] = None) -> Dict[str, Any]:
        """
        Flujo completo: conectividad, estado de la instancia, configuración y logs.
        """
        name = name or settings.EVOLUTION_INSTANCE_NAME
        url = url or settings.EVOLUTION_WEBHOOK_URL
        if not url:
            raise ValueError("Indique la URL del webhook o configure EVOLUTION_WEBHOOK_URL")

        connectivity = await self.check_connectivity(url)
        if not connectivity["reachable"]:
            logger.warning("⚠️ El webhook no responde; se configura igualmente")

        return {
            "connectivity": connectivity,
            "instance": await self.check_instance_status(name),
            "configuration": await self.configure_optimized_webhook(name, url),
            "logs": await self.recent_retry_errors(name)
        }

    async def simulate_message(self, remote_jid: str, text: str,
                               instance: Optional[str] = None) -> Dict[str, Any]:
        """Envía un messages.upsert simulado al receptor del CRM."""
        if self.crm_client is None:
            raise ValueError("Se requiere el cliente del CRM para simular mensajes")

        event = build_test_event(instance or settings.EVOLUTION_INSTANCE_NAME, remote_jid, text)
        response = await self.crm_client.post_webhook_event("messages-upsert", event)
        logger.info(f"📨 Mensaje simulado de {jid_to_phone(event['data']['key']['remoteJid'])} entregado")
        return {"event": event, "response": response}
