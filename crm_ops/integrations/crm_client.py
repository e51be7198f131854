"""
Cliente HTTP para la API Next.js del CRM.
Cubre tickets, agentes, mensajes, la ruta de RabbitMQ, los webhooks de Evolution
y la superficie A2A (/api/v1/a2a).
"""
import httpx
import logging
from typing import Any, Dict, List, Optional
from crm_ops.config import settings
from crm_ops.utils.error_handler import with_error_handling, RetryConfig

logger = logging.getLogger(__name__)

A2A_PREFIX = "/api/v1/a2a"


class CRMAPIError(Exception):
    """Excepción personalizada para errores de la API del CRM."""

    def __init__(self, message: str, status_code: Optional[int] = None,
                 response_body: Optional[str] = None, error_code: Optional[str] = None):
        self.message = message
        self.status_code = status_code
        self.response_body = response_body
        self.error_code = error_code
        super().__init__(self.message)


class CRMClient:
    """Cliente para interactuar con la API del CRM."""

    def __init__(self, base_url: Optional[str] = None):
        self.base_url = (base_url or settings.CRM_BASE_URL).rstrip("/")
        self.headers = settings.get_crm_headers()
        self.a2a_headers = settings.get_a2a_headers()
        self.timeout = settings.API_TIMEOUT

        # El CRM corre localmente: pocos reintentos y cortos
        self.retry_config = RetryConfig(
            max_retries=2,
            base_delay=0.5,
            max_delay=5.0,
            exponential_base=2.0,
            jitter=True
        )

    async def _send(self, method: str, path: str, base_url: Optional[str] = None,
                    headers: Optional[Dict[str, str]] = None, **kwargs) -> httpx.Response:
        root = base_url or self.base_url
        if not root:
            raise CRMAPIError("CRM_BASE_URL no está configurada", error_code="CONFIG_ERROR")
        url = f"{root.rstrip('/')}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                return await client.request(method, url, headers=headers or self.headers, **kwargs)
        except httpx.TimeoutException:
            error_msg = f"Timeout en la API del CRM: {method} {path}"
            logger.error(error_msg)
            raise CRMAPIError(error_msg, error_code="TIMEOUT")
        except httpx.RequestError as e:
            error_msg = f"API del CRM no disponible ({method} {url}): {str(e)}"
            logger.error(error_msg)
            raise CRMAPIError(error_msg, error_code="CONNECTION_ERROR")

    async def _request(self, method: str, path: str, headers: Optional[Dict[str, str]] = None,
                       **kwargs) -> Any:
        """
        Ejecuta una llamada y devuelve el JSON de la respuesta.

        Raises:
            CRMAPIError: Si la API responde con error o no es alcanzable
        """
        response = await self._send(method, path, headers=headers, **kwargs)

        if response.status_code >= 400:
            body = response.text
            error_msg = f"Error HTTP {response.status_code} en {method} {path}: {body[:200]}"
            logger.error(error_msg)
            raise CRMAPIError(error_msg, status_code=response.status_code, response_body=body)

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    # Tickets

    @with_error_handling("crm", context={"operation": "list_tickets"})
    async def list_tickets(self, instance: Optional[str] = None) -> List[Dict[str, Any]]:
        """Lista los tickets de una instancia."""
        params = {"instance": instance or settings.EVOLUTION_INSTANCE_NAME}
        result = await self._request("GET", "/api/tickets", params=params)
        if isinstance(result, dict):
            return result.get("tickets", result.get("data", []))
        return result or []

    @with_error_handling("crm", context={"operation": "get_ticket_agent"})
    async def get_ticket_agent(self, ticket_id: str) -> Dict[str, Any]:
        """Obtiene el agente asignado a un ticket."""
        return await self._request("GET", f"/api/tickets/{ticket_id}/agent") or {}

    @with_error_handling("crm", context={"operation": "assign_agent"})
    async def assign_agent(self, ticket_id: str, agent_id: str, mode: str = "immediate",
                           auto_response: bool = True, max_interactions: int = 10) -> Dict[str, Any]:
        """
        Asigna un agente a un ticket a través de la API del CRM.

        Args:
            ticket_id: ID del ticket
            agent_id: ID del agente en Firestore
            mode: Modo de activación (immediate, manual, ...)
            auto_response: Si el agente responde automáticamente
            max_interactions: Máximo de interacciones por ticket
        """
        payload = {
            "agentId": agent_id,
            "mode": mode,
            "autoResponse": auto_response,
            "maxInteractionsPerTicket": max_interactions
        }
        result = await self._request("POST", f"/api/tickets/{ticket_id}/agent", json=payload)
        logger.info(f"Agente {agent_id} asignado al ticket {ticket_id} vía API")
        return result or {}

    # Agentes

    @with_error_handling("crm", context={"operation": "list_agents"})
    async def list_agents(self) -> List[Dict[str, Any]]:
        """Lista los agentes registrados en el CRM."""
        result = await self._request("GET", "/api/agents")
        if isinstance(result, dict):
            return result.get("agents", result.get("data", []))
        return result or []

    @with_error_handling("crm", context={"operation": "get_agent"})
    async def get_agent(self, agent_id: str) -> Optional[Dict[str, Any]]:
        """Obtiene un agente. Retorna None si el CRM no lo conoce (404)."""
        try:
            return await self._request("GET", f"/api/agents/{agent_id}")
        except CRMAPIError as e:
            if e.status_code == 404:
                return None
            raise

    # Mensajes

    @with_error_handling("crm", context={"operation": "list_messages"})
    async def list_messages(self, instance: str, remote_jid: str, limit: int = 50) -> List[Dict[str, Any]]:
        """Lista los mensajes de una conversación."""
        params = {"instance": instance, "remoteJid": remote_jid, "limit": limit}
        result = await self._request("GET", "/api/messages", params=params)
        if isinstance(result, dict):
            return result.get("messages", result.get("data", []))
        return result or []

    @with_error_handling("crm", context={"operation": "post_message"})
    async def post_message(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Envía un mensaje a través del endpoint /api/messages."""
        return await self._request("POST", "/api/messages", json=payload) or {}

    # RabbitMQ

    @with_error_handling("crm", context={"operation": "rabbitmq_status"})
    async def rabbitmq_status(self) -> Dict[str, Any]:
        """Consulta el estado de la ruta de envío vía RabbitMQ."""
        return await self._request("GET", "/api/rabbitmq/send-message") or {}

    @with_error_handling("crm", context={"operation": "rabbitmq_send"})
    async def rabbitmq_send(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Encola un mensaje a través de la ruta /api/rabbitmq/send-message."""
        return await self._request("POST", "/api/rabbitmq/send-message", json=payload) or {}

    # Webhooks y sondeo

    @with_error_handling("crm", context={"operation": "post_webhook_event"})
    async def post_webhook_event(self, event: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Publica un evento en el receptor de webhooks de Evolution del CRM.

        Args:
            event: Nombre del endpoint (p.ej. messages-upsert)
            payload: Cuerpo del evento
        """
        result = await self._request("POST", f"/api/webhooks/evolution/{event}", json=payload)
        logger.info(f"Evento '{event}' entregado al CRM")
        return result if isinstance(result, dict) else {"response": result}

    async def probe(self, path: str, base_url: Optional[str] = None) -> Dict[str, Any]:
        """
        Sondea una ruta sin interpretar el código de estado.

        Returns:
            Dict con status_code, ok y los primeros 200 caracteres del cuerpo
        """
        response = await self._send("GET", path, base_url=base_url)
        return {
            "status_code": response.status_code,
            "ok": response.status_code < 400,
            "body": response.text[:200]
        }

    # A2A

    @with_error_handling("a2a", context={"operation": "a2a_list_agents"})
    async def a2a_list_agents(self) -> Any:
        """Lista los agentes expuestos por la API A2A."""
        return await self._request("GET", A2A_PREFIX, headers=self.a2a_headers)

    @with_error_handling("a2a", context={"operation": "a2a_get_agent"})
    async def a2a_get_agent(self, agent_id: str) -> Dict[str, Any]:
        """Obtiene un agente A2A."""
        return await self._request("GET", f"{A2A_PREFIX}/{agent_id}", headers=self.a2a_headers) or {}

    @with_error_handling("a2a", context={"operation": "a2a_agent_card"})
    async def a2a_agent_card(self, agent_id: str) -> Dict[str, Any]:
        """Obtiene el agent card (/.well-known/agent.json) de un agente."""
        path = f"{A2A_PREFIX}/{agent_id}/.well-known/agent.json"
        return await self._request("GET", path, headers=self.a2a_headers) or {}

    @with_error_handling("a2a", context={"operation": "a2a_execute"})
    async def a2a_execute(self, agent_id: str, input_text: str,
                          context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Ejecuta un agente A2A con un texto de entrada."""
        payload = {"input": input_text, "context": context or {}}
        path = f"{A2A_PREFIX}/{agent_id}/execute"
        return await self._request("POST", path, headers=self.a2a_headers, json=payload) or {}

    async def a2a_describe(self) -> Dict[str, Any]:
        """Consulta los métodos permitidos de la API A2A (HTTP OPTIONS)."""
        response = await self._send("OPTIONS", A2A_PREFIX, headers=self.a2a_headers)
        return {
            "status_code": response.status_code,
            "allow": response.headers.get("allow") or response.headers.get("access-control-allow-methods")
        }
