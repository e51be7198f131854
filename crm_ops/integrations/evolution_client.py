"""
Cliente HTTP para la Evolution API (gateway de WhatsApp).
Maneja instancias, configuración de webhooks, envío y consulta de mensajes.
"""
import httpx
import logging
from typing import Any, Dict, List, Optional
from crm_ops.config import settings
from crm_ops.utils.error_handler import with_error_handling, RetryConfig
from crm_ops.utils.identifiers import normalize_jid

logger = logging.getLogger(__name__)


class EvolutionAPIError(Exception):
    """Excepción personalizada para errores de la Evolution API."""

    def __init__(self, message: str, status_code: Optional[int] = None,
                 error_code: Optional[str] = None, response_body: Optional[str] = None):
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.response_body = response_body
        super().__init__(self.message)


def _error_code_for_status(status_code: int) -> str:
    if status_code == 401:
        return "UNAUTHORIZED"
    if status_code == 404:
        return "NOT_FOUND"
    if status_code == 429:
        return "RATE_LIMIT"
    if status_code >= 500:
        return "SERVER_ERROR"
    return "HTTP_ERROR"


class EvolutionClient:
    """Cliente para interactuar con la Evolution API."""

    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None):
        self.base_url = (base_url or settings.EVOLUTION_API_URL).rstrip("/")
        self.headers = settings.get_evolution_headers()
        if api_key:
            self.headers["apikey"] = api_key
        self.timeout = settings.API_TIMEOUT

        # Configuración de reintentos para Evolution
        self.retry_config = RetryConfig(
            max_retries=3,
            base_delay=1.0,
            max_delay=10.0,
            exponential_base=2.0,
            jitter=True
        )

    async def _request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None,
                       params: Optional[Dict[str, Any]] = None) -> Any:
        """
        Ejecuta una llamada a la Evolution API y traduce los errores HTTP.

        Raises:
            EvolutionAPIError: Si la API responde con error o no es alcanzable
        """
        if not self.base_url:
            raise EvolutionAPIError("EVOLUTION_API_URL no está configurada", error_code="CONFIG_ERROR")

        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.request(
                    method,
                    url,
                    headers=self.headers,
                    json=json,
                    params=params
                )
        except httpx.TimeoutException:
            error_msg = f"Timeout en Evolution API: {method} {path}"
            logger.error(error_msg)
            raise EvolutionAPIError(error_msg, error_code="TIMEOUT")
        except httpx.RequestError as e:
            error_msg = f"Evolution API no disponible ({method} {path}): {str(e)}"
            logger.error(error_msg)
            raise EvolutionAPIError(error_msg, error_code="CONNECTION_ERROR")

        if response.status_code >= 400:
            body = response.text
            code = _error_code_for_status(response.status_code)
            error_msg = f"Error HTTP {response.status_code} ({code}) en {method} {path}: {body[:200]}"
            logger.error(error_msg)
            raise EvolutionAPIError(error_msg, status_code=response.status_code,
                                    error_code=code, response_body=body)

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    @with_error_handling("evolution", context={"operation": "fetch_instances"})
    async def fetch_instances(self) -> List[Dict[str, Any]]:
        """Lista todas las instancias registradas en la Evolution API."""
        result = await self._request("GET", "/instance/fetchInstances")
        if isinstance(result, list):
            return result
        return []

    async def find_instance(self, name: str) -> Optional[Dict[str, Any]]:
        """
        Busca una instancia por nombre.

        Acepta tanto el formato antiguo ({"instance": {"instanceName": ...}})
        como el nuevo ({"name": ...}).
        """
        for item in await self.fetch_instances():
            instance = item.get("instance") or {}
            if instance.get("instanceName") == name or item.get("name") == name:
                return item
        return None

    @with_error_handling("evolution", context={"operation": "connection_state"})
    async def connection_state(self, name: str) -> Dict[str, Any]:
        """Obtiene el estado de conexión de una instancia."""
        result = await self._request("GET", f"/instance/connectionState/{name}")
        return result or {}

    @with_error_handling("evolution", context={"operation": "find_webhook"})
    async def find_webhook(self, name: str) -> Dict[str, Any]:
        """Obtiene la configuración actual del webhook de una instancia."""
        result = await self._request("GET", f"/webhook/find/{name}")
        return result or {}

    @with_error_handling("evolution", context={"operation": "set_webhook"})
    async def set_webhook(self, name: str, config: Dict[str, Any]) -> Dict[str, Any]:
        """
        Configura el webhook de una instancia.

        Args:
            name: Nombre de la instancia
            config: Cuerpo completo ({"webhook": {...}})
        """
        result = await self._request("POST", f"/webhook/set/{name}", json=config)
        logger.info(f"Webhook de la instancia '{name}' actualizado")
        return result or {}

    @with_error_handling("evolution", context={"operation": "send_text"})
    async def send_text(self, name: str, number: str, text: str,
                        quoted_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Envía un mensaje de texto.

        Args:
            name: Nombre de la instancia
            number: Teléfono o JID del destinatario
            text: Texto del mensaje
            quoted_id: ID del mensaje citado (opcional)

        Raises:
            ValueError: Si el texto está vacío
        """
        if not text or not text.strip():
            raise ValueError("El texto del mensaje no puede estar vacío")

        jid = normalize_jid(number)
        payload: Dict[str, Any] = {"number": jid, "text": text.strip()}
        if quoted_id:
            payload["options"] = {
                "quoted": {"key": {"remoteJid": jid, "id": quoted_id, "fromMe": False}}
            }

        result = await self._request("POST", f"/message/sendText/{name}", json=payload)
        message_id = (result or {}).get("key", {}).get("id") if isinstance(result, dict) else None
        logger.info(f"Mensaje enviado a {jid} vía '{name}' (id: {message_id})")
        return result or {}

    @with_error_handling("evolution", context={"operation": "find_messages"})
    async def find_messages(self, name: str, remote_jid: str, limit: int = 20) -> List[Dict[str, Any]]:
        """Consulta los últimos mensajes de un chat."""
        result = await self._request(
            "GET",
            f"/chat/findMessages/{name}",
            params={"remoteJid": normalize_jid(remote_jid), "limit": limit}
        )
        if isinstance(result, list):
            return result
        if isinstance(result, dict):
            messages = result.get("messages", [])
            # Evolution v2 pagina los resultados en messages.records
            if isinstance(messages, dict):
                return messages.get("records", [])
            return messages
        return []

    @with_error_handling("evolution", context={"operation": "fetch_logs"})
    async def fetch_logs(self, name: str) -> List[Dict[str, Any]]:
        """Obtiene los logs de una instancia (no todas las versiones lo exponen)."""
        result = await self._request("GET", f"/instance/logs/{name}")
        if isinstance(result, list):
            return result
        if isinstance(result, dict):
            return result.get("logs", [])
        return []
