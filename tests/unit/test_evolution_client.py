"""
Pruebas unitarias para EvolutionClient.
"""

from unittest.mock import AsyncMock, patch

import httpx
import pytest

from crm_ops.integrations.evolution_client import EvolutionClient, EvolutionAPIError
from crm_ops.services.metrics_service import ServiceType, metrics_service
from crm_ops.utils.error_handler import get_error_handler


def _response(status_code, payload=None, method="GET", url="https://evolution.test"):
    """Construye una respuesta httpx con cuerpo JSON."""
    return httpx.Response(status_code, json=payload, request=httpx.Request(method, url))


class TestEvolutionClient:
    """Pruebas para la clase EvolutionClient."""

    @pytest.fixture
    def client(self, no_retry):
        """Fixture del cliente sin reintentos."""
        client = EvolutionClient(base_url="https://evolution.test/", api_key="secret")
        client.retry_config = no_retry
        return client

    def test_init(self, client):
        """Prueba la inicialización del cliente."""
        assert client.base_url == "https://evolution.test"
        assert client.headers["apikey"] == "secret"
        assert client.headers["Content-Type"] == "application/json"

    @pytest.mark.asyncio
    async def test_fetch_instances(self, client):
        """Prueba el listado de instancias."""
        instances = [{"instance": {"instanceName": "loja", "status": "open"}}]

        with patch("httpx.AsyncClient.request", new_callable=AsyncMock) as mock_request:
            mock_request.return_value = _response(200, instances)

            result = await client.fetch_instances()

        assert result == instances
        method, url = mock_request.call_args.args
        assert method == "GET"
        assert url == "https://evolution.test/instance/fetchInstances"
        assert mock_request.call_args.kwargs["headers"]["apikey"] == "secret"

    @pytest.mark.asyncio
    async def test_find_instance_both_formats(self, client):
        """Prueba la búsqueda de instancias en los formatos antiguo y nuevo."""
        instances = [
            {"instance": {"instanceName": "vendas"}},
            {"name": "loja", "connectionStatus": "open"},
        ]

        with patch("httpx.AsyncClient.request", new_callable=AsyncMock) as mock_request:
            mock_request.return_value = _response(200, instances)

            assert (await client.find_instance("loja"))["connectionStatus"] == "open"
            assert (await client.find_instance("vendas"))["instance"]["instanceName"] == "vendas"
            assert await client.find_instance("outra") is None

    @pytest.mark.asyncio
    async def test_send_text_payload(self, client):
        """Prueba el payload de envío con mensaje citado."""
        with patch("httpx.AsyncClient.request", new_callable=AsyncMock) as mock_request:
            mock_request.return_value = _response(201, {"key": {"id": "MSG1"}}, method="POST")

            result = await client.send_text("loja", "+55 11 99999-8888", "  Olá!  ", quoted_id="Q1")

        assert result["key"]["id"] == "MSG1"
        method, url = mock_request.call_args.args
        assert method == "POST"
        assert url.endswith("/message/sendText/loja")
        payload = mock_request.call_args.kwargs["json"]
        assert payload["number"] == "5511999998888@s.whatsapp.net"
        assert payload["text"] == "Olá!"
        assert payload["options"]["quoted"]["key"]["id"] == "Q1"

    @pytest.mark.asyncio
    async def test_send_text_empty(self, client):
        """Prueba que un texto vacío sea rechazado sin llamar a la API."""
        with patch("httpx.AsyncClient.request", new_callable=AsyncMock) as mock_request:
            with pytest.raises(ValueError):
                await client.send_text("loja", "5511999998888", "   ")

        mock_request.assert_not_called()

    @pytest.mark.asyncio
    async def test_http_error(self, client):
        """Prueba la traducción de errores HTTP."""
        with patch("httpx.AsyncClient.request", new_callable=AsyncMock) as mock_request:
            mock_request.return_value = _response(404, {"message": "Instance not found"})

            with pytest.raises(EvolutionAPIError) as exc_info:
                await client.connection_state("fantasma")

        assert exc_info.value.status_code == 404
        assert exc_info.value.error_code == "NOT_FOUND"
        assert "Instance not found" in exc_info.value.response_body

    @pytest.mark.asyncio
    async def test_timeout(self, client):
        """Prueba la traducción de timeouts."""
        with patch("httpx.AsyncClient.request", new_callable=AsyncMock) as mock_request:
            mock_request.side_effect = httpx.ConnectTimeout("timeout")

            with pytest.raises(EvolutionAPIError) as exc_info:
                await client.fetch_instances()

        assert exc_info.value.error_code == "TIMEOUT"
        assert exc_info.value.status_code is None

    @pytest.mark.asyncio
    async def test_server_error_is_retried(self, client, no_retry):
        """Los 5xx se reintentan según retry_config."""
        no_retry.max_retries = 1

        with patch("httpx.AsyncClient.request", new_callable=AsyncMock) as mock_request:
            mock_request.side_effect = [
                _response(503, {"error": "unavailable"}),
                _response(200, []),
            ]

            result = await client.fetch_instances()

        assert result == []
        assert mock_request.call_count == 2

    @pytest.mark.asyncio
    async def test_find_messages_paginated(self, client):
        """Prueba el formato paginado messages.records de Evolution v2."""
        payload = {"messages": {"total": 1, "records": [{"key": {"id": "A"}}]}}

        with patch("httpx.AsyncClient.request", new_callable=AsyncMock) as mock_request:
            mock_request.return_value = _response(200, payload)

            result = await client.find_messages("loja", "5511999998888", limit=5)

        assert result == [{"key": {"id": "A"}}]
        assert mock_request.call_args.kwargs["params"] == {
            "remoteJid": "5511999998888@s.whatsapp.net",
            "limit": 5
        }

    @pytest.mark.asyncio
    async def test_missing_base_url(self, no_retry):
        """Prueba el error cuando no hay URL configurada."""
        client = EvolutionClient()
        client.base_url = ""
        client.retry_config = no_retry

        with pytest.raises(EvolutionAPIError):
            await client.fetch_instances()

    @pytest.mark.asyncio
    async def test_missing_base_url_is_not_retried(self):
        """La falta de configuración falla de inmediato, sin backoff."""
        client = EvolutionClient()
        client.base_url = ""

        with patch("crm_ops.utils.error_handler.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            with pytest.raises(EvolutionAPIError) as exc_info:
                await client.fetch_instances()

        assert exc_info.value.error_code == "CONFIG_ERROR"
        mock_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_timeout_counted_in_metrics(self, client):
        """Los timeouts traducidos cuentan como timeouts en las métricas."""
        with patch("httpx.AsyncClient.request", new_callable=AsyncMock) as mock_request:
            mock_request.side_effect = httpx.ReadTimeout("timeout")

            with pytest.raises(EvolutionAPIError):
                await client.fetch_instances()

        metrics = metrics_service.get_service_metrics(ServiceType.EVOLUTION)
        assert metrics["timeout_requests"] == 1
        assert get_error_handler().get_error_stats()["error_types"] == {"timeout": 1}

    @pytest.mark.asyncio
    async def test_connection_error_is_retried(self, client, no_retry):
        """Los errores de conexión se clasifican como tales y se reintentan."""
        no_retry.max_retries = 1

        with patch("httpx.AsyncClient.request", new_callable=AsyncMock) as mock_request:
            mock_request.side_effect = [httpx.ConnectError("connection refused"), _response(200, [])]

            result = await client.fetch_instances()

        assert result == []
        assert mock_request.call_count == 2
        assert get_error_handler().get_error_stats()["error_types"] == {"connection_error": 1}
