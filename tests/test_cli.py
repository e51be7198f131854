"""
Pruebas de la CLI crm-ops con click.testing.CliRunner.
"""

from unittest.mock import AsyncMock, MagicMock, Mock, patch

import pytest
from click.testing import CliRunner
from google.api_core import exceptions as google_exceptions

from crm_ops.cli import cli
from crm_ops.config import settings
from crm_ops.integrations.evolution_client import EvolutionAPIError


@pytest.fixture
def runner():
    """Runner de click."""
    return CliRunner()


@pytest.fixture
def tickets_db(fake_firestore, sample_agents):
    """Firestore con tickets y agentes."""
    return fake_firestore({
        "tickets": {
            "t1": {"status": "open", "clientName": "Maria", "aiConfig": {"autoResponse": True}},
            "t2": {"status": "closed", "aiConfig": {"autoResponse": True}},
        },
        "agents": sample_agents,
        "messages": {
            "a": {"messageId": "M1", "messageTimestamp": 100},
            "b": {"messageId": "M1", "messageTimestamp": 200},
        }
    })


@pytest.fixture
def evo_db(mock_evo_db):
    """Patch de EvoAIDatabase como context manager."""
    with patch("crm_ops.cli.EvoAIDatabase") as mock_cls:
        mock_cls.return_value.__enter__.return_value = mock_evo_db
        yield mock_evo_db


class TestTicketCommands:
    """Pruebas del grupo tickets."""

    def test_active(self, runner, tickets_db):
        """Prueba el resumen de tickets activos."""
        with patch("crm_ops.cli.get_firestore_client", return_value=tickets_db):
            result = runner.invoke(cli, ["tickets", "active"])

        assert result.exit_code == 0, result.output
        assert "Tickets activos: 1" in result.output
        assert "Maria" in result.output
        assert "Sin agente IA asignado" in result.output

    def test_show_missing_ticket(self, runner, tickets_db):
        """Un ticket inexistente termina con código 1."""
        with patch("crm_ops.cli.get_firestore_client", return_value=tickets_db):
            result = runner.invoke(cli, ["tickets", "show", "no_existe"])

        assert result.exit_code == 1
        assert "no encontrado" in result.output

    def test_show_permission_denied(self, runner):
        """Un error de permisos de Firestore termina con código 1 sin traceback."""
        db = Mock()
        db.collection.return_value.document.return_value.get.side_effect = \
            google_exceptions.PermissionDenied("Missing or insufficient permissions.")
        with patch("crm_ops.cli.get_firestore_client", return_value=db):
            result = runner.invoke(cli, ["tickets", "show", "t1"])

        assert result.exit_code == 1
        assert "insufficient permissions" in result.output
        assert not isinstance(result.exception, google_exceptions.PermissionDenied)

    def test_disable_auto_response_requires_confirmation(self, runner, tickets_db):
        """Sin --yes se pide confirmación y la negativa aborta sin escribir."""
        with patch("crm_ops.cli.get_firestore_client", return_value=tickets_db):
            result = runner.invoke(cli, ["tickets", "disable-auto-response"], input="n\n")

        assert result.exit_code == 1
        assert tickets_db.data["tickets"]["t1"]["aiConfig"]["autoResponse"] is True

    def test_disable_auto_response(self, runner, tickets_db):
        """Con --yes se desactiva en todos los tickets."""
        with patch("crm_ops.cli.get_firestore_client", return_value=tickets_db):
            result = runner.invoke(cli, ["tickets", "disable-auto-response", "--yes"])

        assert result.exit_code == 0, result.output
        assert "Actualizados: 2" in result.output
        assert tickets_db.data["tickets"]["t2"]["aiConfig"]["autoResponse"] is False

    def test_assign_selects_best_agent(self, runner, tickets_db):
        """Sin --agent-id se elige el mejor agente disponible."""
        with patch("crm_ops.cli.get_firestore_client", return_value=tickets_db), \
                patch("crm_ops.cli.CRMClient") as mock_crm:
            mock_crm.return_value.assign_agent = AsyncMock(return_value={"success": True})
            result = runner.invoke(cli, ["tickets", "assign", "t1"])

        assert result.exit_code == 0, result.output
        assert "agent_ai" in result.output
        assert "vía api" in result.output


class TestAgentCommands:
    """Pruebas del grupo agents."""

    def test_confidence_dry_run(self, runner, tickets_db):
        """El dry-run muestra la configuración sin escribirla."""
        with patch("crm_ops.cli.get_firestore_client", return_value=tickets_db):
            result = runner.invoke(cli, ["agents", "confidence", "SDR Vendas", "--threshold", "0.5", "--dry-run"])

        assert result.exit_code == 0, result.output
        assert "0.8 -> 0.5" in result.output
        assert "Dry-run" in result.output
        stored = tickets_db.data["agents"]["agent_ai"]["aiConfig"]["escalationRules"]["confidenceThreshold"]
        assert stored == 0.8

    def test_confidence_out_of_range(self, runner, tickets_db):
        """Un umbral fuera de rango es un error operativo."""
        with patch("crm_ops.cli.get_firestore_client", return_value=tickets_db):
            result = runner.invoke(cli, ["agents", "confidence", "SDR Vendas", "--threshold", "2"])

        assert result.exit_code == 1
        assert "entre 0 y 1" in result.output


class TestMessageCommands:
    """Pruebas del grupo messages."""

    def test_duplicates_report(self, runner, tickets_db):
        """Prueba el reporte de duplicados."""
        with patch("crm_ops.cli.get_firestore_client", return_value=tickets_db):
            result = runner.invoke(cli, ["messages", "duplicates"])

        assert result.exit_code == 0, result.output
        assert "Duplicados: 1 (50.0%)" in result.output
        assert "se conserva a" in result.output

    def test_duplicates_remove(self, runner, tickets_db):
        """Con --remove --yes se eliminan las copias."""
        with patch("crm_ops.cli.get_firestore_client", return_value=tickets_db):
            result = runner.invoke(cli, ["messages", "duplicates", "--remove", "--yes"])

        assert result.exit_code == 0, result.output
        assert "Eliminados: 1 de 1" in result.output
        assert list(tickets_db.data["messages"]) == ["a"]


class TestEvoAICommands:
    """Pruebas del grupo evo-ai."""

    def test_fix_mcp_dry_run(self, runner, evo_db):
        """El dry-run no pide confirmación ni escribe."""
        evo_db.fetch_all.return_value = [
            {"id": "a1", "name": "Vendas", "config": {"mcp_servers": [{"id": "mcp_1"}]}},
        ]

        result = runner.invoke(cli, ["evo-ai", "fix-mcp", "--dry-run"])

        assert result.exit_code == 0, result.output
        assert "Vendas" in result.output
        assert "mcp_1 ->" in result.output
        evo_db.execute.assert_not_called()

    def test_orphans_fix_requires_client_id(self, runner, evo_db):
        """--fix sin client_id es un error de uso."""
        with patch.object(settings, "EVO_AI_DEFAULT_CLIENT_ID", ""):
            result = runner.invoke(cli, ["evo-ai", "orphans", "--fix"])

        assert result.exit_code == 2
        evo_db.fetch_all.assert_not_called()

    def test_invalid_ids(self, runner, evo_db):
        """Prueba el listado de ids inválidos."""
        evo_db.fetch_all.return_value = [{"id": "mock_1", "name": "Viejo"}]

        result = runner.invoke(cli, ["evo-ai", "invalid-ids"])

        assert result.exit_code == 0, result.output
        assert "Agentes con id inválido: 1" in result.output


class TestWebhookCommands:
    """Pruebas del grupo webhook."""

    def test_fix_retries_fallback(self, runner):
        """Si la configuración falla pero el respaldo funciona, el comando termina bien."""
        report = {
            "connectivity": {"reachable": False, "error": "refused"},
            "instance": {"name": "loja", "state": "open"},
            "configuration": {"success": False, "fallback_configured": True, "error": "Error HTTP 400"},
            "logs": {"available": False, "errors": [], "note": "Logs no disponibles"},
        }
        with patch("crm_ops.cli.EvolutionClient"), \
                patch("crm_ops.cli.WebhookService") as mock_service:
            mock_service.return_value.fix_retries = AsyncMock(return_value=report)
            result = runner.invoke(cli, ["webhook", "fix-retries", "--url", "https://crm.test/hook"])

        assert result.exit_code == 0, result.output
        assert "desactivado como respaldo" in result.output
        mock_service.return_value.fix_retries.assert_awaited_once_with(None, "https://crm.test/hook")

    def test_status_api_error(self, runner):
        """Los errores de la Evolution API terminan con código 1."""
        with patch("crm_ops.cli.EvolutionClient"), \
                patch("crm_ops.cli.WebhookService") as mock_service:
            mock_service.return_value.check_instance_status = AsyncMock(
                side_effect=EvolutionAPIError("Error HTTP 401 (UNAUTHORIZED)", status_code=401)
            )
            result = runner.invoke(cli, ["webhook", "status"])

        assert result.exit_code == 1
        assert "UNAUTHORIZED" in result.output


class TestEvolutionCommands:
    """Pruebas del grupo evolution."""

    def test_send_aborted(self, runner):
        """Sin confirmación no se envía nada."""
        with patch("crm_ops.cli.EvolutionClient") as mock_client:
            result = runner.invoke(cli, ["evolution", "send", "--jid", "5511999998888", "--text", "Olá"],
                                   input="n\n")

        assert result.exit_code == 1
        mock_client.return_value.send_text.assert_not_called()

    def test_send(self, runner):
        """Con --yes se envía el mensaje."""
        with patch("crm_ops.cli.EvolutionClient") as mock_client:
            mock_client.return_value.send_text = AsyncMock(return_value={"key": {"id": "MSG1"}})
            result = runner.invoke(cli, ["evolution", "send", "--jid", "5511999998888", "--text", "Olá",
                                         "--instance", "loja", "--yes"])

        assert result.exit_code == 0, result.output
        assert "MSG1" in result.output
        mock_client.return_value.send_text.assert_awaited_once_with("loja", "5511999998888", "Olá")


class TestHealthAndEnvCommands:
    """Pruebas de los grupos health y env."""

    def test_diagnose_with_errors(self, runner):
        """Un componente en ERROR termina con código 1."""
        report = {
            "ok": False,
            "components": [
                {"component": "crm", "status": "OK", "detail": "3 tickets"},
                {"component": "redis", "status": "ERROR", "detail": "refused"},
            ]
        }
        with patch("crm_ops.cli.CRMClient"), patch("crm_ops.cli.RedisClient"), \
                patch("crm_ops.cli.HealthService") as mock_service:
            mock_service.return_value.rabbitmq_client = None
            mock_service.return_value.diagnose = AsyncMock(return_value=report)
            result = runner.invoke(cli, ["health", "diagnose"])

        assert result.exit_code == 1
        assert "redis: ERROR - refused" in result.output

    def test_diagnose_closes_redis(self, runner):
        """El cliente de Redis se cierra al terminar el diagnóstico."""
        report = {"ok": True, "components": [{"component": "redis", "status": "OK", "detail": "PONG"}]}
        with patch("crm_ops.cli.CRMClient"), patch("crm_ops.cli.RedisClient") as mock_redis, \
                patch("crm_ops.cli.HealthService.diagnose", AsyncMock(return_value=report)), \
                patch.object(settings, "RABBITMQ_URL", None):
            result = runner.invoke(cli, ["health", "diagnose"])

        assert result.exit_code == 0, result.output
        mock_redis.return_value.close.assert_called_once()

    def test_env_check_missing(self, runner):
        """Las variables faltantes se reportan y terminan con código 1."""
        with patch.object(settings, "validate_required_vars", return_value=["EVOLUTION_API_KEY"]):
            result = runner.invoke(cli, ["env", "check"])

        assert result.exit_code == 1
        assert "EVOLUTION_API_KEY no está configurada" in result.output

    def test_env_check_complete(self, runner):
        """Sin faltantes la configuración está completa."""
        with patch.object(settings, "validate_required_vars", return_value=[]):
            result = runner.invoke(cli, ["env", "check"])

        assert result.exit_code == 0, result.output
        assert "Configuración completa" in result.output

    def test_stats_flag(self, runner):
        """--stats imprime las métricas al terminar."""
        with patch.object(settings, "validate_required_vars", return_value=[]):
            result = runner.invoke(cli, ["--stats", "env", "check"])

        assert result.exit_code == 0, result.output
        assert "Métricas de llamadas" in result.output
