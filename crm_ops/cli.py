"""
CLI operativa del CRM (crm-ops).

Cada grupo reúne una familia de diagnósticos o reparaciones:

    crm-ops tickets active
    crm-ops webhook fix-retries --url https://crm.example.com/api/webhooks/evolution
    crm-ops evo-ai fix-mcp --dry-run
    crm-ops health diagnose
"""
import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

import click
from google.api_core import exceptions as google_exceptions
from google.auth import exceptions as google_auth_exceptions
import pika.exceptions
import psycopg2
import redis

from crm_ops.config import settings
from crm_ops.integrations.crm_client import CRMAPIError, CRMClient
from crm_ops.integrations.evolution_client import EvolutionAPIError, EvolutionClient
from crm_ops.integrations.firestore_client import FirestoreConfigError, get_firestore_client
from crm_ops.integrations.postgres_client import DatabaseConfigError, EvoAIDatabase
from crm_ops.integrations.rabbitmq_client import RabbitMQClient, RabbitMQError
from crm_ops.integrations.redis_client import RedisCheckError, RedisClient
from crm_ops.services.agent_service import AgentNotFoundError, AgentService, check_agent_config
from crm_ops.services.evo_ai_service import EvoAIService
from crm_ops.services.health_service import STATUS_ERROR, STATUS_OK, HealthService
from crm_ops.services.message_service import MessageService
from crm_ops.services.metrics_service import metrics_service
from crm_ops.services.queue_service import QueueService
from crm_ops.services.ticket_service import TicketNotFoundError, TicketService
from crm_ops.services.webhook_service import WebhookService

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

OPERATIONAL_ERRORS = (
    EvolutionAPIError,
    CRMAPIError,
    RabbitMQError,
    RedisCheckError,
    FirestoreConfigError,
    DatabaseConfigError,
    TicketNotFoundError,
    AgentNotFoundError,
    ValueError,
    psycopg2.Error,
    redis.exceptions.RedisError,
    pika.exceptions.AMQPError,
    google_exceptions.GoogleAPIError,
    google_auth_exceptions.GoogleAuthError,
)


def run_async(coro):
    """Ejecuta una corrutina y convierte los errores operativos en ClickException (exit 1)."""
    try:
        return asyncio.run(coro)
    except OPERATIONAL_ERRORS as e:
        logger.debug("Fallo del comando", exc_info=True)
        raise click.ClickException(str(e))


def echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, ensure_ascii=False, default=str))


def confirm_or_abort(message: str, yes: bool, dry_run: bool = False) -> None:
    """Pide confirmación antes de una operación destructiva."""
    if yes or dry_run:
        return
    click.confirm(message, abort=True)


def mask(value: str) -> str:
    return f"{'*' * min(len(value), 20)}..."


@click.group()
@click.option("--log-level", default=None, help="Nivel de logging (por defecto LOG_LEVEL o INFO)")
@click.option("--stats", is_flag=True, help="Mostrar métricas de llamadas al terminar")
@click.pass_context
def cli(ctx, log_level: Optional[str], stats: bool):
    """Herramientas operativas del CRM con integración WhatsApp."""
    level = (log_level or settings.LOG_LEVEL).upper()
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)

    if stats:
        ctx.call_on_close(_print_stats)


def _print_stats() -> None:
    summary = metrics_service.get_all_metrics()
    click.echo("\n📊 Métricas de llamadas:")
    for name, data in summary["services"].items():
        if data["total_requests"]:
            click.echo(
                f"  {name}: {data['total_requests']} llamadas, "
                f"{data['success_rate']}% éxito, {data['avg_response_time_seconds']}s promedio"
            )
    click.echo(f"  Total: {summary['summary']['total_requests']} llamadas "
               f"({summary['summary']['overall_success_rate']}% éxito)")


# ---------------------------------------------------------------------------
# tickets
# ---------------------------------------------------------------------------

@cli.group()
def tickets():
    """Tickets de Firestore."""
    pass


@tickets.command("active")
def tickets_active():
    """Resume los tickets activos y sus problemas."""
    async def _main():
        return await TicketService(get_firestore_client()).summarize_active_tickets()

    summary = run_async(_main())
    click.echo(f"📊 Tickets activos: {summary['total']}")
    click.echo(f"  Con agente IA: {summary['with_ai_agent']}")
    click.echo(f"  Con autoResponse: {summary['with_auto_response']}")
    click.echo(f"  Con problemas: {summary['with_problems']}")
    for ticket in summary["tickets"]:
        marker = "⚠️" if ticket["problems"] else "✅"
        click.echo(f"{marker} {ticket['id']} - {ticket['client'] or 'sin nombre'} ({ticket['status']})")
        for problem in ticket["problems"]:
            click.echo(f"    - {problem}")


@tickets.command("show")
@click.argument("ticket_id")
def tickets_show(ticket_id: str):
    """Muestra un ticket y su diagnóstico."""
    async def _main():
        service = TicketService(get_firestore_client())
        ticket = await service.get_ticket(ticket_id)
        return ticket, service.diagnose_ticket(ticket_id, ticket)

    ticket, problems = run_async(_main())
    echo_json(ticket)
    if problems:
        click.echo("⚠️ Problemas:")
        for problem in problems:
            click.echo(f"  - {problem}")
    else:
        click.echo("✅ Ticket listo para respuesta automática")


@tickets.command("assign")
@click.argument("ticket_id")
@click.option("--agent-id", default=None, help="Agente a asignar (por defecto, el mejor disponible)")
@click.option("--mode", default="immediate", show_default=True, help="Modo de activación")
@click.option("--max-interactions", default=10, show_default=True, help="Máximo de interacciones por ticket")
@click.option("--no-api", is_flag=True, help="Escribir directamente en Firestore sin pasar por la API")
def tickets_assign(ticket_id: str, agent_id: Optional[str], mode: str, max_interactions: int, no_api: bool):
    """Asigna un agente IA a un ticket."""
    async def _main():
        db = get_firestore_client()
        agents = AgentService(db)
        if agent_id:
            agent = await agents.get_agent(agent_id)
        else:
            agent = await agents.select_available_agent()
            if agent is None:
                raise ValueError("No hay agentes disponibles para asignar")
        service = TicketService(db, CRMClient())
        return await service.assign_agent(
            ticket_id, agent, mode=mode, max_interactions=max_interactions, use_api=not no_api
        )

    result = run_async(_main())
    click.echo(f"✅ Agente {result['agent_id']} asignado vía {result['method']}")
    if result["api_error"]:
        click.echo(f"⚠️ La API falló: {result['api_error']}")
    click.echo("🔍 Verificación:")
    for key, value in result["verification"].items():
        click.echo(f"  {key}: {value}")


@tickets.command("disable-auto-response")
@click.option("--dry-run", is_flag=True, help="Solo mostrar los tickets afectados")
@click.option("--yes", is_flag=True, help="No pedir confirmación")
def tickets_disable_auto_response(dry_run: bool, yes: bool):
    """Desactiva aiConfig.autoResponse en todos los tickets."""
    confirm_or_abort("¿Desactivar autoResponse en todos los tickets?", yes, dry_run)

    async def _main():
        return await TicketService(get_firestore_client()).disable_auto_response(dry_run=dry_run)

    result = run_async(_main())
    click.echo(f"🔍 Tickets con autoResponse: {result['found']}")
    if dry_run:
        for ticket_id in result["ticket_ids"]:
            click.echo(f"  - {ticket_id}")
        click.echo("ℹ️ Dry-run: no se escribió nada")
    else:
        click.echo(f"✅ Actualizados: {result['updated']}  ❌ Errores: {result['errors']}")


# ---------------------------------------------------------------------------
# agents
# ---------------------------------------------------------------------------

@cli.group()
def agents():
    """Agentes de Firestore."""
    pass


@agents.command("list")
def agents_list():
    """Lista los agentes y su estado."""
    async def _main():
        return await AgentService(get_firestore_client()).list_agents()

    for agent in run_async(_main()):
        marker = "❌" if agent.get("active") is False else "✅"
        click.echo(f"{marker} {agent['id']} - {agent.get('name')} ({agent.get('type')})")
        if agent.get("evoAiAgentId"):
            click.echo(f"    Evo AI ID: {agent['evoAiAgentId']}")


@agents.command("check")
def agents_check():
    """Verifica la configuración de cada agente y sugiere el mejor disponible."""
    async def _main():
        service = AgentService(get_firestore_client())
        return await service.check_agents(), await service.select_available_agent()

    report, selected = run_async(_main())
    for agent in report:
        marker = "⚠️" if agent["problems"] else "✅"
        click.echo(f"{marker} {agent['name']} ({agent['type']}) - {agent['interactions']} interacciones")
        for problem in agent["problems"]:
            click.echo(f"    - {problem}")
    if selected:
        click.echo(f"🎯 Agente recomendado: {selected.get('name')} ({selected['id']}, puntaje {selected['score']})")
    else:
        click.echo("⚠️ No hay agentes disponibles")


@agents.command("confidence")
@click.argument("name")
@click.option("--threshold", default=0.4, show_default=True, type=float, help="confidenceThreshold (0 a 1)")
@click.option("--dry-run", is_flag=True, help="Mostrar la configuración sin escribirla")
def agents_confidence(name: str, threshold: float, dry_run: bool):
    """Ajusta el umbral de confianza de un agente."""
    async def _main():
        return await AgentService(get_firestore_client()).update_confidence(name, threshold, dry_run=dry_run)

    result = run_async(_main())
    click.echo(f"🔧 {name}: {result['previous_threshold']} -> {threshold}")
    echo_json(result["ai_config"])
    remaining = check_agent_config({"aiConfig": result["ai_config"]})
    if remaining:
        click.echo(f"⚠️ {remaining}")
    click.echo("ℹ️ Dry-run: no se escribió nada" if dry_run else "✅ Configuración actualizada")


# ---------------------------------------------------------------------------
# messages
# ---------------------------------------------------------------------------

@cli.group()
def messages():
    """Mensajes de Firestore y de Evolution."""
    pass


@messages.command("repair")
@click.option("--dry-run", is_flag=True, help="Solo contar los mensajes a corregir")
@click.option("--yes", is_flag=True, help="No pedir confirmación")
def messages_repair(dry_run: bool, yes: bool):
    """Normaliza sender, timestamp, messageId, content, type y pushName."""
    confirm_or_abort("¿Corregir los mensajes en Firestore?", yes, dry_run)

    async def _main():
        return await MessageService(get_firestore_client()).repair_messages(dry_run=dry_run)

    result = run_async(_main())
    click.echo(f"🔍 Revisados: {result['total']}  A corregir: {result['needs_fix']}  Corregidos: {result['fixed']}")
    for field, count in sorted(result["fields"].items()):
        click.echo(f"  {field}: {count}")


@messages.command("duplicates")
@click.option("--remove", is_flag=True, help="Eliminar las copias duplicadas")
@click.option("--dry-run", is_flag=True, help="Con --remove, solo mostrar lo que se eliminaría")
@click.option("--yes", is_flag=True, help="No pedir confirmación")
def messages_duplicates(remove: bool, dry_run: bool, yes: bool):
    """Detecta (y opcionalmente elimina) mensajes duplicados."""
    if remove:
        confirm_or_abort("¿Eliminar los mensajes duplicados?", yes, dry_run)

    async def _main():
        service = MessageService(get_firestore_client())
        if remove:
            return await service.remove_duplicates(dry_run=dry_run)
        return await service.find_duplicates()

    report = run_async(_main())
    click.echo(f"📊 Total: {report['total_messages']}  Únicos: {report['unique_message_ids']}  "
               f"Duplicados: {report['duplicate_messages']} ({report['duplicate_rate']}%)")
    for dup in report["top_duplicates"]:
        click.echo(f"  {dup['messageId']}: {dup['count']} copias (se conserva {dup['keep']})")
    if remove:
        click.echo(f"🗑️ Eliminados: {report['deleted']} de {report['to_delete']}")


@messages.command("sent")
@click.option("--jid", required=True, help="Teléfono o JID del chat")
@click.option("--instance", default=None, help="Instancia de Evolution")
@click.option("--window", default=10, show_default=True, help="Ventana en minutos")
def messages_sent(jid: str, instance: Optional[str], window: int):
    """Verifica si el bot envió mensajes recientes a un chat."""
    async def _main():
        service = MessageService(evolution_client=EvolutionClient())
        return await service.check_sent_messages(instance or settings.EVOLUTION_INSTANCE_NAME, jid, window)

    result = run_async(_main())
    click.echo(f"📨 Mensajes: {result['total']}  Del bot: {result['bot_messages']}")
    if result["recent_bot_messages"]:
        click.echo(f"✅ Mensajes del bot en los últimos {window} minutos:")
        for message in result["recent_bot_messages"]:
            click.echo(f"  {message['sent_at']} - {message['text']}")
    else:
        click.echo(f"⚠️ El bot no envió mensajes en los últimos {window} minutos")


# ---------------------------------------------------------------------------
# evo-ai
# ---------------------------------------------------------------------------

@cli.group("evo-ai")
def evo_ai():
    """Base de datos de Evo AI (tabla agents)."""
    pass


def _print_rows(rows: List[Dict[str, Any]]) -> None:
    for row in rows:
        click.echo("  " + " | ".join(f"{k}={v}" for k, v in row.items()))


@evo_ai.command("orphans")
@click.option("--fix", is_flag=True, help="Vincular los huérfanos al cliente")
@click.option("--client-id", default=None, help="Cliente destino (por defecto EVO_AI_DEFAULT_CLIENT_ID)")
@click.option("--yes", is_flag=True, help="No pedir confirmación")
def evo_ai_orphans(fix: bool, client_id: Optional[str], yes: bool):
    """Lista (y opcionalmente corrige) agentes sin client_id."""
    client_id = client_id or settings.EVO_AI_DEFAULT_CLIENT_ID
    if fix:
        if not client_id:
            raise click.UsageError("Indique --client-id o configure EVO_AI_DEFAULT_CLIENT_ID")
        confirm_or_abort(f"¿Vincular los agentes huérfanos al cliente {client_id}?", yes)

    async def _main():
        with EvoAIDatabase() as db:
            service = EvoAIService(db)
            orphans = await service.list_orphans()
            fixed = await service.fix_orphans(client_id) if fix and orphans else []
            stats = await service.client_stats(client_id)
            return orphans, fixed, stats

    orphans, fixed, stats = run_async(_main())
    if not orphans:
        click.echo("✅ No hay agentes huérfanos")
    else:
        click.echo(f"📋 Agentes huérfanos: {len(orphans)}")
        _print_rows(orphans)
    if fixed:
        click.echo(f"✅ {len(fixed)} agentes vinculados")
    click.echo("📊 Agentes por cliente:")
    _print_rows(stats)


@evo_ai.command("fix-mcp")
@click.option("--dry-run", is_flag=True, help="Solo mostrar los ids a regenerar")
@click.option("--yes", is_flag=True, help="No pedir confirmación")
def evo_ai_fix_mcp(dry_run: bool, yes: bool):
    """Regenera los ids de servidores MCP que no son UUID."""
    confirm_or_abort("¿Regenerar los ids inválidos de servidores MCP?", yes, dry_run)

    async def _main():
        with EvoAIDatabase() as db:
            return await EvoAIService(db).fix_invalid_mcp_servers(dry_run=dry_run)

    report = run_async(_main())
    click.echo(f"🔍 Agentes revisados: {report['checked']}")
    for agent in report["fixed"]:
        click.echo(f"🔧 {agent['name']} ({agent['id']})")
        for server in agent["servers"]:
            click.echo(f"    {server['old']} -> {server['new']}")
    for agent in report["skipped"]:
        click.echo(f"⚠️ Omitido {agent['name']}: {agent['reason']}")
    if dry_run:
        click.echo("ℹ️ Dry-run: no se escribió nada")


@evo_ai.command("invalid-ids")
def evo_ai_invalid_ids():
    """Lista agentes con ids heredados o que no son UUID."""
    async def _main():
        with EvoAIDatabase() as db:
            return await EvoAIService(db).find_invalid_agent_ids()

    invalid = run_async(_main())
    if not invalid:
        click.echo("✅ Todos los ids son UUID válidos")
        return
    click.echo(f"❌ Agentes con id inválido: {len(invalid)}")
    _print_rows(invalid)


@evo_ai.command("constraints")
def evo_ai_constraints():
    """Muestra las restricciones y tipos de la tabla agents."""
    async def _main():
        with EvoAIDatabase() as db:
            return await EvoAIService(db).inspect_constraints()

    report = run_async(_main())
    click.echo("🔍 Restricciones:")
    _print_rows(report["constraints"])
    click.echo(f"📋 check_agent_type: {report['check_agent_type'] or 'no existe'}")
    click.echo("📊 Tipos en uso:")
    _print_rows(report["types"])
    click.echo("🔍 Enums relacionados:")
    if report["enums"]:
        _print_rows(report["enums"])
    else:
        click.echo("  ninguno")


@evo_ai.command("explore")
def evo_ai_explore():
    """Explora las tablas relacionadas con agentes."""
    async def _main():
        with EvoAIDatabase() as db:
            return await EvoAIService(db).explore_schema()

    report = run_async(_main())
    click.echo(f"📋 Tablas: {', '.join(report['tables'])}")
    for table, columns in report["matching"].items():
        click.echo(f"\n📊 {table}")
        _print_rows(columns)


@evo_ai.command("find-client")
@click.argument("term")
def evo_ai_find_client(term: str):
    """Busca un cliente en las tablas de clientes/usuarios."""
    async def _main():
        with EvoAIDatabase() as db:
            return await EvoAIService(db).find_client(term)

    results = run_async(_main())
    if not results:
        click.echo(f"⚠️ No se encontró '{term}'")
        return
    for table, rows in results.items():
        click.echo(f"✅ {table}: {len(rows)} coincidencias")
        _print_rows(rows)


@evo_ai.command("remove-orphans")
@click.argument("pattern")
@click.option("--dry-run", is_flag=True, help="Solo mostrar lo que se eliminaría")
@click.option("--yes", is_flag=True, help="No pedir confirmación")
def evo_ai_remove_orphans(pattern: str, dry_run: bool, yes: bool):
    """Elimina agentes de Evo AI que ya no existen en el CRM."""
    confirm_or_abort(f"¿Eliminar los agentes '{pattern}' que no existen en el CRM?", yes, dry_run)

    async def _main():
        with EvoAIDatabase() as db:
            return await EvoAIService(db).remove_orphan_agents(pattern, CRMClient(), dry_run=dry_run)

    report = run_async(_main())
    click.echo(f"🔍 Coincidencias: {report['matched']}")
    for agent in report["deleted"]:
        click.echo(f"🗑️ {agent['name']} ({agent['id']})")
    for agent in report["skipped"]:
        click.echo(f"⚠️ Omitido {agent['name']}: {agent['reason']}")
    if dry_run:
        click.echo("ℹ️ Dry-run: no se eliminó nada")


# ---------------------------------------------------------------------------
# webhook
# ---------------------------------------------------------------------------

@cli.group()
def webhook():
    """Webhook de la Evolution API."""
    pass


@webhook.command("status")
@click.option("--instance", default=None, help="Instancia de Evolution")
def webhook_status(instance: Optional[str]):
    """Muestra el estado de la instancia y su webhook."""
    name = instance or settings.EVOLUTION_INSTANCE_NAME

    async def _main():
        client = EvolutionClient()
        status = await WebhookService(client).check_instance_status(name)
        return status, await client.find_webhook(name)

    status, current = run_async(_main())
    if status is None:
        raise click.ClickException(f"Instancia '{name}' no encontrada")
    click.echo(f"📱 {name}: {status['state']}")
    echo_json(current)


@webhook.command("fix-retries")
@click.option("--instance", default=None, help="Instancia de Evolution")
@click.option("--url", default=None, help="URL del webhook (por defecto EVOLUTION_WEBHOOK_URL)")
def webhook_fix_retries(instance: Optional[str], url: Optional[str]):
    """Reduce los reintentos del webhook a 1 con política lineal."""
    async def _main():
        return await WebhookService(EvolutionClient()).fix_retries(instance, url)

    result = run_async(_main())
    connectivity = result["connectivity"]
    if connectivity["reachable"]:
        click.echo(f"✅ Webhook accesible (status {connectivity['status_code']})")
    else:
        click.echo(f"⚠️ Webhook no accesible: {connectivity['error']}")

    if result["instance"]:
        click.echo(f"📱 Instancia en estado: {result['instance']['state']}")

    configuration = result["configuration"]
    if configuration["success"]:
        click.echo("✅ Webhook configurado: timeout 3s, 1 reintento, intervalo 2s, retardo 500ms")
    elif configuration["fallback_configured"]:
        click.echo(f"⚠️ Falló la configuración ({configuration['error']}); webhook desactivado como respaldo")
    else:
        raise click.ClickException(f"No se pudo configurar el webhook: {configuration['error']}")

    logs = result["logs"]
    if not logs["available"]:
        click.echo(f"ℹ️ {logs['note']}")
    elif logs["errors"]:
        click.echo("⚠️ Errores de reintento recientes:")
        for log in logs["errors"]:
            click.echo(f"  - {log.get('message')}")
    else:
        click.echo("✅ Sin errores de reintento recientes")


@webhook.command("simulate")
@click.option("--jid", required=True, help="Teléfono o JID del remitente")
@click.option("--text", required=True, help="Texto del mensaje")
@click.option("--instance", default=None, help="Instancia de Evolution")
def webhook_simulate(jid: str, text: str, instance: Optional[str]):
    """Simula un messages.upsert contra el receptor del CRM."""
    async def _main():
        return await WebhookService(EvolutionClient(), CRMClient()).simulate_message(jid, text, instance)

    result = run_async(_main())
    click.echo(f"📨 Evento {result['event']['data']['key']['id']} entregado")
    echo_json(result["response"])


# ---------------------------------------------------------------------------
# evolution
# ---------------------------------------------------------------------------

@cli.group()
def evolution():
    """Evolution API."""
    pass


@evolution.command("instances")
def evolution_instances():
    """Lista las instancias registradas."""
    async def _main():
        return await EvolutionClient().fetch_instances()

    instances = run_async(_main())
    click.echo(f"📱 Instancias: {len(instances)}")
    for item in instances:
        instance = item.get("instance") or item
        name = instance.get("instanceName") or instance.get("name")
        state = instance.get("status") or instance.get("connectionStatus")
        click.echo(f"  - {name} ({state})")


@evolution.command("send")
@click.option("--jid", required=True, help="Teléfono o JID del destinatario")
@click.option("--text", required=True, help="Texto del mensaje")
@click.option("--instance", default=None, help="Instancia de Evolution")
@click.option("--yes", is_flag=True, help="No pedir confirmación")
def evolution_send(jid: str, text: str, instance: Optional[str], yes: bool):
    """Envía un mensaje de texto real por WhatsApp."""
    confirm_or_abort(f"¿Enviar el mensaje a {jid}?", yes)

    async def _main():
        return await EvolutionClient().send_text(instance or settings.EVOLUTION_INSTANCE_NAME, jid, text)

    result = run_async(_main())
    click.echo(f"✅ Mensaje enviado (id: {(result.get('key') or {}).get('id')})")


# ---------------------------------------------------------------------------
# a2a
# ---------------------------------------------------------------------------

@cli.group()
def a2a():
    """API A2A del CRM."""
    pass


@a2a.command("test")
@click.option("--agent-id", default=None, help="Agente a probar")
@click.option("--input", "input_text", default="Olá, teste de integração", show_default=True,
              help="Texto de entrada para execute")
def a2a_test(agent_id: Optional[str], input_text: str):
    """Prueba los endpoints A2A."""
    async def _main():
        client = CRMClient()
        result = {"describe": await client.a2a_describe(), "agents": await client.a2a_list_agents()}
        if agent_id:
            result["agent"] = await client.a2a_get_agent(agent_id)
            result["card"] = await client.a2a_agent_card(agent_id)
            result["execute"] = await client.a2a_execute(agent_id, input_text)
        return result

    result = run_async(_main())
    click.echo(f"🔍 OPTIONS: {result['describe']['status_code']} (allow: {result['describe']['allow']})")
    click.echo("📋 Agentes A2A:")
    echo_json(result["agents"])
    if agent_id:
        click.echo(f"✅ Agent card: {result['card'].get('name')}")
        click.echo("📨 Respuesta de execute:")
        echo_json(result["execute"])


# ---------------------------------------------------------------------------
# queue
# ---------------------------------------------------------------------------

@cli.group()
def queue():
    """RabbitMQ."""
    pass


def _with_queue_service(action):
    async def _main():
        client = RabbitMQClient()
        try:
            return await action(QueueService(client, CRMClient()))
        finally:
            client.close()
    return run_async(_main())


@queue.command("setup")
def queue_setup():
    """Declara el exchange, las colas y sus DLQs."""
    result = _with_queue_service(lambda service: service.setup_topology())
    click.echo(f"✅ Exchange {result['exchange']} (topic)")
    for item in result["queues"]:
        click.echo(f"  - {item['queue']} (DLQ {item['dlq']})")


@queue.command("stats")
def queue_stats():
    """Mensajes y consumidores por cola."""
    for item in _with_queue_service(lambda service: service.queue_report()):
        if item["exists"]:
            click.echo(f"📊 {item['queue']}: {item['messages']} mensajes, {item['consumers']} consumidores")
        else:
            click.echo(f"❌ {item['queue']}: no existe")


@queue.command("publish")
@click.option("--queue", "queue_name", default="outbound", show_default=True, help="Alias o nombre de la cola")
def queue_publish(queue_name: str):
    """Publica un mensaje de prueba."""
    result = _with_queue_service(lambda service: service.publish_test_message(queue_name))
    click.echo(f"✅ Mensaje {result['message_id']} publicado en {result['queue']} (routing key {result['routing_key']})")


@queue.command("api")
def queue_api():
    """Verifica la ruta /api/rabbitmq/send-message del CRM."""
    async def _main():
        return await QueueService(None, CRMClient()).check_api_route()

    result = run_async(_main())
    if result["get_ok"]:
        click.echo("✅ Ruta de RabbitMQ disponible")
        echo_json(result["status"])
    else:
        raise click.ClickException(f"Ruta de RabbitMQ no disponible: {result['get_error']}")


# ---------------------------------------------------------------------------
# redis
# ---------------------------------------------------------------------------

@cli.group("redis")
def redis_group():
    """Redis."""
    pass


@redis_group.command("check")
def redis_check():
    """Ping, información del servidor y prueba de escritura/lectura."""
    async def _main():
        client = RedisClient()
        try:
            return client.ping(), client.server_info(), client.round_trip()
        finally:
            client.close()

    pong, info, round_trip = run_async(_main())
    click.echo(f"✅ PING: {pong}")
    click.echo(f"📋 Redis {info['redis_version']} ({info['redis_mode']}), uptime {info['uptime_in_seconds']}s")
    click.echo(f"✅ Escritura/lectura OK ({round_trip['key']})")


# ---------------------------------------------------------------------------
# health
# ---------------------------------------------------------------------------

@cli.group()
def health():
    """Diagnóstico general."""
    pass


@health.command("ports")
def health_ports():
    """Verifica qué puertos locales del CRM responden."""
    for item in run_async(HealthService().check_ports()):
        marker = {"online": "✅", "timeout": "⏰"}.get(item["status"], "❌")
        click.echo(f"{marker} localhost:{item['port']} - {item['status']}")


@health.command("endpoints")
def health_endpoints():
    """Prueba los endpoints críticos en cada puerto."""
    for item in run_async(HealthService().check_endpoints()):
        if item["status_code"] is None:
            click.echo(f"❌ :{item['port']}{item['endpoint']} - {item['error']}")
        else:
            marker = "✅" if item["status_code"] < 400 else "⚠️"
            click.echo(f"{marker} :{item['port']}{item['endpoint']} - {item['status_code']} {item['body'][:80]}")


@health.command("diagnose")
@click.pass_context
def health_diagnose(ctx):
    """Verifica el CRM, Evolution, Redis, Firestore y RabbitMQ."""
    firestore_configured = settings.FIREBASE_CREDENTIALS_PATH or settings.FIREBASE_PROJECT_ID
    service = HealthService(
        crm_client=CRMClient(),
        evolution_client=EvolutionClient() if settings.EVOLUTION_API_URL else None,
        redis_client=RedisClient(),
        firestore_factory=get_firestore_client if firestore_configured else None,
        rabbitmq_client=RabbitMQClient() if settings.RABBITMQ_URL else None
    )
    try:
        report = run_async(service.diagnose())
    finally:
        service.redis_client.close()
        if service.rabbitmq_client is not None:
            service.rabbitmq_client.close()

    for component in report["components"]:
        marker = {STATUS_OK: "✅", STATUS_ERROR: "❌"}.get(component["status"], "⏭️")
        click.echo(f"{marker} {component['component']}: {component['status']} - {component['detail']}")

    if not report["ok"]:
        click.echo("❌ Hay componentes con error")
        ctx.exit(1)
    click.echo("✅ Sistema operativo")


# ---------------------------------------------------------------------------
# env
# ---------------------------------------------------------------------------

@cli.group()
def env():
    """Variables de entorno."""
    pass


@env.command("check")
@click.pass_context
def env_check(ctx):
    """Verifica las variables requeridas y opcionales."""
    click.echo("🔍 Verificando variables de entorno...")
    missing = settings.validate_required_vars()
    required = ["EVOLUTION_API_URL", "EVOLUTION_API_KEY", "CRM_BASE_URL",
                "FIREBASE_CREDENTIALS_PATH", "EVO_AI_DATABASE_URL"]
    for var in required:
        if var in missing:
            click.echo(f"  ❌ {var} no está configurada")
        else:
            click.echo(f"  ✅ {var}: {mask(str(getattr(settings, var) or 'configurada'))}")

    for var, description in settings.optional_vars().items():
        value = getattr(settings, var, None)
        if value:
            click.echo(f"  ℹ️  {var}: {mask(str(value))} ({description})")
        else:
            click.echo(f"  ⚠️  {var} no configurada ({description})")

    if missing:
        click.echo(f"❌ Faltan {len(missing)} variables requeridas")
        ctx.exit(1)
    click.echo("✅ Configuración completa")


if __name__ == "__main__":
    cli()
