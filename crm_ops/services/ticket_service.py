"""
Servicio de diagnóstico y reparación de tickets (colección tickets de Firestore).
Detecta tickets sin agente IA, asigna agentes y ajusta la respuesta automática.
"""
import logging
from typing import Any, Dict, List

import httpx
from firebase_admin import firestore
from google.cloud.firestore_v1.base_query import FieldFilter

from crm_ops.integrations.crm_client import CRMAPIError
from crm_ops.integrations.firestore_client import get_document, stream_documents, update_document

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = ["open", "pending"]


class TicketNotFoundError(Exception):
    """El ticket solicitado no existe en Firestore."""
    pass


def diagnose_ticket(ticket_id: str, data: Dict[str, Any]) -> List[str]:
    """
    Lista los problemas que impiden que un ticket sea atendido por la IA.

    Args:
        ticket_id: ID del ticket (solo para logging)
        data: Documento del ticket

    Returns:
        Lista de problemas (vacía si el ticket está bien configurado)
    """
    problems = []
    agent = data.get("assignedAgent") or {}
    ai_config = data.get("aiConfig") or {}

    if agent.get("type") != "ai":
        problems.append("Sin agente IA asignado")
    else:
        if not ai_config.get("autoResponse"):
            problems.append("Agente IA con autoResponse desactivado")
        if not agent.get("evoAiAgentId"):
            problems.append("Agente IA sin evoAiAgentId")

    if not data.get("remoteJid") and not data.get("clientPhone"):
        problems.append("Sin remoteJid ni clientPhone")

    if not data.get("instanceName"):
        problems.append("Sin instanceName")

    if problems:
        logger.debug(f"Ticket {ticket_id}: {problems}")
    return problems


def assigned_agent_ref(agent: Dict[str, Any]) -> Dict[str, Any]:
    """Referencia embebida en tickets.assignedAgent, la que lee la aplicación."""
    return {
        "id": agent["id"],
        "name": agent.get("name"),
        "type": agent.get("type"),
        "evoAiAgentId": agent.get("evoAiAgentId"),
    }


class TicketService:
    """Servicio para operar sobre los tickets de Firestore."""

    def __init__(self, db, crm_client=None):
        """
        Inicializa el servicio de tickets.

        Args:
            db: Cliente de Firestore
            crm_client: Cliente de la API del CRM (opcional, para asignar vía API)
        """
        self.db = db
        self.crm_client = crm_client
        self.collection = "tickets"

    def diagnose_ticket(self, ticket_id: str, data: Dict[str, Any]) -> List[str]:
        """Lista los problemas de un ticket (ver diagnose_ticket)."""
        return diagnose_ticket(ticket_id, data)

    async def list_active_tickets(self) -> List[Dict[str, Any]]:
        """Lista los tickets con status open o pending."""
        query = self.db.collection(self.collection).where(
            filter=FieldFilter("status", "in", ACTIVE_STATUSES)
        )
        return [{"id": doc.id, **doc.to_dict()} for doc in stream_documents(query)]

    async def summarize_active_tickets(self) -> Dict[str, Any]:
        """
        Resume el estado de los tickets activos.

        Returns:
            Dict con contadores y los problemas de cada ticket
        """
        tickets = await self.list_active_tickets()
        summary = {
            "total": len(tickets),
            "with_ai_agent": 0,
            "with_auto_response": 0,
            "with_problems": 0,
            "tickets": []
        }

        for ticket in tickets:
            agent = ticket.get("assignedAgent") or {}
            ai_config = ticket.get("aiConfig") or {}
            if agent.get("type") == "ai":
                summary["with_ai_agent"] += 1
            if ai_config.get("autoResponse"):
                summary["with_auto_response"] += 1

            problems = diagnose_ticket(ticket["id"], ticket)
            if problems:
                summary["with_problems"] += 1

            summary["tickets"].append({
                "id": ticket["id"],
                "client": ticket.get("clientName") or (ticket.get("client") or {}).get("name"),
                "status": ticket.get("status"),
                "agent": agent.get("name"),
                "problems": problems
            })

        logger.info(
            f"📊 Tickets activos: {summary['total']} "
            f"(IA: {summary['with_ai_agent']}, con problemas: {summary['with_problems']})"
        )
        return summary

    async def get_ticket(self, ticket_id: str) -> Dict[str, Any]:
        """
        Obtiene un ticket por ID.

        Raises:
            TicketNotFoundError: Si el ticket no existe
        """
        doc = get_document(self.db.collection(self.collection).document(ticket_id))
        if not doc.exists:
            raise TicketNotFoundError(f"Ticket {ticket_id} no encontrado")
        return {"id": doc.id, **doc.to_dict()}

    async def assign_agent(self, ticket_id: str, agent: Dict[str, Any], mode: str = "immediate",
                           auto_response: bool = True, max_interactions: int = 10,
                           use_api: bool = True) -> Dict[str, Any]:
        """
        Asigna un agente a un ticket.

        Intenta primero la API del CRM; si falla (o use_api es False) escribe
        directamente en Firestore agentId, assignedAgent, aiConfig y updatedAt.

        Args:
            ticket_id: ID del ticket
            agent: Documento del agente (debe incluir id)
            mode: Modo de activación
            auto_response: Si el agente responde automáticamente
            max_interactions: Máximo de interacciones por ticket
            use_api: Si se intenta la API del CRM antes de Firestore

        Returns:
            Dict con el método usado (api o firestore) y la verificación
        """
        agent_id = agent["id"]
        await self.get_ticket(ticket_id)

        method = None
        api_error = None
        if use_api and self.crm_client is not None:
            try:
                await self.crm_client.assign_agent(
                    ticket_id, agent_id, mode=mode,
                    auto_response=auto_response, max_interactions=max_interactions
                )
                method = "api"
            except (CRMAPIError, httpx.HTTPError) as e:
                api_error = str(e)
                logger.warning(f"⚠️ Falló la asignación vía API, usando Firestore: {e}")

        if method is None:
            update_document(self.db.collection(self.collection).document(ticket_id), {
                "agentId": agent_id,
                "assignedAgent": assigned_agent_ref(agent),
                "aiConfig": {
                    "agentId": agent_id,
                    "autoResponse": auto_response,
                    "mode": mode,
                    "maxInteractionsPerTicket": max_interactions,
                    "activatedAt": firestore.SERVER_TIMESTAMP,
                    "activatedBy": "system"
                },
                "updatedAt": firestore.SERVER_TIMESTAMP
            })
            method = "firestore"

        logger.info(f"✅ Agente {agent.get('name', agent_id)} asignado al ticket {ticket_id} vía {method}")
        return {
            "ticket_id": ticket_id,
            "agent_id": agent_id,
            "method": method,
            "api_error": api_error,
            "verification": await self.verify_assignment(ticket_id)
        }

    async def verify_assignment(self, ticket_id: str) -> Dict[str, Any]:
        """Relee el ticket y retorna el agente y la configuración IA vigentes."""
        ticket = await self.get_ticket(ticket_id)
        ai_config = ticket.get("aiConfig") or {}
        return {
            "agentId": ticket.get("agentId"),
            "autoResponse": ai_config.get("autoResponse"),
            "mode": ai_config.get("mode"),
            "maxInteractionsPerTicket": ai_config.get("maxInteractionsPerTicket"),
            "activatedBy": ai_config.get("activatedBy")
        }

    async def disable_auto_response(self, dry_run: bool = False) -> Dict[str, Any]:
        """
        Desactiva aiConfig.autoResponse en todos los tickets que lo tienen activo.

        Args:
            dry_run: Si True, solo reporta sin escribir

        Returns:
            Dict con encontrados, actualizados y errores
        """
        query = self.db.collection(self.collection).where(
            filter=FieldFilter("aiConfig.autoResponse", "==", True)
        )
        docs = stream_documents(query)
        result = {"found": len(docs), "updated": 0, "errors": 0, "dry_run": dry_run, "ticket_ids": []}

        for doc in docs:
            result["ticket_ids"].append(doc.id)
            if dry_run:
                continue
            try:
                update_document(doc.reference, {
                    "aiConfig.autoResponse": False,
                    "updatedAt": firestore.SERVER_TIMESTAMP
                })
                result["updated"] += 1
            except Exception as e:
                result["errors"] += 1
                logger.error(f"❌ Error al actualizar ticket {doc.id}: {e}")

        logger.info(
            f"autoResponse desactivado en {result['updated']}/{result['found']} tickets"
            f"{' (dry-run)' if dry_run else ''}"
        )
        return result

