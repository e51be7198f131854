"""
Servicio de agentes (colección agents de Firestore).
Selección del agente disponible, verificación de configuración y ajuste de confianza.
"""
import logging
from typing import Any, Dict, List, Optional

from firebase_admin import firestore
from google.cloud.firestore_v1.base_query import FieldFilter

from crm_ops.integrations.firestore_client import get_document, stream_documents, update_document

logger = logging.getLogger(__name__)

WORKING_STATUSES = ["open", "pending", "in_progress"]
DEFAULT_MAX_INTERACTIONS = 10

# Pesos del puntaje de selección
PRIORITY_WEIGHT = 0.3
CAPACITY_BONUS = 0.2
AI_READY_BONUS = 0.1


class AgentNotFoundError(Exception):
    """El agente solicitado no existe en Firestore."""
    pass


def _agent_priority(agent: Dict[str, Any]) -> float:
    rules = agent.get("activationRules") or {}
    priority = rules.get("priority", agent.get("priority", 0))
    try:
        priority = float(priority)
    except (TypeError, ValueError):
        priority = 0.0
    return max(0.0, min(10.0, priority))


def score_agent(agent: Dict[str, Any], current_load: int = 0) -> float:
    """
    Calcula el puntaje de disponibilidad de un agente.

    priority/10 * 0.3, más 0.2 si tiene capacidad libre, más 0.1 si es un
    agente IA vinculado a Evo AI.
    """
    score = _agent_priority(agent) / 10 * PRIORITY_WEIGHT

    max_interactions = (agent.get("behavior") or {}).get("maxInteractionsPerTicket", DEFAULT_MAX_INTERACTIONS)
    if current_load < max_interactions:
        score += CAPACITY_BONUS

    if agent.get("type") == "ai" and agent.get("evoAiAgentId"):
        score += AI_READY_BONUS

    return round(score, 4)


def select_available_agent(agents: List[Dict[str, Any]],
                           ticket_load: Optional[Dict[str, int]] = None) -> Optional[Dict[str, Any]]:
    """
    Elige el agente con mayor puntaje.

    Los agentes con active == False se ignoran; en caso de empate gana el
    primero en el orden recibido.

    Args:
        agents: Agentes (con id) en el orden de Firestore
        ticket_load: Tickets activos por agent_id

    Returns:
        El agente elegido con su puntaje en "score", o None
    """
    ticket_load = ticket_load or {}
    best = None
    best_score = -1.0

    for agent in agents:
        if agent.get("active") is False:
            continue
        score = score_agent(agent, ticket_load.get(agent.get("id"), 0))
        if score > best_score:
            best = agent
            best_score = score

    if best is None:
        return None
    return {**best, "score": best_score}


def check_agent_config(agent: Dict[str, Any]) -> List[str]:
    """Lista los problemas de configuración de un agente."""
    problems = []
    ai_config = agent.get("aiConfig") or {}

    if agent.get("active") is False:
        problems.append("Agente inactivo")
    if agent.get("type") == "ai" and not agent.get("evoAiAgentId"):
        problems.append("Agente IA sin evoAiAgentId")
    if ai_config and not ai_config.get("autoResponse"):
        problems.append("autoResponse desactivado")

    threshold = (ai_config.get("escalationRules") or {}).get("confidenceThreshold")
    if threshold is not None and not (0 <= threshold <= 1):
        problems.append(f"confidenceThreshold fuera de rango: {threshold}")

    return problems


class AgentService:
    """Servicio para operar sobre los agentes de Firestore."""

    def __init__(self, db):
        self.db = db
        self.collection = "agents"

    async def list_agents(self) -> List[Dict[str, Any]]:
        """Lista todos los agentes en el orden de Firestore."""
        return [{"id": doc.id, **doc.to_dict()} for doc in stream_documents(self.db.collection(self.collection))]

    async def get_agent(self, agent_id: str) -> Dict[str, Any]:
        """
        Obtiene un agente por ID.

        Raises:
            AgentNotFoundError: Si el agente no existe
        """
        doc = get_document(self.db.collection(self.collection).document(agent_id))
        if not doc.exists:
            raise AgentNotFoundError(f"Agente {agent_id} no encontrado")
        return {"id": doc.id, **doc.to_dict()}

    async def find_by_name(self, name: str) -> Optional[Dict[str, Any]]:
        """Busca un agente por nombre exacto."""
        query = self.db.collection(self.collection).where(filter=FieldFilter("name", "==", name))
        for doc in stream_documents(query.limit(1)):
            return {"id": doc.id, **doc.to_dict()}
        return None

    async def count_active_tickets(self, agent_id: str) -> int:
        """Cuenta los tickets abiertos asignados a un agente."""
        query = self.db.collection("tickets") \
            .where(filter=FieldFilter("assignedAgent.id", "==", agent_id)) \
            .where(filter=FieldFilter("status", "in", WORKING_STATUSES))
        return len(stream_documents(query))

    async def count_interactions(self, agent_id: str) -> int:
        """Cuenta las interacciones registradas en agent_interactions."""
        query = self.db.collection("agent_interactions").where(filter=FieldFilter("agentId", "==", agent_id))
        return len(stream_documents(query))

    async def select_available_agent(self) -> Optional[Dict[str, Any]]:
        """Elige el mejor agente considerando la carga actual de tickets."""
        agents = await self.list_agents()
        ticket_load = {}
        for agent in agents:
            if agent.get("active") is not False:
                ticket_load[agent["id"]] = await self.count_active_tickets(agent["id"])

        selected = select_available_agent(agents, ticket_load)
        if selected:
            logger.info(f"🔍 Agente seleccionado: {selected.get('name')} (puntaje {selected['score']})")
        else:
            logger.warning("⚠️ No hay agentes disponibles")
        return selected

    async def check_agents(self) -> List[Dict[str, Any]]:
        """Verifica la configuración de todos los agentes."""
        report = []
        for agent in await self.list_agents():
            report.append({
                "id": agent["id"],
                "name": agent.get("name"),
                "type": agent.get("type"),
                "interactions": await self.count_interactions(agent["id"]),
                "problems": check_agent_config(agent)
            })
        return report

    async def update_confidence(self, name: str, threshold: float = 0.4,
                                dry_run: bool = False) -> Dict[str, Any]:
        """
        Ajusta el umbral de confianza y la configuración de respuesta de un agente.

        Args:
            name: Nombre del agente
            threshold: Nuevo confidenceThreshold (0 a 1)
            dry_run: Si True, retorna la configuración sin escribirla

        Raises:
            ValueError: Si el umbral está fuera de rango
            AgentNotFoundError: Si no existe un agente con ese nombre
        """
        if not 0 <= threshold <= 1:
            raise ValueError(f"El umbral debe estar entre 0 y 1: {threshold}")

        agent = await self.find_by_name(name)
        if agent is None:
            raise AgentNotFoundError(f"Agente '{name}' no encontrado")

        previous = agent.get("aiConfig") or {}
        ai_config = {
            **previous,
            "autoResponse": True,
            "escalationRules": {
                "confidenceThreshold": threshold,
                "maxAttempts": 3,
                "timeoutMinutes": 30
            },
            "responseSettings": {
                "maxLength": 500,
                "tone": "professional",
                "language": "pt-BR"
            }
        }

        if not dry_run:
            update_document(self.db.collection(self.collection).document(agent["id"]), {
                "aiConfig": ai_config,
                "updatedAt": firestore.SERVER_TIMESTAMP
            })
            logger.info(f"✅ Confianza de '{name}' ajustada a {threshold}")

        return {
            "agent_id": agent["id"],
            "previous_threshold": (previous.get("escalationRules") or {}).get("confidenceThreshold"),
            "ai_config": ai_config,
            "dry_run": dry_run
        }
