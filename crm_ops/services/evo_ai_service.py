"""
Servicio de diagnóstico y reparación del Postgres de Evo AI (tabla agents).
"""
import json
import logging
import uuid
from typing import Any, Dict, List, Optional, Sequence

import psycopg2.extras
from psycopg2 import sql

from crm_ops.integrations.crm_client import CRMAPIError
from crm_ops.utils.identifiers import is_legacy_placeholder_id, is_valid_uuid

logger = logging.getLogger(__name__)

AGENT_TABLE_KEYWORDS = ("agent", "bot", "ai", "workflow")
CLIENT_TABLE_KEYWORDS = ("client", "user", "company", "organization")


class EvoAIService:
    """Servicio para operar sobre la tabla agents de Evo AI."""

    def __init__(self, db):
        """
        Args:
            db: EvoAIDatabase abierta
        """
        self.db = db

    # Agentes huérfanos

    async def list_orphans(self) -> List[Dict[str, Any]]:
        """Lista los agentes sin client_id."""
        return self.db.fetch_all(
            "SELECT id, name, type, description, created_at FROM agents "
            "WHERE client_id IS NULL ORDER BY created_at DESC"
        )

    async def fix_orphans(self, client_id: str, dry_run: bool = False) -> List[Dict[str, Any]]:
        """
        Vincula los agentes huérfanos a un cliente.

        Args:
            client_id: UUID del cliente destino
            dry_run: Si True, retorna los huérfanos sin actualizar

        Returns:
            Filas actualizadas (o las que se actualizarían)

        Raises:
            ValueError: Si client_id no es un UUID
        """
        if not is_valid_uuid(client_id):
            raise ValueError(f"client_id inválido: {client_id}")

        if dry_run:
            return await self.list_orphans()

        rows = self.db.fetch_all(
            "UPDATE agents SET client_id = %s, updated_at = NOW() "
            "WHERE client_id IS NULL RETURNING id, name, client_id",
            (client_id,)
        )
        logger.info(f"✅ {len(rows)} agentes huérfanos vinculados al cliente {client_id}")
        return rows

    async def client_stats(self, client_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Cuenta los agentes por cliente (huérfanos, cliente dado, otros)."""
        return self.db.fetch_all(
            """
            SELECT
                CASE
                    WHEN client_id IS NULL THEN 'SIN CLIENT_ID (HUÉRFANOS)'
                    WHEN client_id::text = %(client_id)s THEN 'CLIENTE'
                    ELSE 'OTROS CLIENTES'
                END AS cliente,
                COUNT(*) AS total_agentes
            FROM agents
            GROUP BY 1
            ORDER BY 1
            """,
            {"client_id": client_id or ""}
        )

    # Configuración de servidores MCP

    async def fix_invalid_mcp_servers(self, dry_run: bool = False) -> Dict[str, Any]:
        """
        Regenera los ids de config.mcp_servers que no son UUID.

        Las configuraciones guardadas como texto se parsean; las que no son
        JSON válido se reportan y se omiten.
        """
        rows = self.db.fetch_all(
            "SELECT id, name, config FROM agents WHERE config IS NOT NULL ORDER BY created_at"
        )
        report = {"checked": len(rows), "fixed": [], "skipped": [], "dry_run": dry_run}

        for row in rows:
            config = row["config"]
            if isinstance(config, str):
                try:
                    config = json.loads(config)
                except ValueError as e:
                    report["skipped"].append({"id": str(row["id"]), "name": row["name"], "reason": str(e)})
                    logger.warning(f"⚠️ Config no parseable en el agente {row['name']}: {e}")
                    continue

            servers = (config or {}).get("mcp_servers") or []
            replaced = []
            for server in servers:
                if isinstance(server, dict) and not is_valid_uuid(server.get("id")):
                    new_id = str(uuid.uuid4())
                    replaced.append({"old": server.get("id"), "new": new_id})
                    server["id"] = new_id

            if not replaced:
                continue

            if not dry_run:
                self.db.execute(
                    "UPDATE agents SET config = %s, updated_at = NOW() WHERE id = %s",
                    (psycopg2.extras.Json(config), row["id"])
                )
            report["fixed"].append({"id": str(row["id"]), "name": row["name"], "servers": replaced})
            logger.info(f"🔧 Agente {row['name']}: {len(replaced)} ids de MCP regenerados")

        return report

    # Ids inválidos

    async def find_invalid_agent_ids(self) -> List[Dict[str, Any]]:
        """Lista los agentes cuyo id es heredado (mock_/fallback_) o no es UUID."""
        rows = self.db.fetch_all("SELECT id::text AS id, name, type, created_at FROM agents")
        invalid = []
        for row in rows:
            if is_legacy_placeholder_id(row["id"]):
                invalid.append({**row, "reason": "id heredado"})
            elif not is_valid_uuid(row["id"]):
                invalid.append({**row, "reason": "no es UUID"})
        return invalid

    # Inspección del esquema

    async def inspect_constraints(self) -> Dict[str, Any]:
        """Retorna las restricciones de agents, check_agent_type, los tipos usados y los enums."""
        constraints = self.db.fetch_all(
            "SELECT conname, contype, pg_get_constraintdef(oid) AS definition "
            "FROM pg_constraint WHERE conrelid = 'agents'::regclass"
        )
        type_check = self.db.fetch_one(
            "SELECT pg_get_constraintdef(oid) AS definition FROM pg_constraint "
            "WHERE conname = 'check_agent_type' AND conrelid = 'agents'::regclass"
        )
        types = self.db.fetch_all(
            "SELECT DISTINCT type, COUNT(*) AS count FROM agents GROUP BY type ORDER BY count DESC"
        )
        enums = self.db.fetch_all(
            """
            SELECT t.typname AS enum_name,
                   array_agg(e.enumlabel ORDER BY e.enumsortorder) AS enum_values
            FROM pg_type t
            JOIN pg_enum e ON t.oid = e.enumtypid
            WHERE t.typname LIKE '%agent%' OR t.typname LIKE '%type%'
            GROUP BY t.typname
            """
        )
        return {
            "constraints": constraints,
            "check_agent_type": type_check["definition"] if type_check else None,
            "types": types,
            "enums": enums
        }

    def _public_tables(self) -> List[str]:
        rows = self.db.fetch_all(
            "SELECT table_name FROM information_schema.tables "
            "WHERE table_schema = 'public' ORDER BY table_name"
        )
        return [row["table_name"] for row in rows]

    def _columns(self, table: str) -> List[Dict[str, Any]]:
        return self.db.fetch_all(
            "SELECT column_name, data_type, is_nullable, column_default "
            "FROM information_schema.columns WHERE table_name = %s ORDER BY ordinal_position",
            (table,)
        )

    async def explore_schema(self, keywords: Sequence[str] = AGENT_TABLE_KEYWORDS) -> Dict[str, Any]:
        """Lista las tablas públicas y la estructura de las que coinciden con las palabras clave."""
        tables = self._public_tables()
        matching = [t for t in tables if any(k in t.lower() for k in keywords)]
        return {
            "tables": tables,
            "matching": {table: self._columns(table) for table in matching}
        }

    async def find_client(self, term: str, limit: int = 10) -> Dict[str, List[Dict[str, Any]]]:
        """
        Busca un término en las tablas de clientes/usuarios.

        La coincidencia se hace sobre el texto completo de la fila, sin
        distinguir mayúsculas.
        """
        tables = [t for t in self._public_tables() if any(k in t.lower() for k in CLIENT_TABLE_KEYWORDS)]
        results = {}
        for table in tables:
            query = sql.SQL("SELECT * FROM {table} t WHERE LOWER(t::text) LIKE %s LIMIT %s").format(
                table=sql.Identifier(table)
            )
            rows = self.db.fetch_all(query, (f"%{term.lower()}%", limit))
            if rows:
                results[table] = rows
        return results

    # Agentes huérfanos respecto al CRM

    async def remove_orphan_agents(self, name_pattern: str, crm_client,
                                   dry_run: bool = False) -> Dict[str, Any]:
        """
        Elimina de Evo AI los agentes que ya no existen en el CRM.

        Para cada agente cuyo nombre coincide con el patrón se consulta
        GET /api/agents/{id}: si el CRM aún lo tiene se omite; si responde 404
        se elimina; cualquier otro error también lo omite.
        """
        rows = self.db.fetch_all(
            "SELECT id, name, type, client_id, created_at FROM agents WHERE UPPER(name) LIKE %s",
            (f"%{name_pattern.upper()}%",)
        )
        report = {"matched": len(rows), "deleted": [], "skipped": [], "dry_run": dry_run}

        for row in rows:
            agent_id = str(row["id"])
            try:
                crm_agent = await crm_client.get_agent(agent_id)
            except CRMAPIError as e:
                report["skipped"].append({"id": agent_id, "name": row["name"], "reason": f"error del CRM: {e}"})
                continue

            if crm_agent is not None:
                logger.warning(f"⚠️ El agente {row['name']} aún existe en el CRM, se omite")
                report["skipped"].append({"id": agent_id, "name": row["name"], "reason": "existe en el CRM"})
                continue

            if not dry_run:
                self.db.execute("DELETE FROM agents WHERE id = %s", (row["id"],))
                logger.info(f"🗑️ Agente huérfano {row['name']} ({agent_id}) eliminado")
            report["deleted"].append({"id": agent_id, "name": row["name"]})

        return report
