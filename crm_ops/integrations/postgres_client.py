"""
Acceso al Postgres de Evo AI (tabla agents) vía psycopg2.
"""
import logging
from typing import Any, Iterable, List, Optional

import psycopg2
import psycopg2.extras

from crm_ops.config import settings
from crm_ops.utils.error_handler import with_error_handling

logger = logging.getLogger(__name__)


class DatabaseConfigError(Exception):
    """Error de configuración del Postgres de Evo AI."""
    pass


def get_connection(dsn: Optional[str] = None):
    """
    Abre una conexión con cursores RealDictCursor.

    Raises:
        DatabaseConfigError: Si no hay DSN configurado
    """
    dsn = dsn or settings.get_postgres_dsn()
    if not dsn:
        raise DatabaseConfigError("Configure EVO_AI_DATABASE_URL o EVO_AI_DB_HOST para acceder a Evo AI")
    return psycopg2.connect(dsn, cursor_factory=psycopg2.extras.RealDictCursor)


class EvoAIDatabase:
    """
    Conexión de trabajo con el Postgres de Evo AI.

    Usado como context manager: confirma la transacción si el bloque termina
    sin errores, la revierte si hay una excepción y siempre cierra la conexión.
    """

    def __init__(self, dsn: Optional[str] = None):
        self.dsn = dsn
        self.conn = None

    def __enter__(self) -> "EvoAIDatabase":
        self.conn = get_connection(self.dsn)
        return self

    def __exit__(self, exc_type, exc, tb):
        try:
            if exc_type is None:
                self.conn.commit()
            else:
                logger.warning(f"⚠️ Revirtiendo transacción por error: {exc}")
                self.conn.rollback()
        finally:
            self.conn.close()
            self.conn = None
        return False

    @with_error_handling("postgres", context={"operation": "fetch_all"})
    def fetch_all(self, query: str, params: Optional[Iterable[Any]] = None) -> List[dict]:
        """Ejecuta una consulta y retorna todas las filas como dicts."""
        cur = self.conn.cursor()
        try:
            cur.execute(query, params)
            return [dict(row) for row in cur.fetchall()]
        finally:
            cur.close()

    def fetch_one(self, query: str, params: Optional[Iterable[Any]] = None) -> Optional[dict]:
        """Ejecuta una consulta y retorna la primera fila (o None)."""
        rows = self.fetch_all(query, params)
        return rows[0] if rows else None

    @with_error_handling("postgres", context={"operation": "execute"})
    def execute(self, query: str, params: Optional[Iterable[Any]] = None) -> int:
        """Ejecuta una sentencia de escritura y retorna las filas afectadas."""
        cur = self.conn.cursor()
        try:
            cur.execute(query, params)
            return cur.rowcount
        finally:
            cur.close()
