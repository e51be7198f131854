"""
Servicio de mensajes (colección messages de Firestore y Evolution API).
Repara campos faltantes, detecta y elimina duplicados y verifica envíos del bot.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from crm_ops.integrations.firestore_client import MAX_BATCH_SIZE, commit_batch, stream_documents

logger = logging.getLogger(__name__)


def _is_missing(value: Any) -> bool:
    return value is None or value == "" or value == "undefined"


# Por encima de este valor messageTimestamp viene en milisegundos (Date.now())
MILLISECONDS_THRESHOLD = 100_000_000_000


def parse_message_timestamp(value: Any) -> Optional[datetime]:
    """
    Convierte messageTimestamp (segundos o milisegundos Unix) a datetime UTC.

    Returns:
        None si el valor no es numérico o está fuera de rango
    """
    try:
        seconds = float(value)
        if seconds > MILLISECONDS_THRESHOLD:
            seconds /= 1000
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def compute_message_fixes(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Calcula las actualizaciones necesarias para normalizar un mensaje.

    Args:
        data: Documento del mensaje

    Returns:
        Dict con los campos a actualizar (vacío si el mensaje está bien)
    """
    updates: Dict[str, Any] = {}
    key = data.get("key") or {}

    if _is_missing(data.get("sender")):
        if data.get("isFromMe") is True:
            updates["sender"] = "agent"
        elif data.get("isFromMe") is False:
            updates["sender"] = "client"
        elif key.get("fromMe") is True:
            updates["sender"] = "agent"
            updates["isFromMe"] = True
        elif key.get("fromMe") is False:
            updates["sender"] = "client"
            updates["isFromMe"] = False
        else:
            # Sin información: se asume mensaje del cliente
            updates["sender"] = "client"
            updates["isFromMe"] = False

    if not data.get("timestamp") and data.get("messageTimestamp"):
        parsed = parse_message_timestamp(data["messageTimestamp"])
        if parsed is not None:
            updates["timestamp"] = parsed
        else:
            logger.warning(f"⚠️ messageTimestamp inválido: {data['messageTimestamp']!r}")

    if not data.get("messageId") and key.get("id"):
        updates["messageId"] = key["id"]

    if not data.get("content") and data.get("body"):
        updates["content"] = data["body"]

    if not data.get("type") and data.get("messageType"):
        updates["type"] = data["messageType"]

    if _is_missing(data.get("pushName")):
        sender = updates.get("sender", data.get("sender"))
        if data.get("senderName"):
            updates["pushName"] = data["senderName"]
        elif sender == "agent":
            updates["pushName"] = "Agente"
        else:
            updates["pushName"] = "Cliente"

    return updates


def _timestamp_sort_value(data: Dict[str, Any]) -> float:
    value = data.get("timestamp")
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.timestamp()
    if isinstance(value, (int, float)):
        parsed = parse_message_timestamp(value)
        if parsed is not None:
            return parsed.timestamp()
    parsed = parse_message_timestamp(data.get("messageTimestamp"))
    if parsed is not None:
        return parsed.timestamp()
    # Sin fecha: nunca se prefiere sobre una copia fechada
    return float("inf")


def group_duplicates(docs: List[Any]) -> Dict[str, List[Any]]:
    """
    Agrupa los documentos por messageId (o key.id) y ordena cada grupo.

    El primer documento de cada grupo es la copia que se conserva: la más
    antigua por timestamp y, en empate, la de menor ID de documento.
    """
    groups: Dict[str, List[Any]] = {}
    for doc in docs:
        data = doc.to_dict() or {}
        message_id = data.get("messageId") or (data.get("key") or {}).get("id")
        if not message_id:
            continue
        groups.setdefault(message_id, []).append(doc)

    for message_id, items in groups.items():
        items.sort(key=lambda d: (_timestamp_sort_value(d.to_dict() or {}), d.id))
    return groups


class MessageService:
    """Servicio para operar sobre los mensajes."""

    def __init__(self, db=None, evolution_client=None):
        """
        Args:
            db: Cliente de Firestore
            evolution_client: Cliente de la Evolution API
        """
        self.db = db
        self.evolution_client = evolution_client
        self.collection = "messages"

    def _commit_in_batches(self, operations: List[Any]) -> int:
        """
        Aplica operaciones (callables que reciben el batch) en lotes de hasta 500.

        Returns:
            Número de operaciones confirmadas
        """
        committed = 0
        batch = self.db.batch()
        pending = 0
        for operation in operations:
            operation(batch)
            pending += 1
            if pending >= MAX_BATCH_SIZE:
                commit_batch(batch)
                committed += pending
                batch = self.db.batch()
                pending = 0
        if pending:
            commit_batch(batch)
            committed += pending
        return committed

    async def repair_messages(self, dry_run: bool = False) -> Dict[str, Any]:
        """
        Normaliza los campos de todos los mensajes.

        Args:
            dry_run: Si True, solo cuenta los mensajes a corregir

        Returns:
            Dict con total, mensajes a corregir, corregidos y conteo por campo
        """
        docs = stream_documents(self.db.collection(self.collection))
        field_counts: Dict[str, int] = {}
        operations = []

        for doc in docs:
            updates = compute_message_fixes(doc.to_dict() or {})
            if not updates:
                continue
            for field in updates:
                field_counts[field] = field_counts.get(field, 0) + 1
            operations.append(lambda batch, ref=doc.reference, upd=updates: batch.update(ref, upd))

        fixed = 0 if dry_run else self._commit_in_batches(operations)
        logger.info(f"🔧 Mensajes: {len(docs)} revisados, {len(operations)} a corregir, {fixed} corregidos")
        return {
            "total": len(docs),
            "needs_fix": len(operations),
            "fixed": fixed,
            "fields": field_counts,
            "dry_run": dry_run
        }

    async def find_duplicates(self) -> Dict[str, Any]:
        """
        Detecta mensajes duplicados por messageId.

        Returns:
            Dict con total, únicos, duplicados, tasa (%) y el top 10 de duplicados
        """
        docs = stream_documents(self.db.collection(self.collection))
        groups = group_duplicates(docs)
        return self._build_report(docs, groups)

    def _build_report(self, docs: List[Any], groups: Dict[str, List[Any]]) -> Dict[str, Any]:
        duplicates = {mid: items for mid, items in groups.items() if len(items) > 1}
        duplicate_count = sum(len(items) - 1 for items in duplicates.values())
        total = len(docs)

        top = sorted(duplicates.items(), key=lambda item: len(item[1]), reverse=True)[:10]
        report = {
            "total_messages": total,
            "unique_message_ids": len(groups),
            "duplicate_messages": duplicate_count,
            "duplicate_rate": round(duplicate_count / total * 100, 2) if total else 0.0,
            "top_duplicates": [
                {"messageId": mid, "count": len(items), "keep": items[0].id,
                 "remove": [d.id for d in items[1:]]}
                for mid, items in top
            ]
        }
        logger.info(f"📊 Duplicados: {duplicate_count} de {total} mensajes ({report['duplicate_rate']}%)")
        return report

    async def remove_duplicates(self, dry_run: bool = False) -> Dict[str, Any]:
        """Elimina las copias duplicadas conservando la más antigua."""
        docs = stream_documents(self.db.collection(self.collection))
        groups = group_duplicates(docs)
        report = self._build_report(docs, groups)
        to_delete = [doc for items in groups.values() for doc in items[1:]]

        deleted = 0
        if not dry_run:
            deleted = self._commit_in_batches(
                [lambda batch, ref=doc.reference: batch.delete(ref) for doc in to_delete]
            )
            logger.info(f"🗑️ {deleted} mensajes duplicados eliminados")

        report["to_delete"] = len(to_delete)
        report["deleted"] = deleted
        report["dry_run"] = dry_run
        return report

    async def check_sent_messages(self, instance: str, remote_jid: str, window_minutes: int = 10,
                                  limit: int = 10, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Verifica si el bot envió mensajes recientes a un chat.

        Args:
            instance: Instancia de Evolution
            remote_jid: Chat a revisar
            window_minutes: Ventana de tiempo considerada reciente
            limit: Mensajes a consultar
            now: Momento de referencia (por defecto, ahora)
        """
        now = now or datetime.now(timezone.utc)
        messages = await self.evolution_client.find_messages(instance, remote_jid, limit)

        bot_messages = [m for m in messages if (m.get("key") or {}).get("fromMe")]
        cutoff = now - timedelta(minutes=window_minutes)
        recent = []
        for message in bot_messages:
            sent_at = parse_message_timestamp(message.get("messageTimestamp"))
            if sent_at is not None and sent_at >= cutoff:
                recent.append({
                    "id": (message.get("key") or {}).get("id"),
                    "sent_at": sent_at.isoformat(),
                    "text": (message.get("message") or {}).get("conversation")
                })

        return {
            "total": len(messages),
            "bot_messages": len(bot_messages),
            "recent_bot_messages": recent,
            "window_minutes": window_minutes
        }
