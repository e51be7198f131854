"""
Validación de identificadores (UUID, ids heredados) y normalización de JIDs de WhatsApp.
"""
import re
from typing import Any

UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE
)

LEGACY_ID_PATTERN = re.compile(r"^(mock_|fallback_)")

WHATSAPP_SUFFIX = "@s.whatsapp.net"


def is_valid_uuid(value: Any) -> bool:
    """Verifica si el valor es un UUID (versiones 1 a 5)."""
    if not isinstance(value, str):
        return False
    return bool(UUID_PATTERN.match(value))


def is_legacy_placeholder_id(value: Any) -> bool:
    """Detecta ids generados por las versiones antiguas del CRM (mock_..., fallback_...)."""
    if not isinstance(value, str):
        return False
    return bool(LEGACY_ID_PATTERN.match(value))


def normalize_jid(number: str) -> str:
    """
    Convierte un número de teléfono en JID de WhatsApp.

    Args:
        number: Número con o sin '+', espacios o guiones, o un JID completo

    Returns:
        JID en formato <digitos>@s.whatsapp.net
    """
    cleaned = number.strip()
    if "@" in cleaned:
        return cleaned
    cleaned = cleaned.replace("+", "").replace(" ", "").replace("-", "")
    return f"{cleaned}{WHATSAPP_SUFFIX}"


def jid_to_phone(jid: str) -> str:
    """Extrae el número de teléfono de un JID."""
    return jid.split("@", 1)[0]
