"""
Utilidades compartidas: manejo de errores e identificadores.
"""
from .error_handler import (
    APIError,
    APIErrorHandler,
    APIErrorSeverity,
    APIErrorType,
    RetryConfig,
    get_error_handler,
    reset_error_handler,
    with_error_handling,
)
from .identifiers import is_legacy_placeholder_id, is_valid_uuid, jid_to_phone, normalize_jid

__all__ = [
    "APIError",
    "APIErrorHandler",
    "APIErrorSeverity",
    "APIErrorType",
    "RetryConfig",
    "get_error_handler",
    "reset_error_handler",
    "with_error_handling",
    "is_legacy_placeholder_id",
    "is_valid_uuid",
    "jid_to_phone",
    "normalize_jid",
]
