"""
Manejo de errores común a todos los sistemas externos de crm-ops.

Cada llamada decorada con with_error_handling:
- se clasifica (tipo y severidad) cuando falla,
- se registra en el log con campos estructurados,
- alimenta las métricas del servicio correspondiente,
- y, si es asíncrona, se reintenta con backoff exponencial mientras el
  circuit breaker del sistema lo permita.
"""

import asyncio
import logging
import random
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from functools import wraps
from typing import Any, Callable, Dict, List, Optional, Tuple

import aiohttp
import httpx
import pika.exceptions
import psycopg2
import redis

from ..services.metrics_service import ServiceType, metrics_service

logger = logging.getLogger(__name__)

TIMEOUT_EXCEPTIONS = (
    aiohttp.ServerTimeoutError,
    httpx.TimeoutException,
    asyncio.TimeoutError,
    redis.exceptions.TimeoutError,
)

CONNECTION_EXCEPTIONS = (
    aiohttp.ClientConnectionError,
    httpx.ConnectError,
    ConnectionError,
    psycopg2.OperationalError,
    pika.exceptions.AMQPConnectionError,
    redis.exceptions.ConnectionError,
)

CIRCUIT_BREAKER_THRESHOLD = 5
CIRCUIT_BREAKER_COOLDOWN = timedelta(minutes=5)
ERROR_HISTORY_LIMIT = 1000

DATABASE_APIS = ("firestore", "postgres")

# Palabras clave del nombre de la API -> servicio de métricas
_SERVICE_KEYWORDS: List[Tuple[Tuple[str, ...], ServiceType]] = [
    (("evolution", "whatsapp"), ServiceType.EVOLUTION),
    (("crm", "a2a"), ServiceType.CRM),
    (("firestore", "firebase"), ServiceType.FIRESTORE),
    (("postgres", "evo_ai"), ServiceType.POSTGRES),
    (("rabbit", "amqp"), ServiceType.RABBITMQ),
    (("redis",), ServiceType.REDIS),
]


def _get_service_type_from_api_name(api_name: str) -> Optional[ServiceType]:
    """Traduce el nombre de la API al ServiceType de métricas."""
    name = api_name.lower()
    for keywords, service_type in _SERVICE_KEYWORDS:
        if any(keyword in name for keyword in keywords):
            return service_type
    return None


class APIErrorSeverity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class APIErrorType(Enum):
    TIMEOUT = "timeout"
    CONNECTION_ERROR = "connection_error"
    HTTP_ERROR = "http_error"
    AUTHENTICATION_ERROR = "authentication_error"
    RATE_LIMIT = "rate_limit"
    SERVER_ERROR = "server_error"
    CLIENT_ERROR = "client_error"
    UNKNOWN_ERROR = "unknown_error"
    VALIDATION_ERROR = "validation_error"


# error_code de EvolutionAPIError / CRMAPIError cuando no hubo respuesta HTTP
_ERROR_CODE_TYPES = {
    "TIMEOUT": (APIErrorType.TIMEOUT, APIErrorSeverity.MEDIUM),
    "CONNECTION_ERROR": (APIErrorType.CONNECTION_ERROR, APIErrorSeverity.HIGH),
    "CONFIG_ERROR": (APIErrorType.VALIDATION_ERROR, APIErrorSeverity.HIGH),
}

NON_RETRYABLE_TYPES = (
    APIErrorType.AUTHENTICATION_ERROR,
    APIErrorType.VALIDATION_ERROR,
    APIErrorType.CLIENT_ERROR,
)

_SEVERITY_LOG_LEVELS = {
    APIErrorSeverity.CRITICAL: logging.CRITICAL,
    APIErrorSeverity.HIGH: logging.ERROR,
    APIErrorSeverity.MEDIUM: logging.WARNING,
    APIErrorSeverity.LOW: logging.INFO,
}

# Un escalón más de severidad para las bases de datos
_ESCALATED_SEVERITY = {
    APIErrorSeverity.MEDIUM: APIErrorSeverity.HIGH,
    APIErrorSeverity.HIGH: APIErrorSeverity.CRITICAL,
}


@dataclass
class APIError:
    """Fallo clasificado de una llamada a un sistema externo."""
    api_name: str
    error_type: APIErrorType
    severity: APIErrorSeverity
    message: str
    status_code: Optional[int] = None
    response_body: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)
    retry_count: int = 0
    max_retries: int = 3
    context: Dict[str, Any] = field(default_factory=dict)

    def to_log_fields(self) -> Dict[str, Any]:
        return {
            "api_name": self.api_name,
            "error_type": self.error_type.value,
            "severity": self.severity.value,
            "error_message": self.message,
            "status_code": self.status_code,
            "retry_count": self.retry_count,
            "timestamp": self.timestamp.isoformat(),
            "context": self.context,
        }


@dataclass
class RetryConfig:
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: bool = True


@dataclass
class CircuitBreaker:
    """Estado del circuit breaker de un sistema."""
    failure_count: int = 0
    is_open: bool = False
    open_until: Optional[datetime] = None
    last_failure: Optional[datetime] = None

    def record_success(self) -> None:
        self.failure_count = 0

    def record_failure(self) -> bool:
        """Cuenta un fallo; retorna True si el breaker acaba de abrirse."""
        self.failure_count += 1
        self.last_failure = datetime.now()
        if self.failure_count >= CIRCUIT_BREAKER_THRESHOLD and not self.is_open:
            self.is_open = True
            self.open_until = self.last_failure + CIRCUIT_BREAKER_COOLDOWN
            return True
        return False

    def blocks_calls(self) -> bool:
        """True mientras el breaker siga abierto; al vencer se cierra solo."""
        if not self.is_open:
            return False
        if self.open_until is not None and datetime.now() > self.open_until:
            self.is_open = False
            self.failure_count = 0
            return False
        return True

    def as_dict(self) -> Dict[str, Any]:
        return {
            "failure_count": self.failure_count,
            "is_open": self.is_open,
            "open_until": self.open_until.isoformat() if self.open_until else None,
            "last_failure": self.last_failure.isoformat() if self.last_failure else None,
        }


def _status_from_exception(exception: Exception) -> Optional[int]:
    # EvolutionAPIError / CRMAPIError exponen status_code; aiohttp usa status;
    # httpx.HTTPStatusError lo lleva en la respuesta
    status_code = getattr(exception, "status_code", None)
    if status_code is None and isinstance(exception, aiohttp.ClientResponseError):
        status_code = exception.status
    if status_code is None:
        status_code = getattr(getattr(exception, "response", None), "status_code", None)
    return status_code


def _body_from_exception(exception: Exception) -> Optional[str]:
    body = getattr(exception, "response_body", None)
    if body:
        return str(body)
    response = getattr(exception, "response", None)
    if isinstance(response, httpx.Response):
        return response.text
    return None


def _classify_status(status_code: int) -> Tuple[APIErrorType, APIErrorSeverity]:
    if status_code in (401, 403):
        return APIErrorType.AUTHENTICATION_ERROR, APIErrorSeverity.HIGH
    if status_code == 429:
        return APIErrorType.RATE_LIMIT, APIErrorSeverity.MEDIUM
    if 400 <= status_code < 500:
        return APIErrorType.CLIENT_ERROR, APIErrorSeverity.LOW
    if 500 <= status_code < 600:
        return APIErrorType.SERVER_ERROR, APIErrorSeverity.HIGH
    return APIErrorType.HTTP_ERROR, APIErrorSeverity.MEDIUM


def _classify_exception(exception: Exception,
                        status_code: Optional[int]) -> Tuple[APIErrorType, APIErrorSeverity]:
    if isinstance(exception, TIMEOUT_EXCEPTIONS):
        return APIErrorType.TIMEOUT, APIErrorSeverity.MEDIUM
    if isinstance(exception, CONNECTION_EXCEPTIONS):
        return APIErrorType.CONNECTION_ERROR, APIErrorSeverity.HIGH
    error_code = getattr(exception, "error_code", None)
    if not status_code and error_code in _ERROR_CODE_TYPES:
        return _ERROR_CODE_TYPES[error_code]
    if status_code:
        return _classify_status(status_code)
    if isinstance(exception, psycopg2.Error):
        return APIErrorType.SERVER_ERROR, APIErrorSeverity.HIGH
    if isinstance(exception, ValueError):
        return APIErrorType.VALIDATION_ERROR, APIErrorSeverity.LOW
    return APIErrorType.UNKNOWN_ERROR, APIErrorSeverity.MEDIUM


class APIErrorHandler:
    """Clasifica, registra y limita (circuit breaker) los fallos por sistema."""

    def __init__(self):
        self.error_history: List[APIError] = []
        self.circuit_breakers: Dict[str, CircuitBreaker] = {}
        self.default_retry_config = RetryConfig()

    def _breaker(self, api_name: str) -> CircuitBreaker:
        return self.circuit_breakers.setdefault(api_name, CircuitBreaker())

    def classify_error(
        self,
        exception: Exception,
        api_name: str,
        status_code: Optional[int] = None,
        response_body: Optional[str] = None
    ) -> APIError:
        """
        Convierte una excepción en un APIError.

        El tipo sale del código HTTP (401/403 auth, 429 rate limit, 4xx cliente,
        5xx servidor) o de la clase de la excepción (timeouts, conexión,
        psycopg2, ValueError). Los fallos de Firestore y Postgres suben un
        escalón de severidad.
        """
        if status_code is None:
            status_code = _status_from_exception(exception)

        error_type, severity = _classify_exception(exception, status_code)
        if api_name.lower() in DATABASE_APIS:
            severity = _ESCALATED_SEVERITY.get(severity, severity)

        return APIError(
            api_name=api_name,
            error_type=error_type,
            severity=severity,
            message=str(exception),
            status_code=status_code,
            response_body=response_body[:500] if response_body else None
        )

    def should_retry(self, error: APIError) -> bool:
        if error.error_type in NON_RETRYABLE_TYPES:
            return False
        if error.retry_count >= error.max_retries:
            return False
        return not self.is_circuit_open(error.api_name)

    def calculate_retry_delay(self, retry_count: int, config: RetryConfig) -> float:
        """Backoff exponencial limitado a max_delay, con jitter de hasta el 50%."""
        delay = min(config.base_delay * (config.exponential_base ** retry_count), config.max_delay)
        if config.jitter:
            delay *= random.uniform(0.5, 1.0)
        return delay

    def log_error(self, error: APIError, context: Optional[Dict[str, Any]] = None) -> None:
        """Guarda el error en el historial, lo registra según su severidad y actualiza el breaker."""
        error.context.update(context or {})

        self.error_history.append(error)
        del self.error_history[:-ERROR_HISTORY_LIMIT]

        logger.log(
            _SEVERITY_LOG_LEVELS[error.severity],
            f"❌ [{error.api_name}] {error.error_type.value}: {error.message}",
            extra=error.to_log_fields()
        )

        if self._breaker(error.api_name).record_failure():
            logger.warning(
                f"⚠️ Circuit breaker abierto para {error.api_name} "
                f"({CIRCUIT_BREAKER_THRESHOLD} fallos consecutivos)"
            )

    def log_success(self, api_name: str, context: Optional[Dict[str, Any]] = None) -> None:
        self._breaker(api_name).record_success()
        if context:
            logger.debug(f"✅ [{api_name}] OK", extra=context)

    def is_circuit_open(self, api_name: str) -> bool:
        breaker = self.circuit_breakers.get(api_name)
        if breaker is None:
            return False
        was_open = breaker.is_open
        blocked = breaker.blocks_calls()
        if was_open and not blocked:
            logger.info(f"Circuit breaker cerrado para {api_name}")
        return blocked

    def get_error_stats(self, api_name: Optional[str] = None, hours: int = 24) -> Dict[str, Any]:
        """
        Resume los errores de las últimas `hours` horas.

        Args:
            api_name: Limitar a una API
            hours: Ventana hacia atrás

        Returns:
            Conteos por API, tipo y severidad, más los breakers con fallos
        """
        cutoff = datetime.now() - timedelta(hours=hours)
        errors = [
            e for e in self.error_history
            if e.timestamp > cutoff and (api_name is None or e.api_name == api_name)
        ]

        if not errors:
            return {"total_errors": 0, "apis": {}, "error_types": {}, "severities": {}}

        return {
            "total_errors": len(errors),
            "apis": dict(Counter(e.api_name for e in errors)),
            "error_types": dict(Counter(e.error_type.value for e in errors)),
            "severities": dict(Counter(e.severity.value for e in errors)),
            "circuit_breakers": {
                name: breaker.as_dict() for name, breaker in self.circuit_breakers.items()
                if breaker.failure_count or breaker.is_open
            }
        }


class _CallRecorder:
    """Registra el resultado de cada intento en métricas y en el manejador."""

    def __init__(self, api_name: str, context: Optional[Dict[str, Any]]):
        self.api_name = api_name
        self.context = context or {}
        self.handler = get_error_handler()
        self.service_type = _get_service_type_from_api_name(api_name)
        self.started = time.monotonic()

    def _record_metrics(self, success: bool, elapsed: float, error: Optional[APIError] = None) -> None:
        if self.service_type is None:
            return
        metrics_service.record_request(
            service_type=self.service_type,
            success=success,
            response_time=elapsed,
            is_timeout=error is not None and error.error_type == APIErrorType.TIMEOUT,
            error_message=error.message if error else None
        )

    def success(self, attempt: Optional[int] = None) -> None:
        elapsed = time.monotonic() - self.started
        self._record_metrics(True, elapsed)
        extra = {**self.context, "response_time": elapsed}
        if attempt is not None:
            extra["attempt"] = attempt + 1
        self.handler.log_success(self.api_name, extra)

    def failure(self, exception: Exception, attempt: Optional[int] = None,
                max_retries: int = 0) -> APIError:
        elapsed = time.monotonic() - self.started
        error = self.handler.classify_error(
            exception, self.api_name, response_body=_body_from_exception(exception)
        )
        self._record_metrics(False, elapsed, error)
        error.retry_count = attempt or 0
        error.max_retries = max_retries
        extra = {**self.context, "response_time": elapsed}
        if attempt is not None:
            extra["attempt"] = attempt + 1
        self.handler.log_error(error, extra)
        return error


def with_error_handling(
    api_name: str,
    retry_config: Optional[RetryConfig] = None,
    context: Optional[Dict[str, Any]] = None
):
    """
    Decorador de manejo de errores para llamadas a sistemas externos.

    Las corrutinas se reintentan según retry_config; si no se pasa, se usa el
    atributo retry_config del cliente (primer argumento) o el valor por
    defecto. Las funciones síncronas (Postgres, RabbitMQ, Redis, Firestore)
    se ejecutan una sola vez. En ambos casos la excepción final se propaga.

    Args:
        api_name: Nombre del sistema (evolution, crm, postgres, ...)
        retry_config: Configuración de reintentos
        context: Campos extra para los logs
    """
    def decorator(func: Callable) -> Callable:
        def resolve_config(args, handler: APIErrorHandler) -> RetryConfig:
            if retry_config is not None:
                return retry_config
            client_config = getattr(args[0], "retry_config", None) if args else None
            if isinstance(client_config, RetryConfig):
                return client_config
            return handler.default_retry_config

        @wraps(func)
        async def async_wrapper(*args, **kwargs):
            recorder = _CallRecorder(api_name, context)
            config = resolve_config(args, recorder.handler)

            attempt = 0
            while True:
                try:
                    result = await func(*args, **kwargs)
                except Exception as e:
                    error = recorder.failure(e, attempt, config.max_retries)
                    if attempt >= config.max_retries or not recorder.handler.should_retry(error):
                        raise
                    delay = recorder.handler.calculate_retry_delay(attempt, config)
                    logger.info(f"🔄 Reintentando {api_name} en {delay:.2f}s "
                                f"(intento {attempt + 1}/{config.max_retries})")
                    await asyncio.sleep(delay)
                    attempt += 1
                else:
                    recorder.success(attempt)
                    return result

        @wraps(func)
        def sync_wrapper(*args, **kwargs):
            recorder = _CallRecorder(api_name, context)
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                recorder.failure(e)
                raise
            recorder.success()
            return result

        return async_wrapper if asyncio.iscoroutinefunction(func) else sync_wrapper

    return decorator


_error_handler: Optional[APIErrorHandler] = None


def get_error_handler() -> APIErrorHandler:
    """Manejador global compartido por todos los clientes."""
    global _error_handler
    if _error_handler is None:
        _error_handler = APIErrorHandler()
    return _error_handler


def reset_error_handler() -> None:
    """Descarta el manejador global (historial y breakers)."""
    global _error_handler
    _error_handler = None
