"""
Contadores de llamadas a los sistemas externos durante una ejecución de crm-ops.
Los alimenta el decorador with_error_handling; `crm-ops --stats` los imprime.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Deque, Dict, Optional

logger = logging.getLogger(__name__)

RESPONSE_TIME_WINDOW = 100
CONSECUTIVE_FAILURES_WARNING = 3


class ServiceType(Enum):
    EVOLUTION = "evolution"
    CRM = "crm"
    FIRESTORE = "firestore"
    POSTGRES = "postgres"
    RABBITMQ = "rabbitmq"
    REDIS = "redis"


def _percent(part: int, total: int) -> float:
    return round(part / total * 100, 2) if total else 0.0


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class ServiceCounters:
    """Contadores de un sistema; el promedio usa los últimos 100 tiempos."""
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    timeout_requests: int = 0
    consecutive_failures: int = 0
    last_error: Optional[str] = None
    last_success: Optional[datetime] = None
    last_failure: Optional[datetime] = None
    response_times: Deque[float] = field(default_factory=lambda: deque(maxlen=RESPONSE_TIME_WINDOW))

    @property
    def avg_response_time(self) -> float:
        if not self.response_times:
            return 0.0
        return sum(self.response_times) / len(self.response_times)


class MetricsService:

    def __init__(self):
        self.counters: Dict[ServiceType, ServiceCounters] = {}
        self.clear_metrics()

    def record_request(self, service_type: ServiceType, success: bool,
                       response_time: float, is_timeout: bool = False,
                       error_message: Optional[str] = None):
        counters = self.counters[service_type]
        counters.total_requests += 1
        counters.response_times.append(response_time)
        if is_timeout:
            counters.timeout_requests += 1

        if success:
            counters.successful_requests += 1
            counters.consecutive_failures = 0
            counters.last_success = datetime.now()
            return

        counters.failed_requests += 1
        counters.consecutive_failures += 1
        counters.last_failure = datetime.now()
        counters.last_error = error_message

        if counters.consecutive_failures == CONSECUTIVE_FAILURES_WARNING:
            logger.warning(
                f"🚨 {service_type.value}: {counters.consecutive_failures} fallos seguidos ({error_message})"
            )

    def get_service_metrics(self, service_type: ServiceType) -> Dict[str, Any]:
        """Métricas de un sistema como diccionario."""
        c = self.counters[service_type]
        return {
            "service": service_type.value,
            "total_requests": c.total_requests,
            "successful_requests": c.successful_requests,
            "failed_requests": c.failed_requests,
            "timeout_requests": c.timeout_requests,
            "success_rate": _percent(c.successful_requests, c.total_requests),
            "avg_response_time_seconds": round(c.avg_response_time, 2),
            "consecutive_failures": c.consecutive_failures,
            "last_error": c.last_error,
            "last_success": _isoformat(c.last_success),
            "last_failure": _isoformat(c.last_failure),
        }

    def get_all_metrics(self) -> Dict[str, Any]:
        """
        Métricas de todos los sistemas más un resumen global.

        Returns:
            {"timestamp", "services": {nombre: métricas}, "summary": {...}}
        """
        total = sum(c.total_requests for c in self.counters.values())
        successful = sum(c.successful_requests for c in self.counters.values())
        return {
            "timestamp": datetime.now().isoformat(),
            "services": {st.value: self.get_service_metrics(st) for st in ServiceType},
            "summary": {
                "total_requests": total,
                "total_successful": successful,
                "total_failed": sum(c.failed_requests for c in self.counters.values()),
                "overall_success_rate": _percent(successful, total),
                "services_used": sum(1 for c in self.counters.values() if c.total_requests),
            }
        }

    def clear_metrics(self, service_type: Optional[ServiceType] = None):
        targets = [service_type] if service_type else list(ServiceType)
        for st in targets:
            self.counters[st] = ServiceCounters()


metrics_service = MetricsService()
