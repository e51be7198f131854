"""
Configuración de crm-ops.
"""
from .settings import Settings, settings

__all__ = [
    "Settings",
    "settings"
]
