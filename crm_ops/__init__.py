"""
crm-ops: herramientas operativas para el CRM con integración WhatsApp.
"""

__version__ = "0.1.0"
