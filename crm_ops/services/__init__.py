"""
Servicios operativos de crm-ops, uno por familia de diagnóstico o reparación.
"""
