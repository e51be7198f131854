#!/usr/bin/env python3
"""
Diagnóstico completo: CRM, Evolution, Redis, Firestore y RabbitMQ.

Equivale a `crm-ops --stats health diagnose`.
"""
import sys

from crm_ops.cli import cli

if __name__ == "__main__":
    cli.main(args=["--stats", "health", "diagnose", *sys.argv[1:]], prog_name="diagnose_system")
