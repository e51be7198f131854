#!/usr/bin/env python3
"""
Verifica las variables de entorno de crm-ops.

Equivale a `crm-ops env check`.
"""
import sys

from crm_ops.cli import cli

if __name__ == "__main__":
    cli.main(args=["env", "check", *sys.argv[1:]], prog_name="validate_env")
