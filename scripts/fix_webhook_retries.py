#!/usr/bin/env python3
"""
Ajusta el webhook de Evolution a 1 reintento lineal para cortar los loops de reentrega.

Uso:
    python scripts/fix_webhook_retries.py --instance loja --url https://crm.example.com/api/webhooks/evolution

Equivale a `crm-ops webhook fix-retries`.
"""
import sys

from crm_ops.cli import cli

if __name__ == "__main__":
    cli.main(args=["webhook", "fix-retries", *sys.argv[1:]], prog_name="fix_webhook_retries")
