#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
🧠 Neo4j Memory CLI - Outil en ligne de commande pour le serveur Neo4j Memory.

Usage:
    python scripts/mcp_cli.py [OPTIONS] COMMAND [ARGS]...

Exemples:
    python scripts/mcp_cli.py health           # Liveness
    python scripts/mcp_cli.py health --full    # health_check (scope admin)
    python scripts/mcp_cli.py read --limit 20  # Lire le graphe
    python scripts/mcp_cli.py search "Alice"   # Recherche fulltext

Authentification : MCP_TOKEN (Bearer) ou MCP_API_KEY (X-API-Key).
"""

from cli.commands import cli

if __name__ == "__main__":
    cli()
