# -*- coding: utf-8 -*-
"""
🧠 Neo4j Memory CLI - Package principal.

Architecture:
    client.py   - Communication avec le serveur (liveness HTTP + outils MCP)
    commands.py - Commandes Click (health, entities, relations, observations...)
    display.py  - Helpers d'affichage Rich (tables, panels)
"""

import os

from dotenv import load_dotenv

load_dotenv()

# Configuration globale
# MCP_URL, MCP_TOKEN et MCP_API_KEY sont les variables explicites du CLI
BASE_URL = os.getenv("MCP_URL") or os.getenv("MCP_SERVER_URL", "http://localhost:8080")
TOKEN = os.getenv("MCP_TOKEN")
API_KEY = os.getenv("MCP_API_KEY") or os.getenv("MCP_SERVER_API_KEY")
