# -*- coding: utf-8 -*-
"""
Neo4j Memory MCP Server
=======================

Mémoire à long terme sous forme de Knowledge Graph pour agents IA.
Exposée via le protocole MCP (Model Context Protocol) sur HTTP streamable.

Architecture:
- Neo4j pour le stockage graphe (entités, observations, relations)
- Tokens délégués (JWT) ou clés statiques pour l'authentification
- Scopes read / write / admin pour l'autorisation

Usage:
    python -m neo4j_memory.server --port 8080
"""

__version__ = "1.0.0"
