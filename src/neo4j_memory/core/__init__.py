# -*- coding: utf-8 -*-
"""
Core Services pour Neo4j Memory.

- GraphService : Client Neo4j + requêtes Cypher
- models : enregistrements du graphe et schémas d'arguments
"""

from .graph import GraphService, get_graph_service
from .models import Entity, KnowledgeGraph, Relation

__all__ = ["GraphService", "get_graph_service", "Entity", "KnowledgeGraph", "Relation"]
