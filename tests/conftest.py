# -*- coding: utf-8 -*-
"""
Configuration pytest partagée.

Les variables d'environnement sont posées AVANT tout import du package :
pydantic-settings les lit à la première construction de Settings.
"""

import os

os.environ.setdefault("NEO4J_PASSWORD", "test-placeholder")
os.environ.setdefault("JWT_SECRET", "test-secret-with-enough-length-for-hs256")
os.environ.setdefault("MCP_SERVER_API_KEY", "test-admin-key")

from typing import Any, Callable, Dict, List, Optional

import pytest

from neo4j_memory.auth.context import SessionContext
from neo4j_memory.auth.credentials import CredentialKind, Identity
from neo4j_memory.config import Settings
from neo4j_memory.core.models import Entity, KnowledgeGraph, Relation
from neo4j_memory.errors import StoreUnavailable


# =============================================================================
# Configuration et sessions
# =============================================================================

def make_settings(**overrides) -> Settings:
    """Settings isolés du .env local."""
    values = {
        "neo4j_password": "test",
        "jwt_secret": "test-secret-with-enough-length-for-hs256",
        "mcp_server_api_key": None,
        "mcp_api_keys": "",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def make_session(*scopes: str, subject: str = "tester") -> SessionContext:
    """Session dont les scopes viennent d'une clé statique."""
    identity = Identity(
        subject=subject,
        claims={"scopes": list(scopes)},
        credential_kind=CredentialKind.STATIC_KEY,
    )
    return SessionContext.open(identity)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


# =============================================================================
# Faux driver Neo4j (enregistre les requêtes Cypher)
# =============================================================================

Responder = Callable[[str, Dict[str, Any]], List[Dict[str, Any]]]


class FakeResult:
    def __init__(self, rows: List[Dict[str, Any]]):
        self._rows = rows

    async def data(self) -> List[Dict[str, Any]]:
        return list(self._rows)

    async def single(self):
        return self._rows[0] if self._rows else None


class FakeTransaction:
    def __init__(self, driver: "FakeDriver"):
        self._driver = driver
        self.committed = False
        self.rolled_back = False

    async def run(self, query: str, parameters: Optional[Dict[str, Any]] = None):
        return self._driver.execute(query, parameters or {})

    async def commit(self):
        self.committed = True

    async def rollback(self):
        self.rolled_back = True

    def closed(self) -> bool:
        return self.committed or self.rolled_back


class FakeSession:
    def __init__(self, driver: "FakeDriver", database: str):
        self._driver = driver
        self.database = database
        self.closed = False
        self.transactions: List[FakeTransaction] = []

    async def run(self, query: str, parameters: Optional[Dict[str, Any]] = None, **kwargs):
        return self._driver.execute(query, {**(parameters or {}), **kwargs})

    async def begin_transaction(self, timeout=None):
        tx = FakeTransaction(self._driver)
        self.transactions.append(tx)
        return tx

    async def close(self):
        self.closed = True


class FakeDriver:
    """
    Driver de test : chaque requête est enregistrée puis passée au responder,
    qui retourne les lignes ou lève une exception du driver.
    """

    def __init__(self, responder: Optional[Responder] = None):
        self.responder = responder or (lambda query, params: [])
        self.queries: List[tuple] = []
        self.sessions: List[FakeSession] = []
        self.connectivity_error: Optional[Exception] = None
        self.closed = False

    def execute(self, query: str, params: Dict[str, Any]) -> FakeResult:
        self.queries.append((query, params))
        return FakeResult(self.responder(query, params))

    def session(self, database: Optional[str] = None) -> FakeSession:
        session = FakeSession(self, database)
        self.sessions.append(session)
        return session

    async def verify_connectivity(self):
        if self.connectivity_error is not None:
            raise self.connectivity_error

    async def close(self):
        self.closed = True

    def queries_matching(self, fragment: str) -> List[tuple]:
        return [(q, p) for q, p in self.queries if fragment in q]


@pytest.fixture
def fake_driver() -> FakeDriver:
    return FakeDriver()


# =============================================================================
# Faux GraphService en mémoire (scénarios du dispatcher)
# =============================================================================

class FakeGraphStore:
    """
    Implémentation en mémoire de l'interface du GraphService.

    Reproduit les règles du graphe : fusion sur le nom, relations
    idempotentes, suppression en cascade, union des observations.
    """

    uri = "bolt://fake:7687"
    database = "neo4j"

    def __init__(self):
        self.entities: Dict[str, Dict[str, Any]] = {}
        self.relations: set = set()
        self.calls: List[str] = []
        self.connected = True
        self.failure: Optional[Exception] = None

    def _record(self, name: str):
        self.calls.append(name)
        if self.failure is not None:
            raise self.failure

    async def create_entities(self, entities):
        from neo4j_memory.core.models import EntityAck

        self._record("create_entities")
        acks = []
        for entity in entities:
            existing = self.entities.get(entity.name)
            observations = existing["observations"] if existing else []
            added = [o for o in entity.observations if o not in observations]
            self.entities[entity.name] = {"type": entity.type, "observations": observations + added}
            acks.append(EntityAck(
                name=entity.name, type=entity.type, existed=existing is not None, added_observations=added
            ))
        return acks

    async def create_relations(self, relations):
        from neo4j_memory.core.models import ErrorInfo, RelationAck

        self._record("create_relations")
        acks = []
        for relation in relations:
            missing = [n for n in (relation.source, relation.target) if n not in self.entities]
            if missing:
                acks.append(RelationAck(
                    source=relation.source,
                    target=relation.target,
                    relation_type=relation.relation_type,
                    created=False,
                    error=ErrorInfo(code="not_found", message=f"Entity not found: {missing}"),
                ))
                continue
            self.relations.add((relation.source, relation.target, relation.relation_type))
            acks.append(RelationAck(
                source=relation.source, target=relation.target, relation_type=relation.relation_type
            ))
        return acks

    async def add_observations(self, additions):
        from neo4j_memory.core.models import ErrorInfo, ObservationAddResult

        self._record("add_observations")
        results = []
        for addition in additions:
            entity = self.entities.get(addition.entity_name)
            if entity is None:
                results.append(ObservationAddResult(
                    entity_name=addition.entity_name,
                    error=ErrorInfo(code="not_found", message="Entity not found"),
                ))
                continue
            added = [c for c in addition.contents if c not in entity["observations"]]
            entity["observations"].extend(added)
            results.append(ObservationAddResult(entity_name=addition.entity_name, added_observations=added))
        return results

    async def delete_entities(self, names):
        from neo4j_memory.core.models import DeletionSummary

        self._record("delete_entities")
        summary = DeletionSummary()
        for name in names:
            entity = self.entities.pop(name, None)
            if entity is None:
                continue
            summary.deleted += 1
            summary.observations_deleted += len(entity["observations"])
            self.relations = {r for r in self.relations if name not in (r[0], r[1])}
        return summary

    async def delete_observations(self, deletions):
        from neo4j_memory.core.models import DeletionSummary

        self._record("delete_observations")
        summary = DeletionSummary()
        for deletion in deletions:
            entity = self.entities.get(deletion.entity_name)
            if entity is None:
                continue
            kept = [o for o in entity["observations"] if o not in deletion.observations]
            summary.deleted += len(entity["observations"]) - len(kept)
            entity["observations"] = kept
        summary.observations_deleted = summary.deleted
        return summary

    async def delete_relations(self, relations):
        from neo4j_memory.core.models import DeletionSummary

        self._record("delete_relations")
        summary = DeletionSummary()
        for relation in relations:
            matching = {
                r for r in self.relations
                if r[0] == relation.source and r[1] == relation.target
                and (relation.relation_type is None or r[2] == relation.relation_type)
            }
            summary.deleted += len(matching)
            self.relations -= matching
        return summary

    def _graph(self, names) -> KnowledgeGraph:
        names = list(names)
        entities = [
            Entity(name=n, type=self.entities[n]["type"], observations=list(self.entities[n]["observations"]))
            for n in names
        ]
        relations = [
            Relation(source=s, target=t, relation_type=r)
            for s, t, r in sorted(self.relations)
            if s in names or t in names
        ]
        return KnowledgeGraph(entities=entities, relations=relations)

    async def load_graph(self, limit=None, entity_type=None):
        self._record("load_graph")
        names = [n for n, e in self.entities.items() if entity_type is None or e["type"] == entity_type]
        return self._graph(names[: limit or 100])

    async def search(self, query, limit=None):
        self._record("search")
        needle = query.lower()
        names = [
            n for n, e in self.entities.items()
            if needle in n.lower()
            or needle in e["type"].lower()
            or any(needle in o.lower() for o in e["observations"])
        ]
        return self._graph(names[: limit or 100])

    async def find(self, names):
        self._record("find")
        return self._graph([n for n in dict.fromkeys(names) if n in self.entities])

    async def verify_connection(self) -> bool:
        self.calls.append("verify_connection")
        return self.connected

    async def get_stats(self):
        self.calls.append("get_stats")
        if not self.connected:
            raise StoreUnavailable()
        return {
            "entities": len(self.entities),
            "relations": len(self.relations),
            "observations": sum(len(e["observations"]) for e in self.entities.values()),
        }


@pytest.fixture
def store() -> FakeGraphStore:
    return FakeGraphStore()
