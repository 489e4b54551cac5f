# -*- coding: utf-8 -*-
"""
Tests du OperationDispatcher contre un graphe en mémoire.

Couvre l'ordre des étapes (session → arguments → scope → exécution),
la matrice des scopes et les scénarios de bout en bout.
"""

import pytest

from neo4j_memory.auth.api_keys import ApiKeyRegistry
from neo4j_memory.auth.credentials import StaticKeyValidator
from neo4j_memory.dispatcher import OperationDispatcher
from neo4j_memory.errors import StoreUnavailable

from conftest import make_session, make_settings

WRITE_OPERATIONS = {
    "create_entities": {"entities": [{"name": "A", "type": "T"}]},
    "create_relations": {"relations": [{"source": "A", "target": "B", "relationType": "LIKES"}]},
    "add_observations": {"observations": [{"entityName": "A", "contents": ["x"]}]},
    "delete_entities": {"entityNames": ["A"]},
    "delete_observations": {"deletions": [{"entityName": "A", "observations": ["x"]}]},
    "delete_relations": {"relations": [{"source": "A", "target": "B"}]},
}

READ_OPERATIONS = {
    "read_graph": {},
    "search_nodes": {"query": "A"},
    "find_nodes": {"names": ["A"]},
}


@pytest.fixture
def registry() -> ApiKeyRegistry:
    return ApiKeyRegistry()


@pytest.fixture
def dispatcher(store, registry) -> OperationDispatcher:
    return OperationDispatcher(store, settings=make_settings(), registry=registry)


class TestCallOrder:

    async def test_missing_session_never_touches_the_store(self, dispatcher, store):
        for name, arguments in {**WRITE_OPERATIONS, **READ_OPERATIONS, "health_check": {}}.items():
            result = await dispatcher.dispatch(name, arguments, None)
            assert result["code"] == "missing_credential"
        assert store.calls == []

    async def test_arguments_are_validated_before_scope(self, dispatcher, store):
        result = await dispatcher.dispatch("create_entities", {"entities": [{"name": "A"}]}, make_session("read"))
        assert result["code"] == "validation_error"
        assert "entities.0.type" in result["fields"]
        assert store.calls == []

    async def test_unknown_fields_are_rejected(self, dispatcher, store):
        result = await dispatcher.dispatch("read_graph", {"depth": 3}, make_session("read"))
        assert result["code"] == "validation_error"
        assert result["fields"] == ["depth"]

    async def test_empty_batch_is_rejected(self, dispatcher, store):
        result = await dispatcher.dispatch("delete_entities", {"entityNames": []}, make_session("write"))
        assert result["code"] == "validation_error"
        assert store.calls == []

    async def test_find_nodes_requires_exactly_one_selector(self, dispatcher):
        session = make_session("read")
        both = await dispatcher.dispatch("find_nodes", {"names": ["A"], "name": "A"}, session)
        neither = await dispatcher.dispatch("find_nodes", {}, session)
        assert both["code"] == "validation_error"
        assert neither["code"] == "validation_error"

    async def test_unknown_operation(self, dispatcher):
        result = await dispatcher.dispatch("drop_database", {}, make_session("admin"))
        assert result == {
            "status": "error",
            "code": "unknown_operation",
            "message": "Unknown operation 'drop_database'",
        }

    async def test_limit_above_maximum_is_rejected(self, store):
        dispatcher = OperationDispatcher(store, settings=make_settings(max_read_limit=5))
        session = make_session("read")
        for name, arguments in {
            "read_graph": {"limit": 10},
            "search_nodes": {"query": "A", "limit": 6},
        }.items():
            result = await dispatcher.dispatch(name, arguments, session)
            assert result["code"] == "validation_error", name
            assert result["fields"] == ["limit"]
        assert store.calls == []

    async def test_limit_at_maximum_is_accepted(self, store):
        dispatcher = OperationDispatcher(store, settings=make_settings(max_read_limit=5))
        result = await dispatcher.dispatch("read_graph", {"limit": 5}, make_session("read"))
        assert result["status"] == "ok"

    async def test_too_many_names_are_rejected_not_truncated(self, store):
        dispatcher = OperationDispatcher(store, settings=make_settings(max_read_limit=2))
        result = await dispatcher.dispatch("find_nodes", {"names": ["A", "B", "C"]}, make_session("read"))
        assert result["code"] == "validation_error"
        assert result["fields"] == ["names"]
        assert store.calls == []

    async def test_limit_is_checked_before_scope(self, store):
        dispatcher = OperationDispatcher(store, settings=make_settings(max_read_limit=5))
        result = await dispatcher.dispatch("read_graph", {"limit": 10}, make_session("write"))
        assert result["code"] == "validation_error"

    async def test_blank_observations_are_rejected(self, dispatcher, store):
        result = await dispatcher.dispatch(
            "add_observations", {"observations": [{"entityName": "A", "contents": ["", "  "]}]},
            make_session("write"),
        )
        assert result["code"] == "validation_error"
        assert result["fields"] == ["observations.0.contents"]
        assert store.calls == []


class TestScopeMatrix:

    @pytest.mark.parametrize("name", sorted(WRITE_OPERATIONS))
    async def test_read_only_identity_cannot_write(self, dispatcher, store, name):
        result = await dispatcher.dispatch(name, WRITE_OPERATIONS[name], make_session("read"))
        assert result["code"] == "insufficient_scope"
        assert result["required_scope"] == "write"
        assert store.calls == []

    @pytest.mark.parametrize("name", sorted(READ_OPERATIONS))
    async def test_read_only_identity_can_read(self, dispatcher, name):
        result = await dispatcher.dispatch(name, READ_OPERATIONS[name], make_session("read"))
        assert result["status"] == "ok"

    @pytest.mark.parametrize("name", sorted(READ_OPERATIONS))
    async def test_write_does_not_imply_read(self, dispatcher, name):
        result = await dispatcher.dispatch(name, READ_OPERATIONS[name], make_session("write"))
        assert result["code"] == "insufficient_scope"

    @pytest.mark.parametrize("scopes", [("read",), ("write",), ("read", "write")])
    async def test_health_check_requires_admin(self, dispatcher, store, scopes):
        result = await dispatcher.dispatch("health_check", {}, make_session(*scopes))
        assert result["code"] == "insufficient_scope"
        assert result["required_scope"] == "admin"
        assert "database" not in result
        assert store.calls == []

    async def test_admin_can_call_everything(self, dispatcher):
        session = make_session("admin")
        for name, arguments in {**WRITE_OPERATIONS, **READ_OPERATIONS, "health_check": {}}.items():
            result = await dispatcher.dispatch(name, arguments, session)
            assert result["status"] != "error", name


class TestScenarios:

    async def test_entity_merge_keeps_latest_type(self, dispatcher, store):
        session = make_session("read", "write")
        await dispatcher.dispatch("create_entities", {"entities": [{"name": "A", "type": "T"}]}, session)
        second = await dispatcher.dispatch("create_entities", {"entities": [{"name": "A", "type": "U"}]}, session)

        assert second["entities"][0]["existed"] is True
        graph = await dispatcher.dispatch("find_nodes", {"name": "A"}, session)
        assert [(e["name"], e["type"]) for e in graph["entities"]] == [("A", "U")]

    async def test_relation_to_missing_entity_is_reported_per_item(self, dispatcher, store):
        session = make_session("read", "write")
        await dispatcher.dispatch("create_entities", {"entities": [{"name": "A", "type": "T"}]}, session)
        result = await dispatcher.dispatch(
            "create_relations",
            {"relations": [{"source": "A", "target": "B", "relationType": "likes"}]},
            session,
        )

        assert result["status"] == "ok"
        ack = result["relations"][0]
        assert ack["created"] is False
        assert ack["relationType"] == "LIKES"
        assert ack["error"]["code"] == "not_found"
        assert store.relations == set()

    async def test_relation_create_is_idempotent(self, dispatcher, store):
        session = make_session("read", "write")
        await dispatcher.dispatch(
            "create_entities", {"entities": [{"name": "A", "type": "T"}, {"name": "B", "type": "T"}]}, session
        )
        relation = {"relations": [{"source": "A", "target": "B", "relationType": "LIKES"}]}
        await dispatcher.dispatch("create_relations", relation, session)
        await dispatcher.dispatch("create_relations", relation, session)

        graph = await dispatcher.dispatch("read_graph", {}, session)
        assert graph["relations"] == [{"source": "A", "target": "B", "relationType": "LIKES"}]

    async def test_search_returns_owner_of_matching_observation(self, dispatcher):
        session = make_session("read", "write")
        await dispatcher.dispatch(
            "create_entities",
            {"entities": [{"name": "Alice", "type": "person", "observations": ["drinks rooibos"]}]},
            session,
        )
        result = await dispatcher.dispatch("search_nodes", {"query": "rooibos"}, session)

        assert result["query"] == "rooibos"
        assert [e["name"] for e in result["entities"]] == ["Alice"]

    async def test_add_observations_is_a_set_union(self, dispatcher):
        session = make_session("read", "write")
        await dispatcher.dispatch(
            "create_entities", {"entities": [{"name": "A", "type": "T", "observations": ["x"]}]}, session
        )
        result = await dispatcher.dispatch(
            "add_observations", {"observations": [{"entityName": "A", "contents": ["x", "y"]}]}, session
        )

        assert result["results"] == [{"entityName": "A", "addedObservations": ["y"]}]
        graph = await dispatcher.dispatch("find_nodes", {"names": ["A"]}, session)
        assert graph["entities"][0]["observations"] == ["x", "y"]

    async def test_delete_entity_cascades(self, dispatcher, store):
        session = make_session("read", "write")
        await dispatcher.dispatch(
            "create_entities",
            {"entities": [{"name": "A", "type": "T", "observations": ["x"]}, {"name": "B", "type": "T"}]},
            session,
        )
        await dispatcher.dispatch(
            "create_relations", {"relations": [{"source": "B", "target": "A", "relationType": "KNOWS"}]}, session
        )
        result = await dispatcher.dispatch("delete_entities", {"entityNames": ["A"]}, session)

        assert result["deleted"] == 1
        assert result["observationsDeleted"] == 1
        assert store.relations == set()
        graph = await dispatcher.dispatch("find_nodes", {"names": ["A"]}, session)
        assert graph["entities"] == []

    async def test_delete_relations_without_type_removes_all_edges(self, dispatcher, store):
        session = make_session("read", "write")
        await dispatcher.dispatch(
            "create_entities", {"entities": [{"name": "A", "type": "T"}, {"name": "B", "type": "T"}]}, session
        )
        await dispatcher.dispatch(
            "create_relations",
            {"relations": [
                {"source": "A", "target": "B", "relationType": "LIKES"},
                {"source": "A", "target": "B", "relationType": "KNOWS"},
            ]},
            session,
        )

        typed = await dispatcher.dispatch(
            "delete_relations", {"relations": [{"source": "A", "target": "B", "relationType": "likes"}]}, session
        )
        assert typed["deleted"] == 1
        assert store.relations == {("A", "B", "KNOWS")}

        untyped = await dispatcher.dispatch("delete_relations", {"relations": [{"source": "A", "target": "B"}]}, session)
        assert untyped["deleted"] == 1
        assert store.relations == set()


class TestFailures:

    async def test_store_failure_is_structured(self, dispatcher, store):
        store.failure = StoreUnavailable()
        result = await dispatcher.dispatch("read_graph", {}, make_session("read"))
        assert result == {"status": "error", "code": "store_unavailable", "message": "Graph store unavailable"}

    async def test_unexpected_error_does_not_leak(self, dispatcher, store):
        store.failure = RuntimeError("MATCH (n) DETACH DELETE n failed at line 3")
        result = await dispatcher.dispatch("read_graph", {}, make_session("read"))
        assert result["code"] == "internal_error"
        assert "MATCH" not in result["message"]

    async def test_health_check_reports_unhealthy_instead_of_raising(self, dispatcher, store):
        store.connected = False
        result = await dispatcher.dispatch("health_check", {}, make_session("admin", subject="ops"))

        assert result["status"] == "unhealthy"
        assert result["database"]["connected"] is False
        assert result["stats"] == {}
        assert result["session_info"]["subject"] == "ops"

    async def test_health_check_healthy(self, dispatcher, store):
        await dispatcher.dispatch(
            "create_entities", {"entities": [{"name": "A", "type": "T"}]}, make_session("write")
        )
        result = await dispatcher.dispatch("health_check", {}, make_session("admin"))

        assert result["status"] == "healthy"
        assert result["database"]["uri"] == "bolt://fake:7687"
        assert result["stats"]["entities"] == 1
        assert result["server"]["name"] == "neo4j-memory-mcp"


class TestApiKeyAdministration:

    @pytest.mark.parametrize("scopes", [("read",), ("write",), ("read", "write")])
    async def test_key_operations_require_admin(self, dispatcher, registry, scopes):
        session = make_session(*scopes)
        for name, arguments in {
            "admin_create_api_key": {"name": "bot"},
            "admin_list_api_keys": {},
            "admin_revoke_api_key": {"prefix": "abcd1234"},
        }.items():
            result = await dispatcher.dispatch(name, arguments, session)
            assert result["code"] == "insufficient_scope", name
            assert result["required_scope"] == "admin"
        assert len(registry) == 0

    async def test_created_key_authenticates_with_its_scopes(self, dispatcher, registry):
        created = await dispatcher.dispatch(
            "admin_create_api_key", {"name": "ci-bot", "scopes": ["mcp:write", "read"]}, make_session("admin")
        )
        assert created["status"] == "ok"
        assert created["scopes"] == ["write", "read"]
        assert len(created["prefix"]) == 8

        identity = StaticKeyValidator(registry).verify(created["key"])
        assert identity.subject == "ci-bot"

        listed = await dispatcher.dispatch("admin_list_api_keys", {}, make_session("admin"))
        assert listed["count"] == 1
        assert "key" not in listed["keys"][0]

    async def test_unknown_scope_is_rejected(self, dispatcher, registry):
        result = await dispatcher.dispatch(
            "admin_create_api_key", {"name": "bot", "scopes": ["root"]}, make_session("admin")
        )
        assert result["code"] == "validation_error"
        assert result["fields"] == ["scopes"]
        assert len(registry) == 0

    async def test_revoke_disables_key(self, dispatcher, registry):
        key = registry.create_key("bot", ["read"])
        prefix = registry.lookup(key).prefix

        result = await dispatcher.dispatch("admin_revoke_api_key", {"prefix": prefix}, make_session("admin"))
        assert result["status"] == "ok"
        assert registry.lookup(key) is None

        again = await dispatcher.dispatch("admin_revoke_api_key", {"prefix": prefix}, make_session("admin"))
        assert again["code"] == "not_found"

        listed = await dispatcher.dispatch(
            "admin_list_api_keys", {"includeRevoked": True}, make_session("admin")
        )
        assert [k["active"] for k in listed["keys"]] == [False]
