# -*- coding: utf-8 -*-
"""
Tests de résolution des scopes et du contrôle d'accès.
"""

import pytest

from neo4j_memory.auth.credentials import CredentialKind, Identity
from neo4j_memory.auth.scopes import ROLE_SCOPES, Scope, authorize, has_scope, resolve_scopes
from neo4j_memory.errors import InsufficientScope

from conftest import make_session


def _identity(**claims) -> Identity:
    return Identity(subject="user-1", claims=claims, credential_kind=CredentialKind.DELEGATED)


class TestResolveScopes:

    def test_role_mapping(self):
        assert resolve_scopes(_identity(roles=["admin"])) == {Scope.ADMIN}
        assert resolve_scopes(_identity(roles=["writer"])) == {Scope.READ, Scope.WRITE}
        assert resolve_scopes(_identity(roles=["write"])) == {Scope.READ, Scope.WRITE}
        assert resolve_scopes(_identity(roles=["reader"])) == {Scope.READ}

    def test_unknown_roles_fall_back_to_read(self):
        """Aucun scope résolu → {read}, jamais vide, jamais plus."""
        assert resolve_scopes(_identity(roles=["guest", "owner"])) == {Scope.READ}
        assert resolve_scopes(_identity()) == {Scope.READ}

    def test_explicit_scope_string_is_space_separated(self):
        assert resolve_scopes(_identity(scope="read write")) == {Scope.READ, Scope.WRITE}

    def test_namespaced_permissions_collapse(self):
        identity = _identity(permissions=["mcp:tools:list", "mcp:tools:call"])
        assert resolve_scopes(identity) == {Scope.READ, Scope.WRITE}
        assert resolve_scopes(_identity(permissions=["mcp:health"])) == {Scope.ADMIN}

    def test_unknown_scope_strings_are_ignored(self):
        assert resolve_scopes(_identity(scopes=["delete-everything", "write"])) == {Scope.WRITE}

    def test_tenants_are_flattened(self):
        identity = _identity(tenants={
            "t1": {"roles": ["reader"]},
            "t2": {"permissions": ["mcp:write"]},
        })
        assert resolve_scopes(identity) == {Scope.READ, Scope.WRITE}

    def test_sources_are_merged_and_deduplicated(self):
        identity = _identity(scope="read", roles=["reader", "writer"], permissions=["read"])
        scopes = resolve_scopes(identity)
        assert scopes == {Scope.READ, Scope.WRITE}
        assert isinstance(scopes, frozenset)

    def test_role_table_is_read_only(self):
        with pytest.raises(TypeError):
            ROLE_SCOPES["guest"] = frozenset({Scope.ADMIN})


class TestAuthorize:

    def test_admin_is_a_superset(self):
        session = make_session("admin")
        for scope in Scope:
            authorize(session, scope)

    def test_write_does_not_imply_admin(self):
        session = make_session("write")
        authorize(session, Scope.WRITE)
        with pytest.raises(InsufficientScope) as exc:
            authorize(session, Scope.ADMIN)
        assert exc.value.required_scope == "admin"
        assert exc.value.http_status == 403
        assert "admin" in exc.value.message

    def test_read_only_session_cannot_write(self):
        session = make_session("read")
        authorize(session, Scope.READ)
        with pytest.raises(InsufficientScope):
            authorize(session, Scope.WRITE)

    def test_has_scope(self):
        assert has_scope({Scope.ADMIN}, Scope.READ)
        assert not has_scope({Scope.READ}, Scope.WRITE)
