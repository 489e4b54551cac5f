# -*- coding: utf-8 -*-
"""
Scopes - Résolution des capacités et contrôle d'accès.

- resolve_scopes() : Identity → ensemble normalisé {read, write, admin}
- authorize()      : point de contrôle unique avant chaque opération

Règle fixe : "admin" vaut "read" + "write" lors de la vérification.
"""

from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, FrozenSet, Iterable, Mapping, Optional, Set

from ..errors import InsufficientScope

if TYPE_CHECKING:
    from .context import SessionContext
    from .credentials import Identity


class Scope(str, Enum):
    """Niveaux de capacité effectifs."""
    READ = "read"
    WRITE = "write"
    ADMIN = "admin"


# Chaînes de permission reconnues (y compris la forme "mcp:*" des fournisseurs)
_SCOPE_ALIASES: Mapping[str, Scope] = MappingProxyType({
    "read": Scope.READ,
    "mcp:read": Scope.READ,
    "mcp:tools:list": Scope.READ,
    "mcp:resources:read": Scope.READ,
    "write": Scope.WRITE,
    "mcp:write": Scope.WRITE,
    "mcp:tools:call": Scope.WRITE,
    "mcp:resources:write": Scope.WRITE,
    "admin": Scope.ADMIN,
    "mcp:admin": Scope.ADMIN,
    "mcp:health": Scope.ADMIN,
})

# Table de correspondance rôle → scopes (lecture seule après import)
ROLE_SCOPES: Mapping[str, FrozenSet[Scope]] = MappingProxyType({
    "admin": frozenset({Scope.ADMIN}),
    "writer": frozenset({Scope.READ, Scope.WRITE}),
    "write": frozenset({Scope.READ, Scope.WRITE}),
    "reader": frozenset({Scope.READ}),
    "read": frozenset({Scope.READ}),
})

DEFAULT_SCOPES: FrozenSet[Scope] = frozenset({Scope.READ})


def normalize_scope(value: Any) -> Optional[Scope]:
    """Convertit une chaîne de permission en Scope, None si inconnue."""
    if isinstance(value, Scope):
        return value
    if not isinstance(value, str):
        return None
    return _SCOPE_ALIASES.get(value.strip().lower())


def _as_list(value: Any) -> list:
    """Les claims peuvent être une liste ou une chaîne séparée par des espaces."""
    if value is None:
        return []
    if isinstance(value, str):
        return value.split()
    if isinstance(value, (list, tuple, set, frozenset)):
        return list(value)
    return []


def _scopes_from_strings(values: Iterable[Any]) -> Set[Scope]:
    return {s for s in (normalize_scope(v) for v in values) if s is not None}


def _scopes_from_roles(roles: Iterable[Any]) -> Set[Scope]:
    scopes: Set[Scope] = set()
    for role in roles:
        if isinstance(role, str):
            scopes |= ROLE_SCOPES.get(role.strip().lower(), frozenset())
    return scopes


def resolve_scopes(identity: "Identity") -> FrozenSet[Scope]:
    """
    Calcule les scopes effectifs d'une identité.

    Sources, dans l'ordre :
    1. Scopes explicites du claim bag (scope, scopes, permissions)
    2. Rôles (admin → admin ; writer/write → read+write ; reader/read → read)
    3. Permissions et rôles des tenants, aplatis dans le même ensemble

    Sans aucun scope résolu, l'identité reçoit {read}.
    """
    claims = identity.claims or {}
    scopes: Set[Scope] = set()

    for key in ("scope", "scopes", "permissions"):
        scopes |= _scopes_from_strings(_as_list(claims.get(key)))

    scopes |= _scopes_from_roles(_as_list(claims.get("roles")))

    tenants = claims.get("tenants")
    if isinstance(tenants, Mapping):
        for tenant in tenants.values():
            if not isinstance(tenant, Mapping):
                continue
            scopes |= _scopes_from_strings(_as_list(tenant.get("permissions")))
            scopes |= _scopes_from_roles(_as_list(tenant.get("roles")))

    return frozenset(scopes) if scopes else DEFAULT_SCOPES


def has_scope(scopes: Iterable[Scope], required: Scope) -> bool:
    """Vrai si `required` est présent ou si admin est présent."""
    scopes = set(scopes)
    return required in scopes or Scope.ADMIN in scopes


def authorize(session: "SessionContext", required: Scope) -> None:
    """
    Autorise ou refuse une opération.

    Sans état, sans I/O.

    Raises:
        InsufficientScope: si la session n'a ni le scope requis ni admin
    """
    if not has_scope(session.scopes, required):
        raise InsufficientScope(required.value)
