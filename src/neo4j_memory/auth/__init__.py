# -*- coding: utf-8 -*-
"""
Module d'authentification pour Neo4j Memory.

- Credentials : validation des tokens délégués et des clés statiques
- Scopes : résolution des capacités + contrôle d'accès
- Context : session par requête (contextvars)
- Middleware : frontière ASGI (401, liveness, OAuth)
"""

from .api_keys import ApiKeyRegistry, get_api_key_registry
from .context import SessionContext, current_session
from .credentials import (
    CombinedValidator,
    CredentialKind,
    CredentialValidator,
    DelegatedTokenValidator,
    Identity,
    NoAuthValidator,
    RawCredential,
    StaticKeyValidator,
    build_validator,
)
from .middleware import AuthMiddleware, LoggingMiddleware, PublicRoutesMiddleware
from .scopes import Scope, authorize, resolve_scopes

__all__ = [
    "ApiKeyRegistry",
    "get_api_key_registry",
    "SessionContext",
    "current_session",
    "CredentialKind",
    "CredentialValidator",
    "CombinedValidator",
    "DelegatedTokenValidator",
    "Identity",
    "NoAuthValidator",
    "RawCredential",
    "StaticKeyValidator",
    "build_validator",
    "AuthMiddleware",
    "LoggingMiddleware",
    "PublicRoutesMiddleware",
    "Scope",
    "authorize",
    "resolve_scopes",
]
