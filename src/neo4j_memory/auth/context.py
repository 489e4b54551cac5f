# -*- coding: utf-8 -*-
"""
Auth Context - Propagation de la session authentifiée.

Utilise contextvars pour propager la session du middleware ASGI
vers les outils MCP (qui n'ont pas accès au scope ASGI).

Usage dans le middleware:
    from .context import SessionContext, current_session
    current_session.set(SessionContext.open(identity))

Usage dans les outils:
    from .auth.context import current_session
    session = current_session.get()  # None si aucun credential validé
"""

import contextvars
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import FrozenSet, Optional

from .credentials import Identity
from .scopes import Scope, resolve_scopes


@dataclass(frozen=True)
class SessionContext:
    """
    Contexte par requête : identité validée + scopes effectifs.

    Immuable après construction ; jamais partagé entre requêtes.
    """
    identity: Identity
    scopes: FrozenSet[Scope]
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def open(cls, identity: Identity) -> "SessionContext":
        """Construit la session à partir d'une identité validée."""
        return cls(identity=identity, scopes=resolve_scopes(identity))

    @property
    def subject(self) -> str:
        return self.identity.subject

    def describe(self) -> dict:
        """Résumé non sensible (pour health_check et les logs)."""
        return {
            "subject": self.identity.subject,
            "credential_kind": self.identity.credential_kind.value,
            "scopes": sorted(s.value for s in self.scopes),
        }


# ContextVar initialisé à None (aucune session = aucun accès aux opérations)
current_session: contextvars.ContextVar[Optional[SessionContext]] = contextvars.ContextVar(
    "current_session", default=None
)
