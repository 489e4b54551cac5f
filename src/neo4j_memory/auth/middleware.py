# -*- coding: utf-8 -*-
"""
Middlewares ASGI du serveur.

- AuthMiddleware : valide le credential et ouvre la SessionContext
- PublicRoutesMiddleware : liveness (/health, /healthz) et routes OAuth
- LoggingMiddleware : log des requêtes (mode debug)
"""

import json
import sys
from datetime import datetime, timezone
from typing import Dict, Optional
from urllib.parse import parse_qs

from ..errors import MemoryServiceError
from .context import SessionContext, current_session
from .credentials import CredentialValidator, RawCredential


def _headers(scope) -> Dict[str, str]:
    """En-têtes ASGI → dict avec des noms en minuscules."""
    return {
        name.decode("latin-1").lower(): value.decode("latin-1")
        for name, value in scope.get("headers", [])
    }


async def _send_json(send, data: dict, status: int = 200, extra_headers: Optional[list] = None):
    """Envoie une réponse JSON."""
    body = json.dumps(data, ensure_ascii=False, default=str).encode("utf-8")
    headers = [
        (b"content-type", b"application/json; charset=utf-8"),
        (b"content-length", str(len(body)).encode()),
    ]
    headers.extend(extra_headers or [])
    await send({"type": "http.response.start", "status": status, "headers": headers})
    await send({"type": "http.response.body", "body": body})


class AuthMiddleware:
    """
    Middleware ASGI pour l'authentification.

    Extrait "Authorization: Bearer <token>" et l'en-tête de clé statique,
    les passe à la stratégie de validation, puis propage la session aux
    outils MCP via current_session. Aucun credential ⇒ 401 avant toute
    exécution d'outil.
    """

    def __init__(self, app, validator: CredentialValidator, api_key_header: str = "x-api-key", debug: bool = False):
        """
        Args:
            app: Application ASGI à wrapper
            validator: Stratégie de validation (selon AUTH_MODE)
            api_key_header: Nom de l'en-tête de clé statique
            debug: Mode debug (logs détaillés)
        """
        self.app = app
        self.validator = validator
        self.api_key_header = api_key_header.lower()
        self.debug = debug

    async def __call__(self, scope, receive, send):
        """Point d'entrée ASGI."""
        if scope["type"] != "http":
            # Passer directement pour lifespan, etc.
            await self.app(scope, receive, send)
            return

        path = scope.get("path", "")
        credential = RawCredential.from_headers(_headers(scope), self.api_key_header)

        try:
            identity = await self.validator.validate(credential)
        except MemoryServiceError as e:
            if self.debug:
                print(f"❌ [Auth] {e.code} pour {path}", file=sys.stderr)
            await self._send_error(send, e)
            return
        except Exception as e:
            print(f"❌ [Auth] Erreur validation: {type(e).__name__}", file=sys.stderr)
            await _send_json(send, {"error": "internal_error", "message": "Authentication error"}, 500)
            return

        session = SessionContext.open(identity)
        if self.debug:
            scopes = ",".join(sorted(s.value for s in session.scopes))
            print(f"✅ [Auth] '{session.subject}' authentifié ({scopes})", file=sys.stderr)

        # Ajouter la session au scope et la propager aux outils MCP
        scope["auth"] = session
        token = current_session.set(session)
        try:
            await self.app(scope, receive, send)
        finally:
            current_session.reset(token)

    async def _send_error(self, send, error: MemoryServiceError):
        """Envoie une réponse d'erreur HTTP."""
        extra = []
        if error.http_status == 401:
            extra.append((b"www-authenticate", b'Bearer realm="neo4j-memory"'))
        await _send_json(send, {"error": error.code, "message": error.message}, error.http_status, extra)


class PublicRoutesMiddleware:
    """
    Routes servies sans authentification.

    Routes:
    - GET /health, /healthz -> liveness (aucun accès à Neo4j)
    - GET /.well-known/oauth-authorization-server -> métadonnées OAuth
    - GET /oauth/authorize -> redirection vers le fournisseur (PKCE)
    - GET /oauth/callback -> échange du code contre un token
    """

    LIVENESS_PATHS = ("/health", "/healthz")

    def __init__(self, app, server_name: str, server_version: str, oauth_flow=None):
        self.app = app
        self.server_name = server_name
        self.server_version = server_version
        self.oauth_flow = oauth_flow
        self._started_at = datetime.now(timezone.utc)

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        path = scope.get("path", "").rstrip("/") or "/"
        method = scope.get("method", "GET")

        if path in self.LIVENESS_PATHS and method in ("GET", "HEAD"):
            await self._liveness(send)
            return

        if self.oauth_flow is not None and method == "GET":
            if path == "/.well-known/oauth-authorization-server":
                await _send_json(send, self.oauth_flow.metadata(self._base_url(scope)))
                return
            if path == "/oauth/authorize":
                await self._authorize(scope, send)
                return
            if path == "/oauth/callback":
                await self._callback(scope, send)
                return

        # Passer au handler suivant
        await self.app(scope, receive, send)

    async def _liveness(self, send):
        """Le process répond : pas d'I/O vers la base."""
        now = datetime.now(timezone.utc)
        await _send_json(send, {
            "status": "alive",
            "server": self.server_name,
            "version": self.server_version,
            "timestamp": now.isoformat(),
            "uptime_seconds": round((now - self._started_at).total_seconds(), 1),
        })

    async def _authorize(self, scope, send):
        params = self._query(scope)
        scopes = params.get("scope", "").split() or None
        started = self.oauth_flow.start(scopes=scopes)
        location = started["authorization_url"].encode("latin-1")
        await send({
            "type": "http.response.start",
            "status": 302,
            "headers": [(b"location", location), (b"content-length", b"0")],
        })
        await send({"type": "http.response.body", "body": b""})

    async def _callback(self, scope, send):
        params = self._query(scope)
        if "error" in params:
            await _send_json(send, {"error": "authorization_denied", "message": params["error"]}, 400)
            return
        try:
            tokens = await self.oauth_flow.complete(params.get("code", ""), params.get("state", ""))
        except MemoryServiceError as e:
            await _send_json(send, {"error": e.code, "message": e.message}, 400)
            return
        await _send_json(send, {"status": "ok", **tokens})

    @staticmethod
    def _query(scope) -> Dict[str, str]:
        raw = scope.get("query_string", b"").decode("latin-1")
        return {k: v[0] for k, v in parse_qs(raw).items() if v}

    @staticmethod
    def _base_url(scope) -> str:
        host = _headers(scope).get("host")
        if not host:
            server = scope.get("server") or ("localhost", 80)
            host = f"{server[0]}:{server[1]}"
        return f"{scope.get('scheme', 'http')}://{host}"


class LoggingMiddleware:
    """
    Middleware ASGI pour le logging des requêtes (mode debug).
    """

    def __init__(self, app, debug: bool = False):
        self.app = app
        self.debug = debug

    async def __call__(self, scope, receive, send):
        if not self.debug or scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        path = scope.get("path", "")
        method = scope.get("method", "?")
        print(f"📥 [HTTP] {method} {path}", file=sys.stderr)

        # Wrapper pour logger la réponse
        status_code = [None]

        async def send_wrapper(message):
            if message["type"] == "http.response.start":
                status_code[0] = message.get("status")
            await send(message)

        await self.app(scope, receive, send_wrapper)

        if status_code[0]:
            emoji = "✅" if status_code[0] < 400 else "❌"
            print(f"{emoji} [HTTP] {method} {path} -> {status_code[0]}", file=sys.stderr)
