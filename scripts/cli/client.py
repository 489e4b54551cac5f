# -*- coding: utf-8 -*-
"""
MCPClient - Communication avec le serveur Neo4j Memory.

Deux modes de communication :
  - HTTP simple : liveness (/health), sans authentification
  - MCP streamable HTTP : appel des outils, avec Bearer ou X-API-Key

Si le serveur est injoignable, lève ServerNotRunningError.
"""

import json
from typing import Dict, Optional

import httpx


class ServerNotRunningError(Exception):
    """Levée quand le serveur MCP n'est pas accessible."""

    def __init__(self, url: str, original_error: Optional[Exception] = None):
        self.url = url
        self.original_error = original_error
        super().__init__(
            f"🔴 Serveur MCP non accessible ({url})\n"
            f"\n"
            f"  Démarrez-le avec :  neo4j-memory-mcp --port 8080\n"
        )


class MCPClient:
    """Client pour communiquer avec le serveur Neo4j Memory."""

    def __init__(self, base_url: str, token: Optional[str] = None, api_key: Optional[str] = None):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.api_key = api_key

    @property
    def headers(self) -> Dict[str, str]:
        """En-têtes d'authentification (Bearer prioritaire sur X-API-Key)."""
        if self.token:
            return {"Authorization": f"Bearer {self.token}"}
        if self.api_key:
            return {"X-API-Key": self.api_key}
        return {}

    async def liveness(self) -> dict:
        """GET /health (aucun accès à la base côté serveur)."""
        import aiohttp

        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(
                    f"{self.base_url}/health", timeout=aiohttp.ClientTimeout(total=10)
                ) as response:
                    if response.status == 200:
                        return await response.json()
                    text = await response.text()
                    raise Exception(f"HTTP {response.status}: {text}")
        except aiohttp.ClientConnectionError as e:
            raise ServerNotRunningError(self.base_url, e)
        except ConnectionRefusedError as e:
            raise ServerNotRunningError(self.base_url, e)

    async def call_tool(self, tool_name: str, args: dict) -> dict:
        """
        Appelle un outil MCP et retourne le dict produit par le serveur.

        Les erreurs métier (scope, validation...) sont dans la réponse
        {"status": "error", "code", "message"}, pas en exception.
        """
        from mcp import ClientSession
        from mcp.client.streamable_http import streamablehttp_client

        try:
            async with streamablehttp_client(f"{self.base_url}/mcp", headers=self.headers) as (read, write, _):
                async with ClientSession(read, write) as session:
                    await session.initialize()
                    result = await session.call_tool(tool_name, args)
        except httpx.HTTPStatusError as e:
            return self._http_error(e.response)
        except BaseException as e:
            if self._is_connection_error(e):
                raise ServerNotRunningError(self.base_url, e)
            status_error = self._find_status_error(e)
            if status_error is not None:
                return self._http_error(status_error.response)
            raise

        # --- Parsing de la réponse MCP ---
        text = ""
        if result.content:
            text = getattr(result.content[0], "text", "") or ""
        if getattr(result, "isError", False):
            return {"status": "error", "code": "tool_error", "message": text or "Erreur serveur MCP"}
        if not text:
            return {"status": "error", "code": "empty_response", "message": "Réponse vide du serveur"}
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            return {"status": "error", "code": "invalid_response", "message": f"Réponse non-JSON: {text[:500]}"}

    @staticmethod
    def _http_error(response: httpx.Response) -> dict:
        """Réponse 401/403 de la frontière HTTP → dict d'erreur."""
        try:
            body = response.json()
        except ValueError:
            body = {}
        return {
            "status": "error",
            "code": body.get("error", f"http_{response.status_code}"),
            "message": body.get("message", response.reason_phrase),
        }

    @staticmethod
    def _find_status_error(exc: BaseException) -> Optional[httpx.HTTPStatusError]:
        """Cherche une HTTPStatusError dans un ExceptionGroup (TaskGroup du SDK)."""
        if isinstance(exc, httpx.HTTPStatusError):
            return exc
        for sub in getattr(exc, "exceptions", ()):
            found = MCPClient._find_status_error(sub)
            if found is not None:
                return found
        if exc.__cause__ is not None:
            return MCPClient._find_status_error(exc.__cause__)
        return None

    @staticmethod
    def _is_connection_error(exc: BaseException) -> bool:
        """Vérifie récursivement si une exception (ou un ExceptionGroup) est une erreur de connexion."""
        if isinstance(exc, (ConnectionRefusedError, httpx.ConnectError)):
            return True
        for sub in getattr(exc, "exceptions", ()):
            if MCPClient._is_connection_error(sub):
                return True
        return False
