# -*- coding: utf-8 -*-
"""
OAuthFlow - Flux OAuth 2.1 Authorization Code + PKCE.

Le serveur ne délivre pas lui-même d'identité : il redirige vers le
fournisseur, conserve le state PKCE (15 minutes par défaut) puis échange
le code contre un token au endpoint du fournisseur.

    flow = OAuthFlow(settings)
    started = flow.start()               # → authorization_url + state
    tokens = await flow.complete(code, state)
"""

import base64
import hashlib
import secrets
import sys
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx
from pydantic import BaseModel, Field

from ..config import Settings, get_settings
from ..errors import ConfigurationError, InvalidCredential
from .state_store import TTLStore


class PendingAuthorization(BaseModel):
    """État conservé entre /oauth/authorize et /oauth/callback."""
    code_verifier: str
    nonce: str
    redirect_uri: str
    scopes: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


def generate_code_verifier() -> str:
    """Verifier PKCE (43 à 128 caractères URL-safe)."""
    return secrets.token_urlsafe(64)


def code_challenge_s256(verifier: str) -> str:
    """Challenge S256 : base64url(sha256(verifier)) sans padding."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


class OAuthFlow:
    """Démarre et termine les flux d'autorisation délégués."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[TTLStore] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._settings = settings or get_settings()
        if not self._settings.oauth_enabled:
            raise ConfigurationError(
                "OAuth requires OAUTH_AUTHORIZE_URL, OAUTH_TOKEN_URL, OAUTH_CLIENT_ID and OAUTH_REDIRECT_URI"
            )
        self._store: TTLStore = store if store is not None else TTLStore(self._settings.oauth_state_ttl_seconds)
        self._transport = transport

    @property
    def store(self) -> TTLStore:
        return self._store

    def start(self, scopes: Optional[List[str]] = None, redirect_uri: Optional[str] = None) -> Dict[str, Any]:
        """
        Prépare une autorisation et retourne l'URL du fournisseur.

        Returns:
            {"authorization_url": ..., "state": ..., "expires_in": ...}
        """
        s = self._settings
        scopes = scopes or s.oauth_default_scopes.split()
        redirect_uri = redirect_uri or s.oauth_redirect_uri

        state = secrets.token_urlsafe(32)
        pending = PendingAuthorization(
            code_verifier=generate_code_verifier(),
            nonce=secrets.token_urlsafe(16),
            redirect_uri=redirect_uri,
            scopes=scopes,
        )
        self._store.put(state, pending)

        params = {
            "response_type": "code",
            "client_id": s.oauth_client_id,
            "redirect_uri": redirect_uri,
            "scope": " ".join(scopes),
            "state": state,
            "nonce": pending.nonce,
            "code_challenge": code_challenge_s256(pending.code_verifier),
            "code_challenge_method": "S256",
        }
        print(f"🔐 [OAuth] Autorisation démarrée (state {state[:8]}...)", file=sys.stderr)
        return {
            "authorization_url": f"{s.oauth_authorize_url}?{urlencode(params)}",
            "state": state,
            "expires_in": s.oauth_state_ttl_seconds,
        }

    async def complete(self, code: str, state: str) -> Dict[str, Any]:
        """
        Échange le code d'autorisation contre un token.

        Le state est à usage unique : inconnu, expiré ou déjà utilisé,
        il est refusé.

        Raises:
            InvalidCredential: state invalide ou échange refusé par le fournisseur
        """
        pending: Optional[PendingAuthorization] = self._store.pop(state) if state else None
        if pending is None or not code:
            print("❌ [OAuth] State inconnu ou expiré", file=sys.stderr)
            raise InvalidCredential("Invalid or expired authorization state")

        s = self._settings
        form = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": pending.redirect_uri,
            "client_id": s.oauth_client_id,
            "code_verifier": pending.code_verifier,
        }
        auth = (s.oauth_client_id, s.oauth_client_secret) if s.oauth_client_secret else None

        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=15.0) as client:
                response = await client.post(s.oauth_token_url, data=form, auth=auth)
                response.raise_for_status()
                tokens = response.json()
        except (httpx.HTTPError, ValueError) as e:
            print(f"❌ [OAuth] Échange du code refusé: {type(e).__name__}", file=sys.stderr)
            raise InvalidCredential("Authorization code exchange failed")

        print(f"✅ [OAuth] Code échangé (state {state[:8]}...)", file=sys.stderr)
        tokens.setdefault("scope", " ".join(pending.scopes))
        return tokens

    def metadata(self, base_url: str) -> Dict[str, Any]:
        """Métadonnées du serveur d'autorisation (RFC 8414)."""
        base_url = base_url.rstrip("/")
        return {
            "issuer": self._settings.jwt_issuer or base_url,
            "authorization_endpoint": f"{base_url}/oauth/authorize",
            "token_endpoint": self._settings.oauth_token_url,
            "response_types_supported": ["code"],
            "grant_types_supported": ["authorization_code"],
            "code_challenge_methods_supported": ["S256"],
            "scopes_supported": ["read", "write", "admin"],
        }
