# -*- coding: utf-8 -*-
"""
Tests du flux OAuth 2.1 + PKCE (fournisseur simulé par httpx.MockTransport).
"""

import base64
import hashlib
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from neo4j_memory.auth.oauth import OAuthFlow, code_challenge_s256
from neo4j_memory.auth.state_store import TTLStore
from neo4j_memory.errors import ConfigurationError, InvalidCredential

from conftest import make_settings


def oauth_settings(**overrides):
    values = dict(
        oauth_authorize_url="https://idp.example.com/authorize",
        oauth_token_url="https://idp.example.com/token",
        oauth_client_id="memory-client",
        oauth_client_secret="client-secret",
        oauth_redirect_uri="http://localhost:8080/oauth/callback",
    )
    values.update(overrides)
    return make_settings(**values)


class TokenEndpoint:
    """Faux endpoint /token : enregistre les formulaires reçus."""

    def __init__(self, status_code: int = 200):
        self.status_code = status_code
        self.forms = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.forms.append(parse_qs(request.content.decode()))
        if self.status_code != 200:
            return httpx.Response(self.status_code, json={"error": "invalid_grant"})
        return httpx.Response(200, json={"access_token": "at-123", "token_type": "Bearer", "expires_in": 3600})


def _query(url: str) -> dict:
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


class TestOAuthFlow:

    def test_requires_configuration(self):
        with pytest.raises(ConfigurationError):
            OAuthFlow(make_settings())

    def test_start_builds_pkce_authorization_url(self):
        flow = OAuthFlow(oauth_settings())
        started = flow.start(scopes=["read"])
        params = _query(started["authorization_url"])

        assert started["authorization_url"].startswith("https://idp.example.com/authorize?")
        assert params["state"] == started["state"]
        assert params["code_challenge_method"] == "S256"
        assert params["scope"] == "read"
        assert params["client_id"] == "memory-client"
        assert started["expires_in"] == 900

        pending = flow.store.get(started["state"])
        assert params["code_challenge"] == code_challenge_s256(pending.code_verifier)
        assert 43 <= len(pending.code_verifier) <= 128

    def test_s256_challenge(self):
        verifier = "a" * 43
        expected = base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest()).rstrip(b"=").decode()
        assert code_challenge_s256(verifier) == expected
        assert "=" not in code_challenge_s256(verifier)

    async def test_complete_exchanges_code_once(self):
        endpoint = TokenEndpoint()
        flow = OAuthFlow(oauth_settings(), transport=httpx.MockTransport(endpoint))
        started = flow.start()
        verifier = flow.store.get(started["state"]).code_verifier

        tokens = await flow.complete("auth-code", started["state"])

        assert tokens["access_token"] == "at-123"
        assert tokens["scope"] == "read write"
        form = endpoint.forms[0]
        assert form["grant_type"] == ["authorization_code"]
        assert form["code_verifier"] == [verifier]

        with pytest.raises(InvalidCredential):
            await flow.complete("auth-code", started["state"])

    async def test_unknown_state(self):
        flow = OAuthFlow(oauth_settings(), transport=httpx.MockTransport(TokenEndpoint()))
        with pytest.raises(InvalidCredential):
            await flow.complete("auth-code", "never-issued")

    async def test_expired_state(self):
        now = [0.0]
        store = TTLStore(900, clock=lambda: now[0])
        endpoint = TokenEndpoint()
        flow = OAuthFlow(oauth_settings(), store=store, transport=httpx.MockTransport(endpoint))
        started = flow.start()

        now[0] += 901
        with pytest.raises(InvalidCredential):
            await flow.complete("auth-code", started["state"])
        assert endpoint.forms == []

    async def test_provider_rejection(self):
        flow = OAuthFlow(oauth_settings(), transport=httpx.MockTransport(TokenEndpoint(status_code=400)))
        started = flow.start()
        with pytest.raises(InvalidCredential):
            await flow.complete("bad-code", started["state"])

    def test_metadata(self):
        metadata = OAuthFlow(oauth_settings()).metadata("http://localhost:8080/")
        assert metadata["authorization_endpoint"] == "http://localhost:8080/oauth/authorize"
        assert metadata["token_endpoint"] == "https://idp.example.com/token"
        assert metadata["code_challenge_methods_supported"] == ["S256"]
