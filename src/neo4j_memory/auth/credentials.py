# -*- coding: utf-8 -*-
"""
Credentials - Validation des credentials entrants.

Deux schémas sont acceptés, un seul par requête :
- Token délégué : "Authorization: Bearer <jwt>" signé par le fournisseur d'identité
- Clé statique : "X-API-Key: <clé>" (ou en Bearer, en mode combined)

Chaque stratégie produit une Identity ou lève MissingCredential /
InvalidCredential. Le message d'erreur ne dit jamais quelle étape de la
vérification a échoué.
"""

import asyncio
import sys
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional

import jwt
from pydantic import BaseModel, ConfigDict, Field

from ..config import Settings, get_settings
from ..errors import ConfigurationError, InvalidCredential, MissingCredential
from .api_keys import ApiKeyRegistry, get_api_key_registry


class CredentialKind(str, Enum):
    DELEGATED = "delegated"
    STATIC_KEY = "static-key"
    NONE = "none"


class Identity(BaseModel):
    """Sujet vérifié d'une requête. Jamais persisté."""

    model_config = ConfigDict(frozen=True)

    subject: str
    email: Optional[str] = None
    name: Optional[str] = None
    claims: Dict[str, Any] = Field(default_factory=dict)
    credential_kind: CredentialKind
    issued_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None


class RawCredential(BaseModel):
    """Valeurs brutes extraites des en-têtes HTTP."""
    bearer: Optional[str] = None
    api_key: Optional[str] = None

    @classmethod
    def from_headers(cls, headers: Mapping[str, str], api_key_header: str = "x-api-key") -> "RawCredential":
        """
        Args:
            headers: en-têtes avec des noms en minuscules
            api_key_header: nom de l'en-tête portant la clé statique
        """
        bearer = None
        authorization = (headers.get("authorization") or "").strip()
        scheme, _, value = authorization.partition(" ")
        if scheme.lower() == "bearer" and value.strip():
            bearer = value.strip()

        api_key = (headers.get(api_key_header.lower()) or "").strip() or None
        return cls(bearer=bearer, api_key=api_key)

    @property
    def present(self) -> bool:
        return bool(self.bearer or self.api_key)


def _timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    return None


# =============================================================================
# Stratégies
# =============================================================================

class CredentialValidator(ABC):
    """Stratégie de validation, choisie à la construction du serveur."""

    @abstractmethod
    async def validate(self, credential: RawCredential) -> Identity:
        """
        Raises:
            MissingCredential: aucun credential présenté
            InvalidCredential: credential refusé
        """


class DelegatedTokenValidator(CredentialValidator):
    """
    Vérifie les tokens JWT du fournisseur d'identité.

    - Secret partagé (HS256) ou clés publiques récupérées via JWKS
    - Contrôle de la signature, de l'expiration, de l'émetteur et de l'audience
    """

    def __init__(
        self,
        secret: Optional[str] = None,
        algorithms: Optional[List[str]] = None,
        issuer: Optional[str] = None,
        audience: Optional[str] = None,
        jwks_url: Optional[str] = None,
        leeway: int = 30,
    ):
        if not secret and not jwks_url:
            raise ConfigurationError("Delegated tokens require JWT_SECRET or JWT_JWKS_URL")
        self._secret = secret
        self._algorithms = algorithms or ["HS256"]
        self._issuer = issuer
        self._audience = audience
        self._leeway = leeway
        self._jwks_client = jwt.PyJWKClient(jwks_url) if jwks_url else None

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "DelegatedTokenValidator":
        settings = settings or get_settings()
        return cls(
            secret=settings.jwt_secret,
            algorithms=settings.jwt_algorithm_list,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            jwks_url=settings.jwt_jwks_url,
            leeway=settings.jwt_leeway_seconds,
        )

    async def _signing_key(self, token: str):
        if self._jwks_client is None:
            return self._secret
        # PyJWKClient fait un appel HTTP bloquant
        signing_key = await asyncio.to_thread(self._jwks_client.get_signing_key_from_jwt, token)
        return signing_key.key

    async def validate(self, credential: RawCredential) -> Identity:
        if not credential.bearer:
            raise MissingCredential()
        return await self.verify(credential.bearer)

    async def verify(self, token: str) -> Identity:
        """Vérifie un token et retourne l'identité portée par ses claims."""
        try:
            key = await self._signing_key(token)
            claims = jwt.decode(
                token,
                key,
                algorithms=self._algorithms,
                issuer=self._issuer,
                audience=self._audience,
                leeway=self._leeway,
                options={
                    "require": ["exp"],
                    "verify_aud": self._audience is not None,
                },
            )
        except jwt.PyJWTError as e:
            print(f"❌ [Auth] Token délégué refusé: {type(e).__name__}", file=sys.stderr)
            raise InvalidCredential()

        # Certains émetteurs OAuth placent le sujet dans "userId"
        subject = claims.get("sub") or claims.get("userId")
        if not subject:
            print("❌ [Auth] Token délégué sans sujet (sub / userId)", file=sys.stderr)
            raise InvalidCredential()

        return Identity(
            subject=str(subject),
            email=claims.get("email"),
            name=claims.get("name"),
            claims=claims,
            credential_kind=CredentialKind.DELEGATED,
            issued_at=_timestamp(claims.get("iat")),
            expires_at=_timestamp(claims.get("exp")),
        )

    def issue(
        self,
        subject: str,
        scopes: Iterable[str] = ("read",),
        ttl: timedelta = timedelta(hours=24),
        **extra_claims: Any,
    ) -> str:
        """
        Signe un token HS256 avec l'émetteur et l'audience configurés.

        Utilisé par les opérateurs (--issue-token) et par les tests.
        """
        if not self._secret:
            raise ConfigurationError("Issuing tokens requires JWT_SECRET")
        now = datetime.now(timezone.utc)
        payload: Dict[str, Any] = {
            "sub": subject,
            "iat": now,
            "exp": now + ttl,
            "scope": " ".join(scopes),
        }
        if self._issuer:
            payload["iss"] = self._issuer
        if self._audience:
            payload["aud"] = self._audience
        payload.update({k: v for k, v in extra_claims.items() if v is not None})
        return jwt.encode(payload, self._secret, algorithm="HS256")


class StaticKeyValidator(CredentialValidator):
    """Recherche la clé (X-API-Key, sinon Bearer) dans le registre."""

    def __init__(self, registry: ApiKeyRegistry):
        self._registry = registry

    def verify(self, key: str) -> Identity:
        record = self._registry.lookup(key)
        if record is None:
            print("❌ [Auth] Clé statique inconnue", file=sys.stderr)
            raise InvalidCredential()
        return Identity(
            subject=record.name,
            claims={"scopes": list(record.scopes)},
            credential_kind=CredentialKind.STATIC_KEY,
            issued_at=record.created_at,
        )

    async def validate(self, credential: RawCredential) -> Identity:
        key = credential.api_key or credential.bearer
        if not key:
            raise MissingCredential()
        return self.verify(key)


class CombinedValidator(CredentialValidator):
    """
    Bearer d'abord (token délégué), puis en-tête de clé statique.

    Un Bearer refusé comme JWT est encore essayé comme clé statique.
    """

    def __init__(
        self,
        delegated: Optional[DelegatedTokenValidator] = None,
        static: Optional[StaticKeyValidator] = None,
    ):
        if delegated is None and static is None:
            raise ConfigurationError("Combined mode requires delegated tokens or static keys")
        self._delegated = delegated
        self._static = static

    async def validate(self, credential: RawCredential) -> Identity:
        if credential.bearer:
            if self._delegated is not None:
                try:
                    return await self._delegated.verify(credential.bearer)
                except InvalidCredential:
                    if self._static is None:
                        raise
            return self._static.verify(credential.bearer)

        if credential.api_key:
            if self._static is None:
                raise InvalidCredential()
            return self._static.verify(credential.api_key)

        raise MissingCredential()


class NoAuthValidator(CredentialValidator):
    """Mode sans authentification (développement, tests) : identité admin anonyme."""

    async def validate(self, credential: RawCredential) -> Identity:
        return Identity(
            subject="anonymous",
            claims={"roles": ["admin"]},
            credential_kind=CredentialKind.NONE,
        )


def build_validator(
    settings: Optional[Settings] = None,
    registry: Optional[ApiKeyRegistry] = None,
) -> CredentialValidator:
    """
    Construit la stratégie correspondant à AUTH_MODE.

    Raises:
        ConfigurationError: si le mode choisi n'a pas de credential configuré
    """
    settings = settings or get_settings()
    mode = settings.auth_mode

    if mode == "none":
        print("⚠️ [Auth] AUTH_MODE=none : toutes les requêtes sont admin", file=sys.stderr)
        return NoAuthValidator()

    if mode == "delegated":
        return DelegatedTokenValidator.from_settings(settings)

    registry = registry if registry is not None else get_api_key_registry()
    if mode == "static-key":
        if not len(registry):
            raise ConfigurationError("AUTH_MODE=static-key requires MCP_SERVER_API_KEY or MCP_API_KEYS")
        return StaticKeyValidator(registry)

    delegated = None
    if settings.jwt_secret or settings.jwt_jwks_url:
        delegated = DelegatedTokenValidator.from_settings(settings)
    # Registre attaché même vide dès qu'un token délégué est possible :
    # admin_create_api_key peut l'alimenter à chaud.
    static = StaticKeyValidator(registry) if len(registry) or delegated is not None else None
    return CombinedValidator(delegated, static)
