# -*- coding: utf-8 -*-
"""
Configuration centralisée du serveur Neo4j Memory MCP.

Utilise pydantic-settings pour charger et valider la configuration
depuis les variables d'environnement ou un fichier .env.
"""

from functools import lru_cache
from typing import List, Optional, Tuple

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

AUTH_MODES = ("combined", "delegated", "static-key", "none")


class Settings(BaseSettings):
    """
    Configuration du serveur Neo4j Memory MCP.

    Toutes les variables peuvent être définies via:
    - Variables d'environnement
    - Fichier .env à la racine du projet
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # =========================================================================
    # Neo4j
    # =========================================================================
    neo4j_uri: str = "bolt://neo4j:7687"
    neo4j_user: str = "neo4j"
    neo4j_password: str
    neo4j_database: str = "neo4j"
    neo4j_max_pool_size: int = 50
    neo4j_connection_timeout_seconds: int = 60
    neo4j_query_timeout_seconds: int = 30
    fulltext_index_name: str = "memory_search"

    # =========================================================================
    # MCP Server
    # =========================================================================
    mcp_server_name: str = "neo4j-memory-mcp"
    mcp_server_version: str = "1.0.0"
    mcp_server_host: str = "0.0.0.0"
    mcp_server_port: int = 8080
    mcp_server_debug: bool = False

    # =========================================================================
    # Authentification
    # =========================================================================
    auth_mode: str = "combined"  # combined | delegated | static-key | none

    # Tokens délégués (JWT émis par le fournisseur d'identité)
    jwt_secret: Optional[str] = None
    jwt_algorithms: str = "HS256"  # Liste séparée par des virgules
    jwt_issuer: Optional[str] = "neo4j-mcp-server"
    jwt_audience: Optional[str] = "mcp-clients"
    jwt_jwks_url: Optional[str] = None  # Si défini, remplace jwt_secret (RS256/ES256)
    jwt_leeway_seconds: int = 30

    # Clés statiques
    mcp_server_api_key: Optional[str] = None  # Clé unique, toutes permissions
    mcp_api_keys: str = ""  # "cle1=read|write,cle2=read"
    api_key_header: str = "x-api-key"

    # =========================================================================
    # OAuth 2.1 + PKCE (flux de délégation)
    # =========================================================================
    oauth_authorize_url: Optional[str] = None
    oauth_token_url: Optional[str] = None
    oauth_client_id: Optional[str] = None
    oauth_client_secret: Optional[str] = None
    oauth_redirect_uri: Optional[str] = None
    oauth_state_ttl_seconds: int = 900  # 15 minutes
    oauth_state_sweep_seconds: int = 60
    oauth_default_scopes: str = "read write"

    # =========================================================================
    # Limites
    # =========================================================================
    default_read_limit: int = 100
    max_read_limit: int = 1000

    @field_validator("auth_mode")
    @classmethod
    def _check_auth_mode(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in AUTH_MODES:
            raise ValueError(f"auth_mode doit être parmi {AUTH_MODES}, reçu '{value}'")
        return value

    @property
    def jwt_algorithm_list(self) -> List[str]:
        """Algorithmes JWT acceptés."""
        return [a.strip() for a in self.jwt_algorithms.split(",") if a.strip()]

    @property
    def api_key_entries(self) -> List[Tuple[str, List[str]]]:
        """
        Clés statiques provisionnées avec leurs scopes.

        Format de MCP_API_KEYS : "cle=read|write,autre=read".
        Une clé sans scopes reçoit ["read"]. La clé unique
        MCP_SERVER_API_KEY reçoit toujours ["read", "write", "admin"].
        """
        entries: List[Tuple[str, List[str]]] = []
        if self.mcp_server_api_key:
            entries.append((self.mcp_server_api_key, ["read", "write", "admin"]))

        for chunk in self.mcp_api_keys.split(","):
            chunk = chunk.strip()
            if not chunk:
                continue
            key, _, raw_scopes = chunk.partition("=")
            scopes = [s.strip() for s in raw_scopes.split("|") if s.strip()]
            entries.append((key.strip(), scopes or ["read"]))
        return entries

    @property
    def oauth_enabled(self) -> bool:
        """Le flux OAuth n'est exposé que s'il est entièrement configuré."""
        return bool(
            self.oauth_authorize_url
            and self.oauth_token_url
            and self.oauth_client_id
            and self.oauth_redirect_uri
        )


@lru_cache()
def get_settings() -> Settings:
    """
    Retourne l'instance de configuration (singleton).

    Utilise lru_cache pour ne charger la config qu'une seule fois.

    Usage:
        from neo4j_memory.config import get_settings
        settings = get_settings()
        print(settings.neo4j_uri)
    """
    return Settings()
