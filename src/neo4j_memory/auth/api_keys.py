# -*- coding: utf-8 -*-
"""
ApiKeyRegistry - Registre en mémoire des clés statiques.

Seul le hash SHA256 de chaque clé est conservé (pas la clé en clair).
Le registre est chargé au démarrage à partir de la configuration, puis
administré à chaud par les opérations admin_create_api_key,
admin_list_api_keys et admin_revoke_api_key (scope admin). Les clés
créées ainsi vivent en mémoire et disparaissent au redémarrage.
"""

import hashlib
import hmac
import secrets
import sys
import threading
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from ..config import Settings, get_settings


class ApiKeyRecord(BaseModel):
    """Clé provisionnée : hash + scopes accordés."""
    key_hash: str
    name: str
    scopes: List[str] = Field(default_factory=lambda: ["read"])
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    is_active: bool = True

    @property
    def prefix(self) -> str:
        """Préfixe court du hash, affichable dans les logs."""
        return self.key_hash[:8]


class ApiKeyRegistry:
    """
    Gestionnaire des clés statiques.

    Lookup en temps constant par rapport à la clé présentée : le hash
    candidat est comparé à tous les hash connus avec hmac.compare_digest,
    sans court-circuit sur la première correspondance.
    """

    def __init__(self, entries: Optional[Iterable] = None):
        """
        Args:
            entries: couples (clé en clair, scopes) à enregistrer
        """
        self._lock = threading.Lock()
        self._records: Dict[str, ApiKeyRecord] = {}
        for key, scopes in entries or []:
            self.register(key, scopes)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "ApiKeyRegistry":
        """Construit le registre depuis MCP_SERVER_API_KEY / MCP_API_KEYS."""
        settings = settings or get_settings()
        registry = cls(settings.api_key_entries)
        if len(registry):
            print(f"🔑 [Auth] {len(registry)} clé(s) statique(s) chargée(s)", file=sys.stderr)
        return registry

    @staticmethod
    def _hash_key(key: str) -> str:
        """Hash une clé avec SHA256."""
        return hashlib.sha256(key.encode()).hexdigest()

    @staticmethod
    def _generate_key() -> str:
        """Génère une clé sécurisée."""
        return secrets.token_urlsafe(32)

    def __len__(self) -> int:
        with self._lock:
            records = list(self._records.values())
        return sum(1 for r in records if r.is_active)

    def register(self, key: str, scopes: Optional[List[str]] = None, name: Optional[str] = None) -> ApiKeyRecord:
        """Enregistre une clé existante (provenant de la configuration)."""
        if not key:
            raise ValueError("API key must not be empty")
        key_hash = self._hash_key(key)
        record = ApiKeyRecord(
            key_hash=key_hash,
            name=name or f"key-{key_hash[:8]}",
            scopes=list(scopes) if scopes else ["read"],
        )
        with self._lock:
            self._records[key_hash] = record
        return record

    def create_key(self, name: str, scopes: Optional[List[str]] = None) -> str:
        """
        Crée une nouvelle clé.

        Returns:
            La clé en clair (seule fois où elle est accessible)
        """
        key = self._generate_key()
        record = self.register(key, scopes, name=name)
        print(f"🔑 [Auth] Clé créée pour '{name}' ({record.prefix}...)", file=sys.stderr)
        return key

    def lookup(self, key: str) -> Optional[ApiKeyRecord]:
        """
        Retrouve la clé présentée.

        Returns:
            ApiKeyRecord si la clé est connue et active, None sinon
        """
        if not key:
            return None
        candidate = self._hash_key(key)
        with self._lock:
            records = list(self._records.values())

        found = None
        for record in records:
            if hmac.compare_digest(record.key_hash, candidate) and record.is_active:
                found = record
        return found

    def revoke(self, prefix: str) -> bool:
        """
        Révoque une clé à partir du préfixe de son hash.

        Returns:
            True si révoquée, False si aucune clé ne correspond
        """
        with self._lock:
            for record in self._records.values():
                if record.key_hash.startswith(prefix) and record.is_active:
                    record.is_active = False
                    print(f"🚫 [Auth] Clé révoquée: {record.prefix}...", file=sys.stderr)
                    return True
        return False

    def list_keys(self, include_revoked: bool = False) -> List[ApiKeyRecord]:
        """Liste les clés (hash uniquement), plus récentes d'abord."""
        with self._lock:
            records = [r for r in self._records.values() if include_revoked or r.is_active]
        return sorted(records, key=lambda r: r.created_at, reverse=True)


# Singleton pour usage global
_registry: Optional[ApiKeyRegistry] = None


def get_api_key_registry() -> ApiKeyRegistry:
    """Retourne l'instance singleton du registre de clés."""
    global _registry
    if _registry is None:
        _registry = ApiKeyRegistry.from_settings()
    return _registry
