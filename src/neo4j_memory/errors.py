# -*- coding: utf-8 -*-
"""
Taxonomie des erreurs du service.

Chaque erreur porte un code stable (exposé aux clients) et un message
lisible qui ne contient jamais de requête Cypher ni de trace interne.
"""

from typing import Any, Dict, List, Optional


class MemoryServiceError(Exception):
    """Erreur de base : code stable + message sûr pour l'appelant."""

    code = "internal_error"
    http_status = 500

    def __init__(self, message: str = "Internal error"):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        """Objet d'erreur structuré renvoyé par les outils."""
        return {"status": "error", "code": self.code, "message": self.message}


class MissingCredential(MemoryServiceError):
    """Aucun credential présenté."""

    code = "missing_credential"
    http_status = 401

    def __init__(self, message: Optional[str] = None):
        super().__init__(
            message
            or "Authentication required. Provide either 'Authorization: Bearer <token>' "
            "or 'X-API-Key: <key>'"
        )


class InvalidCredential(MemoryServiceError):
    """Credential présent mais refusé (sans préciser pourquoi)."""

    code = "invalid_credential"
    http_status = 401

    def __init__(self, message: str = "Invalid or expired credential"):
        super().__init__(message)


class InsufficientScope(MemoryServiceError):
    """Identité valide mais capacité insuffisante."""

    code = "insufficient_scope"
    http_status = 403

    def __init__(self, required_scope: str):
        super().__init__(f"Insufficient permissions: '{required_scope}' scope required")
        self.required_scope = required_scope

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["required_scope"] = self.required_scope
        return data


class ValidationError(MemoryServiceError):
    """Arguments d'opération mal formés."""

    code = "validation_error"
    http_status = 400

    def __init__(self, message: str, fields: Optional[List[str]] = None):
        super().__init__(message)
        self.fields = fields or []

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["fields"] = self.fields
        return data


class StoreUnavailable(MemoryServiceError):
    """Base Neo4j injoignable ou requête en échec."""

    code = "store_unavailable"
    http_status = 503

    def __init__(self, message: str = "Graph store unavailable"):
        super().__init__(message)


class NotFound(MemoryServiceError):
    """Entité ou relation référencée absente."""

    code = "not_found"
    http_status = 404


class UnknownOperation(MemoryServiceError):
    """Nom d'opération non enregistré."""

    code = "unknown_operation"
    http_status = 404

    def __init__(self, name: str):
        super().__init__(f"Unknown operation '{name}'")


class ConfigurationError(Exception):
    """Configuration invalide détectée au démarrage."""
