# -*- coding: utf-8 -*-
"""
Modèles Pydantic pour Neo4j Memory.

Définit les enregistrements du graphe (entités, relations, observations),
la vue agrégée du Knowledge Graph, et les schémas d'arguments des dix
opérations exposées.

Les noms de champs côté protocole sont en camelCase (entityName,
relationType...) : ils sont déclarés comme alias, les attributs Python
restent en snake_case.
"""

import re
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..auth.scopes import normalize_scope

_IDENTIFIER_STRIP = re.compile(r"[^A-Za-z0-9_]")
_WHITESPACE = re.compile(r"\s+")


def sanitize_identifier(value: str) -> str:
    """
    Transforme une chaîne libre en identifiant Cypher sûr.

    Espaces → "_", tout caractère hors [A-Za-z0-9_] supprimé, majuscules.
    Le résultat est le seul fragment utilisateur jamais interpolé dans
    une requête (type d'arête).

    Raises:
        ValueError: si rien ne subsiste après assainissement
    """
    token = _WHITESPACE.sub("_", value.strip())
    token = _IDENTIFIER_STRIP.sub("", token).upper()
    if not token:
        raise ValueError(f"'{value}' contains no usable characters ([A-Za-z0-9_])")
    return token


def _dedupe(values: List[str]) -> List[str]:
    """Retire les doublons en conservant l'ordre d'arrivée."""
    seen = set()
    result = []
    for value in values:
        if value not in seen:
            seen.add(value)
            result.append(value)
    return result


class _Record(BaseModel):
    """Base commune : alias camelCase acceptés en entrée comme en sortie."""

    model_config = ConfigDict(populate_by_name=True)


class _Arguments(BaseModel):
    """Base des arguments d'opération : champs inconnus refusés."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid", str_strip_whitespace=True)


# =============================================================================
# Enregistrements du graphe
# =============================================================================

class Entity(_Record):
    """Nœud nommé et typé du graphe."""
    name: str
    type: str
    observations: List[str] = Field(default_factory=list)


class Relation(_Record):
    """Arête orientée et typée entre deux entités."""
    source: str
    target: str
    relation_type: str = Field(..., alias="relationType")


class KnowledgeGraph(_Record):
    """Vue en lecture : entités trouvées + relations qui les touchent."""
    entities: List[Entity] = Field(default_factory=list)
    relations: List[Relation] = Field(default_factory=list)


class ErrorInfo(_Record):
    """Erreur rattachée à un élément d'un lot."""
    code: str
    message: str


class EntityAck(_Record):
    """Accusé de création/fusion d'une entité."""
    name: str
    type: str
    created: bool = True
    existed: bool = False
    added_observations: List[str] = Field(default_factory=list, alias="addedObservations")
    error: Optional[ErrorInfo] = None


class RelationAck(_Record):
    """Accusé de création d'une relation (type déjà assaini)."""
    source: str
    target: str
    relation_type: str = Field(..., alias="relationType")
    created: bool = True
    error: Optional[ErrorInfo] = None


class ObservationAddResult(_Record):
    """Observations réellement ajoutées à une entité."""
    entity_name: str = Field(..., alias="entityName")
    added_observations: List[str] = Field(default_factory=list, alias="addedObservations")
    error: Optional[ErrorInfo] = None


class DeletionSummary(_Record):
    """Confirmation d'une opération de suppression."""
    status: str = "ok"
    deleted: int = 0
    observations_deleted: int = Field(default=0, alias="observationsDeleted")
    errors: List[Dict[str, Any]] = Field(default_factory=list)


# =============================================================================
# Arguments des opérations
# =============================================================================

class EntityInput(_Arguments):
    """Entité à créer ou fusionner."""
    name: str = Field(..., min_length=1, description="The name of the entity")
    type: str = Field(..., min_length=1, description="The type of the entity")
    observations: List[str] = Field(
        default_factory=list,
        description="An array of observation contents associated with the entity",
    )

    @field_validator("observations")
    @classmethod
    def _unique_observations(cls, value: List[str]) -> List[str]:
        return _dedupe([v for v in value if v])


class RelationInput(_Arguments):
    """Relation à créer (relationType assaini dès la validation)."""
    source: str = Field(..., min_length=1)
    target: str = Field(..., min_length=1)
    relation_type: str = Field(..., min_length=1, alias="relationType")

    @field_validator("relation_type")
    @classmethod
    def _sanitize_type(cls, value: str) -> str:
        return sanitize_identifier(value)


class RelationFilter(_Arguments):
    """Relation à supprimer ; sans relationType, toutes les arêtes source→cible."""
    source: str = Field(..., min_length=1)
    target: str = Field(..., min_length=1)
    relation_type: Optional[str] = Field(None, alias="relationType")

    @field_validator("relation_type")
    @classmethod
    def _sanitize_type(cls, value: Optional[str]) -> Optional[str]:
        return sanitize_identifier(value) if value is not None else None


class ObservationAddition(_Arguments):
    """Observations à ajouter à une entité existante."""
    entity_name: str = Field(..., min_length=1, alias="entityName")
    contents: List[str] = Field(..., min_length=1)

    @field_validator("contents")
    @classmethod
    def _unique_contents(cls, value: List[str]) -> List[str]:
        contents = _dedupe([v for v in value if v.strip()])
        if not contents:
            raise ValueError("at least one non-empty observation is required")
        return contents


class ObservationDeletion(_Arguments):
    """Observations à retirer d'une entité."""
    entity_name: str = Field(..., min_length=1, alias="entityName")
    observations: List[str] = Field(..., min_length=1)


class CreateEntitiesArgs(_Arguments):
    entities: List[EntityInput] = Field(..., min_length=1)


class CreateRelationsArgs(_Arguments):
    relations: List[RelationInput] = Field(..., min_length=1)


class AddObservationsArgs(_Arguments):
    observations: List[ObservationAddition] = Field(..., min_length=1)


class DeleteEntitiesArgs(_Arguments):
    entity_names: List[str] = Field(..., min_length=1, alias="entityNames")


class DeleteObservationsArgs(_Arguments):
    deletions: List[ObservationDeletion] = Field(..., min_length=1)


class DeleteRelationsArgs(_Arguments):
    relations: List[RelationFilter] = Field(..., min_length=1)


class ReadGraphArgs(_Arguments):
    limit: Optional[int] = Field(None, ge=1)
    entity_type: Optional[str] = Field(None, min_length=1, alias="entityType")


class SearchNodesArgs(_Arguments):
    query: str = Field(..., min_length=1)
    limit: Optional[int] = Field(None, ge=1)


class FindNodesArgs(_Arguments):
    """Recherche par noms exacts : `names` ou `name`, pas les deux."""
    names: Optional[List[str]] = Field(None, min_length=1)
    name: Optional[str] = Field(None, min_length=1)

    @model_validator(mode="after")
    def _one_of_names(self) -> "FindNodesArgs":
        if (self.names is None) == (self.name is None):
            raise ValueError("provide exactly one of 'names' or 'name'")
        return self

    @property
    def requested_names(self) -> List[str]:
        return _dedupe(self.names) if self.names is not None else [self.name]


class HealthCheckArgs(_Arguments):
    pass


# =============================================================================
# Administration des clés statiques
# =============================================================================

class CreateApiKeyArgs(_Arguments):
    """Nouvelle clé statique : nom lisible + scopes accordés."""
    name: str = Field(..., min_length=1, description="Human-readable key name")
    scopes: List[str] = Field(default_factory=lambda: ["read"], min_length=1)

    @field_validator("scopes")
    @classmethod
    def _known_scopes(cls, value: List[str]) -> List[str]:
        resolved = []
        for item in value:
            scope = normalize_scope(item)
            if scope is None:
                raise ValueError(f"unknown scope '{item}'")
            resolved.append(scope.value)
        return _dedupe(resolved)


class ListApiKeysArgs(_Arguments):
    include_revoked: bool = Field(False, alias="includeRevoked")


class RevokeApiKeyArgs(_Arguments):
    prefix: str = Field(..., min_length=4, description="Key hash prefix, as shown by list")
