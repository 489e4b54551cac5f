# -*- coding: utf-8 -*-
"""
GraphService - Client Neo4j pour le Knowledge Graph.

Traduit chaque opération du domaine en requêtes Cypher paramétrées :
- Entités (:Entity {name, type}) fusionnées sur leur nom
- Observations (:Observation {content, created_at, seq}) rattachées à
  leur entité par une arête HAS_OBSERVATION
- Relations typées entre entités (le type d'arête est un identifiant
  Cypher assaini, jamais un paramètre)
- Lecture / recherche / recherche par nom agrégées en KnowledgeGraph

Chaque opération ouvre sa propre session et la referme sur tous les
chemins de sortie (succès, échec, annulation). Dans un lot, chaque
élément est appliqué dans sa propre transaction : un élément en échec
est annulé seul, les autres sont conservés.
"""

import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Sequence

from neo4j import AsyncDriver, AsyncGraphDatabase, AsyncSession
from neo4j.exceptions import (
    AuthError,
    DriverError,
    Neo4jError,
    ServiceUnavailable,
    SessionExpired,
)

from ..config import Settings, get_settings
from ..errors import NotFound, StoreUnavailable
from .models import (
    DeletionSummary,
    Entity,
    EntityAck,
    EntityInput,
    ErrorInfo,
    KnowledgeGraph,
    ObservationAddResult,
    ObservationAddition,
    ObservationDeletion,
    Relation,
    RelationAck,
    RelationFilter,
    RelationInput,
    sanitize_identifier,
)

# Erreurs qui signifient "la base est injoignable" : elles interrompent
# toute l'opération au lieu d'être rattachées à un élément du lot.
_CONNECTIVITY_ERRORS = (ServiceUnavailable, SessionExpired, AuthError)

# =============================================================================
# Requêtes Cypher
# =============================================================================

# Ajoute à `e` les contenus de `$contents` absents de ses observations.
# `seq` conserve l'ordre d'insertion (datetime() est constant dans une requête).
_ATTACH_OBSERVATIONS = """
    OPTIONAL MATCH (e)-[:HAS_OBSERVATION]->(o:Observation)
    WITH e, existed, collect(o.content) AS existing_contents
    WITH e, existed, [c IN $contents WHERE NOT c IN existing_contents] AS new_contents
    FOREACH (i IN range(0, size(new_contents) - 1) |
        CREATE (e)-[:HAS_OBSERVATION]->(:Observation {
            content: new_contents[i], created_at: datetime(), seq: i
        })
    )
"""

_UPSERT_ENTITY = (
    """
    OPTIONAL MATCH (existing:Entity {name: $name})
    WITH existing IS NOT NULL AS existed
    MERGE (e:Entity {name: $name})
    ON CREATE SET e.created_at = datetime()
    SET e.type = $type, e.updated_at = datetime()
    WITH e, existed
    """
    + _ATTACH_OBSERVATIONS
    + """
    RETURN e.name AS name, e.type AS type, existed, new_contents AS added
    """
)

# Le SET pose le verrou d'écriture sur `e` avant la lecture des observations
# existantes (même rôle que le SET e.type de _UPSERT_ENTITY).
_ADD_OBSERVATIONS = (
    """
    MATCH (e:Entity {name: $name})
    SET e.updated_at = datetime()
    WITH e, true AS existed
    """
    + _ATTACH_OBSERVATIONS
    + """
    RETURN e.name AS name, new_contents AS added
    """
)

_CHECK_ENDPOINTS = """
    OPTIONAL MATCH (s:Entity {name: $source})
    OPTIONAL MATCH (t:Entity {name: $target})
    RETURN s IS NOT NULL AS has_source, t IS NOT NULL AS has_target
"""

# {rel_type} est toujours le résultat de sanitize_identifier()
_MERGE_RELATION = """
    MATCH (s:Entity {{name: $source}})
    MATCH (t:Entity {{name: $target}})
    MERGE (s)-[r:`{rel_type}`]->(t)
    ON CREATE SET r.created_at = datetime()
    RETURN type(r) AS relation_type
"""

_DELETE_ENTITY = """
    MATCH (e:Entity {name: $name})
    OPTIONAL MATCH (e)-[:HAS_OBSERVATION]->(o:Observation)
    WITH e, collect(o) AS observations
    WITH e, observations, size(observations) AS observation_count
    FOREACH (o IN observations | DETACH DELETE o)
    DETACH DELETE e
    RETURN observation_count
"""

_DELETE_OBSERVATIONS = """
    MATCH (e:Entity {name: $name})-[:HAS_OBSERVATION]->(o:Observation)
    WHERE o.content IN $observations
    DETACH DELETE o
    RETURN count(*) AS deleted
"""

_DELETE_TYPED_RELATION = """
    MATCH (:Entity {{name: $source}})-[r:`{rel_type}`]->(:Entity {{name: $target}})
    DELETE r
    RETURN count(*) AS deleted
"""

_DELETE_ALL_RELATIONS = """
    MATCH (:Entity {name: $source})-[r]->(:Entity {name: $target})
    DELETE r
    RETURN count(*) AS deleted
"""

# Sélecteurs d'entités pour _load_graph ; tous produisent (entity, score).
_SELECT_ALL = """
    MATCH (entity:Entity)
    WHERE $entity_type IS NULL OR entity.type = $entity_type
    WITH entity, 1.0 AS score
    ORDER BY entity.created_at
    LIMIT $limit
"""

_SELECT_NAMES = """
    MATCH (entity:Entity)
    WHERE entity.name IN $names
    WITH entity, 1.0 AS score
    LIMIT $limit
"""

# Un résultat sur une observation remonte à son entité propriétaire.
_SELECT_FULLTEXT = """
    CALL db.index.fulltext.queryNodes($index_name, $search_text)
    YIELD node, score
    WITH CASE
            WHEN node:Observation
            THEN head([(owner:Entity)-[:HAS_OBSERVATION]->(node) | owner])
            ELSE node
         END AS entity, score
    WHERE entity IS NOT NULL
    WITH entity, max(score) AS score
    ORDER BY score DESC
    LIMIT $limit
"""

# Mode dégradé (index fulltext refusé) : sous-chaîne insensible à la casse.
_SELECT_CONTAINS = """
    MATCH (entity:Entity)
    WHERE toLower(entity.name) CONTAINS $search_text
       OR toLower(entity.type) CONTAINS $search_text
       OR EXISTS {
            MATCH (entity)-[:HAS_OBSERVATION]->(o:Observation)
            WHERE toLower(o.content) CONTAINS $search_text
       }
    WITH entity, 1.0 AS score
    ORDER BY entity.created_at
    LIMIT $limit
"""

_GRAPH_TAIL = """
    CALL {
        WITH entity
        OPTIONAL MATCH (entity)-[:HAS_OBSERVATION]->(o:Observation)
        WITH o ORDER BY o.created_at, o.seq
        RETURN collect(o.content) AS observations
    }
    CALL {
        WITH entity
        OPTIONAL MATCH (entity)-[r]-(:Entity)
        RETURN collect(DISTINCT {
            source: startNode(r).name,
            target: endNode(r).name,
            relation_type: type(r)
        }) AS relations
    }
    RETURN entity.name AS name, entity.type AS type, observations, relations, score
    ORDER BY score DESC
"""

_STATS = """
    CALL { MATCH (e:Entity) RETURN count(e) AS entities }
    CALL { MATCH (:Entity)-[r]->(:Entity) RETURN count(r) AS relations }
    CALL { MATCH (o:Observation) RETURN count(o) AS observations }
    RETURN entities, relations, observations
"""


class GraphService:
    """
    Adaptateur du Knowledge Graph (Neo4j).

    Possède le pool de connexions du driver pour toute la durée du
    processus. Les index sont créés paresseusement au premier appel si
    la base n'était pas joignable au démarrage.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        driver: Optional[AsyncDriver] = None,
    ):
        """
        Initialise la connexion Neo4j.

        Args:
            settings: Configuration (get_settings() si None)
            driver: Driver déjà construit (tests, intégration)
        """
        settings = settings or get_settings()

        self._driver: AsyncDriver = driver or AsyncGraphDatabase.driver(
            settings.neo4j_uri,
            auth=(settings.neo4j_user, settings.neo4j_password),
            max_connection_lifetime=3600,
            max_connection_pool_size=settings.neo4j_max_pool_size,
            connection_acquisition_timeout=settings.neo4j_connection_timeout_seconds,
        )
        self._uri = settings.neo4j_uri
        self._database = settings.neo4j_database
        self._query_timeout = settings.neo4j_query_timeout_seconds
        self._index_name = sanitize_identifier(settings.fulltext_index_name).lower()
        self._default_limit = settings.default_read_limit
        self._max_limit = settings.max_read_limit
        self._schema_ready = False
        self._fulltext_ready = False

    @property
    def database(self) -> str:
        return self._database

    @property
    def uri(self) -> str:
        return self._uri

    async def close(self):
        """Ferme le pool de connexions Neo4j."""
        await self._driver.close()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Context manager pour obtenir une session Neo4j."""
        session = self._driver.session(database=self._database)
        try:
            yield session
        finally:
            await session.close()

    @asynccontextmanager
    async def _transaction(self, session: AsyncSession):
        """Transaction explicite : commit en sortie normale, rollback sinon."""
        tx = await session.begin_transaction(timeout=self._query_timeout)
        try:
            yield tx
            await tx.commit()
        except BaseException:
            if not tx.closed():
                await tx.rollback()
            raise

    @asynccontextmanager
    async def _store_errors(self, operation: str):
        """Convertit les erreurs du driver en StoreUnavailable (message générique)."""
        try:
            yield
        except (Neo4jError, DriverError) as e:
            print(f"❌ [Graph] {operation}: {type(e).__name__}: {e}", file=sys.stderr)
            raise StoreUnavailable(f"Graph store error during {operation}") from e

    async def _run(self, tx, query: str, **params) -> List[Dict[str, Any]]:
        result = await tx.run(query, params)
        return await result.data()

    # =========================================================================
    # Initialisation et connexion
    # =========================================================================

    async def initialize(self) -> bool:
        """
        Vérifie la connexion et crée le schéma (idempotent).

        Ne lève pas : si Neo4j est indisponible au démarrage, le schéma
        sera créé au premier appel réussi.
        """
        try:
            await self._driver.verify_connectivity()
            await self.ensure_schema()
            print(f"✅ [Graph] Connecté à Neo4j ({self._uri}, base '{self._database}')", file=sys.stderr)
            return True
        except Exception as e:
            print(f"⚠️ [Graph] Neo4j indisponible au démarrage: {e}", file=sys.stderr)
            return False

    async def ensure_schema(self):
        """
        Crée la contrainte d'unicité sur Entity.name et l'index fulltext.

        L'index couvre Entity.name, Entity.type et Observation.content.
        S'il est refusé, search() passe en mode CONTAINS.
        """
        if self._schema_ready:
            return
        try:
            async with self.session() as session:
                try:
                    await session.run(
                        "CREATE CONSTRAINT entity_name_unique IF NOT EXISTS "
                        "FOR (e:Entity) REQUIRE e.name IS UNIQUE"
                    )
                except _CONNECTIVITY_ERRORS:
                    raise
                except Neo4jError as e:
                    print(f"⚠️ [Graph] Impossible de créer la contrainte d'unicité: {e}", file=sys.stderr)

                try:
                    await session.run(
                        f"CREATE FULLTEXT INDEX {self._index_name} IF NOT EXISTS "
                        "FOR (n:Entity|Observation) ON EACH [n.name, n.type, n.content]"
                    )
                    self._fulltext_ready = True
                    print(f"🔍 [Graph] Index fulltext '{self._index_name}' créé/vérifié", file=sys.stderr)
                except _CONNECTIVITY_ERRORS:
                    raise
                except Neo4jError as e:
                    print(f"⚠️ [Graph] Impossible de créer l'index fulltext: {e}", file=sys.stderr)
                    print("   La recherche utilisera le mode CONTAINS (dégradé)", file=sys.stderr)
        except _CONNECTIVITY_ERRORS as e:
            print(f"❌ [Graph] schema setup: {type(e).__name__}: {e}", file=sys.stderr)
            raise StoreUnavailable() from e
        self._schema_ready = True

    async def verify_connection(self) -> bool:
        """Sonde légère (aller-retour trivial) ; ne lève jamais."""
        try:
            async with self.session() as session:
                result = await session.run("RETURN 1 AS ok")
                record = await result.single()
                return bool(record and record["ok"] == 1)
        except Exception as e:
            print(f"⚠️ [Graph] Vérification de connexion échouée: {e}", file=sys.stderr)
            return False

    async def get_stats(self) -> Dict[str, int]:
        """Compteurs globaux du graphe."""
        async with self._store_errors("stats"), self.session() as session:
            result = await session.run(_STATS)
            record = await result.single()
            if not record:
                return {"entities": 0, "relations": 0, "observations": 0}
            return {
                "entities": record["entities"],
                "relations": record["relations"],
                "observations": record["observations"],
            }

    # =========================================================================
    # Entités
    # =========================================================================

    async def create_entities(self, entities: Sequence[EntityInput]) -> List[EntityAck]:
        """
        Crée ou fusionne des entités sur leur nom.

        Une entité existante reçoit le nouveau type ; ses observations sont
        complétées (jamais dupliquées). Lot best-effort : un échec n'annule
        pas les éléments déjà appliqués.
        """
        await self.ensure_schema()
        acks: List[EntityAck] = []

        async with self._store_errors("create_entities"), self.session() as session:
            for entity in entities:
                try:
                    async with self._transaction(session) as tx:
                        rows = await self._run(
                            tx,
                            _UPSERT_ENTITY,
                            name=entity.name,
                            type=entity.type,
                            contents=entity.observations,
                        )
                    row = rows[0]
                    acks.append(EntityAck(
                        name=row["name"],
                        type=row["type"],
                        created=True,
                        existed=row["existed"],
                        added_observations=row["added"],
                    ))
                except _CONNECTIVITY_ERRORS:
                    raise
                except Neo4jError as e:
                    acks.append(self._failed_entity(entity, e))

        created = sum(1 for a in acks if a.created and not a.existed)
        merged = sum(1 for a in acks if a.created and a.existed)
        print(f"🔗 [Graph] Entités: {created} nouvelles + {merged} fusionnées", file=sys.stderr)
        return acks

    @staticmethod
    def _failed_entity(entity: EntityInput, error: Exception) -> EntityAck:
        print(f"⚠️ [Graph] Entité '{entity.name}' non appliquée: {error}", file=sys.stderr)
        return EntityAck(
            name=entity.name,
            type=entity.type,
            created=False,
            error=ErrorInfo(code=StoreUnavailable.code, message="Entity could not be stored"),
        )

    async def delete_entities(self, names: Sequence[str]) -> DeletionSummary:
        """
        Supprime des entités avec leurs observations et toutes leurs relations.

        Un nom inexistant est ignoré.
        """
        summary = DeletionSummary()

        async with self._store_errors("delete_entities"), self.session() as session:
            for name in dict.fromkeys(names):
                try:
                    async with self._transaction(session) as tx:
                        rows = await self._run(tx, _DELETE_ENTITY, name=name)
                    if rows:
                        summary.deleted += 1
                        summary.observations_deleted += rows[0]["observation_count"]
                except _CONNECTIVITY_ERRORS:
                    raise
                except Neo4jError as e:
                    summary.errors.append(self._item_error({"name": name}, e))

        print(
            f"🗑️ [Graph] {summary.deleted} entité(s) supprimée(s), "
            f"{summary.observations_deleted} observation(s) en cascade",
            file=sys.stderr,
        )
        return summary

    # =========================================================================
    # Observations
    # =========================================================================

    async def add_observations(
        self, additions: Sequence[ObservationAddition]
    ) -> List[ObservationAddResult]:
        """
        Ajoute des observations (union ensembliste) à des entités existantes.

        Seuls les contenus nouveaux sont retournés. Une entité absente donne
        un résultat en erreur not_found pour cet élément uniquement.
        """
        await self.ensure_schema()
        results: List[ObservationAddResult] = []

        async with self._store_errors("add_observations"), self.session() as session:
            for addition in additions:
                try:
                    async with self._transaction(session) as tx:
                        rows = await self._run(
                            tx, _ADD_OBSERVATIONS, name=addition.entity_name, contents=addition.contents
                        )
                    if not rows:
                        raise NotFound(f"Entity '{addition.entity_name}' not found")
                    results.append(ObservationAddResult(
                        entity_name=rows[0]["name"], added_observations=rows[0]["added"]
                    ))
                except NotFound as e:
                    results.append(ObservationAddResult(
                        entity_name=addition.entity_name,
                        error=ErrorInfo(code=e.code, message=e.message),
                    ))
                except _CONNECTIVITY_ERRORS:
                    raise
                except Neo4jError as e:
                    print(f"⚠️ [Graph] Observations pour '{addition.entity_name}': {e}", file=sys.stderr)
                    results.append(ObservationAddResult(
                        entity_name=addition.entity_name,
                        error=ErrorInfo(code=StoreUnavailable.code, message="Observations could not be stored"),
                    ))

        added = sum(len(r.added_observations) for r in results)
        print(f"📝 [Graph] {added} observation(s) ajoutée(s)", file=sys.stderr)
        return results

    async def delete_observations(self, deletions: Sequence[ObservationDeletion]) -> DeletionSummary:
        """Supprime les observations de contenu exact sous chaque entité."""
        summary = DeletionSummary()

        async with self._store_errors("delete_observations"), self.session() as session:
            for deletion in deletions:
                try:
                    async with self._transaction(session) as tx:
                        rows = await self._run(
                            tx,
                            _DELETE_OBSERVATIONS,
                            name=deletion.entity_name,
                            observations=deletion.observations,
                        )
                    count = rows[0]["deleted"] if rows else 0
                    summary.deleted += count
                    summary.observations_deleted += count
                except _CONNECTIVITY_ERRORS:
                    raise
                except Neo4jError as e:
                    summary.errors.append(self._item_error({"entityName": deletion.entity_name}, e))

        print(f"🗑️ [Graph] {summary.deleted} observation(s) supprimée(s)", file=sys.stderr)
        return summary

    # =========================================================================
    # Relations
    # =========================================================================

    async def create_relations(self, relations: Sequence[RelationInput]) -> List[RelationAck]:
        """
        Crée des relations entre entités existantes (MERGE idempotent).

        Une extrémité absente donne un accusé en erreur not_found ; aucune
        entité n'est créée implicitement.
        """
        acks: List[RelationAck] = []

        async with self._store_errors("create_relations"), self.session() as session:
            for relation in relations:
                rel_type = sanitize_identifier(relation.relation_type)
                try:
                    async with self._transaction(session) as tx:
                        rows = await self._run(
                            tx, _CHECK_ENDPOINTS, source=relation.source, target=relation.target
                        )
                        check = rows[0] if rows else {"has_source": False, "has_target": False}
                        missing = [
                            name
                            for name, present in (
                                (relation.source, check["has_source"]),
                                (relation.target, check["has_target"]),
                            )
                            if not present
                        ]
                        if missing:
                            raise NotFound(f"Entity not found: {', '.join(repr(m) for m in missing)}")
                        await self._run(
                            tx,
                            _MERGE_RELATION.format(rel_type=rel_type),
                            source=relation.source,
                            target=relation.target,
                        )
                    acks.append(RelationAck(
                        source=relation.source, target=relation.target, relation_type=rel_type
                    ))
                except NotFound as e:
                    acks.append(RelationAck(
                        source=relation.source,
                        target=relation.target,
                        relation_type=rel_type,
                        created=False,
                        error=ErrorInfo(code=e.code, message=e.message),
                    ))
                except _CONNECTIVITY_ERRORS:
                    raise
                except Neo4jError as e:
                    print(f"⚠️ [Graph] Relation {relation.source}-[{rel_type}]->{relation.target}: {e}", file=sys.stderr)
                    acks.append(RelationAck(
                        source=relation.source,
                        target=relation.target,
                        relation_type=rel_type,
                        created=False,
                        error=ErrorInfo(code=StoreUnavailable.code, message="Relation could not be stored"),
                    ))

        created = sum(1 for a in acks if a.created)
        print(f"🔗 [Graph] Relations: {created}/{len(acks)} appliquées", file=sys.stderr)
        return acks

    async def delete_relations(self, relations: Sequence[RelationFilter]) -> DeletionSummary:
        """
        Supprime des relations source→cible.

        Avec relationType : seulement les arêtes de ce type.
        Sans relationType : TOUTES les arêtes source→cible, quel que soit le type.
        """
        summary = DeletionSummary()

        async with self._store_errors("delete_relations"), self.session() as session:
            for relation in relations:
                if relation.relation_type is None:
                    query = _DELETE_ALL_RELATIONS
                else:
                    query = _DELETE_TYPED_RELATION.format(
                        rel_type=sanitize_identifier(relation.relation_type)
                    )
                try:
                    async with self._transaction(session) as tx:
                        rows = await self._run(
                            tx, query, source=relation.source, target=relation.target
                        )
                    summary.deleted += rows[0]["deleted"] if rows else 0
                except _CONNECTIVITY_ERRORS:
                    raise
                except Neo4jError as e:
                    summary.errors.append(self._item_error(
                        {"source": relation.source, "target": relation.target}, e
                    ))

        print(f"🗑️ [Graph] {summary.deleted} relation(s) supprimée(s)", file=sys.stderr)
        return summary

    @staticmethod
    def _item_error(item: Dict[str, Any], error: Exception) -> Dict[str, Any]:
        print(f"⚠️ [Graph] Élément {item} en échec: {error}", file=sys.stderr)
        return {**item, "code": StoreUnavailable.code, "message": "Item could not be processed"}

    # =========================================================================
    # Lecture / Recherche
    # =========================================================================

    def _clamp_limit(self, limit: Optional[int]) -> int:
        if limit is None:
            return self._default_limit
        return max(1, min(limit, self._max_limit))

    async def load_graph(
        self, limit: Optional[int] = None, entity_type: Optional[str] = None
    ) -> KnowledgeGraph:
        """Lit tout le graphe (filtre match-all), optionnellement restreint à un type."""
        return await self._load_graph(
            "read_graph", _SELECT_ALL, limit=self._clamp_limit(limit), entity_type=entity_type
        )

    async def search(self, query: str, limit: Optional[int] = None) -> KnowledgeGraph:
        """
        Recherche fulltext (noms, types, contenus d'observations).

        La requête est transmise telle quelle à Lucene ; les entités sont
        triées par score décroissant. Sans index fulltext, recherche par
        sous-chaîne (CONTAINS, insensible à la casse).
        """
        await self.ensure_schema()
        if not self._fulltext_ready:
            return await self._load_graph(
                "search_nodes",
                _SELECT_CONTAINS,
                limit=self._clamp_limit(limit),
                search_text=query.lower(),
            )
        return await self._load_graph(
            "search_nodes",
            _SELECT_FULLTEXT,
            limit=self._clamp_limit(limit),
            index_name=self._index_name,
            search_text=query,
        )

    async def find(self, names: Sequence[str]) -> KnowledgeGraph:
        """Entités dont le nom est exactement dans `names`, avec leurs relations."""
        names = list(dict.fromkeys(names))
        return await self._load_graph(
            "find_nodes", _SELECT_NAMES, limit=self._clamp_limit(len(names)), names=names
        )

    async def _load_graph(self, operation: str, selector: str, **params) -> KnowledgeGraph:
        """Exécute un sélecteur d'entités puis agrège observations et relations."""
        async with self._store_errors(operation), self.session() as session:
            result = await session.run(selector + _GRAPH_TAIL, params)
            rows = await result.data()

        entities: List[Entity] = []
        relations: List[Relation] = []
        seen = set()
        for row in rows:
            if not row.get("name"):
                continue
            entities.append(Entity(
                name=row["name"],
                type=row.get("type") or "",
                observations=[o for o in row.get("observations") or [] if o is not None],
            ))
            for rel in row.get("relations") or []:
                key = (rel.get("source"), rel.get("target"), rel.get("relation_type"))
                if not all(key) or key in seen:
                    continue
                seen.add(key)
                relations.append(Relation(source=key[0], target=key[1], relation_type=key[2]))

        return KnowledgeGraph(entities=entities, relations=relations)


# Singleton pour usage global
_graph_service: Optional[GraphService] = None


def get_graph_service() -> GraphService:
    """Retourne l'instance singleton du GraphService."""
    global _graph_service
    if _graph_service is None:
        _graph_service = GraphService()
    return _graph_service
