# -*- coding: utf-8 -*-
"""
OperationDispatcher - Registre des opérations exposées.

Chaque appel suit le même chemin, pour toutes les opérations :

    Received → ArgsValidated → Authorized → Executed → Responded

avec sortie anticipée vers Rejected (arguments), Denied (credential ou
scope) ou Failed (erreur de la base). Les arguments sont validés avant
l'autorisation ; aucune opération n'atteint la base sans session
authentifiée ni scope suffisant.
"""

import sys
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Type

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from .auth.api_keys import ApiKeyRegistry, get_api_key_registry
from .auth.context import SessionContext
from .auth.scopes import Scope, authorize
from .config import Settings, get_settings
from .core.graph import GraphService
from .core.models import (
    AddObservationsArgs,
    CreateApiKeyArgs,
    CreateEntitiesArgs,
    CreateRelationsArgs,
    DeleteEntitiesArgs,
    DeleteObservationsArgs,
    DeleteRelationsArgs,
    FindNodesArgs,
    HealthCheckArgs,
    ListApiKeysArgs,
    ReadGraphArgs,
    RevokeApiKeyArgs,
    SearchNodesArgs,
)
from .errors import (
    MemoryServiceError,
    MissingCredential,
    NotFound,
    UnknownOperation,
    ValidationError,
)

Handler = Callable[[BaseModel, SessionContext], Awaitable[Dict[str, Any]]]


class CallState(str, Enum):
    RECEIVED = "received"
    ARGS_VALIDATED = "args_validated"
    AUTHORIZED = "authorized"
    EXECUTED = "executed"
    RESPONDED = "responded"
    REJECTED = "rejected"
    DENIED = "denied"
    FAILED = "failed"


@dataclass(frozen=True)
class Operation:
    """Opération enregistrée : un seul scope requis, fixé à l'enregistrement."""
    name: str
    scope: Scope
    arguments: Type[BaseModel]
    handler: Handler
    description: str = ""


def _dump(model: BaseModel) -> Dict[str, Any]:
    """Sérialisation côté protocole (alias camelCase, erreurs nulles omises)."""
    return model.model_dump(by_alias=True, exclude_none=True)


def _validation_error(error: PydanticValidationError) -> ValidationError:
    """Construit une ValidationError listant les champs fautifs."""
    fields: List[str] = []
    details: List[str] = []
    for item in error.errors():
        path = ".".join(str(p) for p in item.get("loc", ())) or "arguments"
        if path not in fields:
            fields.append(path)
        details.append(f"{path}: {item.get('msg', 'invalid value')}")
    return ValidationError("Invalid arguments: " + "; ".join(details), fields)


class OperationDispatcher:
    """
    Exécute les opérations nommées contre le GraphService.

    Le validateur de credentials n'intervient pas ici : la session est
    ouverte par la frontière HTTP (AuthMiddleware) et passée à dispatch().
    """

    def __init__(
        self,
        graph: GraphService,
        settings: Optional[Settings] = None,
        registry: Optional[ApiKeyRegistry] = None,
    ):
        self.graph = graph
        self._settings = settings or get_settings()
        self._registry = registry
        self._started_at = time.monotonic()
        self._operations: Dict[str, Operation] = {}
        for operation in self._default_operations():
            self.register(operation)

    # =========================================================================
    # Registre
    # =========================================================================

    def register(self, operation: Operation):
        self._operations[operation.name] = operation

    def get(self, name: str) -> Operation:
        try:
            return self._operations[name]
        except KeyError:
            raise UnknownOperation(name)

    @property
    def operations(self) -> Iterable[Operation]:
        return self._operations.values()

    @property
    def registry(self) -> ApiKeyRegistry:
        if self._registry is None:
            self._registry = get_api_key_registry()
        return self._registry

    def _default_operations(self) -> List[Operation]:
        return [
            Operation("create_entities", Scope.WRITE, CreateEntitiesArgs, self._create_entities,
                      "Create or merge entities by name, appending new observations"),
            Operation("create_relations", Scope.WRITE, CreateRelationsArgs, self._create_relations,
                      "Create typed relations between existing entities"),
            Operation("add_observations", Scope.WRITE, AddObservationsArgs, self._add_observations,
                      "Add observations to existing entities"),
            Operation("delete_entities", Scope.WRITE, DeleteEntitiesArgs, self._delete_entities,
                      "Delete entities with their observations and relations"),
            Operation("delete_observations", Scope.WRITE, DeleteObservationsArgs, self._delete_observations,
                      "Delete specific observations from entities"),
            Operation("delete_relations", Scope.WRITE, DeleteRelationsArgs, self._delete_relations,
                      "Delete relations (all types between the pair when relationType is omitted)"),
            Operation("read_graph", Scope.READ, ReadGraphArgs, self._read_graph,
                      "Read the knowledge graph"),
            Operation("search_nodes", Scope.READ, SearchNodesArgs, self._search_nodes,
                      "Full-text search over names, types and observations"),
            Operation("find_nodes", Scope.READ, FindNodesArgs, self._find_nodes,
                      "Find entities by exact name"),
            Operation("health_check", Scope.ADMIN, HealthCheckArgs, self._health_check,
                      "Check database connectivity and server status"),
            Operation("admin_create_api_key", Scope.ADMIN, CreateApiKeyArgs, self._create_api_key,
                      "Create a static API key (the clear key is returned only once)"),
            Operation("admin_list_api_keys", Scope.ADMIN, ListApiKeysArgs, self._list_api_keys,
                      "List static API keys (hash prefixes only)"),
            Operation("admin_revoke_api_key", Scope.ADMIN, RevokeApiKeyArgs, self._revoke_api_key,
                      "Revoke a static API key by hash prefix"),
        ]

    # =========================================================================
    # Exécution
    # =========================================================================

    async def dispatch(
        self,
        name: str,
        arguments: Optional[Dict[str, Any]],
        session: Optional[SessionContext],
    ) -> Dict[str, Any]:
        """
        Exécute une opération et retourne son résultat ou une erreur structurée.

        Ne lève pas : toute erreur devient {"status": "error", "code", "message"}.
        """
        state = CallState.RECEIVED
        subject = session.subject if session is not None else "-"
        started = time.monotonic()

        try:
            operation = self.get(name)
            if session is None:
                state = CallState.DENIED
                raise MissingCredential()

            try:
                args = operation.arguments.model_validate(arguments or {})
                self._check_bounds(args)
            except PydanticValidationError as e:
                state = CallState.REJECTED
                raise _validation_error(e)
            except ValidationError:
                state = CallState.REJECTED
                raise
            state = CallState.ARGS_VALIDATED

            try:
                authorize(session, operation.scope)
            except MemoryServiceError:
                state = CallState.DENIED
                raise
            state = CallState.AUTHORIZED

            try:
                result = await operation.handler(args, session)
            except MemoryServiceError:
                state = CallState.FAILED
                raise
            state = CallState.EXECUTED

        except MemoryServiceError as e:
            if state is CallState.RECEIVED:
                state = CallState.REJECTED
            self._log(name, subject, state, started, e.code)
            return e.to_dict()
        except Exception as e:
            state = CallState.FAILED
            print(f"❌ [Tool] {name}: {type(e).__name__}: {e}", file=sys.stderr)
            self._log(name, subject, state, started, "internal_error")
            return MemoryServiceError().to_dict()

        state = CallState.RESPONDED
        self._log(name, subject, state, started)
        return result

    def _check_bounds(self, args: BaseModel):
        """Refuse les lectures au-delà de MAX_READ_LIMIT (pas de troncature silencieuse)."""
        maximum = self._settings.max_read_limit
        limit = getattr(args, "limit", None)
        if limit is not None and limit > maximum:
            raise ValidationError(f"Invalid arguments: limit: must be at most {maximum}", ["limit"])
        if isinstance(args, FindNodesArgs) and len(args.requested_names) > maximum:
            raise ValidationError(f"Invalid arguments: names: at most {maximum} names per call", ["names"])

    @staticmethod
    def _log(name: str, subject: str, state: CallState, started: float, code: Optional[str] = None):
        elapsed = (time.monotonic() - started) * 1000
        emoji = "✅" if state is CallState.RESPONDED else "❌"
        suffix = f" ({code})" if code else ""
        print(f"{emoji} [Tool] {name} par '{subject}' → {state.value}{suffix} en {elapsed:.0f}ms", file=sys.stderr)

    # =========================================================================
    # Handlers
    # =========================================================================

    async def _create_entities(self, args: CreateEntitiesArgs, session: SessionContext) -> Dict[str, Any]:
        acks = await self.graph.create_entities(args.entities)
        return {"status": "ok", "entities": [_dump(a) for a in acks]}

    async def _create_relations(self, args: CreateRelationsArgs, session: SessionContext) -> Dict[str, Any]:
        acks = await self.graph.create_relations(args.relations)
        return {"status": "ok", "relations": [_dump(a) for a in acks]}

    async def _add_observations(self, args: AddObservationsArgs, session: SessionContext) -> Dict[str, Any]:
        results = await self.graph.add_observations(args.observations)
        return {"status": "ok", "results": [_dump(r) for r in results]}

    async def _delete_entities(self, args: DeleteEntitiesArgs, session: SessionContext) -> Dict[str, Any]:
        summary = await self.graph.delete_entities(args.entity_names)
        return {**_dump(summary), "message": f"{summary.deleted} entities deleted"}

    async def _delete_observations(self, args: DeleteObservationsArgs, session: SessionContext) -> Dict[str, Any]:
        summary = await self.graph.delete_observations(args.deletions)
        return {**_dump(summary), "message": f"{summary.deleted} observations deleted"}

    async def _delete_relations(self, args: DeleteRelationsArgs, session: SessionContext) -> Dict[str, Any]:
        summary = await self.graph.delete_relations(args.relations)
        return {**_dump(summary), "message": f"{summary.deleted} relations deleted"}

    async def _read_graph(self, args: ReadGraphArgs, session: SessionContext) -> Dict[str, Any]:
        graph = await self.graph.load_graph(limit=args.limit, entity_type=args.entity_type)
        return {"status": "ok", **_dump(graph)}

    async def _search_nodes(self, args: SearchNodesArgs, session: SessionContext) -> Dict[str, Any]:
        graph = await self.graph.search(args.query, limit=args.limit)
        return {"status": "ok", "query": args.query, **_dump(graph)}

    async def _find_nodes(self, args: FindNodesArgs, session: SessionContext) -> Dict[str, Any]:
        graph = await self.graph.find(args.requested_names)
        return {"status": "ok", **_dump(graph)}

    async def _health_check(self, args: HealthCheckArgs, session: SessionContext) -> Dict[str, Any]:
        """
        État de la base et du serveur.

        Ne lève jamais : une base injoignable donne status "unhealthy".
        """
        connected = await self.graph.verify_connection()
        stats: Dict[str, int] = {}
        if connected:
            try:
                stats = await self.graph.get_stats()
            except MemoryServiceError:
                stats = {}

        return {
            "status": "healthy" if connected else "unhealthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "database": {
                "connected": connected,
                "uri": self.graph.uri,
                "name": self.graph.database,
            },
            "stats": stats,
            "server": {
                "name": self._settings.mcp_server_name,
                "version": self._settings.mcp_server_version,
                "uptime_seconds": round(time.monotonic() - self._started_at, 1),
            },
            "session_info": session.describe(),
        }

    # =========================================================================
    # Administration des clés statiques
    # =========================================================================

    async def _create_api_key(self, args: CreateApiKeyArgs, session: SessionContext) -> Dict[str, Any]:
        key = self.registry.create_key(args.name, args.scopes)
        record = self.registry.lookup(key)
        return {
            "status": "ok",
            "message": "Clé créée. Conservez-la, elle ne sera plus affichée.",
            "key": key,
            "name": record.name,
            "prefix": record.prefix,
            "scopes": record.scopes,
            "created_by": session.subject,
        }

    async def _list_api_keys(self, args: ListApiKeysArgs, session: SessionContext) -> Dict[str, Any]:
        records = self.registry.list_keys(include_revoked=args.include_revoked)
        return {
            "status": "ok",
            "count": len(records),
            "keys": [
                {
                    "name": r.name,
                    "prefix": r.prefix,
                    "scopes": r.scopes,
                    "created_at": r.created_at.isoformat(),
                    "active": r.is_active,
                }
                for r in records
            ],
        }

    async def _revoke_api_key(self, args: RevokeApiKeyArgs, session: SessionContext) -> Dict[str, Any]:
        if not self.registry.revoke(args.prefix):
            raise NotFound(f"No active API key matches prefix '{args.prefix}'")
        return {"status": "ok", "message": f"Clé {args.prefix}... révoquée", "prefix": args.prefix}
