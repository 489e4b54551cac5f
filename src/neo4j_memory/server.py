# -*- coding: utf-8 -*-
"""
Neo4j Memory MCP Server - Serveur principal.

Expose les dix opérations du Knowledge Graph, plus l'administration des
clés statiques, via HTTP (streamable) avec FastMCP. L'authentification est faite par AuthMiddleware ; chaque outil
passe la session courante au dispatcher, qui valide les arguments puis
vérifie le scope requis.
"""

import argparse
import asyncio
import sys
from contextlib import asynccontextmanager, suppress
from datetime import timedelta
from typing import Any, Dict, List, Optional

import uvicorn
from dotenv import load_dotenv

# Charger .env avant les imports qui en dépendent
load_dotenv()

from mcp.server.fastmcp import FastMCP

from .auth.context import current_session
from .auth.middleware import AuthMiddleware, LoggingMiddleware, PublicRoutesMiddleware
from .config import get_settings
from .errors import ConfigurationError


# =============================================================================
# Initialisation
# =============================================================================

settings = get_settings()

# host="0.0.0.0" : pas de restriction DNS rebinding limitée à localhost.
# stateless_http : chaque requête HTTP porte sa propre session authentifiée.
mcp = FastMCP(
    name=settings.mcp_server_name,
    host=settings.mcp_server_host,
    port=settings.mcp_server_port,
    stateless_http=True,
)


# =============================================================================
# Helpers - Services (lazy-loaded)
# =============================================================================

_graph_service = None
_dispatcher = None
_validator = None
_oauth_flow = None


def get_graph():
    """Lazy-load GraphService."""
    global _graph_service
    if _graph_service is None:
        from .core.graph import get_graph_service
        _graph_service = get_graph_service()
    return _graph_service


def get_dispatcher():
    """Lazy-load OperationDispatcher."""
    global _dispatcher
    if _dispatcher is None:
        from .dispatcher import OperationDispatcher
        _dispatcher = OperationDispatcher(get_graph(), settings)
    return _dispatcher


def get_validator():
    """Lazy-load de la stratégie de validation (selon AUTH_MODE)."""
    global _validator
    if _validator is None:
        from .auth.credentials import build_validator
        _validator = build_validator(settings)
    return _validator


def get_oauth_flow():
    """Lazy-load OAuthFlow (None si OAuth n'est pas configuré)."""
    global _oauth_flow
    if _oauth_flow is None and settings.oauth_enabled:
        from .auth.oauth import OAuthFlow
        _oauth_flow = OAuthFlow(settings)
    return _oauth_flow


async def _call(operation: str, **arguments) -> dict:
    """Transmet l'appel au dispatcher avec la session de la requête."""
    arguments = {k: v for k, v in arguments.items() if v is not None}
    return await get_dispatcher().dispatch(operation, arguments, current_session.get())


# =============================================================================
# Outils MCP - Écriture
# =============================================================================

@mcp.tool()
async def create_entities(entities: List[Dict[str, Any]]) -> dict:
    """
    Crée des entités dans le Knowledge Graph (fusion sur le nom).

    Une entité existante reçoit le nouveau type ; ses observations sont
    complétées sans doublon. Scope requis : write.

    Args:
        entities: Liste de {name, type, observations?}

    Returns:
        Liste de {name, type, created, existed, addedObservations}
    """
    return await _call("create_entities", entities=entities)


@mcp.tool()
async def create_relations(relations: List[Dict[str, Any]]) -> dict:
    """
    Crée des relations typées entre entités existantes.

    relationType est normalisé (espaces → "_", majuscules). Une extrémité
    absente fait échouer cet élément seulement. Scope requis : write.

    Args:
        relations: Liste de {source, target, relationType}
    """
    return await _call("create_relations", relations=relations)


@mcp.tool()
async def add_observations(observations: List[Dict[str, Any]]) -> dict:
    """
    Ajoute des observations à des entités existantes.

    Seuls les contenus nouveaux sont ajoutés et retournés. Scope requis : write.

    Args:
        observations: Liste de {entityName, contents[]}
    """
    return await _call("add_observations", observations=observations)


@mcp.tool()
async def delete_entities(entityNames: List[str]) -> dict:
    """
    Supprime des entités avec leurs observations et leurs relations.

    ⚠️ Irréversible. Un nom inexistant est ignoré. Scope requis : write.

    Args:
        entityNames: Noms des entités à supprimer
    """
    return await _call("delete_entities", entityNames=entityNames)


@mcp.tool()
async def delete_observations(deletions: List[Dict[str, Any]]) -> dict:
    """
    Supprime des observations précises. Scope requis : write.

    Args:
        deletions: Liste de {entityName, observations[]}
    """
    return await _call("delete_observations", deletions=deletions)


@mcp.tool()
async def delete_relations(relations: List[Dict[str, Any]]) -> dict:
    """
    Supprime des relations.

    Sans relationType, TOUTES les relations source→cible sont supprimées.
    Scope requis : write.

    Args:
        relations: Liste de {source, target, relationType?}
    """
    return await _call("delete_relations", relations=relations)


# =============================================================================
# Outils MCP - Lecture
# =============================================================================

@mcp.tool()
async def read_graph(limit: Optional[int] = None, entityType: Optional[str] = None) -> dict:
    """
    Lit le Knowledge Graph (entités + relations). Scope requis : read.

    Args:
        limit: Nombre maximum d'entités
        entityType: Ne retourner que les entités de ce type
    """
    return await _call("read_graph", limit=limit, entityType=entityType)


@mcp.tool()
async def search_nodes(query: str, limit: Optional[int] = None) -> dict:
    """
    Recherche fulltext sur les noms, types et observations.

    Les entités sont triées par pertinence. Scope requis : read.

    Args:
        query: Requête (syntaxe Lucene)
        limit: Nombre maximum d'entités
    """
    return await _call("search_nodes", query=query, limit=limit)


@mcp.tool()
async def find_nodes(names: Optional[List[str]] = None, name: Optional[str] = None) -> dict:
    """
    Retrouve des entités par nom exact. Scope requis : read.

    Args:
        names: Liste de noms
        name: Un seul nom (alternative à names)
    """
    return await _call("find_nodes", names=names, name=name)


# =============================================================================
# Outils MCP - Administration
# =============================================================================

@mcp.tool()
async def health_check() -> dict:
    """
    Vérifie la connexion Neo4j et l'état du serveur. Scope requis : admin.

    Returns:
        {status, timestamp, database, stats, server, session_info}
    """
    return await _call("health_check")


@mcp.tool()
async def admin_create_api_key(name: str, scopes: Optional[List[str]] = None) -> dict:
    """
    Crée une clé statique (X-API-Key). Scope requis : admin.

    La clé en clair n'est retournée qu'une seule fois ; seul son hash
    est conservé.

    Args:
        name: Nom lisible de la clé
        scopes: Scopes accordés (défaut: ["read"])
    """
    return await _call("admin_create_api_key", name=name, scopes=scopes)


@mcp.tool()
async def admin_list_api_keys(include_revoked: bool = False) -> dict:
    """
    Liste les clés statiques (préfixe du hash, jamais la clé). Scope requis : admin.

    Args:
        include_revoked: Inclure les clés révoquées
    """
    return await _call("admin_list_api_keys", includeRevoked=include_revoked)


@mcp.tool()
async def admin_revoke_api_key(prefix: str) -> dict:
    """
    Révoque une clé statique. Scope requis : admin.

    Args:
        prefix: Préfixe du hash (voir admin_list_api_keys)
    """
    return await _call("admin_revoke_api_key", prefix=prefix)


# =============================================================================
# Application ASGI
# =============================================================================

def build_app(debug: bool = False):
    """
    Construit l'application ASGI complète.

    Flux requête : LoggingMiddleware → PublicRoutesMiddleware
                   → AuthMiddleware → MCP streamable HTTP app
    """
    base_app = mcp.streamable_http_app()
    oauth_flow = get_oauth_flow()
    mcp_lifespan = base_app.router.lifespan_context

    @asynccontextmanager
    async def lifespan(app):
        graph = get_graph()
        await graph.initialize()
        sweeper = None
        if oauth_flow is not None:
            sweeper = asyncio.create_task(
                oauth_flow.store.run_sweeper(settings.oauth_state_sweep_seconds)
            )
        try:
            async with mcp_lifespan(app) as state:
                yield state
        finally:
            if sweeper is not None:
                sweeper.cancel()
                with suppress(asyncio.CancelledError):
                    await sweeper
            await graph.close()
            print("👋 [Server] Pool Neo4j fermé", file=sys.stderr)

    base_app.router.lifespan_context = lifespan

    # Empiler les middlewares (le dernier wrappé est le premier exécuté)
    app = AuthMiddleware(base_app, get_validator(), settings.api_key_header, debug=debug)
    app = PublicRoutesMiddleware(
        app, settings.mcp_server_name, settings.mcp_server_version, oauth_flow=oauth_flow
    )
    app = LoggingMiddleware(app, debug=debug)
    return app


def _issue_token(subject: str, scopes: str) -> int:
    """Signe un token délégué et l'écrit sur stdout."""
    from .auth.credentials import DelegatedTokenValidator

    validator = DelegatedTokenValidator.from_settings(settings)
    token = validator.issue(
        subject,
        scopes=[s.strip() for s in scopes.split(",") if s.strip()],
        ttl=timedelta(hours=24),
    )
    print(token)
    return 0


def main():
    """Point d'entrée principal."""
    parser = argparse.ArgumentParser(description="Neo4j Memory MCP Server")
    parser.add_argument("--port", type=int, default=settings.mcp_server_port)
    parser.add_argument("--host", type=str, default=settings.mcp_server_host)
    parser.add_argument("--debug", action="store_true", default=settings.mcp_server_debug)
    parser.add_argument("--issue-token", metavar="SUBJECT", help="Signe un token délégué puis quitte")
    parser.add_argument("--scopes", default="read,write", help="Scopes du token (--issue-token)")
    args = parser.parse_args()

    if args.issue_token:
        sys.exit(_issue_token(args.issue_token, args.scopes))

    try:
        app = build_app(debug=args.debug)
    except ConfigurationError as e:
        print(f"❌ [Server] Configuration invalide: {e}", file=sys.stderr)
        sys.exit(1)

    # Afficher le banner
    print("=" * 70, file=sys.stderr)
    print("🧠 Neo4j Memory MCP Server - Démarrage", file=sys.stderr)
    print(f"📡 Écoute sur http://{args.host}:{args.port}/mcp", file=sys.stderr)
    print(f"🗄️  Neo4j    : {settings.neo4j_uri} (base '{settings.neo4j_database}')", file=sys.stderr)
    print(f"🔒 Auth     : {settings.auth_mode}", file=sys.stderr)
    print(f"🔐 OAuth    : {'ACTIVÉ' if settings.oauth_enabled else 'Désactivé'}", file=sys.stderr)
    print(f"🐛 Debug    : {'ACTIVÉ' if args.debug else 'Désactivé'}", file=sys.stderr)
    print("=" * 70, file=sys.stderr)
    print("Outils disponibles:", file=sys.stderr)
    print("  - create_entities, create_relations, add_observations (write)", file=sys.stderr)
    print("  - delete_entities, delete_observations, delete_relations (write)", file=sys.stderr)
    print("  - read_graph, search_nodes, find_nodes (read)", file=sys.stderr)
    print("  - health_check (admin)", file=sys.stderr)
    print("  - admin_create_api_key, admin_list_api_keys, admin_revoke_api_key (admin)", file=sys.stderr)
    print("=" * 70, file=sys.stderr)

    # Lancer le serveur
    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
