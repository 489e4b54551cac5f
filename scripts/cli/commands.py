# -*- coding: utf-8 -*-
"""
Commandes Click pour la CLI Neo4j Memory.

Commandes disponibles :
  - health                    : Liveness (ou health_check complet avec --full)
  - entities create / import / delete : Créer (fusion sur le nom), importer un JSON ou supprimer
  - relations create / delete : Créer ou supprimer des relations
  - observations add / delete : Ajouter ou retirer des observations
  - read                      : Lire le graphe
  - search                    : Recherche fulltext
  - find                      : Recherche par nom exact
  - keys create / list / revoke : Administrer les clés statiques (scope admin)
"""

import asyncio
import json

import click
from rich.prompt import Confirm
from rich.syntax import Syntax

from . import API_KEY, BASE_URL, TOKEN
from .client import MCPClient
from .display import (
    console,
    show_deletion,
    show_entity_acks,
    show_error,
    show_error_result,
    show_graph,
    show_health,
    show_key_created,
    show_keys_table,
    show_observation_results,
    show_relation_acks,
    show_success,
)


def _client(ctx) -> MCPClient:
    return MCPClient(ctx.obj["url"], token=ctx.obj["token"], api_key=ctx.obj["api_key"])


def _run_tool(ctx, tool_name: str, args: dict, render):
    """Appelle un outil puis affiche le résultat (ou l'erreur structurée)."""
    async def _run():
        try:
            result = await _client(ctx).call_tool(tool_name, args)
        except Exception as e:
            show_error(str(e))
            return
        if result.get("status") == "error":
            show_error_result(result)
        elif ctx.obj["json"]:
            console.print(Syntax(json.dumps(result, indent=2, ensure_ascii=False), "json"))
        else:
            render(result)
    asyncio.run(_run())


# =============================================================================
# Groupe principal
# =============================================================================

@click.group(invoke_without_command=True)
@click.option("--url", envvar="MCP_URL", default=BASE_URL, help="URL du serveur MCP")
@click.option("--token", envvar="MCP_TOKEN", default=TOKEN, help="Token délégué (Bearer)")
@click.option("--api-key", envvar="MCP_API_KEY", default=API_KEY, help="Clé statique (X-API-Key)")
@click.option("--json", "as_json", is_flag=True, help="Sortie JSON brute")
@click.pass_context
def cli(ctx, url, token, api_key, as_json):
    """🧠 Neo4j Memory CLI - Pilotez votre Knowledge Graph.

    \b
    Exemples:
      mcp-cli health --full
      mcp-cli entities create Alice -t person -o "aime le thé"
      mcp-cli relations create Alice KNOWS Bob
      mcp-cli search "thé"
    """
    ctx.ensure_object(dict)
    ctx.obj.update(url=url, token=token, api_key=api_key, json=as_json)
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


# =============================================================================
# Health
# =============================================================================

@cli.command()
@click.option("--full", is_flag=True, help="health_check authentifié (scope admin)")
@click.pass_context
def health(ctx, full):
    """🏥 Vérifier l'état du serveur."""
    if full:
        _run_tool(ctx, "health_check", {}, show_health)
        return

    async def _run():
        try:
            result = await _client(ctx).liveness()
            show_success(f"Serveur en vie : {result.get('server')} v{result.get('version')} ({ctx.obj['url']})")
        except Exception as e:
            show_error(f"Connexion impossible: {e}")
    asyncio.run(_run())


# =============================================================================
# Entités
# =============================================================================

@cli.group()
def entities():
    """📦 Gérer les entités."""


@entities.command("create")
@click.argument("name")
@click.option("--type", "-t", "entity_type", required=True, help="Type de l'entité")
@click.option("--observation", "-o", "observations", multiple=True, help="Observation (répétable)")
@click.pass_context
def entities_create(ctx, name, entity_type, observations):
    """➕ Créer ou fusionner une entité."""
    args = {"entities": [{"name": name, "type": entity_type, "observations": list(observations)}]}
    _run_tool(ctx, "create_entities", args, lambda r: show_entity_acks(r.get("entities", [])))


@entities.command("import")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def entities_import(ctx, path):
    """📥 Importer un fichier JSON {entities: [...], relations: [...]}."""
    with open(path, encoding="utf-8") as f:
        data = json.load(f)

    async def _run():
        client = _client(ctx)
        try:
            result = await client.call_tool("create_entities", {"entities": data.get("entities", [])})
            if result.get("status") == "error":
                show_error_result(result)
                return
            show_entity_acks(result.get("entities", []))
            if data.get("relations"):
                result = await client.call_tool("create_relations", {"relations": data["relations"]})
                if result.get("status") == "error":
                    show_error_result(result)
                    return
                show_relation_acks(result.get("relations", []))
        except Exception as e:
            show_error(str(e))
    asyncio.run(_run())


@entities.command("delete")
@click.argument("names", nargs=-1, required=True)
@click.option("--force", "-f", is_flag=True, help="Pas de confirmation")
@click.pass_context
def entities_delete(ctx, names, force):
    """🗑️  Supprimer des entités (observations et relations comprises)."""
    if not force and not Confirm.ask(f"[yellow]Supprimer {', '.join(names)} ?[/yellow]"):
        console.print("[dim]Annulé.[/dim]")
        return
    _run_tool(ctx, "delete_entities", {"entityNames": list(names)}, show_deletion)


# =============================================================================
# Relations
# =============================================================================

@cli.group()
def relations():
    """🔗 Gérer les relations."""


@relations.command("create")
@click.argument("source")
@click.argument("relation_type")
@click.argument("target")
@click.pass_context
def relations_create(ctx, source, relation_type, target):
    """➕ Créer SOURCE -[TYPE]-> TARGET."""
    args = {"relations": [{"source": source, "target": target, "relationType": relation_type}]}
    _run_tool(ctx, "create_relations", args, lambda r: show_relation_acks(r.get("relations", [])))


@relations.command("delete")
@click.argument("source")
@click.argument("target")
@click.option("--type", "-t", "relation_type", default=None, help="Type (sinon : toutes les relations)")
@click.pass_context
def relations_delete(ctx, source, target, relation_type):
    """🗑️  Supprimer les relations SOURCE → TARGET."""
    relation = {"source": source, "target": target}
    if relation_type:
        relation["relationType"] = relation_type
    _run_tool(ctx, "delete_relations", {"relations": [relation]}, show_deletion)


# =============================================================================
# Observations
# =============================================================================

@cli.group()
def observations():
    """📝 Gérer les observations."""


@observations.command("add")
@click.argument("entity_name")
@click.argument("contents", nargs=-1, required=True)
@click.pass_context
def observations_add(ctx, entity_name, contents):
    """➕ Ajouter des observations à une entité."""
    args = {"observations": [{"entityName": entity_name, "contents": list(contents)}]}
    _run_tool(ctx, "add_observations", args, lambda r: show_observation_results(r.get("results", [])))


@observations.command("delete")
@click.argument("entity_name")
@click.argument("contents", nargs=-1, required=True)
@click.pass_context
def observations_delete(ctx, entity_name, contents):
    """🗑️  Retirer des observations d'une entité."""
    args = {"deletions": [{"entityName": entity_name, "observations": list(contents)}]}
    _run_tool(ctx, "delete_observations", args, show_deletion)


# =============================================================================
# Lecture
# =============================================================================

@cli.command()
@click.option("--limit", "-l", type=int, default=None, help="Nombre maximum d'entités")
@click.option("--type", "-t", "entity_type", default=None, help="Filtrer par type")
@click.pass_context
def read(ctx, limit, entity_type):
    """📊 Lire le Knowledge Graph."""
    args = {}
    if limit is not None:
        args["limit"] = limit
    if entity_type:
        args["entityType"] = entity_type
    _run_tool(ctx, "read_graph", args, show_graph)


@cli.command()
@click.argument("query")
@click.option("--limit", "-l", type=int, default=None, help="Nombre maximum d'entités")
@click.pass_context
def search(ctx, query, limit):
    """🔍 Recherche fulltext (noms, types, observations)."""
    args = {"query": query}
    if limit is not None:
        args["limit"] = limit
    _run_tool(ctx, "search_nodes", args, lambda r: show_graph(r, f"Recherche : {query}"))


@cli.command()
@click.argument("names", nargs=-1, required=True)
@click.pass_context
def find(ctx, names):
    """🎯 Retrouver des entités par nom exact."""
    _run_tool(ctx, "find_nodes", {"names": list(names)}, lambda r: show_graph(r, "Entités"))


# =============================================================================
# Clés statiques (admin)
# =============================================================================

@cli.group()
def keys():
    """🔑 Gérer les clés statiques (scope admin)."""


@keys.command("create")
@click.argument("name")
@click.option("--scope", "-s", "scopes", multiple=True, default=("read",), help="Scope accordé (répétable)")
@click.pass_context
def keys_create(ctx, name, scopes):
    """➕ Créer une clé (affichée une seule fois)."""
    _run_tool(ctx, "admin_create_api_key", {"name": name, "scopes": list(scopes)}, show_key_created)


@keys.command("list")
@click.option("--all", "-a", "include_revoked", is_flag=True, help="Inclure les clés révoquées")
@click.pass_context
def keys_list(ctx, include_revoked):
    """📋 Lister les clés."""
    _run_tool(ctx, "admin_list_api_keys", {"include_revoked": include_revoked},
              lambda r: show_keys_table(r.get("keys", [])))


@keys.command("revoke")
@click.argument("prefix")
@click.option("--force", "-f", is_flag=True, help="Pas de confirmation")
@click.pass_context
def keys_revoke(ctx, prefix, force):
    """🚫 Révoquer une clé par préfixe de hash."""
    if not force and not Confirm.ask(f"[yellow]Révoquer la clé {prefix}... ?[/yellow]"):
        console.print("[dim]Annulé.[/dim]")
        return
    _run_tool(ctx, "admin_revoke_api_key", {"prefix": prefix}, show_deletion)
