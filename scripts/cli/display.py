# -*- coding: utf-8 -*-
"""
Helpers d'affichage Rich pour la CLI Neo4j Memory.

Fournit des fonctions réutilisables pour formater et afficher :
  - Tables (entités, relations, accusés de lot)
  - Panels (erreur, santé du serveur)
"""

from collections import Counter
from typing import List

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

console = Console()


# =============================================================================
# Messages
# =============================================================================


def show_error(msg: str):
    """Affiche un message d'erreur."""
    console.print(f"[red]❌ {msg}[/red]")


def show_success(msg: str):
    """Affiche un message de succès."""
    console.print(f"[green]✅ {msg}[/green]")


def show_warning(msg: str):
    """Affiche un avertissement."""
    console.print(f"[yellow]⚠️ {msg}[/yellow]")


def show_error_result(result: dict):
    """Affiche une erreur structurée du serveur ({status, code, message})."""
    lines = [f"[bold]{result.get('message', 'Erreur inconnue')}[/bold]"]
    if result.get("required_scope"):
        lines.append(f"Scope requis : [cyan]{result['required_scope']}[/cyan]")
    for field in result.get("fields", []):
        lines.append(f"  • [yellow]{field}[/yellow]")
    console.print(Panel.fit(
        "\n".join(lines),
        title=f"❌ {result.get('code', 'error')}",
        border_style="red",
    ))


# =============================================================================
# Knowledge Graph
# =============================================================================


def show_graph(graph_data: dict, title: str = "Knowledge Graph"):
    """
    Affiche un Knowledge Graph (entités + relations).

    Inclut un résumé par type, la table des entités avec leurs
    observations, puis la table des relations.
    """
    entities = graph_data.get("entities", [])
    relations = graph_data.get("relations", [])

    if not entities:
        console.print("[yellow]Aucune entité trouvée.[/yellow]")
        return

    by_type = Counter(e.get("type", "?") for e in entities)
    summary = "  ".join(f"[magenta]{t}[/magenta]: {n}" for t, n in by_type.most_common())
    console.print(Panel.fit(
        f"[bold]Entités:[/bold] [cyan]{len(entities)}[/cyan]  "
        f"[bold]Relations:[/bold] [cyan]{len(relations)}[/cyan]\n{summary}",
        title=f"🧠 {title}",
        border_style="blue",
    ))

    table = Table(title="📦 Entités", show_header=True)
    table.add_column("Nom", style="cyan bold")
    table.add_column("Type", style="magenta")
    table.add_column("Observations", style="white")
    for entity in entities:
        observations = entity.get("observations", [])
        table.add_row(
            entity.get("name", ""),
            entity.get("type", ""),
            "\n".join(f"• {o}" for o in observations) or "[dim]-[/dim]",
        )
    console.print(table)

    if relations:
        show_relations_table(relations)


def show_relations_table(relations: List[dict]):
    """Affiche les relations source -[TYPE]-> cible."""
    table = Table(title=f"🔗 Relations ({len(relations)})")
    table.add_column("Source", style="cyan")
    table.add_column("Type", style="yellow")
    table.add_column("Cible", style="cyan")
    for rel in relations:
        table.add_row(rel.get("source", ""), rel.get("relationType", ""), rel.get("target", ""))
    console.print(table)


# =============================================================================
# Accusés des opérations d'écriture
# =============================================================================


def _status_cell(item: dict) -> str:
    if item.get("error"):
        return f"[red]❌ {item['error'].get('code', 'error')}[/red]"
    if item.get("existed"):
        return "[yellow]fusionnée[/yellow]"
    return "[green]✅[/green]"


def show_entity_acks(acks: List[dict]):
    """Résultat de create_entities."""
    table = Table(title=f"📦 Entités ({len(acks)})")
    table.add_column("Nom", style="cyan bold")
    table.add_column("Type", style="magenta")
    table.add_column("Statut")
    table.add_column("Observations ajoutées", style="dim")
    for ack in acks:
        table.add_row(
            ack.get("name", ""),
            ack.get("type", ""),
            _status_cell(ack),
            str(len(ack.get("addedObservations", []))),
        )
    console.print(table)


def show_relation_acks(acks: List[dict]):
    """Résultat de create_relations."""
    table = Table(title=f"🔗 Relations ({len(acks)})")
    table.add_column("Source", style="cyan")
    table.add_column("Type", style="yellow")
    table.add_column("Cible", style="cyan")
    table.add_column("Statut")
    for ack in acks:
        status = _status_cell(ack)
        if ack.get("error"):
            status += f" [dim]{ack['error'].get('message', '')}[/dim]"
        table.add_row(ack.get("source", ""), ack.get("relationType", ""), ack.get("target", ""), status)
    console.print(table)


def show_observation_results(results: List[dict]):
    """Résultat de add_observations."""
    for item in results:
        name = item.get("entityName", "")
        if item.get("error"):
            show_error(f"{name}: {item['error'].get('message', '')}")
            continue
        added = item.get("addedObservations", [])
        if added:
            show_success(f"{name}: {len(added)} observation(s) ajoutée(s)")
            for content in added:
                console.print(f"   [dim]• {content}[/dim]")
        else:
            console.print(f"[dim]{name}: rien de nouveau[/dim]")


def show_deletion(result: dict):
    """Confirmation d'une suppression."""
    show_success(result.get("message", f"{result.get('deleted', 0)} élément(s) supprimé(s)"))
    for error in result.get("errors", []):
        show_warning(f"{error.get('message', '')} ({error})")


# =============================================================================
# Santé
# =============================================================================


def show_health(result: dict):
    """Affiche le résultat de health_check."""
    healthy = result.get("status") == "healthy"
    database = result.get("database", {})
    stats = result.get("stats", {})
    server = result.get("server", {})
    session = result.get("session_info", {})

    color = "green" if healthy else "red"
    lines = [
        f"[bold {color}]{'✅ healthy' if healthy else '❌ unhealthy'}[/bold {color}]",
        "",
        f"Neo4j     : [cyan]{database.get('uri', '?')}[/cyan] (base '{database.get('name', '?')}')",
        f"Connectée : {'oui' if database.get('connected') else 'non'}",
    ]
    if stats:
        lines.append(
            f"Contenu   : {stats.get('entities', 0)} entités, "
            f"{stats.get('relations', 0)} relations, "
            f"{stats.get('observations', 0)} observations"
        )
    lines.append(
        f"Serveur   : {server.get('name', '?')} v{server.get('version', '?')} "
        f"(uptime {server.get('uptime_seconds', 0)}s)"
    )
    lines.append(
        f"Session   : {session.get('subject', '?')} [{session.get('credential_kind', '?')}] "
        f"scopes={','.join(session.get('scopes', []))}"
    )
    console.print(Panel.fit("\n".join(lines), title="🏥 État du serveur", border_style=color))


# =============================================================================
# Clés statiques
# =============================================================================


def show_keys_table(keys: List[dict]):
    """Affiche la liste des clés statiques dans un tableau."""
    if not keys:
        console.print("[yellow]Aucune clé trouvée.[/yellow]")
        return

    table = Table(title=f"🔑 Clés ({len(keys)})", show_header=True)
    table.add_column("Nom", style="cyan bold", no_wrap=True)
    table.add_column("Hash (ID)", style="yellow", no_wrap=True)
    table.add_column("Scopes", style="magenta")
    table.add_column("Créée le", style="dim", width=12)
    table.add_column("Active", justify="center")

    for k in keys:
        table.add_row(
            k.get("name", "?"),
            k.get("prefix", "?"),
            ", ".join(k.get("scopes", [])),
            (k.get("created_at") or "")[:10],
            "✅" if k.get("active") else "🚫",
        )
    console.print(table)


def show_key_created(result: dict):
    """Affiche le résultat de création d'une clé."""
    console.print(
        Panel.fit(
            f"[bold]Nom:[/bold]    [cyan]{result.get('name', '?')}[/cyan]\n"
            f"[bold]Clé:[/bold]    [green bold]{result.get('key', '?')}[/green bold]\n"
            f"[bold]Hash:[/bold]   [dim]{result.get('prefix', '?')}[/dim]\n"
            f"[bold]Scopes:[/bold] [magenta]{', '.join(result.get('scopes', []))}[/magenta]",
            title="🔑 Clé créée",
            border_style="green",
        )
    )
    console.print("[yellow]⚠️  Conservez cette clé précieusement, elle ne sera plus affichée ![/yellow]")
