"""CLI entry point for the edgewalker engine.

Commands:
- edgewalker validate: Compile a graph file and report errors
- edgewalker run: Compile a graph file and start a run
- edgewalker status: Show a run, or list recent runs
- edgewalker resume: Complete a UX node waiting for input
- edgewalker retry: Retry a failed node
- edgewalker fail: Fail a running node (e.g. after a timeout)
"""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Any

import click
import pydantic
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel

from edgewalker import __version__
from edgewalker.cli_ui.graph_renderer import (
    StatusTableRenderer,
    TerminalGraphRenderer,
    render_issues,
)
from edgewalker.core.compiler import compile_graph
from edgewalker.core.config import ConfigError, EngineConfig, load_config
from edgewalker.core.dispatch import WebhookDispatcher
from edgewalker.core.errors import EngineError, GraphValidationError
from edgewalker.core.graph_engine import EdgeWalker, derive_run_status, failed_nodes
from edgewalker.core.graph_schema import EditableGraph
from edgewalker.core.state import Run, RunStore

console = Console()


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _make_walker(config: EngineConfig) -> EdgeWalker:
    return EdgeWalker(
        RunStore(config.db_path),
        dispatcher=WebhookDispatcher(timeout=config.dispatch_timeout),
        base_url=config.base_url,
    )


def _load_graph(graph_file: str) -> EditableGraph:
    """Load an editable graph from YAML or JSON, exiting on errors."""
    try:
        with open(graph_file, encoding="utf-8") as f:
            data = yaml.safe_load(f)  # JSON is valid YAML
        if not isinstance(data, dict):
            console.print(
                f"[red]Error: Invalid content in '{graph_file}'. "
                f"Expected a mapping, got {type(data).__name__}.[/red]"
            )
            sys.exit(1)
        return EditableGraph.model_validate(data)
    except yaml.YAMLError as e:
        console.print(f"[red]Error parsing graph file '{graph_file}':[/red]")
        console.print(f"  {e}")
        sys.exit(1)
    except pydantic.ValidationError as e:
        console.print("[red]Error validating graph schema:[/red]")
        for err in e.errors():
            loc = ".".join(str(x) for x in err["loc"])
            console.print(f"  - {loc}: {err['msg']}")
        sys.exit(1)


def _parse_json(value: str | None, what: str) -> Any:
    if value is None:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"{what} is not valid JSON: {e}")


def _print_run(walker: EdgeWalker, run: Run) -> None:
    graph = walker.graph_for(run)
    console.print(StatusTableRenderer(console).render_status_table(graph, run))
    failed = failed_nodes(run)
    if failed:
        console.print(f"[red]Failed nodes:[/red] {', '.join(failed)}")


@click.group()
@click.version_option(version=__version__)
@click.option("--config", "config_path", type=click.Path(), help="Path to config.yaml")
@click.option("--verbose", "-v", is_flag=True, help="Show engine logs")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, verbose: bool) -> None:
    """Edgewalker - reactive workflow graph execution engine."""
    _setup_logging(verbose)
    try:
        ctx.obj = load_config(config_path)
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)


@main.command()
@click.argument("graph_file", type=click.Path(exists=True))
@click.option("--tree", is_flag=True, help="Print the compiled graph as a tree")
@click.pass_obj
def validate(config: EngineConfig, graph_file: str, tree: bool) -> None:
    """Compile a graph file and report validation errors."""
    editable = _load_graph(graph_file)
    result = compile_graph(editable, config.known_worker_types)

    for warning in result.warnings:
        console.print(f"[yellow]Warning:[/yellow] {warning}")
    if not result.success:
        render_issues(console, result.errors)
        sys.exit(1)

    graph = result.graph
    console.print(f"[green]Graph {graph.ref} is valid[/green]")
    console.print(f"  Nodes: {len(graph.nodes)}")
    console.print(f"  Entry: {', '.join(graph.entry_nodes)}")
    console.print(f"  Terminal: {', '.join(graph.terminal_nodes)}")
    if tree:
        console.print(TerminalGraphRenderer(console).render_as_tree(graph))


@main.command()
@click.argument("graph_file", type=click.Path(exists=True))
@click.option("--input", "input_json", help="Run input as a JSON object")
@click.option(
    "--input-file", type=click.Path(exists=True, path_type=Path), help="Run input JSON/YAML file"
)
@click.option("--entity", "entity_ref", help="Entity the run is attached to")
@click.pass_obj
def run(
    config: EngineConfig,
    graph_file: str,
    input_json: str | None,
    input_file: Path | None,
    entity_ref: str | None,
) -> None:
    """Compile a graph file and start a run of it."""
    editable = _load_graph(graph_file)
    try:
        graph = compile_graph(editable, config.known_worker_types).unwrap()
    except GraphValidationError as e:
        render_issues(console, e.issues)
        sys.exit(1)

    run_input = _parse_json(input_json, "--input") or {}
    if not isinstance(run_input, dict):
        raise click.BadParameter("Run input must be a JSON object", param_hint="--input")
    if input_file is not None:
        try:
            with open(input_file, encoding="utf-8") as f:
                file_input = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise click.BadParameter(f"Invalid YAML: {e}", param_hint="--input-file") from e
        if not isinstance(file_input, dict):
            raise click.BadParameter("Run input must be a mapping", param_hint="--input-file")
        run_input = {**file_input, **run_input}

    walker = _make_walker(config)
    try:
        started = walker.start_run(graph, entity_ref=entity_ref, input=run_input)
    except EngineError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    console.print(Panel(f"[green]Started run {started.id}[/green]", title=graph.ref))
    _print_run(walker, started)


@main.command()
@click.argument("run_id", required=False)
@click.option("--limit", type=int, default=20, help="Number of runs to list")
@click.pass_obj
def status(config: EngineConfig, run_id: str | None, limit: int) -> None:
    """Show a run's node states, or list recent runs."""
    walker = _make_walker(config)
    if run_id:
        try:
            found = walker.store.get(run_id)
        except EngineError as e:
            console.print(f"[red]Error:[/red] {e}")
            sys.exit(1)
        _print_run(walker, found)
        return

    runs = walker.store.list_runs(limit)
    if not runs:
        console.print("[yellow]No runs found[/yellow]")
        return
    for listed in runs:
        state = derive_run_status(listed)
        color = "blue" if state == "active" else "green"
        failed = failed_nodes(listed)
        suffix = f" [red]({len(failed)} failed)[/red]" if failed else ""
        console.print(
            f"{listed.id}  {listed.graph_ref}  [{color}]{state}[/{color}]"
            f"  {listed.created_at:%Y-%m-%d %H:%M:%S}{suffix}"
        )


@main.command()
@click.argument("run_id")
@click.argument("node_key")
@click.option("--output", "output_json", help="User input as JSON")
@click.pass_obj
def resume(config: EngineConfig, run_id: str, node_key: str, output_json: str | None) -> None:
    """Complete a UX node that is waiting for user input."""
    walker = _make_walker(config)
    try:
        updated = walker.resume_node(run_id, node_key, _parse_json(output_json, "--output"))
    except EngineError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    console.print(f"[green]Resumed {node_key}[/green]")
    _print_run(walker, updated)


@main.command()
@click.argument("run_id")
@click.argument("node_key")
@click.pass_obj
def retry(config: EngineConfig, run_id: str, node_key: str) -> None:
    """Retry a failed node with its stored input."""
    walker = _make_walker(config)
    try:
        updated = walker.retry_node(run_id, node_key)
    except EngineError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    console.print(f"[green]Retried {node_key}[/green]")
    _print_run(walker, updated)


@main.command()
@click.argument("run_id")
@click.argument("node_key")
@click.option("--reason", default="Failed by operator", help="Error recorded on the node")
@click.pass_obj
def fail(config: EngineConfig, run_id: str, node_key: str, reason: str) -> None:
    """Fail a running node, e.g. when its callback never arrived."""
    walker = _make_walker(config)
    try:
        updated = walker.fail_node(run_id, node_key, reason)
    except EngineError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    console.print(f"[yellow]Failed {node_key}[/yellow]")
    _print_run(walker, updated)


if __name__ == "__main__":
    main()
