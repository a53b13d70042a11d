"""Terminal rendering of execution graphs and run state using Rich."""

from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.tree import Tree

from edgewalker.core.compiler import ExecutionGraph, ValidationIssue
from edgewalker.core.graph_engine import derive_run_status
from edgewalker.core.graph_schema import NodeStatus, NodeType
from edgewalker.core.state import Run


def _status_value(status: NodeStatus | str | None) -> str:
    """Normalize status to string for consistent lookup."""
    if isinstance(status, NodeStatus):
        return status.value
    return str(status) if status else "pending"


class TerminalGraphRenderer:
    """
    Renders execution graphs as a Rich tree.

    Nodes reachable from several parents appear under each of them; split
    regions are marked so the parallel part of the graph stands out.
    """

    NODE_STYLES = {
        NodeType.WORKER: ("[W]", "cyan"),
        NodeType.SPLITTER: ("[<]", "green"),
        NodeType.COLLECTOR: ("[>]", "blue"),
        NodeType.UX: ("[U]", "red"),
    }

    STATUS_COLORS = {
        "pending": "dim",
        "running": "blue bold",
        "completed": "green",
        "failed": "red bold",
        "waiting_for_user": "yellow",
    }

    STATUS_MARKS = {
        "completed": " ✓",
        "failed": " ✗",
        "running": " ⟳",
        "waiting_for_user": " …",
    }

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def render_as_tree(
        self,
        graph: ExecutionGraph,
        statuses: dict[str, NodeStatus | str] | None = None,
        max_depth: int = 50,
    ) -> Tree:
        """
        Render the graph as a Rich Tree rooted at its entry nodes.

        Args:
            graph: The compiled graph to render
            statuses: Optional dict of node_id -> current status
            max_depth: Maximum tree depth to prevent exponential blow-up
        """
        tree = Tree(f"[bold]{escape(graph.id)}[/] (v{escape(graph.version)})")
        for entry in graph.entry_nodes:
            self._add_node_to_tree(tree, graph, entry, statuses, depth=0, max_depth=max_depth)
        return tree

    def _add_node_to_tree(
        self,
        parent: Tree,
        graph: ExecutionGraph,
        node_id: str,
        statuses: dict[str, NodeStatus | str] | None,
        depth: int,
        max_depth: int,
    ) -> None:
        if depth >= max_depth:
            parent.add("[dim]... (max depth reached)[/]")
            return

        spec = graph.nodes[node_id]
        symbol, color = self.NODE_STYLES.get(spec.kind, ("[ ]", "white"))
        label = escape(node_id)
        if spec.worker_type:
            label += f" [dim]({escape(spec.worker_type)})[/]"
        if node_id in graph.region_of:
            label += f" [dim]x{escape(graph.region_of[node_id])}[/]"

        status = _status_value(statuses.get(node_id)) if statuses else None
        if status and status != "pending":
            status_color = self.STATUS_COLORS.get(status, "white")
            node_text = f"[{status_color}]{symbol} {label}{self.STATUS_MARKS.get(status, '')}[/]"
        else:
            node_text = f"[{color}]{symbol} {label}[/]"

        branch = parent.add(node_text)
        for child in graph.adjacency[node_id]:
            mapping = graph.mapping_for(node_id, child)
            if mapping:
                fields = ", ".join(f"{k}<-{v}" for k, v in mapping.items())
                edge_branch = branch.add(f"[dim]({escape(fields[:60])})[/]")
                self._add_node_to_tree(edge_branch, graph, child, statuses, depth + 1, max_depth)
            else:
                self._add_node_to_tree(branch, graph, child, statuses, depth + 1, max_depth)


class StatusTableRenderer:
    """Renders run node states as a Rich table.

    All user-controlled strings (node ids, outputs, errors) are escaped to
    prevent Rich markup injection.
    """

    STATUS_TEXT = {
        "completed": "[green]✓ Completed[/]",
        "failed": "[red]✗ Failed[/]",
        "running": "[blue]⟳ Running[/]",
        "waiting_for_user": "[yellow]… Waiting for user[/]",
    }

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def render_status_table(self, graph: ExecutionGraph, run: Run) -> Table:
        table = Table(title=f"Run {escape(run.id)} ({derive_run_status(run)})")

        table.add_column("Node", style="cyan")
        table.add_column("Type", style="magenta")
        table.add_column("Status", justify="center")
        table.add_column("Output / Error", max_width=50)

        for key, state in run.node_states.items():
            status = _status_value(state.status)
            kind = graph.nodes[graph.base_of(key)].kind.value
            status_text = self.STATUS_TEXT.get(status, "[dim]○ Pending[/]")
            detail = self._truncate(state.error if state.error else state.output)
            table.add_row(escape(key), kind, status_text, detail)

        return table

    @staticmethod
    def _truncate(value: Any, limit: int = 50) -> str:
        if value is None:
            return ""
        text = escape(str(value))
        if len(text) > limit:
            return text[: limit - 3] + "..."
        return text


def render_issues(console: Console, issues: list[ValidationIssue]) -> None:
    """Print compile errors as a table."""
    table = Table(title="Validation errors", title_style="red")
    table.add_column("Type", style="red")
    table.add_column("Where", style="cyan")
    table.add_column("Message")
    for issue in issues:
        where = issue.node or issue.edge or ""
        if issue.field:
            where = f"{where}.{issue.field}" if where else issue.field
        table.add_row(issue.type, escape(where), escape(issue.message))
    console.print(table)
