"""CLI UI components for terminal-based run visualization.

This package provides rich terminal UI capabilities for:
- Visualizing execution graphs as trees
- Run status tables
- Compile error reports
"""

from edgewalker.cli_ui.graph_renderer import (
    StatusTableRenderer,
    TerminalGraphRenderer,
    render_issues,
)

__all__ = [
    "TerminalGraphRenderer",
    "StatusTableRenderer",
    "render_issues",
]
