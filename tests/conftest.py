# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the edgewalker test suite.

This module provides foundational fixtures used across all test modules:
- Test run store on a temporary SQLite file
- Graph builders for editable and compiled graphs
- A recording dispatcher standing in for external webhooks
- Engine instances wired to the above

Usage:
    Import fixtures implicitly via pytest's fixture discovery.
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from edgewalker.core.compiler import ExecutionGraph, compile_graph
from edgewalker.core.errors import DispatchError
from edgewalker.core.graph_engine import EdgeWalker
from edgewalker.core.graph_schema import EditableGraph
from edgewalker.core.registry import WorkerRegistry
from edgewalker.core.state import RunStore


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest.fixture
def test_db(tmp_path: Path) -> RunStore:
    """Create a run store backed by a temporary SQLite file."""
    return RunStore(tmp_path / ".edgewalker" / "state.db")


# =============================================================================
# Graph Builders
# =============================================================================


def _node(node_id: str, node_type: str = "worker", **fields: Any) -> dict[str, Any]:
    data: dict[str, Any] = {"id": node_id, "type": node_type}
    if node_type == "worker":
        data.setdefault("worker_type", "echo")
    data.update(fields)
    return data


def _edge(source: str, target: str, mapping: dict[str, str] | None = None) -> dict[str, Any]:
    data: dict[str, Any] = {"id": f"{source}-{target}", "source": source, "target": target}
    if mapping is not None:
        data["mapping"] = mapping
    return data


@pytest.fixture
def node() -> Callable[..., dict[str, Any]]:
    """Factory for editable node dicts. Workers default to worker_type 'echo'."""
    return _node


@pytest.fixture
def edge() -> Callable[..., dict[str, Any]]:
    """Factory for editable edge dicts with an id derived from the endpoints."""
    return _edge


@pytest.fixture
def editable_graph() -> Callable[..., EditableGraph]:
    """Factory building an EditableGraph from node and edge dicts."""

    def build(
        nodes: list[dict[str, Any]],
        edges: list[dict[str, Any]] | None = None,
        graph_id: str = "test-graph",
        version: str = "1",
    ) -> EditableGraph:
        return EditableGraph.model_validate(
            {"id": graph_id, "version": version, "nodes": nodes, "edges": edges or []}
        )

    return build


@pytest.fixture
def compiled(editable_graph) -> Callable[..., ExecutionGraph]:
    """Factory compiling node and edge dicts, failing the test on errors."""

    def build(
        nodes: list[dict[str, Any]],
        edges: list[dict[str, Any]] | None = None,
        graph_id: str = "test-graph",
        version: str = "1",
    ) -> ExecutionGraph:
        result = compile_graph(editable_graph(nodes, edges, graph_id, version))
        assert result.success, [e.message for e in result.errors]
        return result.graph

    return build


@pytest.fixture
def fan_graph(compiled) -> ExecutionGraph:
    """start -> split(items) -> work -> collect -> finish"""
    return compiled(
        [
            _node("start"),
            _node("split", "splitter", config={"array_path": "items"}),
            _node("work", worker_type="remote", config={"webhook_url": "http://workers/work"}),
            _node("collect", "collector"),
            _node("finish"),
        ],
        [
            _edge("start", "split"),
            _edge("split", "work"),
            _edge("work", "collect"),
            _edge("collect", "finish"),
        ],
        graph_id="fan",
    )


# =============================================================================
# Engine Fixtures
# =============================================================================


class RecordingDispatcher:
    """Dispatcher that records payloads instead of sending HTTP requests."""

    def __init__(self):
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.fail_urls: set[str] = set()

    def dispatch(self, url: str, payload: dict[str, Any]) -> None:
        self.calls.append((url, payload))
        if url in self.fail_urls:
            raise DispatchError(f"Webhook returned 500 Internal Server Error: {url}")

    def node_ids(self) -> list[str]:
        return [payload["nodeId"] for _, payload in self.calls]


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def registry() -> WorkerRegistry:
    """Registry with an 'echo' delegate returning its input plus a marker."""
    return WorkerRegistry({"echo": lambda input, config: {**input, "echoed": True}})


@pytest.fixture
def walker(test_db, registry, dispatcher) -> EdgeWalker:
    return EdgeWalker(test_db, registry=registry, dispatcher=dispatcher, base_url="http://engine")
