"""Tests for the graph compiler.

Tests cover:
- Indexing: adjacency, upstream, entry/terminal nodes, edge data
- Stripping of UI metadata with node ids preserved
- Validation: cycles, required inputs, mappings, worker types, splitter
  config, nested splits, entity movement, duplicates, dangling edges
- Split region computation
- Degenerate fan shapes reported as warnings
"""

from __future__ import annotations

import networkx as nx
import pytest

from edgewalker.core.compiler import compile_graph
from edgewalker.core.errors import GraphValidationError
from edgewalker.core.graph_schema import EditableGraph, NodeType


def _types(result) -> list[str]:
    return [e.type for e in result.errors]


# =============================================================================
# Indexing Tests
# =============================================================================


class TestIndexing:
    """Tests for the compiled graph structure."""

    def test_linear_graph(self, node, edge, editable_graph):
        """Adjacency, upstream, entry and terminal sets of a chain."""
        result = compile_graph(
            editable_graph(
                [node("a"), node("b"), node("c")],
                [edge("a", "b"), edge("b", "c")],
            )
        )

        assert result.success
        graph = result.graph
        assert graph.adjacency == {"a": ["b"], "b": ["c"], "c": []}
        assert graph.upstream == {"a": [], "b": ["a"], "c": ["b"]}
        assert graph.entry_nodes == ["a"]
        assert graph.terminal_nodes == ["c"]
        assert graph.ref == "test-graph@1"

    def test_edge_data_keyed_by_endpoints(self, node, edge, editable_graph):
        """Edge mappings are indexed as 'source->target'."""
        result = compile_graph(
            editable_graph(
                [node("a"), node("b", inputs={"text": {"type": "string", "required": True}})],
                [edge("a", "b", mapping={"text": "result.body"})],
            )
        )

        assert result.success
        assert result.graph.edge_data == {"a->b": {"text": "result.body"}}
        assert result.graph.mapping_for("a", "b") == {"text": "result.body"}
        assert result.graph.mapping_for("b", "a") is None

    def test_ui_metadata_stripped_and_ids_preserved(self, node, edge, editable_graph):
        """Positions and labels are dropped, odd node ids are kept verbatim."""
        result = compile_graph(
            editable_graph(
                [
                    node("Fetch Data!", label="Fetch", position={"x": 10, "y": 20}, width=120),
                    node("step-2", style={"color": "red"}),
                ],
                [{**edge("Fetch Data!", "step-2"), "animated": True, "source_handle": "out"}],
            )
        )

        assert result.success
        graph = result.graph
        assert set(graph.nodes) == {"Fetch Data!", "step-2"}
        dumped = graph.nodes["Fetch Data!"].model_dump()
        for ui_field in ("label", "position", "width", "style"):
            assert ui_field not in dumped

    def test_graph_is_immutable(self, compiled, node):
        """Compiled graphs are frozen."""
        graph = compiled([node("a")])
        with pytest.raises(Exception):
            graph.id = "other"

    def test_multiple_entries_and_terminals(self, node, edge, editable_graph):
        """Diamond with two roots and two leaves."""
        result = compile_graph(
            editable_graph(
                [node("r1"), node("r2"), node("mid"), node("l1"), node("l2")],
                [edge("r1", "mid"), edge("r2", "mid"), edge("mid", "l1"), edge("mid", "l2")],
            )
        )

        assert result.graph.entry_nodes == ["r1", "r2"]
        assert result.graph.terminal_nodes == ["l1", "l2"]
        assert result.graph.upstream["mid"] == ["r1", "r2"]


# =============================================================================
# Cycle Detection Tests
# =============================================================================


class TestCycleDetection:
    """Tests for 3-color DFS cycle detection."""

    def test_reports_exact_cycle_path(self, node, edge, editable_graph):
        """The error names the cycle, not the whole DFS path."""
        result = compile_graph(
            editable_graph(
                [node("start"), node("a"), node("b"), node("c")],
                [edge("start", "a"), edge("a", "b"), edge("b", "c"), edge("c", "a")],
            )
        )

        assert not result.success
        assert result.graph is None
        cycle = next(e for e in result.errors if e.type == "cycle")
        assert cycle.path == ["a", "b", "c", "a"]
        assert "a -> b -> c -> a" in cycle.message

    def test_self_loop(self, node, edge, editable_graph):
        result = compile_graph(editable_graph([node("a")], [edge("a", "a")]))

        assert _types(result) == ["cycle"]

    def test_acyclic_with_shared_descendant(self, node, edge, editable_graph):
        """A node reached twice (diamond) is not a cycle."""
        result = compile_graph(
            editable_graph(
                [node("a"), node("b"), node("c"), node("d")],
                [edge("a", "b"), edge("a", "c"), edge("b", "d"), edge("c", "d")],
            )
        )

        assert result.success

    @pytest.mark.parametrize("seed", range(10))
    def test_agrees_with_networkx(self, seed, node, edge, editable_graph):
        """Random small graphs compile exactly when networkx finds no cycle."""
        G = nx.gnp_random_graph(7, 0.25, seed=seed, directed=True)
        nodes = [node(f"n{i}") for i in G.nodes]
        edges = [edge(f"n{u}", f"n{v}") for u, v in G.edges]

        result = compile_graph(editable_graph(nodes, edges))

        assert result.success == nx.is_directed_acyclic_graph(G)


# =============================================================================
# Input and Mapping Validation Tests
# =============================================================================


class TestInputValidation:
    """Tests for required inputs and edge mappings."""

    def test_missing_required_input(self, node, editable_graph):
        result = compile_graph(
            editable_graph([node("a", inputs={"prompt": {"type": "string", "required": True}})])
        )

        assert not result.success
        issue = result.errors[0]
        assert issue.type == "missing_input"
        assert issue.node == "a"
        assert issue.field == "prompt"

    def test_default_satisfies_required_input(self, node, editable_graph):
        result = compile_graph(
            editable_graph(
                [node("a", inputs={"tone": {"type": "string", "required": True, "default": "calm"}})]
            )
        )

        assert result.success
        assert result.graph.nodes["a"].input_defaults() == {"tone": "calm"}

    def test_null_default_counts_as_default(self, node, editable_graph):
        """An explicit null default is still a default."""
        result = compile_graph(
            editable_graph(
                [node("a", inputs={"cursor": {"type": "string", "required": True, "default": None}})]
            )
        )

        assert result.success

    def test_unmapped_edge_does_not_satisfy_required_input(self, node, edge, editable_graph):
        result = compile_graph(
            editable_graph(
                [node("a"), node("b", inputs={"text": {"type": "string", "required": True}})],
                [edge("a", "b")],
            )
        )

        assert _types(result) == ["missing_input"]

    def test_mapping_to_undeclared_input(self, node, edge, editable_graph):
        result = compile_graph(
            editable_graph(
                [node("a"), node("b", inputs={"text": {"type": "string"}})],
                [edge("a", "b", mapping={"body": "result.body"})],
            )
        )

        assert _types(result) == ["invalid_mapping"]
        assert result.errors[0].field == "body"

    def test_empty_source_path(self, node, edge, editable_graph):
        result = compile_graph(
            editable_graph([node("a"), node("b")], [edge("a", "b", mapping={"text": "result..x"})])
        )

        assert _types(result) == ["invalid_mapping"]


class TestStructuralValidation:
    """Tests for ids, edges, worker types and node config."""

    def test_duplicate_node(self, node, editable_graph):
        result = compile_graph(editable_graph([node("a"), node("a")]))

        assert "duplicate_node" in _types(result)

    def test_dangling_edge(self, node, edge, editable_graph):
        result = compile_graph(editable_graph([node("a")], [edge("a", "ghost")]))

        assert _types(result) == ["dangling_edge"]
        assert "ghost" in result.errors[0].message

    def test_ambiguous_instance_like_id(self, node, editable_graph):
        """'work' and 'work_1' cannot coexist."""
        result = compile_graph(editable_graph([node("work"), node("work_1")]))

        assert _types(result) == ["ambiguous_node_id"]

    def test_unknown_worker_type(self, node, editable_graph):
        result = compile_graph(
            editable_graph([node("a", worker_type="teleport")]),
            known_worker_types=["echo", "http_fetch"],
        )

        assert _types(result) == ["invalid_worker"]
        assert "teleport" in result.errors[0].message

    def test_worker_types_unchecked_without_registry(self, node, editable_graph):
        result = compile_graph(editable_graph([node("a", worker_type="teleport")]))

        assert result.success

    def test_splitter_requires_array_path(self, node, edge, editable_graph):
        result = compile_graph(
            editable_graph(
                [node("s", "splitter"), node("w"), node("c", "collector")],
                [edge("s", "w"), edge("w", "c")],
            )
        )

        assert _types(result) == ["invalid_config"]
        assert result.errors[0].field == "array_path"

    def test_empty_node_id_rejected_by_schema(self):
        with pytest.raises(ValueError):
            EditableGraph.model_validate({"id": "g", "nodes": [{"id": " ", "type": "worker"}]})

    def test_all_errors_reported(self, node, edge, editable_graph):
        """Compilation never stops at the first error."""
        result = compile_graph(
            editable_graph(
                [
                    node("a", inputs={"x": {"type": "string", "required": True}}),
                    node("s", "splitter"),
                ],
                [edge("a", "ghost")],
            )
        )

        assert set(_types(result)) == {"missing_input", "invalid_config", "dangling_edge"}

    def test_graph_validation_error_summarizes(self, node, editable_graph):
        result = compile_graph(editable_graph([node("a"), node("a")]))
        err = GraphValidationError(result.errors)

        assert "Duplicate node ID" in str(err)
        assert err.issues == result.errors

    def test_unwrap(self, node, editable_graph):
        """unwrap returns the graph or raises with every issue."""
        ok = compile_graph(editable_graph([node("a")]))
        assert ok.unwrap() is ok.graph

        bad = compile_graph(editable_graph([node("a"), node("a")]))
        with pytest.raises(GraphValidationError) as exc_info:
            bad.unwrap()
        assert exc_info.value.issues == bad.errors


class TestEntityMovementValidation:
    """Tests for worker entity movement config."""

    def _graph(self, node, editable_graph, movement):
        return editable_graph(
            [node("w", entity_movement=movement), node("done_section", "ux")],
        )

    def test_valid_movement(self, node, editable_graph):
        movement = {
            "on_success": {"target_section_id": "done_section", "complete_as": "success"},
            "on_failure": {
                "target_section_id": "done_section",
                "complete_as": "failure",
                "set_entity_type": "churned",
            },
        }

        assert compile_graph(self._graph(node, editable_graph, movement)).success

    def test_unknown_target_section(self, node, editable_graph):
        movement = {"on_success": {"target_section_id": "nowhere", "complete_as": "success"}}

        result = compile_graph(self._graph(node, editable_graph, movement))

        assert _types(result) == ["invalid_entity_movement"]
        assert result.errors[0].field == "entity_movement.on_success.target_section_id"

    def test_invalid_complete_as_and_entity_type(self, node, editable_graph):
        movement = {
            "on_failure": {
                "target_section_id": "done_section",
                "complete_as": "maybe",
                "set_entity_type": "alien",
            }
        }

        result = compile_graph(self._graph(node, editable_graph, movement))

        fields = sorted(e.field for e in result.errors)
        assert fields == [
            "entity_movement.on_failure.complete_as",
            "entity_movement.on_failure.set_entity_type",
        ]


# =============================================================================
# Split Region Tests
# =============================================================================


class TestSplitRegions:
    """Tests for split region computation and nesting checks."""

    def test_region_stops_at_collector(self, fan_graph):
        assert fan_graph.split_regions == {"split": ["work"]}
        assert fan_graph.region_of == {"work": "split"}
        assert fan_graph.region_collectors == {"split": ["collect"]}
        assert fan_graph.nodes["collect"].kind == NodeType.COLLECTOR

    def test_multi_step_region(self, compiled, node, edge):
        graph = compiled(
            [
                node("s", "splitter", config={"array_path": "items"}),
                node("a"),
                node("b"),
                node("c", "collector"),
                node("after"),
            ],
            [edge("s", "a"), edge("a", "b"), edge("b", "c"), edge("c", "after")],
        )

        assert graph.split_regions["s"] == ["a", "b"]
        assert "after" not in graph.region_of
        assert graph.collector_feeds == {"c": ["s", "a", "b"]}

    def test_base_of_instance_keys(self, fan_graph):
        assert set(fan_graph.static_ids) == {"split", "work", "collect"}
        assert fan_graph.base_of("work_12") == "work"
        assert fan_graph.base_of("collect") == "collect"

    def test_nested_splitter_rejected(self, node, edge, editable_graph):
        result = compile_graph(
            editable_graph(
                [
                    node("outer", "splitter", config={"array_path": "groups"}),
                    node("inner", "splitter", config={"array_path": "items"}),
                    node("w"),
                    node("c1", "collector"),
                    node("c2", "collector"),
                ],
                [
                    edge("outer", "inner"),
                    edge("inner", "w"),
                    edge("w", "c1"),
                    edge("c1", "c2"),
                ],
            )
        )

        assert "nested_splitter" in _types(result)

    def test_degenerate_shapes_are_warnings(self, node, edge, editable_graph):
        """One consumer and one producer compile, with warnings."""
        result = compile_graph(
            editable_graph(
                [
                    node("s", "splitter", config={"array_path": "items"}),
                    node("w"),
                    node("c", "collector"),
                ],
                [edge("s", "w"), edge("w", "c")],
            )
        )

        assert result.success
        assert any("Splitter 's'" in w for w in result.warnings)
        assert any("Collector 'c'" in w for w in result.warnings)
