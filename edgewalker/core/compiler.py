"""Graph compiler: editable graph -> immutable ExecutionGraph.

Compilation steps:
1. VALIDATION - duplicates, dangling edges, cycles (3-color DFS), required
   inputs, edge mappings, worker types, splitter config, nested splits,
   entity movement
2. INDEXING - nodes by id, adjacency and reverse adjacency, edge data by
   "source->target"
3. STRIPPING - position, label, style, size and handles are dropped
4. COMPUTATION - entry/terminal nodes and split regions

Node ids are preserved exactly. They are the join key for every state lookup
and for external status displays, so they are never renamed or sanitized.
"""

import logging
from collections.abc import Iterable, KeysView
from typing import Any, Literal

import networkx as nx
from pydantic import BaseModel, ConfigDict, Field

from edgewalker.core.errors import GraphValidationError
from edgewalker.core.graph_schema import (
    EditableGraph,
    EntityMovement,
    InputSpec,
    NodeType,
)
from edgewalker.core.utils import split_key

logger = logging.getLogger(__name__)

VALID_COMPLETE_AS = ("success", "failure", "neutral")
VALID_ENTITY_TYPES = ("customer", "churned", "lead")

IssueType = Literal[
    "duplicate_node",
    "ambiguous_node_id",
    "dangling_edge",
    "cycle",
    "missing_input",
    "invalid_mapping",
    "invalid_worker",
    "invalid_config",
    "nested_splitter",
    "invalid_entity_movement",
]


class ValidationIssue(BaseModel):
    """A compile-time graph defect."""

    type: IssueType
    message: str
    node: str | None = None
    edge: str | None = None
    field: str | None = None
    path: list[str] | None = None  # cycle path, first node repeated at the end


class NodeSpec(BaseModel):
    """Runtime view of a node. UI properties are gone."""

    model_config = ConfigDict(frozen=True)

    id: str
    kind: NodeType
    worker_type: str | None = None
    config: dict[str, Any] = Field(default_factory=dict)
    inputs: dict[str, InputSpec] = Field(default_factory=dict)
    entity_movement: EntityMovement | None = None

    @property
    def required_inputs(self) -> set[str]:
        return {name for name, spec in self.inputs.items() if spec.required}

    def input_defaults(self) -> dict[str, Any]:
        return {name: spec.default for name, spec in self.inputs.items() if spec.has_default}


class ExecutionGraph(BaseModel):
    """Compiled, immutable DAG used at runtime. Safe to share across calls."""

    model_config = ConfigDict(frozen=True)

    id: str
    version: str
    nodes: dict[str, NodeSpec]
    adjacency: dict[str, list[str]]
    upstream: dict[str, list[str]]
    edge_data: dict[str, dict[str, str]] = Field(default_factory=dict)
    entry_nodes: list[str]
    terminal_nodes: list[str]
    split_regions: dict[str, list[str]] = Field(default_factory=dict)
    region_of: dict[str, str] = Field(default_factory=dict)
    region_collectors: dict[str, list[str]] = Field(default_factory=dict)
    # collector id -> every node with a path to it, topological order
    collector_feeds: dict[str, list[str]] = Field(default_factory=dict)

    @property
    def ref(self) -> str:
        return f"{self.id}@{self.version}"

    @property
    def static_ids(self) -> KeysView[str]:
        """Node ids as a live view of ``nodes``; membership tests need no copy."""
        return self.nodes.keys()

    @staticmethod
    def edge_key(source: str, target: str) -> str:
        return f"{source}->{target}"

    def mapping_for(self, source: str, target: str) -> dict[str, str] | None:
        return self.edge_data.get(self.edge_key(source, target))

    def is_terminal(self, node_id: str) -> bool:
        return node_id in self.terminal_nodes

    def base_of(self, node_key: str) -> str:
        """Static node id for a (possibly augmented) node key."""
        return split_key(node_key, self.static_ids)[0]


class CompileResult(BaseModel):
    """Either an execution graph or the full list of validation errors."""

    success: bool
    graph: ExecutionGraph | None = None
    errors: list[ValidationIssue] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    def unwrap(self) -> ExecutionGraph:
        """Return the graph, or raise GraphValidationError with every issue."""
        if not self.success:
            raise GraphValidationError(self.errors)
        return self.graph


def compile_graph(
    editable: EditableGraph, known_worker_types: Iterable[str] | None = None
) -> CompileResult:
    """Compile an editable graph.

    Args:
        editable: The graph as saved by the editor
        known_worker_types: If given, worker nodes must use one of these types

    Returns:
        CompileResult. Never partially compiled: on any error ``graph`` is None.
    """
    errors = validate_graph(editable, known_worker_types)
    if errors:
        logger.info(f"Graph '{editable.id}' failed compilation with {len(errors)} error(s)")
        return CompileResult(success=False, errors=errors)

    adjacency: dict[str, list[str]] = {node.id: [] for node in editable.nodes}
    upstream: dict[str, list[str]] = {node.id: [] for node in editable.nodes}
    edge_data: dict[str, dict[str, str]] = {}
    for edge in editable.edges:
        adjacency[edge.source].append(edge.target)
        upstream[edge.target].append(edge.source)
        if edge.mapping:
            edge_data[ExecutionGraph.edge_key(edge.source, edge.target)] = dict(edge.mapping)

    nodes = {
        node.id: NodeSpec(
            id=node.id,
            kind=node.type,
            worker_type=node.worker_type,
            config=node.config,
            inputs=node.inputs,
            entity_movement=node.entity_movement,
        )
        for node in editable.nodes
    }

    entry_nodes = [nid for nid in nodes if not upstream[nid]]
    terminal_nodes = [nid for nid in nodes if not adjacency[nid]]

    split_regions, region_collectors = _compute_split_regions(editable)
    region_of = {
        member: splitter for splitter, members in split_regions.items() for member in members
    }

    graph = ExecutionGraph(
        id=editable.id,
        version=editable.version,
        nodes=nodes,
        adjacency=adjacency,
        upstream=upstream,
        edge_data=edge_data,
        entry_nodes=entry_nodes,
        terminal_nodes=terminal_nodes,
        split_regions=split_regions,
        region_of=region_of,
        region_collectors=region_collectors,
        collector_feeds=_compute_collector_feeds(editable),
    )

    warnings = check_fan_shapes(graph)
    for warning in warnings:
        logger.warning(warning)

    return CompileResult(success=True, graph=graph, warnings=warnings)


def validate_graph(
    editable: EditableGraph, known_worker_types: Iterable[str] | None = None
) -> list[ValidationIssue]:
    """Run every validation pass and return all issues found."""
    errors: list[ValidationIssue] = []

    seen: set[str] = set()
    for node in editable.nodes:
        if node.id in seen:
            errors.append(
                ValidationIssue(
                    type="duplicate_node", node=node.id, message=f"Duplicate node ID: '{node.id}'"
                )
            )
        seen.add(node.id)

    # "a" and "a_1" cannot coexist: "a_1" would read as instance 1 of "a"
    for node_id in seen:
        base, index = split_key(node_id)
        if index is not None and base in seen:
            errors.append(
                ValidationIssue(
                    type="ambiguous_node_id",
                    node=node_id,
                    message=(
                        f"Node ID '{node_id}' collides with parallel instance {index} "
                        f"of node '{base}'"
                    ),
                )
            )

    dangling = False
    for edge in editable.edges:
        for end in (edge.source, edge.target):
            if end not in seen:
                dangling = True
                errors.append(
                    ValidationIssue(
                        type="dangling_edge",
                        edge=edge.id,
                        message=f"Edge '{edge.id}' references non-existent node '{end}'",
                    )
                )

    errors.extend(detect_cycles(editable))
    errors.extend(validate_required_inputs(editable))
    errors.extend(validate_edge_mappings(editable))
    if known_worker_types is not None:
        errors.extend(validate_worker_types(editable, set(known_worker_types)))
    errors.extend(validate_node_config(editable))
    errors.extend(validate_entity_movement(editable))

    # Region analysis needs a well-formed DAG
    if not dangling and not any(e.type == "cycle" for e in errors):
        errors.extend(validate_nested_splitters(editable))

    return errors


def _adjacency_list(editable: EditableGraph) -> dict[str, list[str]]:
    adjacency: dict[str, list[str]] = {node.id: [] for node in editable.nodes}
    for edge in editable.edges:
        adjacency.setdefault(edge.source, []).append(edge.target)
    return adjacency


def detect_cycles(editable: EditableGraph) -> list[ValidationIssue]:
    """Detect a cycle with a 3-color DFS.

    WHITE = unvisited, GRAY = on the current DFS path, BLACK = finished.
    Reaching a GRAY node closes a cycle; the reported path is the slice of the
    current DFS path from that node, with the node repeated at the end.
    Iterative so deep graphs do not hit the recursion limit.
    """
    WHITE, GRAY, BLACK = 0, 1, 2
    adjacency = _adjacency_list(editable)
    color = {node_id: WHITE for node_id in adjacency}

    for root in adjacency:
        if color[root] != WHITE:
            continue
        path: list[str] = [root]
        stack = [(root, iter(adjacency[root]))]
        color[root] = GRAY
        while stack:
            node_id, neighbors = stack[-1]
            advanced = False
            for neighbor in neighbors:
                state = color.get(neighbor, BLACK)  # dangling targets reported elsewhere
                if state == GRAY:
                    cycle = path[path.index(neighbor) :] + [neighbor]
                    return [
                        ValidationIssue(
                            type="cycle",
                            node=neighbor,
                            path=cycle,
                            message=(
                                f"Graph contains a cycle: {' -> '.join(cycle)}. "
                                f"This would cause infinite loops during execution."
                            ),
                        )
                    ]
                if state == WHITE:
                    color[neighbor] = GRAY
                    path.append(neighbor)
                    stack.append((neighbor, iter(adjacency.get(neighbor, []))))
                    advanced = True
                    break
            if not advanced:
                stack.pop()
                path.pop()
                color[node_id] = BLACK
    return []


def validate_required_inputs(editable: EditableGraph) -> list[ValidationIssue]:
    """Every required input needs an explicit edge mapping or a default.

    Unmapped edges do not count: nothing guarantees the upstream output
    carries the field, and a missing field is better caught here than at
    runtime.
    """
    mapped: dict[str, set[str]] = {}
    for edge in editable.edges:
        if edge.mapping:
            mapped.setdefault(edge.target, set()).update(edge.mapping)

    errors = []
    for node in editable.nodes:
        connected = mapped.get(node.id, set())
        for name, spec in node.inputs.items():
            if spec.required and name not in connected and not spec.has_default:
                errors.append(
                    ValidationIssue(
                        type="missing_input",
                        node=node.id,
                        field=name,
                        message=(
                            f'Required input "{name}" on node "{node.id}" has no explicit '
                            f"mapping or default value"
                        ),
                    )
                )
    return errors


def validate_edge_mappings(editable: EditableGraph) -> list[ValidationIssue]:
    """Mapped targets must be declared inputs; source paths must be non-empty."""
    nodes = {node.id: node for node in editable.nodes}
    errors = []
    for edge in editable.edges:
        if not edge.mapping:
            continue
        target = nodes.get(edge.target)
        if target is None or edge.source not in nodes:
            continue  # reported as dangling_edge
        for target_input, source_path in edge.mapping.items():
            if target.inputs and target_input not in target.inputs:
                errors.append(
                    ValidationIssue(
                        type="invalid_mapping",
                        edge=edge.id,
                        field=target_input,
                        message=(
                            f"Edge '{edge.id}' maps to non-existent input '{target_input}' "
                            f"on target node '{target.id}'"
                        ),
                    )
                )
            if not source_path.strip() or any(not part for part in source_path.split(".")):
                errors.append(
                    ValidationIssue(
                        type="invalid_mapping",
                        edge=edge.id,
                        field=target_input,
                        message=(
                            f"Edge '{edge.id}' has invalid source path '{source_path}' "
                            f"for input '{target_input}'"
                        ),
                    )
                )
    return errors


def validate_worker_types(editable: EditableGraph, known: set[str]) -> list[ValidationIssue]:
    errors = []
    for node in editable.nodes:
        if node.type == NodeType.WORKER and node.worker_type and node.worker_type not in known:
            errors.append(
                ValidationIssue(
                    type="invalid_worker",
                    node=node.id,
                    message=(
                        f"Unknown worker type '{node.worker_type}' on node '{node.id}'. "
                        f"Valid types: {', '.join(sorted(known)) or '(none)'}"
                    ),
                )
            )
    return errors


def validate_node_config(editable: EditableGraph) -> list[ValidationIssue]:
    """Per-kind config checks (the NodeType tag selects the rules)."""
    errors = []
    for node in editable.nodes:
        if node.type == NodeType.SPLITTER:
            array_path = node.config.get("array_path")
            if not isinstance(array_path, str) or not array_path.strip():
                errors.append(
                    ValidationIssue(
                        type="invalid_config",
                        node=node.id,
                        field="array_path",
                        message=f"Splitter node '{node.id}' missing 'array_path' in config",
                    )
                )
        elif node.type == NodeType.WORKER:
            webhook_url = node.config.get("webhook_url")
            if webhook_url is not None and not isinstance(webhook_url, str):
                errors.append(
                    ValidationIssue(
                        type="invalid_config",
                        node=node.id,
                        field="webhook_url",
                        message=f"Worker node '{node.id}' has non-string 'webhook_url'",
                    )
                )
    return errors


def validate_entity_movement(editable: EditableGraph) -> list[ValidationIssue]:
    """Entity movement targets must exist and use known outcome values."""
    node_ids = {node.id for node in editable.nodes}
    errors = []
    for node in editable.nodes:
        if node.entity_movement is None:
            continue
        if node.type != NodeType.WORKER:
            errors.append(
                ValidationIssue(
                    type="invalid_entity_movement",
                    node=node.id,
                    message=f"Only worker nodes can move entities (node '{node.id}')",
                )
            )
            continue
        for label in ("on_success", "on_failure"):
            action = getattr(node.entity_movement, label)
            if action is None:
                continue
            prefix = f"entity_movement.{label}"
            if not action.target_section_id:
                errors.append(
                    ValidationIssue(
                        type="invalid_entity_movement",
                        node=node.id,
                        field=f"{prefix}.target_section_id",
                        message=f"Worker node '{node.id}' {prefix} missing 'target_section_id'",
                    )
                )
            elif action.target_section_id not in node_ids:
                errors.append(
                    ValidationIssue(
                        type="invalid_entity_movement",
                        node=node.id,
                        field=f"{prefix}.target_section_id",
                        message=(
                            f"Worker node '{node.id}' {prefix}.target_section_id references "
                            f"non-existent node '{action.target_section_id}'"
                        ),
                    )
                )
            if action.complete_as not in VALID_COMPLETE_AS:
                errors.append(
                    ValidationIssue(
                        type="invalid_entity_movement",
                        node=node.id,
                        field=f"{prefix}.complete_as",
                        message=(
                            f"Worker node '{node.id}' {prefix}.complete_as must be one of "
                            f"{', '.join(VALID_COMPLETE_AS)} (got {action.complete_as!r})"
                        ),
                    )
                )
            if action.set_entity_type is not None and action.set_entity_type not in VALID_ENTITY_TYPES:
                errors.append(
                    ValidationIssue(
                        type="invalid_entity_movement",
                        node=node.id,
                        field=f"{prefix}.set_entity_type",
                        message=(
                            f"Worker node '{node.id}' {prefix}.set_entity_type must be one of "
                            f"{', '.join(VALID_ENTITY_TYPES)}"
                        ),
                    )
                )
    return errors


def _to_networkx(editable: EditableGraph) -> nx.DiGraph:
    """Convert to NetworkX DiGraph for analysis"""
    G = nx.DiGraph()
    for node in editable.nodes:
        G.add_node(node.id, kind=node.type)
    for edge in editable.edges:
        G.add_edge(edge.source, edge.target)
    return G


def _compute_split_regions(
    editable: EditableGraph,
) -> tuple[dict[str, list[str]], dict[str, list[str]]]:
    """Find the nodes each Splitter instantiates and the Collectors closing them.

    A region is everything reachable from the Splitter without passing
    through a Collector. Regions are listed in topological order.
    """
    G = _to_networkx(editable)
    collectors = {n for n, kind in G.nodes(data="kind") if kind == NodeType.COLLECTOR}
    open_graph = G.subgraph(n for n in G.nodes if n not in collectors)
    order = {node_id: i for i, node_id in enumerate(nx.topological_sort(G))}

    regions: dict[str, list[str]] = {}
    closing: dict[str, list[str]] = {}
    for node_id, kind in G.nodes(data="kind"):
        if kind != NodeType.SPLITTER:
            continue
        members = nx.descendants(open_graph, node_id)
        regions[node_id] = sorted(members, key=order.__getitem__)
        closers = {
            succ for member in members | {node_id} for succ in G.successors(member)
        } & collectors
        closing[node_id] = sorted(closers, key=order.__getitem__)
    return regions, closing


def _compute_collector_feeds(editable: EditableGraph) -> dict[str, list[str]]:
    """Every node upstream of each Collector, in topological order."""
    G = _to_networkx(editable)
    order = {node_id: i for i, node_id in enumerate(nx.topological_sort(G))}
    return {
        node_id: sorted(nx.ancestors(G, node_id), key=order.__getitem__)
        for node_id, kind in G.nodes(data="kind")
        if kind == NodeType.COLLECTOR
    }


def validate_nested_splitters(editable: EditableGraph) -> list[ValidationIssue]:
    """A Splitter inside another Splitter's region is not supported."""
    regions, _ = _compute_split_regions(editable)
    errors = []
    for splitter, members in regions.items():
        for member in members:
            if member in regions:
                errors.append(
                    ValidationIssue(
                        type="nested_splitter",
                        node=member,
                        message=(
                            f"Splitter '{member}' is nested inside the parallel region of "
                            f"'{splitter}'. Close the outer region with a Collector first."
                        ),
                    )
                )
    seen_in: dict[str, str] = {}
    for splitter, members in regions.items():
        for member in members:
            if member in seen_in and member not in regions:
                errors.append(
                    ValidationIssue(
                        type="nested_splitter",
                        node=member,
                        message=(
                            f"Node '{member}' belongs to the parallel regions of both "
                            f"'{seen_in[member]}' and '{splitter}'"
                        ),
                    )
                )
            seen_in.setdefault(member, splitter)
    return errors


def check_fan_shapes(graph: ExecutionGraph) -> list[str]:
    """Degenerate but legal fan-out/fan-in shapes, reported as warnings."""
    warnings = []
    for node_id, spec in graph.nodes.items():
        if spec.kind == NodeType.SPLITTER:
            if len(graph.adjacency[node_id]) < 2:
                warnings.append(
                    f"Splitter '{node_id}' has {len(graph.adjacency[node_id])} downstream "
                    f"consumer(s); fan-out is degenerate"
                )
            if not graph.region_collectors.get(node_id):
                warnings.append(f"Splitter '{node_id}' does not reach any Collector")
        elif spec.kind == NodeType.COLLECTOR and len(graph.upstream[node_id]) < 2:
            warnings.append(
                f"Collector '{node_id}' has {len(graph.upstream[node_id])} upstream producer(s); "
                f"it behaves as a pass-through"
            )
    return warnings
