"""Reactive edge-walking execution engine.

This module drives a run forward in response to node completion events:
- No long-running loop and no in-memory run state: every trigger (start,
  callback, resume, retry) is an independent call that reads the store
- A node fires only when every upstream dependency is ``completed`` in the
  state the triggering write committed
- Firing is guarded by a compare-and-set claim, so racing triggers fire each
  node key at most once
- Splitter regions are instantiated per array element (``node_0``,
  ``node_1``, ...) and joined again by Collectors

Walking stops at terminal nodes, at nodes waiting for a callback or a human,
and at failures. A run's outcome is derived from its node states.
"""

from __future__ import annotations

import logging
from typing import Any, Literal

from edgewalker.core.compiler import ExecutionGraph
from edgewalker.core.dispatch import Dispatcher, WebhookDispatcher
from edgewalker.core.entities import EntityTracker, NullEntityTracker, notify_safely
from edgewalker.core.errors import (
    EngineError,
    IllegalTransitionError,
    NodeNotFoundError,
    RetryNotAllowedError,
)
from edgewalker.core.graph_schema import NodeStatus, NodeType
from edgewalker.core.handlers import (
    CollectorHandler,
    NodeHandler,
    SplitterHandler,
    UXHandler,
    WorkerHandler,
)
from edgewalker.core.registry import WorkerRegistry
from edgewalker.core.state import NodeDelta, Run, RunStore
from edgewalker.core.utils import augment, instance_keys, resolve_path, split_key

logger = logging.getLogger(__name__)

RunStatus = Literal["active", "done"]


def derive_run_status(run: Run) -> RunStatus:
    """A run is active while any node is running or waiting for a human.

    Nothing fires without a completion event, so once no node is in flight
    the remaining ``pending`` nodes can only be reached through a retry.
    """
    in_flight = (NodeStatus.RUNNING, NodeStatus.WAITING_FOR_USER)
    if any(state.status in in_flight for state in run.node_states.values()):
        return "active"
    return "done"


def failed_nodes(run: Run) -> list[str]:
    return [key for key, state in run.node_states.items() if state.status == NodeStatus.FAILED]


def passthrough_output(input: Any, output: Any) -> Any:
    """Carry a worker's input forward into its output.

    Dict outputs are layered over dict inputs so upstream fields survive for
    later nodes. Any other combination keeps both side by side.
    """
    if not input:
        return output
    if output is None:
        return input
    if isinstance(input, dict) and isinstance(output, dict):
        return {**input, **output}
    return {"input": input, "output": output}


class EdgeWalker:
    """
    Stateless graph orchestrator.

    Key Features:
    - Each public call is independent and safe to run concurrently
    - Can resume after a crash by re-issuing triggers; state lives in SQLite
    - In-process delegates complete synchronously, webhooks via callback
    """

    def __init__(
        self,
        store: RunStore,
        registry: WorkerRegistry | None = None,
        dispatcher: Dispatcher | None = None,
        tracker: EntityTracker | None = None,
        base_url: str = "http://localhost:8000",
    ):
        self.store = store
        self.registry = registry or WorkerRegistry()
        self.dispatcher = dispatcher or WebhookDispatcher()
        self.tracker = tracker or NullEntityTracker()
        self.base_url = base_url
        self.collector = CollectorHandler(self)
        self.handlers: dict[NodeType, NodeHandler] = {
            NodeType.WORKER: WorkerHandler(self),
            NodeType.SPLITTER: SplitterHandler(self),
            NodeType.COLLECTOR: self.collector,
            NodeType.UX: UXHandler(self),
        }

    # ========== Lookup Helpers ==========

    def graph_for(self, run: Run) -> ExecutionGraph:
        graph = self.store.get_graph(run.graph_ref)
        if graph is None:
            raise EngineError(f"Execution graph {run.graph_ref} for run {run.id} not found")
        return graph

    def _node_state(self, run: Run, node_key: str):
        state = run.state(node_key)
        if state is None:
            raise NodeNotFoundError(f"Node '{node_key}' not found in run {run.id}")
        return state

    # ========== Triggers ==========

    def start_run(
        self,
        graph: ExecutionGraph,
        entity_ref: str | None = None,
        input: dict[str, Any] | None = None,
        run_id: str | None = None,
    ) -> Run:
        """Create a run and fire every entry node with ``input``."""
        run = self.store.create_run(graph, entity_ref=entity_ref, run_id=run_id)
        logger.info(
            f"Started run {run.id} of {graph.ref} with entry nodes: "
            f"{', '.join(graph.entry_nodes)}"
        )
        for entry in graph.entry_nodes:
            spec = graph.nodes[entry]
            entry_input = {**spec.input_defaults(), **(input or {})}
            self._fire(graph, run.id, entry, entry_input)
        return self.store.get(run.id)

    def complete_node(
        self,
        run_id: str,
        node_key: str,
        output: Any = None,
        error: str | None = None,
    ) -> Run:
        """Record a terminal outcome for a node and react to it.

        ``error`` set means failure. A node waiting for user input is resumed
        through ``running`` first. Raises IllegalTransitionError if the node
        is not in a state that can finish (e.g. a duplicate callback).
        """
        run = self.store.get(run_id)
        graph = self.graph_for(run)
        state = self._node_state(run, node_key)

        if state.status == NodeStatus.WAITING_FOR_USER:
            self.store.patch(
                run_id,
                node_key,
                NodeDelta(status=NodeStatus.RUNNING, expected_status=NodeStatus.WAITING_FOR_USER),
            )

        if error is not None:
            run = self.store.patch(
                run_id, node_key, NodeDelta(status=NodeStatus.FAILED, error=error)
            )
            logger.error(f"Node {node_key} in run {run_id} failed: {error}")
            self._notify(graph, run, node_key, "failed")
            self._on_failed(graph, run, node_key)
            return self.store.get(run_id)

        run = self.store.patch(
            run_id, node_key, NodeDelta(status=NodeStatus.COMPLETED, output=output)
        )
        logger.info(f"Node {node_key} in run {run_id} completed")
        self.on_completed(graph, run, node_key)
        return self.store.get(run_id)

    def fail_node(self, run_id: str, node_key: str, reason: str) -> Run:
        """Fail a running or waiting node from outside (e.g. a timeout watchdog)."""
        logger.warning(f"Failing node {node_key} in run {run_id}: {reason}")
        return self.complete_node(run_id, node_key, error=reason)

    def resume_node(self, run_id: str, node_key: str, output: Any = None) -> Run:
        """Complete a UX node with the user's input and continue the run."""
        run = self.store.get(run_id)
        state = self._node_state(run, node_key)
        if state.status != NodeStatus.WAITING_FOR_USER:
            raise IllegalTransitionError(state.status, NodeStatus.RUNNING, node_key)
        return self.complete_node(
            run_id, node_key, output=output if output is not None else state.output
        )

    def retry_node(self, run_id: str, node_key: str) -> Run:
        """Re-run a failed node with the input it was originally fired with."""
        run = self.store.get(run_id)
        graph = self.graph_for(run)
        state = self._node_state(run, node_key)
        if state.status != NodeStatus.FAILED:
            raise RetryNotAllowedError(
                f"Only failed nodes can be retried; {node_key} is {state.status.value}"
            )
        spec = graph.nodes[graph.base_of(node_key)]
        logger.info(f"Retrying {spec.kind.value} node {node_key} in run {run_id}")
        self.handlers[spec.kind].retry(graph, run, node_key)
        return self.store.get(run_id)

    # ========== Reactions ==========

    def on_completed(self, graph: ExecutionGraph, run: Run, node_key: str) -> None:
        """Everything that follows a committed ``completed`` state."""
        self._notify(graph, run, node_key, "completed")
        self.walk_edges(node_key, run, graph)

    def _on_failed(self, graph: ExecutionGraph, run: Run, node_key: str) -> None:
        # A failed parallel instance fails its region's collectors fast
        base, index = split_key(node_key, graph.static_ids)
        splitter = graph.region_of.get(base)
        if splitter is None or index is None:
            return
        for collector in graph.region_collectors.get(splitter, []):
            self.collector.evaluate(graph, run.id, collector)

    def _notify(self, graph: ExecutionGraph, run: Run, node_key: str, outcome: str) -> None:
        spec = graph.nodes[graph.base_of(node_key)]
        if spec.kind != NodeType.WORKER:
            return
        movement = None
        if spec.entity_movement is not None:
            if outcome == "completed":
                movement = spec.entity_movement.on_success
            else:
                movement = spec.entity_movement.on_failure
        notify_safely(self.tracker, run.entity_ref, node_key, outcome, movement)

    # ========== Edge Walking ==========

    def walk_edges(
        self, completed_key: str, run: Run, graph: ExecutionGraph | None = None
    ) -> None:
        """Fire every downstream node whose dependencies are now satisfied.

        ``run`` must be the state committed by the completion of
        ``completed_key`` (or later), so every upstream completion that
        happened before it is visible here.
        """
        graph = graph or self.graph_for(run)
        base, index = split_key(completed_key, graph.static_ids)

        if graph.is_terminal(base):
            logger.info(f"Reached terminal node {completed_key} in run {run.id}")
            return

        spec = graph.nodes[base]
        if spec.kind == NodeType.SPLITTER and not run.node_states[completed_key].output:
            # Empty split: nothing will complete inside the region
            for collector in graph.region_collectors.get(base, []):
                self.collector.evaluate(graph, run.id, collector)

        for downstream in graph.adjacency[base]:
            run = self.store.get(run.id)
            targets = self._resolve_targets(graph, run, base, index, downstream)
            logger.debug(f"Walking {completed_key} -> {downstream}: targets {targets}")
            for target in targets:
                self._try_fire(graph, run, target)

    def _resolve_targets(
        self,
        graph: ExecutionGraph,
        run: Run,
        source: str,
        index: int | None,
        downstream: str,
    ) -> list[str]:
        region = graph.region_of.get(downstream)
        if region is None:
            return [downstream]
        if index is not None and graph.region_of.get(source) == region:
            # Instances inside a region form independent chains
            return [augment(downstream, index)]
        return instance_keys(run.node_states, downstream)

    def _try_fire(self, graph: ExecutionGraph, run: Run, target: str) -> None:
        base, index = split_key(target, graph.static_ids)
        spec = graph.nodes[base]

        if spec.kind == NodeType.COLLECTOR:
            self.collector.evaluate(graph, run.id, target)
            return

        state = run.state(target)
        if state is None or state.status != NodeStatus.PENDING:
            logger.debug(
                f"Skipping {target}: {state.status.value if state else 'not created'}"
            )
            return
        if not self._dependencies_met(graph, run, base, index):
            logger.debug(f"Skipping {target}: upstream dependencies not completed")
            return

        self._fire(graph, run.id, target, self._merge_input(graph, run, target))

    def _dependencies_met(
        self, graph: ExecutionGraph, run: Run, node_id: str, index: int | None
    ) -> bool:
        region = graph.region_of.get(node_id)
        for upstream in graph.upstream[node_id]:
            if index is not None and upstream == region:
                key = upstream
            elif index is not None and region is not None and graph.region_of.get(upstream) == region:
                key = augment(upstream, index)
            else:
                key = upstream
            if run.status_of(key) != NodeStatus.COMPLETED:
                return False
        return True

    def _fire(self, graph: ExecutionGraph, run_id: str, node_key: str, input: dict[str, Any]) -> None:
        spec = graph.nodes[graph.base_of(node_key)]
        if spec.kind == NodeType.COLLECTOR:
            self.collector.evaluate(graph, run_id, node_key)
            return
        self.handlers[spec.kind].fire(graph, run_id, node_key, input)

    # ========== Input Merging ==========

    def _merge_input(self, graph: ExecutionGraph, run: Run, target: str) -> dict[str, Any]:
        """Build a node's input from its upstream outputs.

        Precedence, lowest first: input defaults, then each upstream edge in
        declaration order. Mapped edges contribute only their mapped fields;
        unmapped edges contribute a dict output's fields, or any other output
        under the upstream node id. A later edge overwrites an earlier one.
        """
        base, index = split_key(target, graph.static_ids)
        spec = graph.nodes[base]
        region = graph.region_of.get(base)

        merged: dict[str, Any] = spec.input_defaults()
        writers: dict[str, str] = {}

        for upstream in graph.upstream[base]:
            if index is not None and upstream == region:
                # Direct neighbour of the splitter: the seed holds the element
                source_key = upstream
                output = run.node_states[target].output
            elif index is not None and region is not None and graph.region_of.get(upstream) == region:
                source_key = augment(upstream, index)
                output = run.node_states[source_key].output
            else:
                source_key = upstream
                output = run.node_states[upstream].output

            mapping = graph.mapping_for(upstream, base)
            if mapping:
                contributed = {}
                for field, path in mapping.items():
                    try:
                        contributed[field] = resolve_path(output, path)
                    except KeyError:
                        logger.warning(
                            f"Mapping {upstream}->{base}: path '{path}' not found in output "
                            f"of {source_key}, input '{field}' left unset"
                        )
            elif isinstance(output, dict):
                contributed = output
            elif output is None:
                contributed = {}
            else:
                contributed = {upstream: output}

            for field, value in contributed.items():
                if field in writers:
                    logger.warning(
                        f"Input '{field}' of {target} written by both {writers[field]} and "
                        f"{source_key}; using {source_key}"
                    )
                merged[field] = value
                writers[field] = source_key

        return merged
