"""Node handlers: Worker, Splitter, Collector and UX gate.

Every handler starts with a claim, a compare-and-set of the node key from
``pending`` (or ``failed`` for a retry) to ``running``. Only the caller that
wins the claim does the work, so a node fires at most once per claim no
matter how many completion events race to fire it.

Node-level errors (DispatchError, ExtractionError, DependencyFailure) are
recorded as a ``failed`` node state and never raised to the caller.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from edgewalker.core.dispatch import build_payload
from edgewalker.core.errors import (
    DependencyFailure,
    DispatchError,
    EngineError,
    ExtractionError,
    IllegalTransitionError,
    RetryNotAllowedError,
)
from edgewalker.core.graph_schema import NodeStatus
from edgewalker.core.state import NodeDelta, Run
from edgewalker.core.utils import augment, instance_keys, resolve_path

if TYPE_CHECKING:
    from edgewalker.core.compiler import ExecutionGraph
    from edgewalker.core.graph_engine import EdgeWalker

logger = logging.getLogger(__name__)


class NodeHandler:
    """Base handler: claim, then execute."""

    def __init__(self, walker: EdgeWalker):
        self.walker = walker
        self.store = walker.store

    def fire(
        self,
        graph: ExecutionGraph,
        run_id: str,
        node_key: str,
        input: dict[str, Any],
        from_status: NodeStatus = NodeStatus.PENDING,
    ) -> None:
        """Claim ``node_key`` and run it. A lost claim is a no-op."""
        run = self.store.try_claim(run_id, node_key, from_status, input=input, error=None)
        if run is None:
            logger.warning(f"Node {node_key} in run {run_id} already claimed, not firing again")
            return
        logger.info(f"Fired {graph.base_of(node_key)} node {node_key} in run {run_id}")
        self.execute(graph, run, node_key, input)

    def retry(self, graph: ExecutionGraph, run: Run, node_key: str) -> None:
        """Re-run a failed node with the input it was first fired with."""
        state = run.node_states[node_key]
        self.fire(graph, run.id, node_key, state.input or {}, from_status=NodeStatus.FAILED)

    def execute(self, graph: ExecutionGraph, run: Run, node_key: str, input: dict[str, Any]) -> None:
        raise NotImplementedError

    def _fail(self, run_id: str, node_key: str, error: EngineError) -> None:
        self.walker.complete_node(run_id, node_key, error=str(error))


class WorkerHandler(NodeHandler):
    """Delegates work in-process (registry) or to an external webhook."""

    def execute(self, graph: ExecutionGraph, run: Run, node_key: str, input: dict[str, Any]) -> None:
        spec = graph.nodes[graph.base_of(node_key)]
        delegate = self.walker.registry.get(spec.worker_type)

        if delegate is not None:
            try:
                output = delegate(input, spec.config)
            except Exception as e:
                self._fail(
                    run.id,
                    node_key,
                    DispatchError(f"Worker '{spec.worker_type}' raised {type(e).__name__}: {e}"),
                )
                return
            self.walker.complete_node(run.id, node_key, output=output)
            return

        webhook_url = spec.config.get("webhook_url")
        if not webhook_url:
            self._fail(
                run.id,
                node_key,
                DispatchError(
                    f"No delegate registered for worker type '{spec.worker_type}' "
                    f"and no webhook_url configured"
                ),
            )
            return

        payload = build_payload(run.id, node_key, spec.config, input, self.walker.base_url)
        try:
            self.walker.dispatcher.dispatch(webhook_url, payload)
        except DispatchError as e:
            self._fail(run.id, node_key, e)
            return
        # Stays running until the callback arrives


class SplitterHandler(NodeHandler):
    """Fans an array out into per-element instances of its region."""

    def execute(self, graph: ExecutionGraph, run: Run, node_key: str, input: dict[str, Any]) -> None:
        spec = graph.nodes[node_key]
        array_path = spec.config.get("array_path", "")
        try:
            items = resolve_path(input, array_path)
        except KeyError:
            self._fail(
                run.id,
                node_key,
                ExtractionError(f"Array path '{array_path}' not found in splitter input"),
            )
            return
        if not isinstance(items, list):
            self._fail(
                run.id,
                node_key,
                ExtractionError(
                    f"Value at '{array_path}' is {type(items).__name__}, expected an array"
                ),
            )
            return

        direct = set(graph.adjacency[node_key])
        deltas: dict[str, NodeDelta] = {}
        for member in graph.split_regions.get(node_key, []):
            for index, item in enumerate(items):
                if member in direct:
                    deltas[augment(member, index)] = NodeDelta(seed=True, output=item)
                else:
                    deltas[augment(member, index)] = NodeDelta(seed=True)
        # Seeds and the splitter's own completion commit together
        deltas[node_key] = NodeDelta(status=NodeStatus.COMPLETED, output=items)

        try:
            run = self.store.patch_many(run.id, deltas)
        except IllegalTransitionError as e:
            self._fail(
                run.id, node_key, ExtractionError(f"Parallel instances already exist: {e}")
            )
            return

        logger.info(
            f"Splitter {node_key} created {len(items)} parallel instance(s) of "
            f"{len(graph.split_regions.get(node_key, []))} node(s) in run {run.id}"
        )
        self.walker.on_completed(graph, run, node_key)


class CollectorHandler(NodeHandler):
    """Fans parallel instances back in, preserving element order.

    Completion is re-derived from the durable per-key rows on every
    evaluation, so there is no shared counter to lose updates on.
    """

    def evaluate(self, graph: ExecutionGraph, run_id: str, node_key: str) -> None:
        run = self.store.get(run_id)
        state = run.node_states[node_key]
        if state.status != NodeStatus.PENDING:
            logger.debug(f"Collector {node_key} is {state.status.value}, not evaluating")
            return
        self._settle(graph, run, node_key, NodeStatus.PENDING)

    def retry(self, graph: ExecutionGraph, run: Run, node_key: str) -> None:
        region_keys = self._region_keys(graph, run, node_key)
        in_flight = [
            key
            for key in region_keys
            if run.node_states[key].status
            in (NodeStatus.RUNNING, NodeStatus.WAITING_FOR_USER)
        ]
        if in_flight:
            raise RetryNotAllowedError(
                f"Collector {node_key} still has branches in flight: {', '.join(in_flight)}"
            )
        failed = [key for key in region_keys if run.node_states[key].status == NodeStatus.FAILED]
        if failed:
            raise RetryNotAllowedError(
                f"Collector {node_key} still has failed branches: {', '.join(failed)}. "
                f"Retry them first."
            )
        if not self._settle(graph, run, node_key, NodeStatus.FAILED):
            raise RetryNotAllowedError(
                f"Collector {node_key} cannot settle yet: upstream nodes are not all "
                f"completed"
            )

    def _region_keys(self, graph: ExecutionGraph, run: Run, node_key: str) -> list[str]:
        """Instance keys of region nodes that feed this collector."""
        feeding = set(graph.collector_feeds.get(node_key, []))
        splitters = {
            graph.region_of[u] for u in graph.upstream[node_key] if u in graph.region_of
        }
        return [
            key
            for splitter in sorted(splitters)
            for member in graph.split_regions[splitter]
            if member in feeding
            for key in instance_keys(run.node_states, member)
        ]

    def _settle(
        self, graph: ExecutionGraph, run: Run, node_key: str, from_status: NodeStatus
    ) -> bool:
        """Complete or fail the collector if its upstreams allow it.

        Returns False when it has to keep waiting.
        """
        upstreams = graph.upstream[node_key]
        parallel = [u for u in upstreams if u in graph.region_of]
        static = [u for u in upstreams if u not in graph.region_of]

        static_ready = all(run.status_of(u) == NodeStatus.COMPLETED for u in static)

        if not parallel:
            # Pass-through: ordered list of static upstream outputs
            completed = sum(1 for u in static if run.status_of(u) == NodeStatus.COMPLETED)
            if static_ready:
                outputs = [run.node_states[u].output for u in static]
                self._complete(run, node_key, from_status, outputs, completed, len(static))
                return True
            self._record_progress(run, node_key, from_status, completed, len(static))
            return False

        # Fail fast on a failure anywhere in the region, not only at its edge
        failed = [
            key
            for key in self._region_keys(graph, run, node_key)
            if run.node_states[key].status == NodeStatus.FAILED
        ]

        splitters_done = all(
            run.status_of(graph.region_of[u]) == NodeStatus.COMPLETED for u in parallel
        )
        completed = 0
        expected = 0
        outputs: list[Any] = []
        for upstream in parallel:
            keys = instance_keys(run.node_states, upstream)
            expected += len(keys)
            for key in keys:
                if run.node_states[key].status == NodeStatus.COMPLETED:
                    completed += 1
                    outputs.append(run.node_states[key].output)

        if failed:
            self._fail_collector(run, node_key, from_status, failed, completed, expected)
            return True
        if splitters_done and static_ready and completed == expected:
            # Empty split lands here with expected == 0
            self._complete(run, node_key, from_status, outputs, completed, expected)
            return True
        self._record_progress(
            run, node_key, from_status, completed, expected if splitters_done else None
        )
        return False

    def _record_progress(
        self,
        run: Run,
        node_key: str,
        from_status: NodeStatus,
        completed: int,
        expected: int | None,
    ) -> None:
        if from_status != NodeStatus.PENDING:
            return
        state = run.node_states[node_key]
        fields: dict[str, Any] = {"upstream_completed_count": completed}
        if state.expected_upstream_count is None and expected is not None:
            fields["expected_upstream_count"] = expected
        try:
            self.store.patch(
                run.id, node_key, NodeDelta(expected_status=NodeStatus.PENDING, **fields)
            )
        except IllegalTransitionError:
            # Another evaluation claimed the collector in the meantime
            return
        logger.info(
            f"Collector {node_key} waiting: {completed}/"
            f"{expected if expected is not None else '?'} upstream instance(s) completed"
        )

    def _complete(
        self,
        run: Run,
        node_key: str,
        from_status: NodeStatus,
        outputs: list[Any],
        completed: int,
        expected: int,
    ) -> None:
        claimed = self.store.try_claim(
            run.id,
            node_key,
            from_status,
            error=None,
            upstream_completed_count=completed,
            expected_upstream_count=expected,
            upstream_outputs=outputs,
        )
        if claimed is None:
            logger.debug(f"Collector {node_key} already claimed by a concurrent evaluation")
            return
        logger.info(f"Collector {node_key} collected {len(outputs)} output(s) in run {run.id}")
        self.walker.complete_node(run.id, node_key, output=outputs)

    def _fail_collector(
        self,
        run: Run,
        node_key: str,
        from_status: NodeStatus,
        failed: list[str],
        completed: int,
        expected: int,
    ) -> None:
        claimed = self.store.try_claim(
            run.id,
            node_key,
            from_status,
            upstream_completed_count=completed,
            expected_upstream_count=expected,
        )
        if claimed is None:
            logger.debug(f"Collector {node_key} already claimed by a concurrent evaluation")
            return
        self._fail(
            run.id,
            node_key,
            DependencyFailure(f"Upstream instance(s) failed: {', '.join(failed)}"),
        )


class UXHandler(NodeHandler):
    """Pauses the branch until a human supplies input."""

    def execute(self, graph: ExecutionGraph, run: Run, node_key: str, input: dict[str, Any]) -> None:
        self.store.patch(
            run.id,
            node_key,
            NodeDelta(status=NodeStatus.WAITING_FOR_USER, output=input),
        )
        logger.info(f"UX node {node_key} in run {run.id} waiting for user input")
