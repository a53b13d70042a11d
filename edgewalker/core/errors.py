"""Error taxonomy for the execution engine.

Node-level errors (DispatchError, ExtractionError, DependencyFailure) are
converted into a ``failed`` node state by the handlers that raise them; they
never escape the edge walker. Store-level errors (IllegalTransitionError,
RunNotFoundError) propagate to the caller.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from edgewalker.core.compiler import ValidationIssue
    from edgewalker.core.graph_schema import NodeStatus


class EngineError(Exception):
    """Base class for execution engine errors."""

    pass


class GraphValidationError(EngineError):
    """Graph failed compilation. Blocks run creation."""

    def __init__(self, issues: list[ValidationIssue]):
        self.issues = issues
        summary = "; ".join(issue.message for issue in issues[:5])
        more = f" (+{len(issues) - 5} more)" if len(issues) > 5 else ""
        super().__init__(f"Invalid workflow graph: {summary}{more}")


class IllegalTransitionError(EngineError):
    """A write attempted a status change the state machine does not allow."""

    def __init__(self, from_status: NodeStatus | None, to_status: NodeStatus, node_key: str = ""):
        self.from_status = from_status
        self.to_status = to_status
        self.node_key = node_key
        src = from_status.value if from_status else "<missing>"
        where = f" for '{node_key}'" if node_key else ""
        super().__init__(f"Invalid status transition from '{src}' to '{to_status.value}'{where}")


class GraphConflictError(EngineError):
    """A different graph definition is already stored under the same ref."""

    pass


class DispatchError(EngineError):
    """Worker could not be reached or configured."""

    pass


class ExtractionError(EngineError):
    """Splitter array path missing or not an array."""

    pass


class DependencyFailure(EngineError):
    """A Collector observed a failed upstream branch."""

    pass


class RunNotFoundError(EngineError):
    """No run with the given id."""

    pass


class NodeNotFoundError(EngineError):
    """Node key not present in the run or the graph."""

    pass


class RetryNotAllowedError(EngineError):
    """Retry or resume requested for a node that is not in a retryable state."""

    pass
