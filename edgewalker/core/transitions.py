"""Node status state machine.

Single source of truth for which status changes are legal. Every write path
in the run store calls validate_transition() inside its write transaction.
"""

from edgewalker.core.errors import IllegalTransitionError
from edgewalker.core.graph_schema import NodeStatus

VALID_TRANSITIONS: dict[NodeStatus, frozenset[NodeStatus]] = {
    NodeStatus.PENDING: frozenset({NodeStatus.RUNNING}),
    NodeStatus.RUNNING: frozenset(
        {NodeStatus.COMPLETED, NodeStatus.FAILED, NodeStatus.WAITING_FOR_USER}
    ),
    NodeStatus.COMPLETED: frozenset(),  # terminal
    NodeStatus.FAILED: frozenset({NodeStatus.RUNNING}),  # retry
    NodeStatus.WAITING_FOR_USER: frozenset({NodeStatus.RUNNING}),  # resume
}


def is_valid_transition(from_status: NodeStatus | None, to_status: NodeStatus) -> bool:
    """Check a transition without raising.

    A missing ``from_status`` (unknown key) is never a valid source, and a
    same-status write is not a transition.
    """
    if from_status is None:
        return False
    return to_status in VALID_TRANSITIONS.get(from_status, frozenset())


def validate_transition(
    from_status: NodeStatus | None, to_status: NodeStatus, node_key: str = ""
) -> None:
    """Raise IllegalTransitionError if the transition is not in the table."""
    if not is_valid_transition(from_status, to_status):
        raise IllegalTransitionError(from_status, to_status, node_key)
