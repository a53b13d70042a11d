"""Entity tracker notifications.

A run may be attached to an external entity (a customer, a lead). When a
worker finishes, the tracker is told the outcome and the worker's entity
movement rule so it can move the entity between sections. Notifications are
fire-and-forget: a tracker error never affects the run.
"""

import logging
from typing import Protocol

from edgewalker.core.graph_schema import EntityMovementAction

logger = logging.getLogger(__name__)


class EntityTracker(Protocol):
    def notify(
        self,
        entity_ref: str,
        node_id: str,
        outcome: str,
        movement: EntityMovementAction | None,
    ) -> None: ...


class NullEntityTracker:
    """Tracker used when none is configured."""

    def notify(self, entity_ref, node_id, outcome, movement) -> None:
        logger.debug(f"Entity {entity_ref}: {node_id} {outcome} (no tracker configured)")


def notify_safely(
    tracker: EntityTracker,
    entity_ref: str | None,
    node_id: str,
    outcome: str,
    movement: EntityMovementAction | None,
) -> None:
    if entity_ref is None:
        return
    try:
        tracker.notify(entity_ref, node_id, outcome, movement)
    except Exception as e:
        logger.warning(f"Entity tracker failed for {entity_ref} at {node_id} ({outcome}): {e}")
