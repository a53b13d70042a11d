"""In-process worker delegates.

A registry maps ``worker_type`` to a callable that does the work inside the
engine process and returns the node output synchronously. It is handed to
the edge walker at construction; there is no module-level registry.
"""

import logging
from collections.abc import Callable, Iterator
from typing import Any

logger = logging.getLogger(__name__)


WorkerDelegate = Callable[[dict[str, Any], dict[str, Any]], Any]
"""``delegate(input, config) -> output``. Raising fails the node."""


class WorkerRegistry:
    """Capability map ``worker_type -> delegate``."""

    def __init__(self, delegates: dict[str, WorkerDelegate] | None = None):
        self._delegates: dict[str, WorkerDelegate] = dict(delegates or {})

    def register(self, worker_type: str, delegate: WorkerDelegate) -> None:
        if worker_type in self._delegates:
            logger.warning(f"Replacing delegate for worker type '{worker_type}'")
        self._delegates[worker_type] = delegate

    def get(self, worker_type: str | None) -> WorkerDelegate | None:
        if worker_type is None:
            return None
        return self._delegates.get(worker_type)

    def __contains__(self, worker_type: object) -> bool:
        return worker_type in self._delegates

    def __iter__(self) -> Iterator[str]:
        return iter(self._delegates)

    def types(self) -> list[str]:
        return sorted(self._delegates)
