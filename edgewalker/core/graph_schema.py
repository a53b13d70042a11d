"""Editable workflow graph schema using Pydantic models.

This module defines the graph as the visual editor saves it: nodes carry
positions, labels and styling next to their runtime configuration, and edges
carry UI metadata next to their data mapping. The compiler in
``edgewalker.core.compiler`` turns this into an immutable ExecutionGraph.

Graphs can be loaded from YAML or JSON:

    nodes:
      - id: fetch
        type: worker
        worker_type: http_fetch
        position: {x: 0, y: 0}
    edges:
      - id: e1
        source: fetch
        target: split
        mapping: {items: "result.items"}
"""

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator


class NodeType(str, Enum):
    """Supported node types in workflow graphs"""

    WORKER = "worker"  # Delegate work to an in-process or external worker
    SPLITTER = "splitter"  # Fan out an array into parallel instances
    COLLECTOR = "collector"  # Fan in parallel instances into an ordered list
    UX = "ux"  # Wait for a human to supply input


class NodeStatus(str, Enum):
    """Execution status for node keys"""

    PENDING = "pending"  # Not fired yet
    RUNNING = "running"  # Fired, waiting for completion (sync or callback)
    COMPLETED = "completed"  # Terminal success
    FAILED = "failed"  # Failed, may be retried
    WAITING_FOR_USER = "waiting_for_user"  # UX gate awaiting human input


class InputSpec(BaseModel):
    """Declared input of a node, used for required-input validation."""

    type: Literal["string", "number", "object", "array", "boolean"] = "string"
    required: bool = False
    description: str | None = None
    default: Any = None

    @property
    def has_default(self) -> bool:
        return "default" in self.model_fields_set


class EntityMovementAction(BaseModel):
    """Where an attached entity moves when a worker finishes."""

    target_section_id: str | None = None
    complete_as: str | None = None  # success | failure | neutral
    set_entity_type: str | None = None  # customer | churned | lead


class EntityMovement(BaseModel):
    on_success: EntityMovementAction | None = None
    on_failure: EntityMovementAction | None = None


class Position(BaseModel):
    x: float = 0.0
    y: float = 0.0


class EditableNode(BaseModel):
    """Graph node as saved by the editor (runtime config plus UI metadata)."""

    id: str
    type: NodeType

    @field_validator("id")
    @classmethod
    def validate_node_id(cls, v):
        """Reject ids the engine cannot address.

        Node ids are kept exactly as given (they are the join key for every
        state lookup), so only empty ids and ids containing the "->" edge-key
        separator are refused.
        """
        if not v or not v.strip():
            raise ValueError("Node ID cannot be empty")
        if "->" in v:
            raise ValueError(f"Invalid node ID: '{v}'. Must not contain '->'.")
        return v

    worker_type: str | None = None
    config: dict[str, Any] = Field(default_factory=dict)
    inputs: dict[str, InputSpec] = Field(default_factory=dict)
    entity_movement: EntityMovement | None = None

    # UI metadata, stripped at compile time
    label: str | None = None
    position: Position | None = None
    style: dict[str, Any] | None = None
    width: float | None = None
    height: float | None = None
    parent_node: str | None = None


class EditableEdge(BaseModel):
    """Directed edge between nodes with optional data mapping"""

    id: str
    source: str
    target: str
    # target input name -> dot path into the source node's output
    mapping: dict[str, str] | None = None

    # UI metadata, stripped at compile time
    source_handle: str | None = None
    target_handle: str | None = None
    type: str | None = None
    animated: bool = False
    style: dict[str, Any] | None = None


class EditableGraph(BaseModel):
    """Complete workflow definition as edited on the canvas"""

    id: str
    name: str = ""
    description: str | None = None
    version: str = "1"

    nodes: list[EditableNode]
    edges: list[EditableEdge] = Field(default_factory=list)
