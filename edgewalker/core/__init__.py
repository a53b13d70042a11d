"""Core modules for the edgewalker engine."""

from edgewalker.core.compiler import CompileResult, ExecutionGraph, compile_graph
from edgewalker.core.graph_engine import EdgeWalker, derive_run_status, failed_nodes
from edgewalker.core.graph_schema import EditableGraph, NodeStatus, NodeType
from edgewalker.core.registry import WorkerRegistry
from edgewalker.core.state import NodeDelta, NodeState, Run, RunStore

__all__ = [
    "CompileResult",
    "EdgeWalker",
    "EditableGraph",
    "ExecutionGraph",
    "NodeDelta",
    "NodeState",
    "NodeStatus",
    "NodeType",
    "Run",
    "RunStore",
    "WorkerRegistry",
    "compile_graph",
    "derive_run_status",
    "failed_nodes",
]
