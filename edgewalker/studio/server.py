"""FastAPI surface of the execution engine.

This module provides:
- The worker callback contract (external workers report completion here)
- UX resume and node retry triggers
- Run creation from an editable graph, run inspection and graph validation

Every trigger is handled independently; concurrent callbacks for sibling
nodes are safe because the engine serializes node claims in SQLite. Engine
calls are synchronous and run in the thread pool.
"""

from __future__ import annotations

import logging
from typing import Any, Literal

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from edgewalker.core.compiler import ValidationIssue, compile_graph
from edgewalker.core.config import EngineConfig, load_config
from edgewalker.core.dispatch import WebhookDispatcher
from edgewalker.core.errors import (
    EngineError,
    GraphConflictError,
    GraphValidationError,
    IllegalTransitionError,
    NodeNotFoundError,
    RetryNotAllowedError,
    RunNotFoundError,
)
from edgewalker.core.graph_engine import (
    EdgeWalker,
    derive_run_status,
    failed_nodes,
    passthrough_output,
)
from edgewalker.core.graph_schema import EditableGraph, NodeType
from edgewalker.core.state import Run, RunStore

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Edgewalker API",
    description="Callback, resume, retry and run endpoints for the workflow engine",
    version="1.0.0",
)

_config: EngineConfig | None = None
_walker: EdgeWalker | None = None


def get_config() -> EngineConfig:
    global _config
    if _config is None:
        _config = load_config()
    return _config


def get_walker() -> EdgeWalker:
    """Get or create the engine instance."""
    global _walker
    if _walker is None:
        config = get_config()
        _walker = EdgeWalker(
            RunStore(config.db_path),
            dispatcher=WebhookDispatcher(timeout=config.dispatch_timeout),
            base_url=config.base_url,
        )
    return _walker


def configure(walker: EdgeWalker, config: EngineConfig | None = None) -> None:
    """Install an engine (and optionally config) for this app, e.g. from tests."""
    global _walker, _config
    _walker = walker
    if config is not None:
        _config = config


# ========== API Models ==========


class CallbackRequest(BaseModel):
    """Completion report from an external worker"""

    status: Literal["completed", "failed"]
    output: dict[str, Any] | None = None
    error: str | None = None


class CompleteRequest(BaseModel):
    """Human input for a waiting UX node"""

    output: Any = None


class StartRunRequest(BaseModel):
    """Compile a graph and start a run of it"""

    graph: EditableGraph
    input: dict[str, Any] = Field(default_factory=dict)
    entity_ref: str | None = None


class ValidateRequest(BaseModel):
    graph: EditableGraph


class RunResponse(BaseModel):
    """Run with its derived status"""

    run: Run
    status: str
    failed_nodes: list[str]

    @classmethod
    def from_run(cls, run: Run) -> RunResponse:
        return cls(run=run, status=derive_run_status(run), failed_nodes=failed_nodes(run))


def _http_error(e: EngineError) -> HTTPException:
    if isinstance(e, (RunNotFoundError, NodeNotFoundError)):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, (IllegalTransitionError, RetryNotAllowedError, GraphConflictError)):
        return HTTPException(status_code=409, detail=str(e))
    return HTTPException(status_code=400, detail=str(e))


def _issues(issues: list[ValidationIssue]) -> list[dict[str, Any]]:
    return [issue.model_dump(exclude_none=True) for issue in issues]


# ========== Engine Triggers ==========


@app.post("/api/callback/{run_id}/{node_id}")
async def worker_callback(run_id: str, node_id: str, request: CallbackRequest) -> dict[str, Any]:
    """Completion callback from an external worker."""
    walker = get_walker()
    logger.info(f"Callback for {run_id}/{node_id}: {request.status}")

    def handle() -> Run:
        run = walker.store.get(run_id)
        state = run.state(node_id)
        if state is None:
            raise NodeNotFoundError(f"Node '{node_id}' not found in run {run_id}")
        graph = walker.graph_for(run)
        kind = graph.nodes[graph.base_of(node_id)].kind
        if kind != NodeType.WORKER:
            raise HTTPException(
                status_code=409,
                detail=f"Node '{node_id}' is a {kind.value} node; only workers accept callbacks",
            )
        if request.status == "failed":
            return walker.complete_node(
                run_id, node_id, error=request.error or "Worker reported failure"
            )
        # Input fields flow through to downstream nodes
        output = passthrough_output(state.input, request.output)
        return walker.complete_node(run_id, node_id, output=output)

    try:
        run = await run_in_threadpool(handle)
    except EngineError as e:
        raise _http_error(e)
    return {"success": True, "status": derive_run_status(run)}


@app.post("/api/complete/{run_id}/{node_id}")
async def complete_ux_node(run_id: str, node_id: str, request: CompleteRequest) -> dict[str, Any]:
    """Resume a UX node that is waiting for user input."""
    walker = get_walker()
    try:
        run = await run_in_threadpool(walker.resume_node, run_id, node_id, request.output)
    except EngineError as e:
        raise _http_error(e)
    return {"success": True, "status": derive_run_status(run)}


@app.post("/api/retry/{run_id}/{node_id}")
async def retry_node(run_id: str, node_id: str) -> dict[str, Any]:
    """Retry a failed node with its stored input."""
    walker = get_walker()
    try:
        run = await run_in_threadpool(walker.retry_node, run_id, node_id)
    except EngineError as e:
        raise _http_error(e)
    return {
        "success": True,
        "node_status": run.status_of(node_id),
        "status": derive_run_status(run),
    }


# ========== Runs and Graphs ==========


@app.post("/api/runs", status_code=201)
async def start_run(request: StartRunRequest) -> RunResponse:
    """Compile a graph and start a run."""
    walker = get_walker()
    try:
        graph = compile_graph(request.graph, get_config().known_worker_types).unwrap()
    except GraphValidationError as e:
        raise HTTPException(status_code=400, detail={"validation_errors": _issues(e.issues)})
    try:
        run = await run_in_threadpool(walker.start_run, graph, request.entity_ref, request.input)
    except EngineError as e:
        raise _http_error(e)
    return RunResponse.from_run(run)


@app.get("/api/runs")
def list_runs(limit: int = 50) -> list[RunResponse]:
    """List recent runs, newest first."""
    return [RunResponse.from_run(run) for run in get_walker().store.list_runs(limit)]


@app.get("/api/runs/{run_id}")
def get_run(run_id: str) -> RunResponse:
    """Get a run with every node state."""
    try:
        run = get_walker().store.get(run_id)
    except RunNotFoundError:
        raise HTTPException(status_code=404, detail="Run not found")
    return RunResponse.from_run(run)


@app.post("/api/graphs/validate")
def validate_graph(request: ValidateRequest) -> dict[str, Any]:
    """Compile a graph without running it."""
    result = compile_graph(request.graph, get_config().known_worker_types)
    return {
        "valid": result.success,
        "errors": _issues(result.errors),
        "warnings": result.warnings,
    }
