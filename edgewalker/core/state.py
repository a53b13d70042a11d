"""SQLite run state store.

One row per node key. Every write is a ``BEGIN IMMEDIATE`` transaction that
reads the current rows, validates each status change against the state
machine, and writes only the fields a delta carries. Concurrent callers are
serialized by SQLite, so a ``pending -> running`` claim succeeds for exactly
one of them.
"""

import json
import logging
import sqlite3
import threading
import uuid
from collections.abc import Generator, Mapping
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from edgewalker.core.compiler import ExecutionGraph
from edgewalker.core.errors import (
    GraphConflictError,
    IllegalTransitionError,
    NodeNotFoundError,
    RunNotFoundError,
)
from edgewalker.core.graph_schema import NodeStatus
from edgewalker.core.transitions import validate_transition

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


class _SafeJSONEncoder(json.JSONEncoder):
    """JSON encoder that handles datetime and Pydantic models."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, BaseModel):
            return obj.model_dump(mode="json")
        if isinstance(obj, Path):
            return str(obj)
        return super().default(obj)


def _safe_json_dumps(obj: Any) -> str:
    """Serialize object to JSON string, handling datetime and Pydantic models."""
    return json.dumps(obj, cls=_SafeJSONEncoder)


class NodeState(BaseModel):
    """Execution state of one node key."""

    status: NodeStatus = NodeStatus.PENDING
    input: Any = None
    output: Any = None
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    # Collector bookkeeping
    upstream_completed_count: int | None = None
    expected_upstream_count: int | None = None
    upstream_outputs: list[Any] | None = None


class NodeDelta(BaseModel):
    """Partial update for one node key.

    Only fields explicitly set are written. ``expected_status`` turns the
    write into a compare-and-set. ``seed`` creates a new key (a parallel
    instance) in ``status``; seeding a key that already exists is rejected.
    """

    status: NodeStatus | None = None
    expected_status: NodeStatus | None = None
    seed: bool = False

    input: Any = None
    output: Any = None
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    upstream_completed_count: int | None = None
    expected_upstream_count: int | None = None
    upstream_outputs: list[Any] | None = None

    def data_fields(self) -> dict[str, Any]:
        """The explicitly set state fields, excluding control fields."""
        return {
            name: getattr(self, name)
            for name in self.model_fields_set
            if name in _DATA_COLUMNS
        }


_JSON_COLUMNS = ("input", "output", "upstream_outputs")
_DATA_COLUMNS = (
    "input",
    "output",
    "error",
    "started_at",
    "completed_at",
    "upstream_completed_count",
    "expected_upstream_count",
    "upstream_outputs",
)


class Run(BaseModel):
    """One execution of a compiled graph."""

    id: str
    graph_ref: str
    entity_ref: str | None = None
    node_states: dict[str, NodeState] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utc_now)

    def state(self, node_key: str) -> NodeState | None:
        return self.node_states.get(node_key)

    def status_of(self, node_key: str) -> NodeStatus | None:
        state = self.node_states.get(node_key)
        return state.status if state else None


class RunStore:
    """SQLite-backed store for compiled graphs, runs and node states."""

    SCHEMA = """
    -- Compiled execution graphs, immutable per ref ("{id}@{version}")
    CREATE TABLE IF NOT EXISTS execution_graphs (
        ref TEXT PRIMARY KEY,
        graph_id TEXT NOT NULL,
        version TEXT NOT NULL,
        definition TEXT NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    CREATE TABLE IF NOT EXISTS runs (
        id TEXT PRIMARY KEY,
        graph_ref TEXT NOT NULL,
        entity_ref TEXT,
        created_at TIMESTAMP NOT NULL,
        FOREIGN KEY (graph_ref) REFERENCES execution_graphs(ref)
    );

    -- One row per node key (static id or augmented "{id}_{i}")
    CREATE TABLE IF NOT EXISTS node_states (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        run_id TEXT NOT NULL,
        node_key TEXT NOT NULL,
        status TEXT NOT NULL CHECK(status IN
            ('pending', 'running', 'completed', 'failed', 'waiting_for_user')),
        -- JSON text; TEXT affinity keeps "10" from reading back as an integer
        input TEXT,
        output TEXT,
        error TEXT,
        started_at TIMESTAMP,
        completed_at TIMESTAMP,
        upstream_completed_count INTEGER,
        expected_upstream_count INTEGER,
        upstream_outputs TEXT,
        updated_at TIMESTAMP,
        UNIQUE(run_id, node_key),
        FOREIGN KEY (run_id) REFERENCES runs(id)
    );

    CREATE INDEX IF NOT EXISTS idx_node_states_run ON node_states(run_id, status);
    CREATE INDEX IF NOT EXISTS idx_runs_created ON runs(created_at);
    """

    def __init__(self, db_path: str | Path = ".edgewalker/state.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._graph_cache: dict[str, ExecutionGraph] = {}
        self._cache_lock = threading.Lock()
        self._init_db()

    def _init_db(self) -> None:
        """Initialize database schema and enable WAL mode for better concurrency."""
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(self.SCHEMA)

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Context manager for database connections.

        Uses a 30-second busy timeout to handle concurrent access gracefully
        instead of immediately failing with "database is locked".
        """
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout = 30000")
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except sqlite3.OperationalError as e:
            conn.rollback()
            if "database is locked" in str(e):
                raise sqlite3.OperationalError(
                    f"Database locked after 30s timeout. Check for long-running transactions: {e}"
                ) from e
            raise
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """Write transaction holding the database write lock from the start."""
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            yield conn

    # --- Graphs ---

    def save_graph(self, graph: ExecutionGraph) -> None:
        """Persist a compiled graph under its ref.

        Idempotent for an identical definition. A different definition under
        an existing ref raises GraphConflictError: runs reference graphs by
        ref and must never see their graph change.
        """
        definition = graph.model_dump_json(exclude_unset=True)
        with self.transaction() as conn:
            self._save_graph(conn, graph, definition)
        with self._cache_lock:
            self._graph_cache[graph.ref] = graph

    def _save_graph(self, conn: sqlite3.Connection, graph: ExecutionGraph, definition: str) -> None:
        row = conn.execute(
            "SELECT definition FROM execution_graphs WHERE ref = ?", (graph.ref,)
        ).fetchone()
        if row is None:
            conn.execute(
                """
                INSERT INTO execution_graphs (ref, graph_id, version, definition)
                VALUES (?, ?, ?, ?)
                """,
                (graph.ref, graph.id, graph.version, definition),
            )
            logger.info(f"Stored execution graph {graph.ref}")
        elif ExecutionGraph.model_validate_json(row["definition"]) != graph:
            raise GraphConflictError(
                f"Graph '{graph.ref}' is already stored with a different definition. "
                f"Bump the version to change it."
            )

    def get_graph(self, ref: str) -> ExecutionGraph | None:
        """Get a compiled graph by ref (cached after first load)."""
        with self._cache_lock:
            cached = self._graph_cache.get(ref)
        if cached is not None:
            return cached
        with self._connect() as conn:
            row = conn.execute(
                "SELECT definition FROM execution_graphs WHERE ref = ?", (ref,)
            ).fetchone()
        if row is None:
            return None
        graph = ExecutionGraph.model_validate_json(row["definition"])
        with self._cache_lock:
            self._graph_cache[ref] = graph
        return graph

    # --- Runs ---

    def create_run(
        self,
        graph: ExecutionGraph,
        entity_ref: str | None = None,
        run_id: str | None = None,
    ) -> Run:
        """Create a run with every static node seeded as ``pending``."""
        run_id = run_id or f"run-{uuid.uuid4().hex[:12]}"
        created_at = _utc_now()
        definition = graph.model_dump_json(exclude_unset=True)
        with self.transaction() as conn:
            self._save_graph(conn, graph, definition)
            conn.execute(
                "INSERT INTO runs (id, graph_ref, entity_ref, created_at) VALUES (?, ?, ?, ?)",
                (run_id, graph.ref, entity_ref, created_at.isoformat()),
            )
            conn.executemany(
                """
                INSERT INTO node_states (run_id, node_key, status, updated_at)
                VALUES (?, ?, 'pending', ?)
                """,
                [(run_id, node_id, created_at.isoformat()) for node_id in graph.nodes],
            )
            run = self._load_run(conn, run_id)
        with self._cache_lock:
            self._graph_cache[graph.ref] = graph
        logger.info(f"Created run {run_id} for graph {graph.ref} ({len(graph.nodes)} nodes)")
        return run

    def get(self, run_id: str) -> Run:
        """Get a run with all of its node states."""
        with self._connect() as conn:
            return self._load_run(conn, run_id)

    def list_runs(self, limit: int = 50) -> list[Run]:
        """Most recent runs first."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT id FROM runs ORDER BY created_at DESC, rowid DESC LIMIT ?", (limit,)
            ).fetchall()
            return [self._load_run(conn, row["id"]) for row in rows]

    def _load_run(self, conn: sqlite3.Connection, run_id: str) -> Run:
        row = conn.execute("SELECT * FROM runs WHERE id = ?", (run_id,)).fetchone()
        if row is None:
            raise RunNotFoundError(f"Run not found: {run_id}")
        states = conn.execute(
            "SELECT * FROM node_states WHERE run_id = ? ORDER BY seq", (run_id,)
        ).fetchall()
        return Run(
            id=row["id"],
            graph_ref=row["graph_ref"],
            entity_ref=row["entity_ref"],
            created_at=datetime.fromisoformat(row["created_at"]),
            node_states={state["node_key"]: self._row_to_state(state) for state in states},
        )

    def _row_to_state(self, row: sqlite3.Row) -> NodeState:
        data: dict[str, Any] = {"status": row["status"]}
        for column in _DATA_COLUMNS:
            value = row[column]
            if value is None:
                continue
            data[column] = json.loads(value) if column in _JSON_COLUMNS else value
        return NodeState.model_validate(data)

    # --- Node state writes ---

    def patch(self, run_id: str, node_key: str, delta: NodeDelta) -> Run:
        """Atomically apply one delta. See patch_many()."""
        return self.patch_many(run_id, {node_key: delta})

    def patch_many(self, run_id: str, deltas: Mapping[str, NodeDelta]) -> Run:
        """Atomically apply deltas to several node keys.

        All-or-nothing: if any delta is rejected (illegal transition, failed
        compare-and-set, unknown key, duplicate seed) nothing is written and
        the error propagates.

        Returns:
            The run as committed by this transaction.
        """
        now = _utc_now()
        with self.transaction() as conn:
            if conn.execute("SELECT 1 FROM runs WHERE id = ?", (run_id,)).fetchone() is None:
                raise RunNotFoundError(f"Run not found: {run_id}")
            for node_key, delta in deltas.items():
                self._apply_delta(conn, run_id, node_key, delta, now)
            return self._load_run(conn, run_id)

    def _apply_delta(
        self,
        conn: sqlite3.Connection,
        run_id: str,
        node_key: str,
        delta: NodeDelta,
        now: datetime,
    ) -> None:
        row = conn.execute(
            "SELECT status FROM node_states WHERE run_id = ? AND node_key = ?",
            (run_id, node_key),
        ).fetchone()
        fields = delta.data_fields()

        if delta.seed:
            if row is not None:
                raise IllegalTransitionError(
                    NodeStatus(row["status"]), delta.status or NodeStatus.PENDING, node_key
                )
            fields["status"] = (delta.status or NodeStatus.PENDING).value
            fields["updated_at"] = now.isoformat()
            columns = ["run_id", "node_key", *fields]
            conn.execute(
                f"INSERT INTO node_states ({', '.join(columns)}) "
                f"VALUES ({', '.join('?' for _ in columns)})",
                (run_id, node_key, *(self._encode(c, v) for c, v in fields.items())),
            )
            return

        if row is None:
            raise NodeNotFoundError(f"Node '{node_key}' not found in run {run_id}")
        current = NodeStatus(row["status"])

        if delta.status is not None:
            if delta.expected_status is not None and current != delta.expected_status:
                raise IllegalTransitionError(current, delta.status, node_key)
            validate_transition(current, delta.status, node_key)
            fields["status"] = delta.status.value
            if delta.status == NodeStatus.RUNNING and "started_at" not in fields:
                fields["started_at"] = now
            if (
                delta.status in (NodeStatus.COMPLETED, NodeStatus.FAILED)
                and "completed_at" not in fields
            ):
                fields["completed_at"] = now
        elif delta.expected_status is not None and current != delta.expected_status:
            # Conditional progress write (e.g. collector counters while pending)
            raise IllegalTransitionError(current, delta.expected_status, node_key)

        if not fields:
            return
        fields["updated_at"] = now
        assignments = ", ".join(f"{column} = ?" for column in fields)
        conn.execute(
            f"UPDATE node_states SET {assignments} WHERE run_id = ? AND node_key = ?",
            (*(self._encode(c, v) for c, v in fields.items()), run_id, node_key),
        )

    @staticmethod
    def _encode(column: str, value: Any) -> Any:
        if value is None:
            return None
        if column in _JSON_COLUMNS:
            return _safe_json_dumps(value)
        if isinstance(value, datetime):
            return value.isoformat()
        return value

    def try_claim(
        self,
        run_id: str,
        node_key: str,
        from_status: NodeStatus = NodeStatus.PENDING,
        **fields: Any,
    ) -> Run | None:
        """Compare-and-set ``from_status -> running``.

        Returns the committed run if this caller won the claim, or None if
        the node was no longer in ``from_status``.
        """
        delta = NodeDelta(status=NodeStatus.RUNNING, expected_status=from_status, **fields)
        try:
            return self.patch(run_id, node_key, delta)
        except IllegalTransitionError as e:
            logger.debug(f"Claim on {run_id}/{node_key} lost: {e}")
            return None
