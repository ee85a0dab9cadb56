"""Job store: atomic claim/release procedures over SQLite and the async client agents use."""
from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_fixed

from exceptions import (
    JobStoreError,
    StepSequenceError,
    TestNotFoundError,
    TransientStoreError,
)
from job_types import (
    AgentIdentity,
    AgentStatus,
    QueueStats,
    ResultStatus,
    StepStatus,
    TestCase,
    TestResult,
    TestStatus,
    TestStep,
    to_datetime,
)

SCHEMA = """
CREATE TABLE IF NOT EXISTS agents (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'idle',
    browser_type TEXT,
    current_test_id TEXT,
    last_heartbeat REAL,
    registered_at REAL NOT NULL,
    total_tests_run INTEGER NOT NULL DEFAULT 0,
    successful_tests INTEGER NOT NULL DEFAULT 0,
    failed_tests INTEGER NOT NULL DEFAULT 0,
    metadata TEXT NOT NULL DEFAULT '{}'
);

CREATE TABLE IF NOT EXISTS test_cases (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT,
    url TEXT NOT NULL,
    actions TEXT NOT NULL DEFAULT '[]',
    ai_instruction TEXT,
    status TEXT NOT NULL DEFAULT 'pending',
    assigned_agent_id TEXT,
    retry_count INTEGER NOT NULL DEFAULT 0,
    max_retries INTEGER NOT NULL DEFAULT 3,
    priority INTEGER NOT NULL DEFAULT 5,
    tags TEXT NOT NULL DEFAULT '[]',
    metadata TEXT NOT NULL DEFAULT '{}',
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_test_cases_claim ON test_cases (status, priority, created_at);

CREATE TABLE IF NOT EXISTS test_results (
    id TEXT PRIMARY KEY,
    test_case_id TEXT NOT NULL REFERENCES test_cases(id),
    agent_id TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'running',
    started_at REAL NOT NULL,
    completed_at REAL,
    duration_ms INTEGER,
    error_message TEXT,
    metadata TEXT NOT NULL DEFAULT '{}'
);

CREATE TABLE IF NOT EXISTS test_steps (
    id TEXT PRIMARY KEY,
    test_result_id TEXT NOT NULL REFERENCES test_results(id),
    step_number INTEGER NOT NULL,
    action_type TEXT NOT NULL,
    action_data TEXT NOT NULL DEFAULT '{}',
    status TEXT NOT NULL DEFAULT 'running',
    screenshot_before TEXT,
    screenshot_after TEXT,
    metadata TEXT NOT NULL DEFAULT '{}',
    error_message TEXT,
    started_at REAL NOT NULL,
    completed_at REAL,
    duration_ms INTEGER,
    UNIQUE (test_result_id, step_number)
);
"""

STALE_ERROR_MESSAGE = "Agent heartbeat lost; test returned to the queue"


def _dumps(value: Any) -> str:
    return json.dumps(value if value is not None else {}, default=str)


def _loads(raw: Optional[str], default: Any) -> Any:
    if not raw:
        return default
    try:
        return json.loads(raw)
    except ValueError:
        return default


class SQLiteJobStore:
    """Single authoritative store; every status transition is one ``BEGIN IMMEDIATE`` transaction."""

    def __init__(
        self,
        db_path: str | Path,
        busy_timeout: float = 10.0,
        clock: Callable[[], float] = time.time,
        logger: Optional[logging.Logger] = None,
    ):
        self.db_path = Path(db_path).expanduser()
        self.busy_timeout = busy_timeout
        self.clock = clock
        self.logger = logger or logging.getLogger("swarm.store")
        self._init_db()

    @classmethod
    def from_config(cls, config: Any, logger: Optional[logging.Logger] = None) -> "SQLiteJobStore":
        return cls(config.database_path, busy_timeout=config.busy_timeout_seconds, logger=logger)

    # ─────────────────────────────────────────────────────────────────────────
    # Connections
    # ─────────────────────────────────────────────────────────────────────────

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout, isolation_level=None)
        except sqlite3.Error as e:
            raise TransientStoreError(f"Cannot open job store: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Write transaction holding the database write lock from the first statement."""
        with self._connect() as conn:
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.OperationalError as e:
                raise TransientStoreError(f"Job store busy: {e}") from e
            try:
                yield conn
            except sqlite3.OperationalError as e:
                conn.execute("ROLLBACK")
                raise TransientStoreError(f"Job store busy: {e}") from e
            except sqlite3.Error as e:
                conn.execute("ROLLBACK")
                raise JobStoreError(f"Job store error: {e}") from e
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            else:
                conn.execute("COMMIT")

    def _query(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        with self._connect() as conn:
            try:
                return conn.execute(sql, params).fetchall()
            except sqlite3.OperationalError as e:
                raise TransientStoreError(f"Job store busy: {e}") from e

    def _init_db(self) -> None:
        """Initialize database with schema and WAL mode."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(SCHEMA)

    # ─────────────────────────────────────────────────────────────────────────
    # Agents
    # ─────────────────────────────────────────────────────────────────────────

    def register_agent(self, identity: AgentIdentity) -> None:
        """Insert the agent row; an existing id is left untouched."""
        now = self.clock()
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO agents (id, name, status, browser_type, last_heartbeat, registered_at, metadata)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    identity.id,
                    identity.name,
                    AgentStatus(identity.status).value,
                    identity.browser_type,
                    now,
                    now,
                    _dumps(identity.metadata),
                ),
            )

    def heartbeat(self, agent_id: str, at: Optional[float] = None) -> None:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE agents SET last_heartbeat = ? WHERE id = ?",
                (self.clock() if at is None else at, agent_id),
            )

    def set_agent_status(self, agent_id: str, status: AgentStatus, current_test_id: Optional[str] = None) -> None:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE agents SET status = ?, current_test_id = ? WHERE id = ?",
                (AgentStatus(status).value, current_test_id, agent_id),
            )

    def get_agent(self, agent_id: str) -> Optional[AgentIdentity]:
        rows = self._query("SELECT * FROM agents WHERE id = ?", (agent_id,))
        return self._agent_from_row(rows[0]) if rows else None

    def list_agents(self) -> List[AgentIdentity]:
        return [self._agent_from_row(r) for r in self._query("SELECT * FROM agents ORDER BY registered_at")]

    @staticmethod
    def _agent_from_row(row: sqlite3.Row) -> AgentIdentity:
        return AgentIdentity(
            id=row["id"],
            name=row["name"],
            status=AgentStatus(row["status"]),
            browser_type=row["browser_type"],
            last_heartbeat=to_datetime(row["last_heartbeat"]),
            current_test_id=row["current_test_id"],
            total_tests_run=row["total_tests_run"],
            successful_tests=row["successful_tests"],
            failed_tests=row["failed_tests"],
            metadata=_loads(row["metadata"], {}),
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Test cases
    # ─────────────────────────────────────────────────────────────────────────

    def create_test(
        self,
        name: str,
        url: str,
        actions: Optional[List[Dict[str, Any]]] = None,
        ai_instruction: Optional[str] = None,
        *,
        description: Optional[str] = None,
        max_retries: int = 3,
        max_steps: Optional[int] = None,
        priority: int = 5,
        tags: Optional[Sequence[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        test_id: Optional[str] = None,
    ) -> str:
        """Insert a ``pending`` test case and return its id."""
        test_id = test_id or str(uuid.uuid4())
        meta = dict(metadata or {})
        if max_steps is not None:
            meta["max_steps"] = max_steps
        if ai_instruction and "mode" not in meta:
            meta["mode"] = "ai"
        now = self.clock()
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO test_cases (id, name, description, url, actions, ai_instruction, status,
                                        max_retries, priority, tags, metadata, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, 'pending', ?, ?, ?, ?, ?, ?)
                """,
                (
                    test_id,
                    name,
                    description,
                    url,
                    json.dumps(actions or []),
                    ai_instruction,
                    max_retries,
                    priority,
                    json.dumps(sorted(tags or [])),
                    _dumps(meta),
                    now,
                    now,
                ),
            )
        self.logger.info("Test case created: %s (%s)", test_id, name)
        return test_id

    def get_test(self, test_id: str) -> TestCase:
        rows = self._query("SELECT * FROM test_cases WHERE id = ?", (test_id,))
        if not rows:
            raise TestNotFoundError(test_id)
        return self._test_from_row(rows[0])

    def list_tests(self, status: Optional[TestStatus] = None) -> List[TestCase]:
        if status is None:
            rows = self._query("SELECT * FROM test_cases ORDER BY created_at")
        else:
            rows = self._query(
                "SELECT * FROM test_cases WHERE status = ? ORDER BY created_at", (TestStatus(status).value,)
            )
        return [self._test_from_row(r) for r in rows]

    def get_test_status(self, test_id: str) -> TestStatus:
        rows = self._query("SELECT status FROM test_cases WHERE id = ?", (test_id,))
        if not rows:
            raise TestNotFoundError(test_id)
        return TestStatus(rows[0]["status"])

    def cancel_test(self, test_id: str) -> bool:
        """Cancel a pending or running test out of band; agents notice at the next step boundary."""
        with self._transaction() as conn:
            cur = conn.execute(
                """
                UPDATE test_cases SET status = 'cancelled', updated_at = ?
                WHERE id = ? AND status IN ('pending', 'running')
                """,
                (self.clock(), test_id),
            )
            return cur.rowcount > 0

    @staticmethod
    def _test_from_row(row: sqlite3.Row) -> TestCase:
        return TestCase(
            id=row["id"],
            name=row["name"],
            url=row["url"],
            actions=_loads(row["actions"], []),
            ai_instruction=row["ai_instruction"],
            description=row["description"],
            status=TestStatus(row["status"]),
            retry_count=row["retry_count"],
            max_retries=row["max_retries"],
            priority=row["priority"],
            tags=set(_loads(row["tags"], [])),
            metadata=_loads(row["metadata"], {}),
            assigned_agent_id=row["assigned_agent_id"],
            created_at=to_datetime(row["created_at"]),
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Claim protocol
    # ─────────────────────────────────────────────────────────────────────────

    def claim_test(self, agent_id: str) -> Optional[str]:
        """Select the next pending test, mark it running under ``agent_id`` and return its id."""
        now = self.clock()
        with self._transaction() as conn:
            row = conn.execute(
                """
                SELECT id FROM test_cases
                WHERE status = 'pending' AND assigned_agent_id IS NULL
                ORDER BY priority ASC, created_at ASC, rowid ASC
                LIMIT 1
                """
            ).fetchone()
            if row is None:
                return None
            test_id = row["id"]
            conn.execute(
                """
                UPDATE test_cases SET status = 'running', assigned_agent_id = ?, updated_at = ?
                WHERE id = ? AND status = 'pending'
                """,
                (agent_id, now, test_id),
            )
            conn.execute(
                "UPDATE agents SET status = 'busy', current_test_id = ? WHERE id = ?",
                (test_id, agent_id),
            )
        return test_id

    def release_test(self, agent_id: str, test_id: str, status: TestStatus) -> bool:
        """Clear the assignment and set a terminal status; a no-op once already released."""
        status = TestStatus(status)
        if status not in (TestStatus.COMPLETED, TestStatus.FAILED):
            raise JobStoreError(f"release_test cannot set status {status.value}", {"test_id": test_id})
        success_inc = 1 if status == TestStatus.COMPLETED else 0
        with self._transaction() as conn:
            cur = conn.execute(
                """
                UPDATE test_cases SET status = ?, assigned_agent_id = NULL, updated_at = ?
                WHERE id = ? AND status = 'running' AND assigned_agent_id = ?
                """,
                (status.value, self.clock(), test_id, agent_id),
            )
            released = cur.rowcount > 0
            if released:
                conn.execute(
                    """
                    UPDATE agents SET status = 'idle', current_test_id = NULL,
                        total_tests_run = total_tests_run + 1,
                        successful_tests = successful_tests + ?,
                        failed_tests = failed_tests + ?
                    WHERE id = ?
                    """,
                    (success_inc, 1 - success_inc, agent_id),
                )
        return released

    def requeue_with_retry(self, test_id: str, agent_id: Optional[str] = None) -> bool:
        """Return a running test to ``pending`` iff it still has retries left.

        When this returns False the caller must release the test as failed.
        """
        with self._transaction() as conn:
            params: List[Any] = [self.clock(), test_id]
            owner_clause = ""
            if agent_id is not None:
                owner_clause = " AND assigned_agent_id = ?"
                params.append(agent_id)
            cur = conn.execute(
                f"""
                UPDATE test_cases
                SET retry_count = retry_count + 1, status = 'pending', assigned_agent_id = NULL, updated_at = ?
                WHERE id = ? AND status = 'running' AND retry_count < max_retries{owner_clause}
                """,
                params,
            )
            requeued = cur.rowcount > 0
            if requeued and agent_id is not None:
                conn.execute(
                    """
                    UPDATE agents SET status = 'idle', current_test_id = NULL,
                        total_tests_run = total_tests_run + 1, failed_tests = failed_tests + 1
                    WHERE id = ?
                    """,
                    (agent_id,),
                )
        return requeued

    def mark_stale_agents(self, stale_after: float, now: Optional[float] = None) -> int:
        """Take agents with an old heartbeat offline and requeue the tests they held."""
        now = self.clock() if now is None else now
        cutoff = now - stale_after
        with self._transaction() as conn:
            stale = [
                r["id"]
                for r in conn.execute(
                    """
                    SELECT id FROM agents
                    WHERE status != 'offline' AND COALESCE(last_heartbeat, registered_at) < ?
                    """,
                    (cutoff,),
                ).fetchall()
            ]
            if not stale:
                return 0
            marks = ",".join("?" for _ in stale)
            conn.execute(
                f"UPDATE agents SET status = 'offline', current_test_id = NULL WHERE id IN ({marks})",
                stale,
            )
            requeued = conn.execute(
                f"""
                UPDATE test_cases SET status = 'pending', assigned_agent_id = NULL, updated_at = ?
                WHERE status = 'running' AND assigned_agent_id IN ({marks})
                """,
                [now, *stale],
            ).rowcount
            conn.execute(
                f"""
                UPDATE test_steps SET status = 'failed', completed_at = ?, error_message = ?
                WHERE status = 'running' AND test_result_id IN (
                    SELECT id FROM test_results WHERE status = 'running' AND agent_id IN ({marks})
                )
                """,
                [now, STALE_ERROR_MESSAGE, *stale],
            )
            conn.execute(
                f"""
                UPDATE test_results SET status = 'failed', completed_at = ?, error_message = ?
                WHERE status = 'running' AND agent_id IN ({marks})
                """,
                [now, STALE_ERROR_MESSAGE, *stale],
            )
        self.logger.warning("Marked %d stale agent(s) offline, requeued %d test(s)", len(stale), requeued)
        return len(stale)

    # ─────────────────────────────────────────────────────────────────────────
    # Results and steps
    # ─────────────────────────────────────────────────────────────────────────

    def create_result(self, test_case_id: str, agent_id: str, metadata: Optional[Dict[str, Any]] = None) -> str:
        result_id = str(uuid.uuid4())
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO test_results (id, test_case_id, agent_id, status, started_at, metadata)
                VALUES (?, ?, ?, 'running', ?, ?)
                """,
                (result_id, test_case_id, agent_id, self.clock(), _dumps(metadata)),
            )
        return result_id

    def finish_result(
        self,
        result_id: str,
        status: ResultStatus,
        error_message: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Close a running result; results already closed (e.g. by stale reclamation) are left alone."""
        now = self.clock()
        with self._transaction() as conn:
            row = conn.execute("SELECT started_at, metadata FROM test_results WHERE id = ?", (result_id,)).fetchone()
            if row is None:
                raise JobStoreError(f"Test result not found: {result_id}", {"test_result_id": result_id})
            merged = {**_loads(row["metadata"], {}), **(metadata or {})}
            conn.execute(
                """
                UPDATE test_results
                SET status = ?, completed_at = ?, duration_ms = ?, error_message = ?, metadata = ?
                WHERE id = ? AND status = 'running'
                """,
                (
                    ResultStatus(status).value,
                    now,
                    int((now - row["started_at"]) * 1000),
                    error_message,
                    _dumps(merged),
                    result_id,
                ),
            )

    def create_step(
        self,
        test_result_id: str,
        step_number: int,
        action_data: Dict[str, Any],
        screenshot_before: Optional[str] = None,
    ) -> str:
        """Open step ``step_number``; it must directly follow the last step and none may be running."""
        step_id = str(uuid.uuid4())
        with self._transaction() as conn:
            row = conn.execute(
                """
                SELECT COALESCE(MAX(step_number), 0) AS last,
                       SUM(CASE WHEN status = 'running' THEN 1 ELSE 0 END) AS running
                FROM test_steps WHERE test_result_id = ?
                """,
                (test_result_id,),
            ).fetchone()
            if step_number != row["last"] + 1:
                raise StepSequenceError(
                    f"Step {step_number} does not follow step {row['last']}", test_result_id, step_number
                )
            if row["running"]:
                raise StepSequenceError("Another step is still running", test_result_id, step_number)
            conn.execute(
                """
                INSERT INTO test_steps (id, test_result_id, step_number, action_type, action_data,
                                        status, screenshot_before, started_at)
                VALUES (?, ?, ?, ?, ?, 'running', ?, ?)
                """,
                (
                    step_id,
                    test_result_id,
                    step_number,
                    str(action_data.get("type") or "unknown"),
                    _dumps(action_data),
                    screenshot_before,
                    self.clock(),
                ),
            )
        return step_id

    def finish_step(
        self,
        step_id: str,
        status: StepStatus,
        screenshot_after: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> None:
        now = self.clock()
        with self._transaction() as conn:
            row = conn.execute("SELECT started_at FROM test_steps WHERE id = ?", (step_id,)).fetchone()
            if row is None:
                raise JobStoreError(f"Test step not found: {step_id}", {"step_id": step_id})
            conn.execute(
                """
                UPDATE test_steps
                SET status = ?, completed_at = ?, duration_ms = ?,
                    screenshot_after = COALESCE(?, screenshot_after), metadata = ?, error_message = ?
                WHERE id = ?
                """,
                (
                    StepStatus(status).value,
                    now,
                    int((now - row["started_at"]) * 1000),
                    screenshot_after,
                    _dumps(metadata),
                    error_message,
                    step_id,
                ),
            )

    def get_result(self, result_id: str) -> TestResult:
        rows = self._query("SELECT * FROM test_results WHERE id = ?", (result_id,))
        if not rows:
            raise JobStoreError(f"Test result not found: {result_id}", {"test_result_id": result_id})
        return self._result_from_row(rows[0])

    def list_results(self, test_case_id: str) -> List[TestResult]:
        rows = self._query(
            "SELECT * FROM test_results WHERE test_case_id = ? ORDER BY started_at, rowid", (test_case_id,)
        )
        return [self._result_from_row(r) for r in rows]

    def _result_from_row(self, row: sqlite3.Row) -> TestResult:
        steps = [
            TestStep(
                id=s["id"],
                test_result_id=s["test_result_id"],
                step_number=s["step_number"],
                action_type=s["action_type"],
                action_data=_loads(s["action_data"], {}),
                status=StepStatus(s["status"]),
                screenshot_before=s["screenshot_before"],
                screenshot_after=s["screenshot_after"],
                metadata=_loads(s["metadata"], {}),
                error_message=s["error_message"],
                started_at=to_datetime(s["started_at"]),
                completed_at=to_datetime(s["completed_at"]),
                duration_ms=s["duration_ms"],
            )
            for s in self._query(
                "SELECT * FROM test_steps WHERE test_result_id = ? ORDER BY step_number", (row["id"],)
            )
        ]
        return TestResult(
            id=row["id"],
            test_case_id=row["test_case_id"],
            agent_id=row["agent_id"],
            status=ResultStatus(row["status"]),
            started_at=to_datetime(row["started_at"]),
            completed_at=to_datetime(row["completed_at"]),
            duration_ms=row["duration_ms"],
            error_message=row["error_message"],
            metadata=_loads(row["metadata"], {}),
            steps=steps,
        )

    def stats(self) -> QueueStats:
        stats = QueueStats()
        for row in self._query(
            """
            SELECT status, COUNT(*) AS n, SUM(total_tests_run) AS runs,
                   SUM(successful_tests) AS ok, SUM(failed_tests) AS bad
            FROM agents GROUP BY status
            """
        ):
            stats.agents[row["status"]] = row["n"]
            stats.total_tests_run += row["runs"] or 0
            stats.successful_tests += row["ok"] or 0
            stats.failed_tests += row["bad"] or 0
        for row in self._query("SELECT status, COUNT(*) AS n FROM test_cases GROUP BY status"):
            stats.tests[row["status"]] = row["n"]
        return stats


_store_retry = retry(
    stop=stop_after_attempt(5),
    wait=wait_fixed(1.0),
    retry=retry_if_exception_type(TransientStoreError),
    reraise=True,
)


class JobStoreClient:
    """Async accessor agents use; every call runs the store procedure off the event loop.

    ``claim_test`` is not retried here: the agent loop polls it with its own backoff.
    Writes that must not be lost retry transient failures with a fixed wait.
    """

    def __init__(self, store: SQLiteJobStore, logger: Optional[logging.Logger] = None):
        self.store = store
        self.logger = logger or logging.getLogger("swarm.store")

    async def _run(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        return await asyncio.to_thread(fn, *args, **kwargs)

    async def claim_test(self, agent_id: str) -> Optional[str]:
        return await self._run(self.store.claim_test, agent_id)

    @_store_retry
    async def release_test(self, agent_id: str, test_id: str, status: TestStatus) -> bool:
        return await self._run(self.store.release_test, agent_id, test_id, status)

    @_store_retry
    async def requeue_with_retry(self, test_id: str, agent_id: Optional[str] = None) -> bool:
        return await self._run(self.store.requeue_with_retry, test_id, agent_id)

    async def mark_stale_agents(self, stale_after: float) -> int:
        return await self._run(self.store.mark_stale_agents, stale_after)

    @_store_retry
    async def register_agent(self, identity: AgentIdentity) -> None:
        await self._run(self.store.register_agent, identity)

    async def heartbeat(self, agent_id: str) -> None:
        await self._run(self.store.heartbeat, agent_id)

    @_store_retry
    async def set_agent_status(
        self, agent_id: str, status: AgentStatus, current_test_id: Optional[str] = None
    ) -> None:
        await self._run(self.store.set_agent_status, agent_id, status, current_test_id)

    @_store_retry
    async def get_test(self, test_id: str) -> TestCase:
        return await self._run(self.store.get_test, test_id)

    async def get_test_status(self, test_id: str) -> TestStatus:
        return await self._run(self.store.get_test_status, test_id)

    @_store_retry
    async def create_result(
        self, test_case_id: str, agent_id: str, metadata: Optional[Dict[str, Any]] = None
    ) -> str:
        return await self._run(self.store.create_result, test_case_id, agent_id, metadata)

    @_store_retry
    async def finish_result(
        self,
        result_id: str,
        status: ResultStatus,
        error_message: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        await self._run(self.store.finish_result, result_id, status, error_message, metadata)

    @_store_retry
    async def create_step(
        self,
        test_result_id: str,
        step_number: int,
        action_data: Dict[str, Any],
        screenshot_before: Optional[str] = None,
    ) -> str:
        return await self._run(self.store.create_step, test_result_id, step_number, action_data, screenshot_before)

    @_store_retry
    async def finish_step(
        self,
        step_id: str,
        status: StepStatus,
        screenshot_after: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> None:
        await self._run(self.store.finish_step, step_id, status, screenshot_after, metadata, error_message)

    async def stats(self) -> QueueStats:
        return await self._run(self.store.stats)
