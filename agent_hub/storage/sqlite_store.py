from __future__ import annotations

import json
import os
import sqlite3
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

from agent_hub.storage.change_feed import ChangeEvent, ChangeFeed, feed_for


SCHEMA_VERSION = 1


# Primary key column per table; used when publishing row changes.
_PK_COLUMNS: dict[str, str] = {
    "agents": "agent_id",
    "jobs": "job_id",
    "executions": "execution_id",
    "suite_executions": "suite_execution_id",
    "tests": "test_id",
    "test_cases": "test_case_id",
}


def _utc_ts() -> float:
    return time.time()


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def _json_dumps(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))


def decode_json(raw: Any, default: Any) -> Any:
    if raw is None:
        return default
    try:
        return json.loads(raw)
    except Exception:
        return default


def default_db_path() -> str:
    return os.getenv("AGENT_HUB_SQLITE_PATH", "data/agent_hub.db")


def row_to_dict(row: sqlite3.Row | None) -> dict[str, Any] | None:
    """Convert a row into a plain dict, decoding `*_json` columns.

    `browsers_json` becomes `browsers`, `config_json` becomes `config`, etc.
    """
    if row is None:
        return None
    out: dict[str, Any] = {}
    for key in row.keys():
        value = row[key]
        if key.endswith("_json"):
            out[key[: -len("_json")]] = decode_json(value, None)
        else:
            out[key] = value
    return out


@dataclass(frozen=True)
class AgentRecord:
    agent_id: str
    agent_name: str
    created_at: float
    status: str | None
    capacity: int


@dataclass(frozen=True)
class JobRecord:
    job_id: str
    test_id: str
    run_id: str
    created_at: float
    status: str
    priority: int


@dataclass(frozen=True)
class ExecutionRecord:
    execution_id: str
    test_id: str
    job_id: str | None
    created_at: float
    status: str
    total_steps: int


@dataclass(frozen=True)
class SuiteExecutionRecord:
    suite_execution_id: str
    suite_id: str
    mode: str
    run_id: str | None
    created_at: float
    status: str
    total_tests: int


@dataclass(frozen=True)
class TestRecord:
    test_id: str
    created_at: float
    name: str
    base_url: str
    status: str


class SQLiteStore:
    """SQLite-backed store for agents, the job queue and execution records.

    - One connection per store instance; open a store per request/thread.
    - Every committed row change is published to the change feed shared by all
      stores opened on the same database file.
    - Multi-row writes go through `transaction()`; claims and terminal writes are
      compare-and-swap updates guarded on the current status.
    """

    def __init__(self, db_path: str | Path | None = None) -> None:
        self.db_path = Path(db_path or default_db_path()).expanduser().resolve()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self.db_path), timeout=30)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON;")
        self._conn.execute("PRAGMA journal_mode = WAL;")
        self._conn.execute("PRAGMA synchronous = NORMAL;")

        self._feed = feed_for(self.db_path)
        self._pending_changes: list[tuple[str, str, str]] = []

        self._init_schema()

    @property
    def feed(self) -> ChangeFeed:
        return self._feed

    def close(self) -> None:
        self._conn.close()

    @contextmanager
    def transaction(self, *, mode: str = "IMMEDIATE") -> Iterable[None]:
        """Context manager for an explicit SQLite transaction.

        Changes noted inside the block are published only after the commit
        succeeds; a rollback discards them.
        """
        self._conn.execute(f"BEGIN {mode};")
        try:
            yield
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            self._pending_changes.clear()
            raise
        self._flush_changes()

    def commit(self) -> None:
        self._conn.commit()
        self._flush_changes()

    def _note_change(self, table: str, row_id: str, event: str) -> None:
        self._pending_changes.append((table, row_id, event))

    def _flush_changes(self) -> None:
        if not self._pending_changes:
            return
        changes = list(self._pending_changes)
        self._pending_changes.clear()
        for table, row_id, event in changes:
            new: dict[str, Any] | None = None
            if event != "DELETE":
                pk = _PK_COLUMNS[table]
                new = row_to_dict(
                    self._conn.execute(f"SELECT * FROM {table} WHERE {pk} = ? LIMIT 1;", (row_id,)).fetchone()
                )
            self._feed.publish(ChangeEvent(table=table, row_id=row_id, event=event, new=new))

    def _init_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS meta (
              key TEXT PRIMARY KEY,
              value TEXT NOT NULL
            );
            """
        )

        # Schema v1: agents, activity, tests, jobs, executions, suites, idempotency keys.
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS agents (
              agent_id TEXT PRIMARY KEY,
              agent_name TEXT NOT NULL,
              created_at REAL NOT NULL,
              updated_at REAL NOT NULL,
              status TEXT,
              last_heartbeat REAL,
              capacity INTEGER NOT NULL CHECK (capacity >= 1),
              running_jobs INTEGER NOT NULL DEFAULT 0 CHECK (running_jobs >= 0),
              browsers_json TEXT NOT NULL,
              config_json TEXT NOT NULL,
              api_token_hash TEXT
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS agent_activity (
              activity_id TEXT PRIMARY KEY,
              agent_id TEXT NOT NULL,
              created_at REAL NOT NULL,
              activity_type TEXT NOT NULL,
              payload_json TEXT NOT NULL
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS test_cases (
              test_case_id TEXT PRIMARY KEY,
              created_at REAL NOT NULL,
              updated_at REAL NOT NULL,
              title TEXT NOT NULL,
              status TEXT NOT NULL
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS tests (
              test_id TEXT PRIMARY KEY,
              created_at REAL NOT NULL,
              updated_at REAL NOT NULL,
              name TEXT NOT NULL,
              base_url TEXT NOT NULL,
              steps_json TEXT NOT NULL,
              status TEXT NOT NULL,
              test_case_id TEXT,
              FOREIGN KEY (test_case_id) REFERENCES test_cases(test_case_id) ON DELETE SET NULL
            );
            """
        )
        # No foreign key on agent_id: in-page agents claim jobs without an agents row.
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS jobs (
              job_id TEXT PRIMARY KEY,
              test_id TEXT NOT NULL,
              run_id TEXT NOT NULL,
              agent_id TEXT,
              status TEXT NOT NULL,
              priority INTEGER NOT NULL,
              retries INTEGER NOT NULL DEFAULT 0,
              max_retries INTEGER NOT NULL,
              created_at REAL NOT NULL,
              started_at REAL,
              completed_at REAL,
              error_message TEXT,
              result_json TEXT,
              config_json TEXT NOT NULL,
              FOREIGN KEY (test_id) REFERENCES tests(test_id) ON DELETE CASCADE
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS executions (
              execution_id TEXT PRIMARY KEY,
              test_id TEXT NOT NULL,
              job_id TEXT,
              status TEXT NOT NULL,
              results_json TEXT NOT NULL,
              total_steps INTEGER NOT NULL,
              error_message TEXT,
              created_at REAL NOT NULL,
              updated_at REAL NOT NULL,
              started_at REAL,
              completed_at REAL,
              FOREIGN KEY (test_id) REFERENCES tests(test_id) ON DELETE CASCADE
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS suites (
              suite_id TEXT PRIMARY KEY,
              created_at REAL NOT NULL,
              name TEXT NOT NULL
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS suite_tests (
              suite_id TEXT NOT NULL,
              test_id TEXT NOT NULL,
              position INTEGER NOT NULL,
              PRIMARY KEY (suite_id, test_id),
              FOREIGN KEY (suite_id) REFERENCES suites(suite_id) ON DELETE CASCADE,
              FOREIGN KEY (test_id) REFERENCES tests(test_id) ON DELETE CASCADE
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS suite_executions (
              suite_execution_id TEXT PRIMARY KEY,
              suite_id TEXT NOT NULL,
              mode TEXT NOT NULL,
              run_id TEXT,
              status TEXT NOT NULL,
              total_tests INTEGER NOT NULL,
              passed_tests INTEGER NOT NULL DEFAULT 0,
              failed_tests INTEGER NOT NULL DEFAULT 0,
              results_json TEXT NOT NULL,
              error_message TEXT,
              created_at REAL NOT NULL,
              started_at REAL,
              completed_at REAL,
              CHECK (passed_tests >= 0 AND failed_tests >= 0),
              CHECK (passed_tests + failed_tests <= total_tests),
              FOREIGN KEY (suite_id) REFERENCES suites(suite_id) ON DELETE CASCADE
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS idempotency_keys (
              key TEXT PRIMARY KEY,
              created_at REAL NOT NULL,
              request_hash TEXT NOT NULL,
              response_json TEXT NOT NULL
            );
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_activity_agent_ts ON agent_activity(agent_id, created_at);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_jobs_status_priority ON jobs(status, priority, created_at);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_jobs_created_id ON jobs(created_at, job_id);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_jobs_run ON jobs(run_id);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_jobs_agent ON jobs(agent_id, created_at);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_executions_test_ts ON executions(test_id, created_at);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_executions_job ON executions(job_id);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_suite_tests_pos ON suite_tests(suite_id, position);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_suite_exec_run ON suite_executions(run_id);")

        cur.execute(
            "INSERT OR IGNORE INTO meta(key, value) VALUES(?, ?);",
            ("schema_version", str(int(SCHEMA_VERSION))),
        )
        self._conn.commit()

        self._check_schema_version()

    def _get_schema_version(self) -> int:
        row = self._conn.execute("SELECT value FROM meta WHERE key = ?;", ("schema_version",)).fetchone()
        if row is None:
            return 0
        try:
            return int(row["value"])
        except Exception:
            return 0

    def _check_schema_version(self) -> None:
        current = self._get_schema_version()
        target = int(SCHEMA_VERSION)
        if current > target:
            raise RuntimeError(f"DB schema_version={current} is newer than code expects ({target}).")
        if current < target:
            raise RuntimeError(f"Missing migration step for schema_version={current} -> {target}")

    # --- Idempotency (API support)
    def get_idempotency(self, key: str) -> sqlite3.Row | None:
        return self._conn.execute(
            "SELECT key, created_at, request_hash, response_json FROM idempotency_keys WHERE key = ? LIMIT 1;",
            (key,),
        ).fetchone()

    def put_idempotency(self, *, key: str, request_hash: str, response_json: str, commit: bool = True) -> None:
        self._conn.execute(
            """
            INSERT INTO idempotency_keys(key, created_at, request_hash, response_json)
            VALUES(?, ?, ?, ?)
            ON CONFLICT(key) DO NOTHING;
            """,
            (key, _utc_ts(), request_hash, response_json),
        )
        if commit:
            self.commit()

    # --- Agents
    def create_agent(
        self,
        *,
        agent_id: str,
        agent_name: str,
        api_token_hash: str | None,
        capacity: int,
        browsers: list[str],
        config: dict[str, Any] | None = None,
        status: str | None = "offline",
        commit: bool = True,
    ) -> AgentRecord:
        """Insert a new agent row. Raises sqlite3.IntegrityError on a duplicate id."""
        created_at = _utc_ts()
        self._conn.execute(
            """
            INSERT INTO agents(
              agent_id, agent_name, created_at, updated_at, status, last_heartbeat,
              capacity, running_jobs, browsers_json, config_json, api_token_hash
            ) VALUES(?, ?, ?, ?, ?, NULL, ?, 0, ?, ?, ?);
            """,
            (
                agent_id,
                agent_name,
                created_at,
                created_at,
                status,
                int(capacity),
                _json_dumps(list(browsers)),
                _json_dumps(config or {}),
                api_token_hash,
            ),
        )
        self._note_change("agents", agent_id, "INSERT")
        if commit:
            self.commit()
        return AgentRecord(
            agent_id=agent_id,
            agent_name=agent_name,
            created_at=created_at,
            status=status,
            capacity=int(capacity),
        )

    def get_agent(self, *, agent_id: str) -> sqlite3.Row | None:
        return self._conn.execute(
            """
            SELECT
              agent_id, agent_name, created_at, updated_at, status, last_heartbeat,
              capacity, running_jobs, browsers_json, config_json
            FROM agents
            WHERE agent_id = ?
            LIMIT 1;
            """,
            (agent_id,),
        ).fetchone()

    def get_agent_by_token_hash(self, *, api_token_hash: str) -> sqlite3.Row | None:
        return self._conn.execute(
            """
            SELECT
              agent_id, agent_name, created_at, updated_at, status, last_heartbeat,
              capacity, running_jobs, browsers_json, config_json
            FROM agents
            WHERE api_token_hash = ?
            LIMIT 1;
            """,
            (api_token_hash,),
        ).fetchone()

    def list_agents(self) -> list[dict[str, Any]]:
        rows = self._conn.execute(
            """
            SELECT
              agent_id, agent_name, created_at, updated_at, status, last_heartbeat,
              capacity, running_jobs, browsers_json, config_json
            FROM agents
            ORDER BY created_at DESC, agent_id DESC;
            """
        ).fetchall()
        return [row_to_dict(r) for r in rows]  # type: ignore[misc]

    def update_agent_heartbeat(
        self,
        *,
        agent_id: str,
        status: str,
        capacity: int | None = None,
        running_jobs: int | None = None,
        browsers: list[str] | None = None,
        system_info: dict[str, Any] | None = None,
    ) -> bool:
        """Record a heartbeat. Returns False when no row exists for `agent_id`."""
        row = self._conn.execute("SELECT config_json FROM agents WHERE agent_id = ?;", (agent_id,)).fetchone()
        if row is None:
            return False
        config = decode_json(row["config_json"], {})
        if not isinstance(config, dict):
            config = {}
        if system_info is not None:
            config["system_info"] = system_info

        ts = _utc_ts()
        self._conn.execute(
            """
            UPDATE agents
            SET
              status = ?,
              last_heartbeat = ?,
              updated_at = ?,
              capacity = COALESCE(?, capacity),
              running_jobs = COALESCE(?, running_jobs),
              browsers_json = COALESCE(?, browsers_json),
              config_json = ?
            WHERE agent_id = ?;
            """,
            (
                status,
                ts,
                ts,
                int(capacity) if capacity is not None else None,
                int(running_jobs) if running_jobs is not None else None,
                _json_dumps(list(browsers)) if browsers is not None else None,
                _json_dumps(config),
                agent_id,
            ),
        )
        self._note_change("agents", agent_id, "UPDATE")
        self.commit()
        return True

    def delete_agent(self, *, agent_id: str) -> bool:
        cur = self._conn.execute("DELETE FROM agents WHERE agent_id = ?;", (agent_id,))
        if cur.rowcount:
            self._note_change("agents", agent_id, "DELETE")
        self.commit()
        return bool(cur.rowcount)

    # --- Agent activity (trace)
    def append_activity(
        self, *, agent_id: str, activity_type: str, payload: dict[str, Any], commit: bool = True
    ) -> str:
        activity_id = _new_id("act")
        self._conn.execute(
            """
            INSERT INTO agent_activity(activity_id, agent_id, created_at, activity_type, payload_json)
            VALUES(?, ?, ?, ?, ?);
            """,
            (activity_id, agent_id, _utc_ts(), activity_type, _json_dumps(payload)),
        )
        if commit:
            self.commit()
        return activity_id

    def list_activity(self, *, agent_id: str, limit: int = 50) -> list[dict[str, Any]]:
        rows = self._conn.execute(
            """
            SELECT activity_id, agent_id, created_at, activity_type, payload_json
            FROM agent_activity
            WHERE agent_id = ?
            ORDER BY created_at DESC, activity_id DESC
            LIMIT ?;
            """,
            (agent_id, int(limit)),
        ).fetchall()
        return [row_to_dict(r) for r in rows]  # type: ignore[misc]

    # --- Tests / test cases
    def create_test_case(self, *, title: str, status: str = "draft") -> str:
        test_case_id = _new_id("tc")
        ts = _utc_ts()
        self._conn.execute(
            "INSERT INTO test_cases(test_case_id, created_at, updated_at, title, status) VALUES(?, ?, ?, ?, ?);",
            (test_case_id, ts, ts, title, status),
        )
        self._note_change("test_cases", test_case_id, "INSERT")
        self.commit()
        return test_case_id

    def get_test_case(self, *, test_case_id: str) -> sqlite3.Row | None:
        return self._conn.execute(
            "SELECT test_case_id, created_at, updated_at, title, status FROM test_cases WHERE test_case_id = ?;",
            (test_case_id,),
        ).fetchone()

    def update_test_case_status(self, *, test_case_id: str, status: str) -> bool:
        cur = self._conn.execute(
            "UPDATE test_cases SET status = ?, updated_at = ? WHERE test_case_id = ?;",
            (status, _utc_ts(), test_case_id),
        )
        if cur.rowcount:
            self._note_change("test_cases", test_case_id, "UPDATE")
        self.commit()
        return bool(cur.rowcount)

    def create_test(
        self,
        *,
        name: str,
        base_url: str,
        steps: list[dict[str, Any]],
        test_case_id: str | None = None,
    ) -> TestRecord:
        test_id = _new_id("test")
        ts = _utc_ts()
        self._conn.execute(
            """
            INSERT INTO tests(test_id, created_at, updated_at, name, base_url, steps_json, status, test_case_id)
            VALUES(?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (test_id, ts, ts, name, base_url, _json_dumps(steps), "draft", test_case_id),
        )
        self._note_change("tests", test_id, "INSERT")
        self.commit()
        return TestRecord(test_id=test_id, created_at=ts, name=name, base_url=base_url, status="draft")

    def get_test(self, *, test_id: str) -> sqlite3.Row | None:
        return self._conn.execute(
            """
            SELECT test_id, created_at, updated_at, name, base_url, steps_json, status, test_case_id
            FROM tests
            WHERE test_id = ?
            LIMIT 1;
            """,
            (test_id,),
        ).fetchone()

    def update_test_status(self, *, test_id: str, status: str) -> bool:
        cur = self._conn.execute(
            "UPDATE tests SET status = ?, updated_at = ? WHERE test_id = ?;",
            (status, _utc_ts(), test_id),
        )
        if cur.rowcount:
            self._note_change("tests", test_id, "UPDATE")
        self.commit()
        return bool(cur.rowcount)

    # --- Jobs
    def create_job(
        self,
        *,
        test_id: str,
        run_id: str,
        priority: int,
        max_retries: int,
        config: dict[str, Any],
        agent_id: str | None = None,
        commit: bool = True,
    ) -> JobRecord:
        job_id = _new_id("job")
        created_at = _utc_ts()
        self._conn.execute(
            """
            INSERT INTO jobs(
              job_id, test_id, run_id, agent_id, status, priority, retries, max_retries,
              created_at, config_json
            ) VALUES(?, ?, ?, ?, 'pending', ?, 0, ?, ?, ?);
            """,
            (job_id, test_id, run_id, agent_id, int(priority), int(max_retries), created_at, _json_dumps(config)),
        )
        self._note_change("jobs", job_id, "INSERT")
        if commit:
            self.commit()
        return JobRecord(
            job_id=job_id,
            test_id=test_id,
            run_id=run_id,
            created_at=created_at,
            status="pending",
            priority=int(priority),
        )

    def get_job(self, *, job_id: str) -> sqlite3.Row | None:
        return self._conn.execute(
            """
            SELECT
              job_id, test_id, run_id, agent_id, status, priority, retries, max_retries,
              created_at, started_at, completed_at, error_message, result_json, config_json
            FROM jobs
            WHERE job_id = ?
            LIMIT 1;
            """,
            (job_id,),
        ).fetchone()

    def list_jobs_page(
        self,
        *,
        limit: int,
        cursor: tuple[float, str] | None,
        statuses: list[str] | None,
        agent_id: str | None = None,
        run_id: str | None = None,
    ) -> dict[str, Any]:
        where = ["1=1"]
        params: list[Any] = []

        if statuses:
            where.append("status IN (%s)" % ",".join(["?"] * len(statuses)))
            params.extend(statuses)
        if agent_id:
            where.append("agent_id = ?")
            params.append(agent_id)
        if run_id:
            where.append("run_id = ?")
            params.append(run_id)

        if cursor is not None:
            created_at, job_id = cursor
            # Newest-first pagination (DESC).
            where.append("(created_at < ? OR (created_at = ? AND job_id < ?))")
            params.extend([float(created_at), float(created_at), str(job_id)])

        where_sql = " AND ".join(where)
        fetch_n = int(limit) + 1

        rows = self._conn.execute(
            f"""
            SELECT
              job_id, test_id, run_id, agent_id, status, priority, retries, max_retries,
              created_at, started_at, completed_at, error_message, result_json, config_json
            FROM jobs
            WHERE {where_sql}
            ORDER BY created_at DESC, job_id DESC
            LIMIT ?;
            """,
            (*params, fetch_n),
        ).fetchall()

        has_more = len(rows) > limit
        if has_more:
            rows = rows[:limit]

        items = [row_to_dict(r) for r in rows]

        next_cursor: tuple[float, str] | None = None
        if has_more and items:
            last = items[-1]
            next_cursor = (float(last["created_at"]), str(last["job_id"]))  # type: ignore[index]

        return {"items": items, "has_more": has_more, "next_cursor": next_cursor}

    def list_jobs_for_run(self, *, run_id: str) -> list[sqlite3.Row]:
        return self._conn.execute(
            """
            SELECT job_id, test_id, run_id, agent_id, status, error_message, created_at, completed_at
            FROM jobs
            WHERE run_id = ?
            ORDER BY created_at ASC, job_id ASC;
            """,
            (run_id,),
        ).fetchall()

    def list_recent_jobs_for_agent(self, *, agent_id: str, limit: int = 10) -> list[dict[str, Any]]:
        rows = self._conn.execute(
            """
            SELECT job_id, test_id, run_id, status, created_at, started_at, completed_at, error_message
            FROM jobs
            WHERE agent_id = ?
            ORDER BY created_at DESC, job_id DESC
            LIMIT ?;
            """,
            (agent_id, int(limit)),
        ).fetchall()
        return [row_to_dict(r) for r in rows]  # type: ignore[misc]

    def count_jobs_by_status(self, *, agent_id: str | None = None) -> dict[str, int]:
        if agent_id is None:
            rows = self._conn.execute(
                "SELECT status, COUNT(*) AS n FROM jobs GROUP BY status ORDER BY status;",
            ).fetchall()
        else:
            rows = self._conn.execute(
                "SELECT status, COUNT(*) AS n FROM jobs WHERE agent_id = ? GROUP BY status ORDER BY status;",
                (agent_id,),
            ).fetchall()
        return {str(r["status"]): int(r["n"]) for r in rows}

    def count_pending_jobs_for_agent(self, *, agent_id: str) -> int:
        row = self._conn.execute(
            "SELECT COUNT(*) AS n FROM jobs WHERE status = 'pending' AND (agent_id IS NULL OR agent_id = ?);",
            (agent_id,),
        ).fetchone()
        return int(row["n"]) if row is not None else 0

    def poll_pending_jobs(self, *, agent_id: str, limit: int) -> list[sqlite3.Row]:
        """Pending jobs an agent may claim: assigned to it or unassigned.

        Highest priority first, then oldest first.
        """
        return self._conn.execute(
            """
            SELECT job_id, test_id, run_id, agent_id, status, priority, created_at, config_json
            FROM jobs
            WHERE status = 'pending' AND (agent_id IS NULL OR agent_id = ?)
            ORDER BY priority DESC, created_at ASC, job_id ASC
            LIMIT ?;
            """,
            (agent_id, int(limit)),
        ).fetchall()

    def claim_job(self, *, job_id: str, agent_id: str, commit: bool = True) -> bool:
        """Compare-and-swap pending -> running for `agent_id`.

        Returns False when the job is no longer pending or belongs to another agent.
        """
        cur = self._conn.execute(
            """
            UPDATE jobs
            SET
              status = 'running',
              agent_id = ?,
              started_at = ?,
              completed_at = NULL
            WHERE job_id = ? AND status = 'pending' AND (agent_id IS NULL OR agent_id = ?);
            """,
            (agent_id, _utc_ts(), job_id, agent_id),
        )
        claimed = cur.rowcount == 1
        if claimed:
            self._note_change("jobs", job_id, "UPDATE")
        if commit:
            self.commit()
        return claimed

    def complete_job(
        self,
        *,
        job_id: str,
        agent_id: str,
        status: str,
        result: Any = None,
        error_message: str | None = None,
        commit: bool = True,
    ) -> bool:
        """Compare-and-swap running -> terminal, only for the claiming agent."""
        cur = self._conn.execute(
            """
            UPDATE jobs
            SET
              status = ?,
              completed_at = ?,
              result_json = ?,
              error_message = ?
            WHERE job_id = ? AND status = 'running' AND agent_id = ?;
            """,
            (
                status,
                _utc_ts(),
                _json_dumps(result) if result is not None else None,
                error_message,
                job_id,
                agent_id,
            ),
        )
        done = cur.rowcount == 1
        if done:
            self._note_change("jobs", job_id, "UPDATE")
        if commit:
            self.commit()
        return done

    def set_job_status(self, *, job_id: str, status: str, expected: Iterable[str], commit: bool = True) -> bool:
        """User-driven status change guarded on the current status.

        `pending` resets claim fields; `cancelled` stamps `completed_at`.
        """
        expected = list(expected)
        if not expected:
            return False
        placeholders = ",".join(["?"] * len(expected))
        if status == "pending":
            sql = f"""
                UPDATE jobs
                SET status = 'pending', agent_id = NULL, started_at = NULL, completed_at = NULL,
                    error_message = NULL, result_json = NULL
                WHERE job_id = ? AND status IN ({placeholders});
            """
            params: list[Any] = [job_id, *expected]
        elif status == "cancelled":
            sql = f"""
                UPDATE jobs
                SET status = 'cancelled', completed_at = ?
                WHERE job_id = ? AND status IN ({placeholders});
            """
            params = [_utc_ts(), job_id, *expected]
        else:
            sql = f"UPDATE jobs SET status = ? WHERE job_id = ? AND status IN ({placeholders});"
            params = [status, job_id, *expected]
        cur = self._conn.execute(sql, params)
        changed = cur.rowcount == 1
        if changed:
            self._note_change("jobs", job_id, "UPDATE")
        if commit:
            self.commit()
        return changed

    def delete_job(self, *, job_id: str) -> bool:
        cur = self._conn.execute("DELETE FROM jobs WHERE job_id = ?;", (job_id,))
        if cur.rowcount:
            self._note_change("jobs", job_id, "DELETE")
        self.commit()
        return bool(cur.rowcount)

    # --- Executions
    def create_execution(
        self,
        *,
        test_id: str,
        total_steps: int,
        status: str = "running",
        job_id: str | None = None,
        commit: bool = True,
    ) -> ExecutionRecord:
        execution_id = _new_id("exec")
        ts = _utc_ts()
        self._conn.execute(
            """
            INSERT INTO executions(
              execution_id, test_id, job_id, status, results_json, total_steps,
              created_at, updated_at, started_at
            ) VALUES(?, ?, ?, ?, '[]', ?, ?, ?, ?);
            """,
            (execution_id, test_id, job_id, status, int(total_steps), ts, ts, ts if status == "running" else None),
        )
        self._note_change("executions", execution_id, "INSERT")
        if commit:
            self.commit()
        return ExecutionRecord(
            execution_id=execution_id,
            test_id=test_id,
            job_id=job_id,
            created_at=ts,
            status=status,
            total_steps=int(total_steps),
        )

    def get_execution(self, *, execution_id: str) -> sqlite3.Row | None:
        return self._conn.execute(
            """
            SELECT
              execution_id, test_id, job_id, status, results_json, total_steps, error_message,
              created_at, updated_at, started_at, completed_at
            FROM executions
            WHERE execution_id = ?
            LIMIT 1;
            """,
            (execution_id,),
        ).fetchone()

    def get_execution_for_job(self, *, job_id: str) -> sqlite3.Row | None:
        return self._conn.execute(
            """
            SELECT
              execution_id, test_id, job_id, status, results_json, total_steps, error_message,
              created_at, updated_at, started_at, completed_at
            FROM executions
            WHERE job_id = ?
            ORDER BY created_at DESC, rowid DESC
            LIMIT 1;
            """,
            (job_id,),
        ).fetchone()

    def get_open_execution_for_job(self, *, job_id: str) -> sqlite3.Row | None:
        """Latest execution of a job that has not reached a terminal status."""
        row = self.get_execution_for_job(job_id=job_id)
        if row is None or str(row["status"]) in ("passed", "failed", "cancelled"):
            return None
        return row

    def list_executions_for_test(self, *, test_id: str, limit: int = 10) -> list[dict[str, Any]]:
        rows = self._conn.execute(
            """
            SELECT
              execution_id, test_id, job_id, status, results_json, total_steps, error_message,
              created_at, updated_at, started_at, completed_at
            FROM executions
            WHERE test_id = ?
            ORDER BY created_at DESC, execution_id DESC
            LIMIT ?;
            """,
            (test_id, int(limit)),
        ).fetchall()
        return [row_to_dict(r) for r in rows]  # type: ignore[misc]

    def mark_execution_running(self, *, execution_id: str, commit: bool = True) -> bool:
        ts = _utc_ts()
        cur = self._conn.execute(
            """
            UPDATE executions
            SET status = 'running', started_at = COALESCE(started_at, ?), updated_at = ?
            WHERE execution_id = ? AND status = 'pending';
            """,
            (ts, ts, execution_id),
        )
        changed = cur.rowcount == 1
        if changed:
            self._note_change("executions", execution_id, "UPDATE")
        if commit:
            self.commit()
        return changed

    def append_execution_step_result(self, *, execution_id: str, step_result: dict[str, Any]) -> bool:
        """Append one step result while the execution is still active."""
        with self.transaction(mode="IMMEDIATE"):
            row = self._conn.execute(
                "SELECT status, results_json FROM executions WHERE execution_id = ?;",
                (execution_id,),
            ).fetchone()
            if row is None or row["status"] not in ("running", "cancelling"):
                return False
            results = decode_json(row["results_json"], [])
            results.append(step_result)
            self._conn.execute(
                "UPDATE executions SET results_json = ?, updated_at = ? WHERE execution_id = ?;",
                (_json_dumps(results), _utc_ts(), execution_id),
            )
            self._note_change("executions", execution_id, "UPDATE")
        return True

    def finish_execution(
        self,
        *,
        execution_id: str,
        status: str,
        error_message: str | None = None,
        results: list[dict[str, Any]] | None = None,
        commit: bool = True,
    ) -> bool:
        """Write a terminal status. Terminal executions are never rewritten."""
        ts = _utc_ts()
        cur = self._conn.execute(
            """
            UPDATE executions
            SET
              status = ?,
              error_message = COALESCE(?, error_message),
              results_json = COALESCE(?, results_json),
              completed_at = ?,
              updated_at = ?
            WHERE execution_id = ? AND status NOT IN ('passed', 'failed', 'cancelled');
            """,
            (
                status,
                error_message,
                _json_dumps(results) if results is not None else None,
                ts,
                ts,
                execution_id,
            ),
        )
        changed = cur.rowcount == 1
        if changed:
            self._note_change("executions", execution_id, "UPDATE")
        if commit:
            self.commit()
        return changed

    def request_execution_cancel(self, *, execution_id: str) -> bool:
        """running -> cancelling. Only the executor moves it on to `cancelled`."""
        cur = self._conn.execute(
            """
            UPDATE executions
            SET status = 'cancelling', updated_at = ?
            WHERE execution_id = ? AND status = 'running';
            """,
            (_utc_ts(), execution_id),
        )
        changed = cur.rowcount == 1
        if changed:
            self._note_change("executions", execution_id, "UPDATE")
        self.commit()
        return changed

    def mark_execution_failed_if_running(self, *, execution_id: str, error_message: str) -> bool:
        ts = _utc_ts()
        cur = self._conn.execute(
            """
            UPDATE executions
            SET status = 'failed', error_message = ?, completed_at = ?, updated_at = ?
            WHERE execution_id = ? AND status = 'running';
            """,
            (error_message, ts, ts, execution_id),
        )
        changed = cur.rowcount == 1
        if changed:
            self._note_change("executions", execution_id, "UPDATE")
        self.commit()
        return changed

    # --- Suites
    def create_suite(self, *, name: str, test_ids: list[str]) -> str:
        suite_id = _new_id("suite")
        with self.transaction(mode="IMMEDIATE"):
            self._conn.execute(
                "INSERT INTO suites(suite_id, created_at, name) VALUES(?, ?, ?);",
                (suite_id, _utc_ts(), name),
            )
            for position, test_id in enumerate(test_ids):
                self._conn.execute(
                    "INSERT INTO suite_tests(suite_id, test_id, position) VALUES(?, ?, ?);",
                    (suite_id, test_id, position),
                )
        return suite_id

    def get_suite(self, *, suite_id: str) -> sqlite3.Row | None:
        return self._conn.execute(
            "SELECT suite_id, created_at, name FROM suites WHERE suite_id = ? LIMIT 1;",
            (suite_id,),
        ).fetchone()

    def list_suite_tests(self, *, suite_id: str) -> list[sqlite3.Row]:
        return self._conn.execute(
            """
            SELECT t.test_id, t.name, t.base_url, t.steps_json, t.status, t.test_case_id, st.position
            FROM suite_tests st
            JOIN tests t ON t.test_id = st.test_id
            WHERE st.suite_id = ?
            ORDER BY st.position ASC;
            """,
            (suite_id,),
        ).fetchall()

    # --- Suite executions
    def create_suite_execution(
        self,
        *,
        suite_id: str,
        mode: str,
        total_tests: int,
        status: str,
        run_id: str | None = None,
        commit: bool = True,
    ) -> SuiteExecutionRecord:
        suite_execution_id = _new_id("sexec")
        ts = _utc_ts()
        self._conn.execute(
            """
            INSERT INTO suite_executions(
              suite_execution_id, suite_id, mode, run_id, status, total_tests,
              passed_tests, failed_tests, results_json, created_at, started_at
            ) VALUES(?, ?, ?, ?, ?, ?, 0, 0, '[]', ?, ?);
            """,
            (
                suite_execution_id,
                suite_id,
                mode,
                run_id,
                status,
                int(total_tests),
                ts,
                ts if status == "running" else None,
            ),
        )
        self._note_change("suite_executions", suite_execution_id, "INSERT")
        if commit:
            self.commit()
        return SuiteExecutionRecord(
            suite_execution_id=suite_execution_id,
            suite_id=suite_id,
            mode=mode,
            run_id=run_id,
            created_at=ts,
            status=status,
            total_tests=int(total_tests),
        )

    def get_suite_execution(self, *, suite_execution_id: str) -> sqlite3.Row | None:
        return self._conn.execute(
            """
            SELECT
              suite_execution_id, suite_id, mode, run_id, status, total_tests, passed_tests,
              failed_tests, results_json, error_message, created_at, started_at, completed_at
            FROM suite_executions
            WHERE suite_execution_id = ?
            LIMIT 1;
            """,
            (suite_execution_id,),
        ).fetchone()

    def list_suite_executions(self, *, suite_id: str, limit: int = 20) -> list[dict[str, Any]]:
        rows = self._conn.execute(
            """
            SELECT
              suite_execution_id, suite_id, mode, run_id, status, total_tests, passed_tests,
              failed_tests, results_json, error_message, created_at, started_at, completed_at
            FROM suite_executions
            WHERE suite_id = ?
            ORDER BY created_at DESC, suite_execution_id DESC
            LIMIT ?;
            """,
            (suite_id, int(limit)),
        ).fetchall()
        return [row_to_dict(r) for r in rows]  # type: ignore[misc]

    def list_open_agent_suite_executions(self) -> list[sqlite3.Row]:
        return self._conn.execute(
            """
            SELECT suite_execution_id, suite_id, run_id, status, total_tests
            FROM suite_executions
            WHERE mode = 'agent' AND status IN ('pending', 'running')
            ORDER BY created_at ASC;
            """
        ).fetchall()

    def mark_suite_execution_running(self, *, suite_execution_id: str, commit: bool = True) -> bool:
        cur = self._conn.execute(
            """
            UPDATE suite_executions
            SET status = 'running', started_at = COALESCE(started_at, ?)
            WHERE suite_execution_id = ? AND status = 'pending';
            """,
            (_utc_ts(), suite_execution_id),
        )
        changed = cur.rowcount == 1
        if changed:
            self._note_change("suite_executions", suite_execution_id, "UPDATE")
        if commit:
            self.commit()
        return changed

    def update_suite_execution_progress(
        self,
        *,
        suite_execution_id: str,
        passed_tests: int,
        failed_tests: int,
        results: list[dict[str, Any]],
        commit: bool = True,
    ) -> bool:
        """Persist the running aggregate of an open suite execution.

        Raises sqlite3.IntegrityError if the counters would exceed `total_tests`.
        """
        cur = self._conn.execute(
            """
            UPDATE suite_executions
            SET passed_tests = ?, failed_tests = ?, results_json = ?
            WHERE suite_execution_id = ? AND status IN ('pending', 'running');
            """,
            (int(passed_tests), int(failed_tests), _json_dumps(results), suite_execution_id),
        )
        changed = cur.rowcount == 1
        if changed:
            self._note_change("suite_executions", suite_execution_id, "UPDATE")
        if commit:
            self.commit()
        return changed

    def finalize_suite_execution(
        self,
        *,
        suite_execution_id: str,
        status: str,
        passed_tests: int | None = None,
        failed_tests: int | None = None,
        results: list[dict[str, Any]] | None = None,
        error_message: str | None = None,
        commit: bool = True,
    ) -> bool:
        ts = _utc_ts()
        cur = self._conn.execute(
            """
            UPDATE suite_executions
            SET
              status = ?,
              passed_tests = COALESCE(?, passed_tests),
              failed_tests = COALESCE(?, failed_tests),
              results_json = COALESCE(?, results_json),
              error_message = COALESCE(?, error_message),
              completed_at = ?
            WHERE suite_execution_id = ? AND status IN ('pending', 'running');
            """,
            (
                status,
                passed_tests,
                failed_tests,
                _json_dumps(results) if results is not None else None,
                error_message,
                ts,
                suite_execution_id,
            ),
        )
        changed = cur.rowcount == 1
        if changed:
            self._note_change("suite_executions", suite_execution_id, "UPDATE")
        if commit:
            self.commit()
        return changed

    # --- Reconcile (startup safety)
    def reconcile_running_executions(self, *, reason: str = "server_restarted") -> int:
        """Close executions left active by a previous process.

        `running`/`pending` become `failed`; `cancelling` becomes `cancelled`
        since no executor remains to acknowledge it. Returns the number reconciled.
        """
        ts = _utc_ts()
        rows = self._conn.execute(
            "SELECT execution_id, status FROM executions WHERE status IN ('pending', 'running', 'cancelling');",
        ).fetchall()
        if not rows:
            return 0

        for r in rows:
            execution_id = str(r["execution_id"])
            target = "cancelled" if r["status"] == "cancelling" else "failed"
            self._conn.execute(
                """
                UPDATE executions
                SET
                  status = ?,
                  completed_at = COALESCE(completed_at, ?),
                  updated_at = ?,
                  error_message = COALESCE(error_message, ?)
                WHERE execution_id = ? AND status = ?;
                """,
                (target, ts, ts, reason, execution_id, r["status"]),
            )
            self._note_change("executions", execution_id, "UPDATE")

        self.commit()
        return len(rows)
