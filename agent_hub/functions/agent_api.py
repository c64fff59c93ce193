from __future__ import annotations

import hashlib
import logging
import secrets
import sqlite3
import time
from pathlib import Path
from typing import Any, Mapping

from agent_hub.config.load_config import AppConfig
from agent_hub.runtime.errors import (
    ConflictError,
    InvalidArgumentError,
    InvalidTransitionError,
    NotFoundError,
    UnauthenticatedError,
)
from agent_hub.runtime.jobs import finalize_suite_for_job, suite_execution_id_for_job
from agent_hub.runtime.types import (
    AGENT_BUSY,
    AGENT_ONLINE,
    EXEC_CANCELLED,
    EXEC_FAILED,
    EXEC_PASSED,
    JOB_COMPLETED,
    JOB_PENDING,
    JOB_REPORTABLE,
    format_step_result,
)
from agent_hub.storage.sqlite_store import SQLiteStore, decode_json, row_to_dict


logger = logging.getLogger(__name__)

AGENT_KEY_HEADER = "x-agent-key"
FUNCTION_NAME = "agent-api"


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _header(headers: Mapping[str, str], name: str) -> str | None:
    for k, v in headers.items():
        if k.lower() == name:
            return v
    return None


def _first(body: Mapping[str, Any], *keys: str) -> Any:
    for k in keys:
        v = body.get(k)
        if v is not None:
            return v
    return None


def _opt_str(value: Any) -> str | None:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def _opt_int(value: Any, *, key: str) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise InvalidArgumentError(f"Invalid integer for {key}: {value!r}") from e


def _str_list(value: Any, *, key: str) -> list[str] | None:
    if value is None:
        return None
    if not isinstance(value, list):
        raise InvalidArgumentError(f"{key} must be a list of strings.")
    return [str(v) for v in value if str(v).strip()]


class AgentApi:
    """Server side of the `agent-api` function.

    Two calling conventions share the same operations:
    - action form: `{"action": "...", "agentId": ...}` bodies from the dashboard and
      in-page agents;
    - path form: one operation per route, authenticated by the `X-Agent-Key` token
      issued at registration (self-hosted agent processes).
    """

    def __init__(self, *, cfg: AppConfig, db_path: str | Path | None = None) -> None:
        self._cfg = cfg
        self._db_path = db_path

    def _open_store(self) -> SQLiteStore:
        return SQLiteStore(self._db_path)

    # --- Entry point used by functions clients
    def __call__(self, body: dict[str, Any], headers: Mapping[str, str]) -> dict[str, Any]:
        return self.handle_action(body, headers)

    def handle_action(self, body: dict[str, Any], headers: Mapping[str, str]) -> dict[str, Any]:
        action = _opt_str(body.get("action"))
        if action is None:
            raise InvalidArgumentError("Missing action.")

        if action == "register":
            return self.register(
                agent_name=_first(body, "agentName", "agent_name"),
                agent_id=_first(body, "agentId", "agent_id"),
                browsers=_str_list(body.get("browsers"), key="browsers"),
                capacity=_opt_int(body.get("capacity"), key="capacity"),
                capabilities=body.get("capabilities"),
            )

        api_key = _header(headers, AGENT_KEY_HEADER)
        if api_key:
            agent_id = self.authenticate(api_key)
        else:
            agent_id = _opt_str(_first(body, "agentId", "agent_id"))
        if agent_id is None:
            raise InvalidArgumentError("agentId is required.")

        if action == "heartbeat":
            return self.heartbeat(
                agent_id=agent_id,
                status=_opt_str(body.get("status")),
                capacity=_opt_int(_first(body, "capacity", "max_capacity"), key="capacity"),
                running_jobs=_opt_int(body.get("running_jobs"), key="running_jobs"),
                browsers=_str_list(body.get("browsers"), key="browsers"),
                system_info=body.get("system_info"),
            )
        if action == "poll":
            return self.poll(agent_id=agent_id, limit=_opt_int(body.get("limit"), key="limit"))
        if action == "start":
            return self.start(agent_id=agent_id, job_id=self._job_id(body))
        if action == "result":
            return self.result(
                agent_id=agent_id,
                job_id=self._job_id(body),
                status=_opt_str(body.get("status")),
                result_data=body.get("result_data"),
                error_message=_opt_str(body.get("error_message")),
                step_results=body.get("step_results"),
                execution_time_ms=body.get("execution_time_ms"),
            )
        if action == "status":
            return self.status(agent_id=agent_id)
        raise InvalidArgumentError(f"Unknown action: {action}")

    @staticmethod
    def _job_id(body: Mapping[str, Any]) -> str:
        job_id = _opt_str(_first(body, "jobId", "job_id"))
        if job_id is None:
            raise InvalidArgumentError("jobId is required.")
        return job_id

    # --- Authentication
    def authenticate(self, api_key: str | None) -> str:
        if not api_key:
            raise UnauthenticatedError("Missing agent API key.")
        store = self._open_store()
        try:
            row = store.get_agent_by_token_hash(api_token_hash=hash_token(api_key))
        finally:
            store.close()
        if row is None:
            raise UnauthenticatedError("Invalid agent API key.")
        return str(row["agent_id"])

    # --- Operations
    def register(
        self,
        *,
        agent_name: Any,
        agent_id: Any = None,
        browsers: list[str] | None = None,
        capacity: int | None = None,
        capabilities: Any = None,
    ) -> dict[str, Any]:
        name = _opt_str(agent_name)
        if name is None:
            raise InvalidArgumentError("agent_name is required.")
        reg = self._cfg.registration
        new_id = _opt_str(agent_id) or f"agent-{int(time.time() * 1000)}"
        cap = capacity if capacity is not None else reg.default_capacity
        if cap < 1:
            raise InvalidArgumentError("capacity must be >= 1.")
        tags = browsers or list(reg.default_browsers)

        token = f"{reg.token_prefix}{secrets.token_hex(16)}"
        store = self._open_store()
        try:
            if store.get_agent(agent_id=new_id) is not None:
                raise ConflictError("Agent id already registered.", details={"agent_id": new_id})
            try:
                with store.transaction(mode="IMMEDIATE"):
                    store.create_agent(
                        agent_id=new_id,
                        agent_name=name,
                        api_token_hash=hash_token(token),
                        capacity=cap,
                        browsers=tags,
                        config={"capabilities": capabilities or {}},
                        status="offline",
                        commit=False,
                    )
                    store.append_activity(
                        agent_id=new_id,
                        activity_type="agent_registered",
                        payload={"agent_name": name, "browsers": tags, "capacity": cap},
                        commit=False,
                    )
            except sqlite3.IntegrityError as e:
                raise ConflictError("Agent id already registered.", details={"agent_id": new_id}) from e
        finally:
            store.close()

        logger.info("Agent registered: %s (%s)", new_id, name)
        return {
            "success": True,
            "agent_id": new_id,
            "api_token": token,
            "message": "Agent registered successfully. Store the API token securely.",
        }

    def heartbeat(
        self,
        *,
        agent_id: str,
        status: str | None = None,
        capacity: int | None = None,
        running_jobs: int | None = None,
        browsers: list[str] | None = None,
        system_info: Any = None,
    ) -> dict[str, Any]:
        stored_status = AGENT_BUSY if status == AGENT_BUSY else AGENT_ONLINE
        if capacity is not None and capacity < 1:
            raise InvalidArgumentError("capacity must be >= 1.")
        if running_jobs is not None and running_jobs < 0:
            raise InvalidArgumentError("running_jobs must be >= 0.")

        store = self._open_store()
        try:
            persisted = store.update_agent_heartbeat(
                agent_id=agent_id,
                status=stored_status,
                capacity=capacity,
                running_jobs=running_jobs,
                browsers=browsers,
                system_info=system_info if isinstance(system_info, dict) else None,
            )
            pending = store.count_pending_jobs_for_agent(agent_id=agent_id)
        finally:
            store.close()

        if not persisted:
            logger.debug("Heartbeat from unregistered agent %s accepted without persisting", agent_id)
        return {
            "success": True,
            "persisted": persisted,
            "server_time": time.time(),
            "pending_jobs": pending,
        }

    def poll(self, *, agent_id: str, limit: int | None = None) -> dict[str, Any]:
        n = limit if limit is not None else self._cfg.jobs.poll_limit
        if n < 1:
            raise InvalidArgumentError("limit must be >= 1.")
        store = self._open_store()
        try:
            rows = store.poll_pending_jobs(agent_id=agent_id, limit=n)
        finally:
            store.close()

        jobs = [
            {
                "id": str(r["job_id"]),
                "test_id": str(r["test_id"]),
                "run_id": str(r["run_id"]),
                "priority": int(r["priority"]),
                "status": str(r["status"]),
                "created_at": float(r["created_at"]),
                "config": decode_json(r["config_json"], {}),
            }
            for r in rows
        ]
        logger.debug("Job poll by agent %s: %d jobs available", agent_id, len(jobs))
        return {"success": True, "jobs": jobs, "agent_id": agent_id, "poll_time": time.time()}

    def start(self, *, agent_id: str, job_id: str) -> dict[str, Any]:
        store = self._open_store()
        try:
            job = store.get_job(job_id=job_id)
            if job is None:
                raise NotFoundError("Job not found.", details={"job_id": job_id})
            if job["agent_id"] and str(job["agent_id"]) != agent_id:
                raise ConflictError("Job already claimed by another agent.", details={"job_id": job_id})
            if str(job["status"]) != JOB_PENDING:
                raise InvalidTransitionError(entity="job", entity_id=job_id, current=str(job["status"]), target="running")

            config = decode_json(job["config_json"], {})
            steps = config.get("steps") if isinstance(config, dict) else None
            total_steps = len(steps) if isinstance(steps, list) else 0

            with store.transaction(mode="IMMEDIATE"):
                if not store.claim_job(job_id=job_id, agent_id=agent_id, commit=False):
                    raise ConflictError("Job was claimed concurrently.", details={"job_id": job_id})
                # Each claim gets its own execution; a re-run never reuses a terminal one.
                execution = store.get_open_execution_for_job(job_id=job_id)
                if execution is None:
                    execution_id = store.create_execution(
                        test_id=str(job["test_id"]),
                        total_steps=total_steps,
                        status="running",
                        job_id=job_id,
                        commit=False,
                    ).execution_id
                else:
                    execution_id = str(execution["execution_id"])
                    store.mark_execution_running(execution_id=execution_id, commit=False)
                store.append_activity(
                    agent_id=agent_id,
                    activity_type="job_started",
                    payload={"job_id": job_id, "run_id": str(job["run_id"])},
                    commit=False,
                )

            suite_execution_id = suite_execution_id_for_job(store, job_id=job_id)
            if suite_execution_id:
                store.mark_suite_execution_running(suite_execution_id=suite_execution_id)
            started = store.get_job(job_id=job_id)
        finally:
            store.close()

        logger.info("Job %s started by agent %s", job_id, agent_id)
        return {
            "success": True,
            "job_id": job_id,
            "run_id": str(job["run_id"]),
            "execution_id": execution_id,
            "config": config,
            "started_at": float(started["started_at"]) if started is not None else None,
        }

    def result(
        self,
        *,
        agent_id: str,
        job_id: str,
        status: str | None,
        result_data: Any = None,
        error_message: str | None = None,
        step_results: Any = None,
        execution_time_ms: Any = None,
    ) -> dict[str, Any]:
        if status not in JOB_REPORTABLE:
            raise InvalidArgumentError("Invalid status. Must be: completed, failed, or cancelled")
        raw_steps = step_results if isinstance(step_results, list) else []

        store = self._open_store()
        try:
            job = store.get_job(job_id=job_id)
            if job is None or str(job["agent_id"] or "") != agent_id:
                raise NotFoundError("Job not found or not assigned to this agent.", details={"job_id": job_id})

            config = decode_json(job["config_json"], {})
            steps = config.get("steps") if isinstance(config, dict) else None
            steps = steps if isinstance(steps, list) else []
            formatted = [
                format_step_result(
                    s if isinstance(s, dict) else {},
                    step=steps[i] if i < len(steps) and isinstance(steps[i], dict) else None,
                    index=i,
                )
                for i, s in enumerate(raw_steps)
            ]
            failed_steps = sum(1 for s in formatted if s.get("status") == "failed")
            if status == JOB_COMPLETED:
                exec_status = EXEC_FAILED if failed_steps > 0 else EXEC_PASSED
            elif status == "cancelled":
                exec_status = EXEC_CANCELLED
            else:
                exec_status = EXEC_FAILED

            with store.transaction(mode="IMMEDIATE"):
                if not store.complete_job(
                    job_id=job_id,
                    agent_id=agent_id,
                    status=status,
                    result={"data": result_data, "execution_time_ms": execution_time_ms},
                    error_message=error_message,
                    commit=False,
                ):
                    current = store.get_job(job_id=job_id)
                    raise InvalidTransitionError(
                        entity="job",
                        entity_id=job_id,
                        current=str(current["status"]) if current is not None else "deleted",
                        target=status,
                    )
                execution = store.get_open_execution_for_job(job_id=job_id)
                if execution is None:
                    execution_id = store.create_execution(
                        test_id=str(job["test_id"]),
                        total_steps=len(steps),
                        status="running",
                        job_id=job_id,
                        commit=False,
                    ).execution_id
                else:
                    execution_id = str(execution["execution_id"])
                if not store.finish_execution(
                    execution_id=execution_id,
                    status=exec_status,
                    error_message=error_message,
                    results=formatted,
                    commit=False,
                ):
                    current_exec = store.get_execution(execution_id=execution_id)
                    raise InvalidTransitionError(
                        entity="execution",
                        entity_id=execution_id,
                        current=str(current_exec["status"]) if current_exec is not None else "deleted",
                        target=exec_status,
                    )
                store.append_activity(
                    agent_id=agent_id,
                    activity_type="job_completed",
                    payload={
                        "job_id": job_id,
                        "run_id": str(job["run_id"]),
                        "status": status,
                        "execution_time_ms": execution_time_ms,
                    },
                    commit=False,
                )

            suite_status = finalize_suite_for_job(store, job_id=job_id)
        finally:
            store.close()

        logger.info("Job %s completed by agent %s with status: %s", job_id, agent_id, status)
        out: dict[str, Any] = {
            "success": True,
            "job_id": job_id,
            "status": status,
            "execution_id": execution_id,
            "execution_status": exec_status,
        }
        if suite_status is not None:
            out["suite_status"] = suite_status
        return out

    def status(self, *, agent_id: str) -> dict[str, Any]:
        store = self._open_store()
        try:
            row = store.get_agent(agent_id=agent_id)
            if row is None:
                raise NotFoundError("Agent not found.", details={"agent_id": agent_id})
            counts = store.count_jobs_by_status(agent_id=agent_id)
            recent = store.list_recent_jobs_for_agent(agent_id=agent_id, limit=10)
        finally:
            store.close()
        return {
            "success": True,
            "agent": row_to_dict(row),
            "job_stats": {
                "total": sum(counts.values()),
                "by_status": counts,
            },
            "recent_jobs": recent,
        }
