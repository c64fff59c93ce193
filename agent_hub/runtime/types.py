from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union


# --- Job queue
JOB_PENDING = "pending"
JOB_RUNNING = "running"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"
JOB_CANCELLED = "cancelled"

JOB_STATUSES = frozenset({JOB_PENDING, JOB_RUNNING, JOB_COMPLETED, JOB_FAILED, JOB_CANCELLED})
JOB_TERMINAL = frozenset({JOB_COMPLETED, JOB_FAILED, JOB_CANCELLED})
JOB_OPEN = frozenset({JOB_PENDING, JOB_RUNNING})

# Allowed status moves. Re-run from any terminal state re-enters the machine at `pending`.
JOB_TRANSITIONS: dict[str, frozenset[str]] = {
    JOB_PENDING: frozenset({JOB_RUNNING, JOB_CANCELLED}),
    JOB_RUNNING: frozenset({JOB_COMPLETED, JOB_FAILED, JOB_CANCELLED}),
    JOB_COMPLETED: frozenset({JOB_PENDING}),
    JOB_FAILED: frozenset({JOB_PENDING}),
    JOB_CANCELLED: frozenset({JOB_PENDING}),
}

# Statuses an agent may report for a job it is running.
JOB_REPORTABLE = frozenset({JOB_COMPLETED, JOB_FAILED, JOB_CANCELLED})


def can_transition_job(current: str, target: str) -> bool:
    return target in JOB_TRANSITIONS.get(current, frozenset())


# --- Direct executions
EXEC_PENDING = "pending"
EXEC_RUNNING = "running"
EXEC_PASSED = "passed"
EXEC_FAILED = "failed"
EXEC_CANCELLING = "cancelling"
EXEC_CANCELLED = "cancelled"

EXEC_TERMINAL = frozenset({EXEC_PASSED, EXEC_FAILED, EXEC_CANCELLED})
EXEC_ACTIVE = frozenset({EXEC_PENDING, EXEC_RUNNING, EXEC_CANCELLING})

# --- Suite executions
SUITE_PENDING = "pending"
SUITE_RUNNING = "running"
SUITE_PASSED = "passed"
SUITE_FAILED = "failed"
SUITE_CANCELLED = "cancelled"

SUITE_OPEN = frozenset({SUITE_PENDING, SUITE_RUNNING})
SUITE_TERMINAL = frozenset({SUITE_PASSED, SUITE_FAILED, SUITE_CANCELLED})

# --- Agents
AGENT_ONLINE = "online"
AGENT_BUSY = "busy"
AGENT_OFFLINE = "offline"

AGENT_STATUSES = frozenset({AGENT_ONLINE, AGENT_BUSY, AGENT_OFFLINE})


@dataclass(frozen=True)
class TestRunConfig:
    """Snapshot needed to execute one ad hoc test run."""

    base_url: str
    steps: list[dict[str, Any]] = field(default_factory=list)

    kind = "test_run"


@dataclass(frozen=True)
class SuiteMemberConfig:
    """Snapshot for a job that belongs to an agent-path suite execution."""

    base_url: str
    steps: list[dict[str, Any]]
    suite_execution_id: str

    kind = "suite_member"


JobConfig = Union[TestRunConfig, SuiteMemberConfig]


class JobConfigError(ValueError):
    pass


def job_config_to_json(config: JobConfig) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "kind": config.kind,
        "baseUrl": config.base_url,
        "steps": list(config.steps),
    }
    if isinstance(config, SuiteMemberConfig):
        payload["suite_execution_id"] = config.suite_execution_id
    return payload


def job_config_from_json(obj: Any) -> JobConfig:
    if not isinstance(obj, dict):
        raise JobConfigError("Job config must be an object.")
    base_url = obj.get("baseUrl")
    if base_url is None:
        base_url = obj.get("base_url")
    if not isinstance(base_url, str):
        raise JobConfigError("Job config requires a string baseUrl.")
    steps = obj.get("steps")
    if steps is None:
        steps = []
    if not isinstance(steps, list):
        raise JobConfigError("Job config steps must be a list.")

    kind = obj.get("kind")
    suite_execution_id = obj.get("suite_execution_id")
    if kind == SuiteMemberConfig.kind or (kind is None and suite_execution_id):
        if not isinstance(suite_execution_id, str) or not suite_execution_id:
            raise JobConfigError("Suite member config requires suite_execution_id.")
        return SuiteMemberConfig(base_url=base_url, steps=steps, suite_execution_id=suite_execution_id)
    if kind not in (None, TestRunConfig.kind):
        raise JobConfigError(f"Unknown job config kind: {kind!r}")
    return TestRunConfig(base_url=base_url, steps=steps)


def format_step_result(step_result: dict[str, Any], *, step: dict[str, Any] | None, index: int) -> dict[str, Any]:
    """Normalize one agent-reported step result into the execution result shape."""
    step = step or {}
    out: dict[str, Any] = {
        "status": step_result.get("status"),
        "step": {
            "id": step.get("id"),
            "type": step.get("type") or step_result.get("type") or "unknown",
            "description": step.get("description") or step_result.get("description") or f"Step {index + 1}",
            "selector": step.get("selector") or step_result.get("selector"),
            "value": step.get("value") or step_result.get("value"),
            "extraData": step_result.get("extraData") or step.get("extraData"),
        },
        "duration": step_result.get("duration", step_result.get("duration_ms")),
    }
    error = step_result.get("error") or step_result.get("error_message")
    if error:
        out["error"] = error
    if step_result.get("screenshot"):
        out["screenshot"] = step_result["screenshot"]
    return out
