from __future__ import annotations

import logging
import sqlite3
import uuid
from contextlib import nullcontext
from typing import Any

from agent_hub.config.load_config import AppConfig
from agent_hub.runtime.errors import InvalidArgumentError, InvalidTransitionError, NotFoundError
from agent_hub.runtime.types import (
    EXEC_CANCELLED,
    JOB_CANCELLED,
    JOB_COMPLETED,
    JOB_OPEN,
    JOB_PENDING,
    JOB_TERMINAL,
    JOB_TRANSITIONS,
    SUITE_CANCELLED,
    SUITE_FAILED,
    SUITE_PASSED,
    SuiteMemberConfig,
    TestRunConfig,
    can_transition_job,
    job_config_from_json,
    job_config_to_json,
)
from agent_hub.storage.sqlite_store import JobRecord, SQLiteStore, SuiteExecutionRecord, decode_json


logger = logging.getLogger(__name__)


def _load_test(store: SQLiteStore, test_id: str) -> sqlite3.Row:
    row = store.get_test(test_id=test_id)
    if row is None:
        raise NotFoundError("Test not found.", details={"test_id": test_id})
    return row


def enqueue_job(
    store: SQLiteStore,
    *,
    cfg: AppConfig,
    test_id: str,
    agent_id: str | None = None,
    priority: int | None = None,
    run_id: str | None = None,
    commit: bool = True,
) -> JobRecord:
    """Queue one ad hoc run of a test, snapshotting its base URL and steps."""
    test = _load_test(store, test_id)
    config = TestRunConfig(base_url=str(test["base_url"]), steps=decode_json(test["steps_json"], []))
    job = store.create_job(
        test_id=test_id,
        run_id=run_id or f"run_{uuid.uuid4().hex}",
        priority=cfg.jobs.default_priority if priority is None else int(priority),
        max_retries=cfg.jobs.default_max_retries,
        config=job_config_to_json(config),
        agent_id=agent_id,
        commit=commit,
    )
    logger.info("Queued job %s for test %s (agent=%s)", job.job_id, test_id, agent_id or "any")
    return job


def enqueue_suite_run(
    store: SQLiteStore,
    *,
    cfg: AppConfig,
    suite_id: str,
    agent_id: str | None = None,
    commit: bool = True,
) -> tuple[SuiteExecutionRecord, list[JobRecord]]:
    """Create an agent-path suite execution and one job per member, atomically.

    All jobs share the suite execution's `run_id` and carry its id in their config.
    With `commit=False` the caller owns the surrounding transaction.
    """
    if store.get_suite(suite_id=suite_id) is None:
        raise NotFoundError("Suite not found.", details={"suite_id": suite_id})
    members = store.list_suite_tests(suite_id=suite_id)
    if not members:
        raise InvalidArgumentError("Suite has no tests.", details={"suite_id": suite_id})

    run_id = f"suite_run_{uuid.uuid4().hex}"
    jobs: list[JobRecord] = []
    with store.transaction(mode="IMMEDIATE") if commit else nullcontext():
        suite_exec = store.create_suite_execution(
            suite_id=suite_id,
            mode="agent",
            total_tests=len(members),
            status="pending",
            run_id=run_id,
            commit=False,
        )
        for member in members:
            config = SuiteMemberConfig(
                base_url=str(member["base_url"]),
                steps=decode_json(member["steps_json"], []),
                suite_execution_id=suite_exec.suite_execution_id,
            )
            jobs.append(
                store.create_job(
                    test_id=str(member["test_id"]),
                    run_id=run_id,
                    priority=cfg.jobs.suite_priority,
                    max_retries=cfg.jobs.default_max_retries,
                    config=job_config_to_json(config),
                    agent_id=agent_id,
                    commit=False,
                )
            )
    logger.info("Queued suite %s as %s with %d jobs", suite_id, suite_exec.suite_execution_id, len(jobs))
    return suite_exec, jobs


def change_job_status(store: SQLiteStore, *, job_id: str, status: str) -> None:
    """User-driven transition: cancel (pending/running) or re-run (terminal -> pending)."""
    row = store.get_job(job_id=job_id)
    if row is None:
        raise NotFoundError("Job not found.", details={"job_id": job_id})
    current = str(row["status"])
    if status not in (JOB_PENDING, JOB_CANCELLED) or not can_transition_job(current, status):
        raise InvalidTransitionError(entity="job", entity_id=job_id, current=current, target=status)

    expected = [s for s, targets in JOB_TRANSITIONS.items() if status in targets]
    with store.transaction(mode="IMMEDIATE"):
        if not store.set_job_status(job_id=job_id, status=status, expected=expected, commit=False):
            # Lost a race with an agent claim or report.
            latest = store.get_job(job_id=job_id)
            latest_status = str(latest["status"]) if latest is not None else "deleted"
            raise InvalidTransitionError(entity="job", entity_id=job_id, current=latest_status, target=status)
        if status == JOB_CANCELLED:
            # The claiming agent can no longer report, so close its execution here.
            execution = store.get_open_execution_for_job(job_id=job_id)
            if execution is not None:
                store.finish_execution(
                    execution_id=str(execution["execution_id"]),
                    status=EXEC_CANCELLED,
                    error_message="Job cancelled",
                    commit=False,
                )
    logger.info("Job %s: %s -> %s", job_id, current, status)

    if status == JOB_CANCELLED:
        finalize_suite_for_job(store, job_id=job_id)


def cancel_job(store: SQLiteStore, *, job_id: str) -> None:
    change_job_status(store, job_id=job_id, status=JOB_CANCELLED)


def retry_job(store: SQLiteStore, *, job_id: str) -> None:
    change_job_status(store, job_id=job_id, status=JOB_PENDING)


def delete_job(store: SQLiteStore, *, job_id: str) -> None:
    row = store.get_job(job_id=job_id)
    if row is None:
        raise NotFoundError("Job not found.", details={"job_id": job_id})
    store.delete_job(job_id=job_id)
    logger.info("Deleted job %s (was %s)", job_id, row["status"])
    suite_execution_id = _suite_execution_id_of(row)
    if suite_execution_id:
        finalize_suite_if_complete(store, suite_execution_id=suite_execution_id)


def _suite_execution_id_of(job_row: sqlite3.Row) -> str | None:
    try:
        config = job_config_from_json(decode_json(job_row["config_json"], None))
    except ValueError:
        return None
    if isinstance(config, SuiteMemberConfig):
        return config.suite_execution_id
    return None


def suite_execution_id_for_job(store: SQLiteStore, *, job_id: str) -> str | None:
    row = store.get_job(job_id=job_id)
    if row is None:
        return None
    return _suite_execution_id_of(row)


def _job_outcome(store: SQLiteStore, job: sqlite3.Row) -> dict[str, Any]:
    status = str(job["status"])
    execution = store.get_execution_for_job(job_id=str(job["job_id"]))
    if status == JOB_COMPLETED:
        outcome = str(execution["status"]) if execution is not None else "passed"
        if outcome not in ("passed", "failed"):
            outcome = "passed"
    else:
        outcome = "failed" if status != JOB_CANCELLED else "cancelled"
    return {
        "test_id": str(job["test_id"]),
        "job_id": str(job["job_id"]),
        "status": outcome,
        "execution_id": str(execution["execution_id"]) if execution is not None else None,
        "error": job["error_message"],
    }


def finalize_suite_if_complete(store: SQLiteStore, *, suite_execution_id: str) -> str | None:
    """Refresh an agent-path suite aggregate from its member jobs.

    Counters are recomputed from the jobs every time so re-runs never double count.
    Returns the final status when the suite was finalised by this call.
    """
    suite_exec = store.get_suite_execution(suite_execution_id=suite_execution_id)
    if suite_exec is None or suite_exec["status"] not in ("pending", "running"):
        return None
    run_id = suite_exec["run_id"]
    jobs = store.list_jobs_for_run(run_id=str(run_id)) if run_id else []
    if not jobs:
        return None

    total = int(suite_exec["total_tests"])
    results = [_job_outcome(store, j) for j in jobs if str(j["status"]) in JOB_TERMINAL]
    passed = sum(1 for r in results if r["status"] == "passed")
    failed = min(len(results) - passed, total - passed)

    if any(str(j["status"]) in JOB_OPEN for j in jobs):
        store.update_suite_execution_progress(
            suite_execution_id=suite_execution_id,
            passed_tests=passed,
            failed_tests=failed,
            results=results,
        )
        return None

    final_status = SUITE_PASSED if failed == 0 else SUITE_FAILED
    store.finalize_suite_execution(
        suite_execution_id=suite_execution_id,
        status=final_status,
        passed_tests=passed,
        failed_tests=failed,
        results=results,
    )
    logger.info(
        "Suite execution %s finalised as %s (%d passed, %d failed)",
        suite_execution_id,
        final_status,
        passed,
        failed,
    )
    return final_status


def finalize_suite_for_job(store: SQLiteStore, *, job_id: str) -> str | None:
    suite_execution_id = suite_execution_id_for_job(store, job_id=job_id)
    if not suite_execution_id:
        return None
    return finalize_suite_if_complete(store, suite_execution_id=suite_execution_id)


def reconcile_suite_executions(store: SQLiteStore) -> dict[str, int]:
    """Close agent-path suite executions that can no longer progress on their own.

    Zero linked jobs (orphaned by an interrupted enqueue or deleted jobs) => cancelled.
    All linked jobs terminal => finalised from the job outcomes.
    """
    cancelled = 0
    finalized = 0
    for row in store.list_open_agent_suite_executions():
        suite_execution_id = str(row["suite_execution_id"])
        run_id = row["run_id"]
        jobs = store.list_jobs_for_run(run_id=str(run_id)) if run_id else []
        if not jobs:
            if store.finalize_suite_execution(
                suite_execution_id=suite_execution_id,
                status=SUITE_CANCELLED,
                error_message="No jobs linked to suite execution",
            ):
                cancelled += 1
            continue
        if finalize_suite_if_complete(store, suite_execution_id=suite_execution_id) is not None:
            finalized += 1
    if cancelled or finalized:
        logger.info("Reconciled suite executions: %d cancelled, %d finalised", cancelled, finalized)
    return {"cancelled": cancelled, "finalized": finalized}
