from __future__ import annotations

import logging
from typing import Any, Callable

from agent_hub.functions.client import FunctionsClient
from agent_hub.runtime.errors import InvalidArgumentError, NotFoundError
from agent_hub.runtime.executions import execute_body, invoke_executor
from agent_hub.runtime.types import EXEC_PASSED, EXEC_RUNNING, SUITE_FAILED, SUITE_PASSED, SUITE_RUNNING
from agent_hub.storage.sqlite_store import SQLiteStore, decode_json, row_to_dict


logger = logging.getLogger(__name__)

MEMBER_INVOKE_FAILED = "Failed to execute test"


def run_suite_direct(
    store: SQLiteStore,
    *,
    functions: FunctionsClient,
    suite_id: str,
    on_progress: Callable[[dict[str, Any]], None] | None = None,
) -> dict[str, Any]:
    """Run every member of a suite one after another through the executor.

    The aggregate is persisted after each member, so `passed + failed` never
    exceeds `total` and readers always see a consistent intermediate state.
    A member whose invocation fails counts as failed; the loop continues.
    """
    if store.get_suite(suite_id=suite_id) is None:
        raise NotFoundError("Suite not found.", details={"suite_id": suite_id})
    members = store.list_suite_tests(suite_id=suite_id)
    if not members:
        raise InvalidArgumentError("Suite has no tests.", details={"suite_id": suite_id})

    suite_exec = store.create_suite_execution(
        suite_id=suite_id,
        mode="direct",
        total_tests=len(members),
        status=SUITE_RUNNING,
    )
    suite_execution_id = suite_exec.suite_execution_id
    logger.info("Running suite %s directly (%d tests) as %s", suite_id, len(members), suite_execution_id)

    passed = 0
    failed = 0
    results: list[dict[str, Any]] = []
    for member in members:
        test_id = str(member["test_id"])
        steps = decode_json(member["steps_json"], [])
        execution = store.create_execution(test_id=test_id, total_steps=len(steps), status=EXEC_RUNNING)
        body = execute_body(
            test_id=test_id,
            execution_id=execution.execution_id,
            base_url=str(member["base_url"]),
            steps=steps,
        )

        response = invoke_executor(
            functions,
            db_path=store.db_path,
            execution_id=execution.execution_id,
            body=body,
        )
        row = store.get_execution(execution_id=execution.execution_id)
        status = str(row["status"]) if row is not None else "failed"
        if response.error is not None:
            status = "failed"
            error = MEMBER_INVOKE_FAILED
        else:
            error = row["error_message"] if row is not None else None

        if status == EXEC_PASSED:
            passed += 1
        else:
            failed += 1
        results.append(
            {
                "test_id": test_id,
                "test_name": str(member["name"]),
                "execution_id": execution.execution_id,
                "status": status,
                "error": error,
            }
        )
        store.update_suite_execution_progress(
            suite_execution_id=suite_execution_id,
            passed_tests=passed,
            failed_tests=failed,
            results=results,
        )
        if on_progress is not None:
            on_progress(row_to_dict(store.get_suite_execution(suite_execution_id=suite_execution_id)) or {})

    final_status = SUITE_PASSED if failed == 0 else SUITE_FAILED
    store.finalize_suite_execution(suite_execution_id=suite_execution_id, status=final_status)
    logger.info("Suite execution %s: %s (%d passed, %d failed)", suite_execution_id, final_status, passed, failed)
    return row_to_dict(store.get_suite_execution(suite_execution_id=suite_execution_id)) or {}
