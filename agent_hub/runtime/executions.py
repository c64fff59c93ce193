from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from agent_hub.functions.client import FunctionError, FunctionResponse, FunctionsClient
from agent_hub.functions.execute_test import FUNCTION_NAME as EXECUTE_FUNCTION
from agent_hub.runtime.errors import InvalidTransitionError, NotFoundError
from agent_hub.runtime.types import EXEC_FAILED, EXEC_PASSED, EXEC_RUNNING, EXEC_TERMINAL
from agent_hub.storage.change_feed import ChangeEvent, Subscription, feed_for
from agent_hub.storage.sqlite_store import ExecutionRecord, SQLiteStore, decode_json, row_to_dict


logger = logging.getLogger(__name__)

EXECUTOR_UNRESPONSIVE = "Executor failed to respond"


@dataclass
class DirectRun:
    execution: ExecutionRecord
    thread: threading.Thread | None = None
    response: FunctionResponse | None = None

    def wait(self, timeout_s: float | None = None) -> FunctionResponse | None:
        if self.thread is not None:
            self.thread.join(timeout=timeout_s)
        return self.response


def execute_body(*, test_id: str, execution_id: str, base_url: str, steps: list[dict[str, Any]]) -> dict[str, Any]:
    return {"testId": test_id, "executionId": execution_id, "baseUrl": base_url, "steps": steps}


def invoke_executor(
    functions: FunctionsClient,
    *,
    db_path: str | Path,
    execution_id: str,
    body: dict[str, Any],
) -> FunctionResponse:
    """Invoke the executor and reconcile a crashed run.

    When the call errors and the row is still `running`, the executor never
    wrote a terminal state: force `failed` with the error message.
    """
    try:
        response = functions.invoke(EXECUTE_FUNCTION, body)
    except Exception as e:
        logger.exception("Executor invocation raised for %s", execution_id)
        response = FunctionResponse(error=FunctionError(message=str(e) or EXECUTOR_UNRESPONSIVE))

    if response.error is not None:
        store = SQLiteStore(db_path)
        try:
            forced = store.mark_execution_failed_if_running(
                execution_id=execution_id,
                error_message=response.error.message or EXECUTOR_UNRESPONSIVE,
            )
        finally:
            store.close()
        if forced:
            logger.warning("Execution %s force-failed: %s", execution_id, response.error.message)
    return response


def start_direct_execution(
    store: SQLiteStore,
    *,
    functions: FunctionsClient,
    test_id: str,
    background: bool = True,
    on_done: Callable[[FunctionResponse], None] | None = None,
) -> DirectRun:
    """Insert a `running` Execution and hand it to the executor without waiting.

    `on_done` receives the executor response once the invocation returns.
    """
    test = store.get_test(test_id=test_id)
    if test is None:
        raise NotFoundError("Test not found.", details={"test_id": test_id})
    steps = decode_json(test["steps_json"], [])
    execution = store.create_execution(test_id=test_id, total_steps=len(steps), status=EXEC_RUNNING)
    body = execute_body(
        test_id=test_id,
        execution_id=execution.execution_id,
        base_url=str(test["base_url"]),
        steps=steps,
    )
    run = DirectRun(execution=execution)
    db_path = store.db_path

    def _target() -> None:
        run.response = invoke_executor(functions, db_path=db_path, execution_id=execution.execution_id, body=body)
        if on_done is not None:
            try:
                on_done(run.response)
            except Exception:
                logger.exception("Completion callback failed for execution %s", execution.execution_id)

    if background:
        run.thread = threading.Thread(target=_target, name=f"exec-{execution.execution_id[-8:]}", daemon=True)
        run.thread.start()
    else:
        _target()
    logger.info("Started direct execution %s for test %s", execution.execution_id, test_id)
    return run


def cancel_execution(
    store: SQLiteStore,
    *,
    execution_id: str,
    signal: Callable[[str], Any] | None = None,
) -> None:
    """Request cooperative cancellation: `running` -> `cancelling`.

    `signal` optionally flips the in-process token of a local executor.
    """
    row = store.get_execution(execution_id=execution_id)
    if row is None:
        raise NotFoundError("Execution not found.", details={"execution_id": execution_id})
    if not store.request_execution_cancel(execution_id=execution_id):
        latest = store.get_execution(execution_id=execution_id)
        current = str(latest["status"]) if latest is not None else str(row["status"])
        raise InvalidTransitionError(entity="execution", entity_id=execution_id, current=current, target="cancelling")
    if signal is not None:
        signal(execution_id)
    logger.info("Cancellation requested for execution %s", execution_id)


def _timer_schedule(delay_s: float, fn: Callable[[], None]) -> threading.Timer:
    t = threading.Timer(delay_s, fn)
    t.daemon = True
    t.start()
    return t


class ExecutionMonitor:
    """Live view of one Execution, driven by the change feed.

    On the first terminal status it stops being cancellable, copies
    `passed`/`failed` onto the test and its linked test case, and closes itself
    after `auto_close_delay_s`, handing the recent executions to `on_close`.
    """

    def __init__(
        self,
        *,
        db_path: str | Path,
        execution_id: str,
        auto_close_delay_s: float = 2.0,
        on_update: Callable[[dict[str, Any]], None] | None = None,
        on_close: Callable[[list[dict[str, Any]]], None] | None = None,
        scheduler: Callable[[float, Callable[[], None]], Any] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._db_path = db_path
        self.execution_id = execution_id
        self.auto_close_delay_s = float(auto_close_delay_s)
        self._on_update = on_update
        self._on_close = on_close
        self._schedule = scheduler or _timer_schedule
        self._clock = clock

        self._lock = threading.Lock()
        self._subscription: Subscription | None = None
        self._close_handle: Any = None
        self._closing = False
        self._closed = threading.Event()

        self.execution: dict[str, Any] | None = None
        self.cancellable = True
        self.terminal_observed_at: float | None = None
        self.closed_at: float | None = None
        self.recent_executions: list[dict[str, Any]] = []

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def start(self) -> "ExecutionMonitor":
        self._subscription = feed_for(self._db_path).subscribe(
            "executions", self._on_change, row_id=self.execution_id
        )
        store = SQLiteStore(self._db_path)
        try:
            current = row_to_dict(store.get_execution(execution_id=self.execution_id))
        finally:
            store.close()
        if current is not None:
            self._apply(current)
        return self

    def stop(self) -> None:
        with self._lock:
            if self._subscription is not None:
                self._subscription.close()
                self._subscription = None
            handle = self._close_handle
            self._close_handle = None
        if handle is not None and hasattr(handle, "cancel"):
            handle.cancel()

    def wait_closed(self, timeout_s: float | None = None) -> bool:
        return self._closed.wait(timeout=timeout_s)

    def _on_change(self, event: ChangeEvent) -> None:
        if event.new is None:
            return
        self._apply(event.new)

    def _apply(self, row: dict[str, Any]) -> None:
        with self._lock:
            if self._closing:
                return
            self.execution = row
            status = str(row.get("status") or "")
            first_terminal = status in EXEC_TERMINAL and self.terminal_observed_at is None
            if first_terminal:
                self.cancellable = False
                self.terminal_observed_at = self._clock()
        if self._on_update is not None:
            self._on_update(row)
        if not first_terminal:
            return

        if status in (EXEC_PASSED, EXEC_FAILED):
            self._copy_status_to_test(str(row.get("test_id") or ""), status)
        handle = self._schedule(self.auto_close_delay_s, self._close)
        with self._lock:
            self._close_handle = handle

    def _copy_status_to_test(self, test_id: str, status: str) -> None:
        try:
            store = SQLiteStore(self._db_path)
            try:
                test = store.get_test(test_id=test_id)
                if test is None:
                    return
                store.update_test_status(test_id=test_id, status=status)
                if test["test_case_id"]:
                    store.update_test_case_status(test_case_id=str(test["test_case_id"]), status=status)
            finally:
                store.close()
        except Exception:
            logger.exception("Error auto-updating test status for %s", test_id)

    def _close(self) -> None:
        with self._lock:
            if self._closing:
                return
            self._closing = True
            if self._subscription is not None:
                self._subscription.close()
                self._subscription = None
            self._close_handle = None
            self.closed_at = self._clock()

        test_id = str((self.execution or {}).get("test_id") or "")
        recent: list[dict[str, Any]] = []
        if test_id:
            store = SQLiteStore(self._db_path)
            try:
                recent = store.list_executions_for_test(test_id=test_id)
            finally:
                store.close()
        self.recent_executions = recent
        try:
            if self._on_close is not None:
                self._on_close(recent)
        finally:
            self._closed.set()
