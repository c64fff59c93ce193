from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from agent_hub.agents.presence import AgentPresenceTracker, AgentView
from agent_hub.config.load_config import AppConfig
from agent_hub.dashboard.notifications import LoggingNotifier, Notification, Notifier
from agent_hub.functions.agent_api import FUNCTION_NAME as AGENT_API
from agent_hub.functions.client import FunctionResponse, FunctionsClient
from agent_hub.mobile.helper_client import MobileHelperClient
from agent_hub.runtime import jobs as job_service
from agent_hub.runtime.executions import ExecutionMonitor, cancel_execution, start_direct_execution
from agent_hub.runtime.sessions import BrowserAgentSession, PeriodicTask
from agent_hub.runtime.suite_runner import run_suite_direct
from agent_hub.runtime.types import EXEC_RUNNING, JOB_CANCELLED, JOB_PENDING
from agent_hub.storage.sqlite_store import SQLiteStore, default_db_path, row_to_dict


logger = logging.getLogger(__name__)


def _error_text(e: Exception, fallback: str) -> str:
    msg = getattr(e, "message", None) or str(e)
    return msg or fallback


class AgentDashboard:
    """Agent management screen: registration, presence and job actions.

    Every user-facing failure becomes a destructive notification; state is
    only reloaded after a successful write.
    """

    def __init__(
        self,
        *,
        functions: FunctionsClient,
        cfg: AppConfig,
        db_path: str | Path | None = None,
        notifier: Notifier | None = None,
        mobile_helper: MobileHelperClient | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._functions = functions
        self._cfg = cfg
        self._db_path = db_path
        self.notifier = notifier or LoggingNotifier()
        self.mobile_helper = mobile_helper
        self.browser_agent: BrowserAgentSession | None = None
        self.presence = AgentPresenceTracker(
            db_path=db_path,
            stale_after_s=cfg.presence.stale_after_s,
            ephemeral_sources=[self._browser_agent_entry, self._mobile_helper_entry],
            clock=clock,
        )
        self.agents: list[AgentView] = []
        self.jobs: list[dict[str, Any]] = []
        self._refresh_task: PeriodicTask | None = None

    def _notify(self, title: str, description: str, *, error: bool = False) -> None:
        self.notifier.notify(Notification(title=title, description=description, variant="destructive" if error else "default"))

    def _browser_agent_entry(self) -> dict[str, Any] | None:
        session = self.browser_agent
        if session is None or not session.active:
            return None
        return session.as_agent()

    def _mobile_helper_entry(self) -> dict[str, Any] | None:
        return self.mobile_helper.as_agent() if self.mobile_helper is not None else None

    # --- Loading
    def load_agents(self) -> list[AgentView]:
        self.agents = self.presence.load_agents()
        return self.agents

    def load_jobs(self, *, limit: int | None = None) -> list[dict[str, Any]]:
        store = SQLiteStore(self._db_path)
        try:
            page = store.list_jobs_page(limit=limit or self._cfg.limits.list_default_limit, cursor=None, statuses=None)
        finally:
            store.close()
        self.jobs = list(page["items"])
        return self.jobs

    def refresh(self) -> bool:
        try:
            if self.mobile_helper is not None:
                self.mobile_helper.status()
            self.load_agents()
            self.load_jobs()
        except Exception:
            logger.exception("Error loading agent data")
            self._notify("Error", "Failed to load agent data", error=True)
            return False
        return True

    def start(self) -> None:
        if self._refresh_task is not None:
            return
        self._refresh_task = PeriodicTask(
            name="dashboard-refresh",
            interval_s=self._cfg.presence.dashboard_refresh_s,
            fn=self.refresh,
        )
        self._refresh_task.start()

    def stop(self) -> None:
        task, self._refresh_task = self._refresh_task, None
        if task is not None:
            task.stop()
        self.deactivate_browser_agent()

    # --- Local browser agent
    def activate_browser_agent(self, *, agent_id: str | None = None) -> BrowserAgentSession:
        if self.browser_agent is None or not self.browser_agent.active:
            self.browser_agent = BrowserAgentSession(functions=self._functions, cfg=self._cfg, agent_id=agent_id)
            self.browser_agent.start()
        return self.browser_agent

    def deactivate_browser_agent(self) -> None:
        if self.browser_agent is not None:
            self.browser_agent.stop()

    # --- Agents
    def register_agent(
        self,
        agent_name: str,
        agent_id: str,
        *,
        browsers: list[str] | None = None,
        capacity: int | None = None,
    ) -> str | None:
        """Register a self-hosted agent; returns the one-time API token or None."""
        name = (agent_name or "").strip()
        new_id = (agent_id or "").strip()
        if not name or not new_id:
            self._notify("Validation Error", "Please provide both agent name and ID", error=True)
            return None

        reg = self._cfg.registration
        try:
            response = self._functions.invoke(
                AGENT_API,
                {
                    "action": "register",
                    "agentId": new_id,
                    "agentName": name,
                    "browsers": browsers or list(reg.default_browsers),
                    "capacity": capacity or reg.default_capacity,
                },
            )
            if response.error is not None:
                raise RuntimeError(response.error.message)
            data = response.data or {}
            token = data.get("api_token") or data.get("apiToken")
            if not token:
                raise RuntimeError(str(data.get("error") or "No API token returned from server"))
        except Exception as e:
            logger.error("Registration error: %s", e)
            self._notify("Registration Failed", _error_text(e, "Failed to register agent"), error=True)
            return None

        self._notify("Agent Registered", "Save the API token - it won't be shown again!")
        self.load_agents()
        return str(token)

    def delete_agent(self, agent: AgentView) -> bool:
        if agent.ephemeral:
            return False
        store = SQLiteStore(self._db_path)
        try:
            deleted = store.delete_agent(agent_id=agent.agent_id)
            if not deleted:
                raise RuntimeError("Agent not found")
        except Exception as e:
            self._notify("Error", _error_text(e, "Failed to delete agent"), error=True)
            return False
        finally:
            store.close()
        self._notify("Agent Deleted", f'Agent "{agent.agent_name}" has been removed')
        self.load_agents()
        return True

    # --- Jobs
    def _job_run_id(self, store: SQLiteStore, job_id: str) -> str:
        row = store.get_job(job_id=job_id)
        return str(row["run_id"]) if row is not None else job_id

    def change_job_status(self, job_id: str, status: str) -> bool:
        store = SQLiteStore(self._db_path)
        try:
            run_id = self._job_run_id(store, job_id)
            job_service.change_job_status(store, job_id=job_id, status=status)
        except Exception as e:
            self._notify("Error", _error_text(e, "Failed to update job status"), error=True)
            return False
        finally:
            store.close()
        self._notify("Status Updated", f'Job "{run_id}" status changed to {status}')
        self.load_jobs()
        return True

    def retry_job(self, job_id: str) -> bool:
        return self.change_job_status(job_id, JOB_PENDING)

    def cancel_job(self, job_id: str) -> bool:
        return self.change_job_status(job_id, JOB_CANCELLED)

    def delete_job(self, job_id: str) -> bool:
        store = SQLiteStore(self._db_path)
        try:
            run_id = self._job_run_id(store, job_id)
            job_service.delete_job(store, job_id=job_id)
        except Exception as e:
            self._notify("Error", _error_text(e, "Failed to delete job"), error=True)
            return False
        finally:
            store.close()
        self._notify("Job Deleted", f'Job "{run_id}" has been removed')
        self.load_jobs()
        return True


@dataclass
class RunOutcome:
    kind: str  # execution|job|suite_execution|needs_confirmation|rejected
    execution_id: str | None = None
    job_ids: list[str] = field(default_factory=list)
    suite_execution: dict[str, Any] | None = None
    monitor: ExecutionMonitor | None = None
    run: Any = None


class TestRunner:
    """Runs tests and suites either directly or through an agent's queue."""

    __test__ = False  # not a pytest test class

    def __init__(
        self,
        *,
        functions: FunctionsClient,
        cfg: AppConfig,
        db_path: str | Path | None = None,
        notifier: Notifier | None = None,
        presence: AgentPresenceTracker | None = None,
        cancel_signal: Callable[[str], Any] | None = None,
        background: bool = True,
    ) -> None:
        self._functions = functions
        self._cfg = cfg
        self._db_path = db_path
        self.notifier = notifier or LoggingNotifier()
        self.presence = presence or AgentPresenceTracker(db_path=db_path, stale_after_s=cfg.presence.stale_after_s)
        self._cancel_signal = cancel_signal
        self._background = background

    def _notify(self, title: str, description: str, *, error: bool = False) -> None:
        self.notifier.notify(Notification(title=title, description=description, variant="destructive" if error else "default"))

    def _check_agent(self, agent_id: str | None, *, what: str, confirm_offline: bool) -> RunOutcome | None:
        if not agent_id:
            self._notify("Agent Required", f"Please select an agent to run the {what}", error=True)
            return RunOutcome(kind="rejected")
        agent = self.presence.get(agent_id)
        if agent is not None and not agent.is_online and not confirm_offline:
            self._notify(
                "Agent Offline",
                f'Agent "{agent.agent_name}" is offline. Confirm to queue the {what} anyway.',
                error=True,
            )
            return RunOutcome(kind="needs_confirmation")
        return None

    def monitor(
        self,
        execution_id: str,
        *,
        on_update: Callable[[dict[str, Any]], None] | None = None,
        on_close: Callable[[list[dict[str, Any]]], None] | None = None,
    ) -> ExecutionMonitor:
        return ExecutionMonitor(
            db_path=self._db_path or default_db_path(),
            execution_id=execution_id,
            auto_close_delay_s=self._cfg.executions.auto_close_delay_s,
            on_update=on_update,
            on_close=on_close,
        )

    def run_test(
        self,
        test_id: str,
        *,
        target: str = "direct",
        agent_id: str | None = None,
        confirm_offline: bool = False,
        on_update: Callable[[dict[str, Any]], None] | None = None,
        on_close: Callable[[list[dict[str, Any]]], None] | None = None,
    ) -> RunOutcome:
        if target == "agent":
            rejected = self._check_agent(agent_id, what="test", confirm_offline=confirm_offline)
            if rejected is not None:
                return rejected
            store = SQLiteStore(self._db_path)
            try:
                job = job_service.enqueue_job(store, cfg=self._cfg, test_id=test_id, agent_id=agent_id)
            except Exception as e:
                logger.error("Error running test: %s", e)
                self._notify("Error", "Failed to start test", error=True)
                return RunOutcome(kind="rejected")
            finally:
                store.close()
            self._notify("Job Scheduled", "Test has been added to the agent's queue")
            return RunOutcome(kind="job", job_ids=[job.job_id])

        store = SQLiteStore(self._db_path)
        try:
            run = start_direct_execution(
                store,
                functions=self._functions,
                test_id=test_id,
                background=self._background,
                on_done=self._report_direct_failure,
            )
        except Exception as e:
            logger.error("Error running test: %s", e)
            self._notify("Error", "Failed to start test", error=True)
            return RunOutcome(kind="rejected")
        finally:
            store.close()

        execution_id = run.execution.execution_id
        monitor = self.monitor(execution_id, on_update=on_update, on_close=on_close).start()
        self._notify("Test Started", "Browser automation is running...")
        return RunOutcome(kind="execution", execution_id=execution_id, monitor=monitor, run=run)

    def _report_direct_failure(self, response: FunctionResponse) -> None:
        if response.error is None:
            return
        self._notify("Test Failed", response.error.message or "Failed to execute test", error=True)

    def cancel_execution(self, execution_id: str) -> bool:
        store = SQLiteStore(self._db_path)
        try:
            row = store.get_execution(execution_id=execution_id)
            if row is None or str(row["status"]) != EXEC_RUNNING:
                return False
            cancel_execution(store, execution_id=execution_id, signal=self._cancel_signal)
        except Exception as e:
            logger.error("Error cancelling test: %s", e)
            self._notify("Error", "Failed to cancel test", error=True)
            return False
        finally:
            store.close()
        self._notify("Cancelling Test", "Stopping test execution after current step...")
        return True

    def run_suite(
        self,
        suite_id: str,
        *,
        target: str = "direct",
        agent_id: str | None = None,
        confirm_offline: bool = False,
    ) -> RunOutcome:
        store = SQLiteStore(self._db_path)
        try:
            members = store.list_suite_tests(suite_id=suite_id)
        finally:
            store.close()
        if not members:
            self._notify("Error", "No tests in suite to run", error=True)
            return RunOutcome(kind="rejected")

        if target == "agent":
            rejected = self._check_agent(agent_id, what="suite", confirm_offline=confirm_offline)
            if rejected is not None:
                return rejected
            store = SQLiteStore(self._db_path)
            try:
                suite_exec, jobs = job_service.enqueue_suite_run(store, cfg=self._cfg, suite_id=suite_id, agent_id=agent_id)
                summary = store.get_suite_execution(suite_execution_id=suite_exec.suite_execution_id)
            except Exception as e:
                logger.error("Error running suite: %s", e)
                self._notify("Error", "Failed to run test suite", error=True)
                return RunOutcome(kind="rejected")
            finally:
                store.close()
            self._notify("Suite Scheduled", f"{len(jobs)} tests added to the agent's queue")
            return RunOutcome(
                kind="suite_execution",
                job_ids=[j.job_id for j in jobs],
                suite_execution=row_to_dict(summary),
            )

        self._notify("Suite Execution Started", f"Running {len(members)} tests...")
        store = SQLiteStore(self._db_path)
        try:
            summary = run_suite_direct(store, functions=self._functions, suite_id=suite_id)
        except Exception as e:
            logger.error("Error running suite: %s", e)
            self._notify("Error", "Failed to run test suite", error=True)
            return RunOutcome(kind="rejected")
        finally:
            store.close()
        passed = int(summary.get("passed_tests") or 0)
        failed = int(summary.get("failed_tests") or 0)
        self._notify("Suite Execution Complete", f"{passed} passed, {failed} failed", error=failed > 0)
        return RunOutcome(kind="suite_execution", suite_execution=summary)
