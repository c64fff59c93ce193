from __future__ import annotations

import logging
import random
import string
import threading
import time
from typing import Any, Callable

from agent_hub.config.load_config import AppConfig
from agent_hub.functions.agent_api import FUNCTION_NAME as AGENT_API
from agent_hub.functions.client import FunctionsClient
from agent_hub.mobile.helper_client import MobileHelperClient, MobileHelperStatus
from agent_hub.runtime.types import AGENT_BUSY, AGENT_ONLINE, JOB_COMPLETED


logger = logging.getLogger(__name__)

BROWSER_AGENT_NAME = "Local Browser Agent"
SIMULATED_RESULT_MESSAGE = "Successfully executed in Browser Agent (Simulated)"

_ID_ALPHABET = string.ascii_lowercase + string.digits


def new_browser_agent_id(rng: random.Random | None = None) -> str:
    r = rng or random.Random()
    return "browser-" + "".join(r.choice(_ID_ALPHABET) for _ in range(9))


class PeriodicTask:
    """Runs `fn` every `interval_s` seconds on a daemon thread until stopped.

    Errors raised by `fn` are logged and the schedule continues at the same
    cadence.
    """

    def __init__(
        self,
        *,
        name: str,
        interval_s: float,
        fn: Callable[[], Any],
        run_immediately: bool = True,
    ) -> None:
        if interval_s <= 0:
            raise ValueError("interval_s must be > 0")
        self.name = name
        self.interval_s = float(interval_s)
        self._fn = fn
        self._run_immediately = run_immediately
        self._thread: threading.Thread | None = None
        self._stop = threading.Event()
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run_loop, name=self.name, daemon=True)
        self._thread.start()

    def stop(self, *, timeout_s: float = 5.0) -> None:
        self._stop.set()
        t = self._thread
        if t is None:
            return
        if t is not threading.current_thread():
            t.join(timeout=timeout_s)
        self._thread = None

    def _tick(self) -> None:
        self.ticks += 1
        try:
            self._fn()
        except Exception:
            logger.exception("Periodic task %s failed", self.name)

    def _run_loop(self) -> None:
        if self._run_immediately and not self._stop.is_set():
            self._tick()
        while not self._stop.wait(self.interval_s):
            self._tick()


class BrowserAgentSession:
    """In-page agent that pulls work through `agent-api` while active.

    Owns two periodic tasks: a heartbeat and a poll. A poll is skipped while a
    job is in flight; a claimed job is started, "worked" for
    `simulated_work_s` and reported as `completed`.
    """

    def __init__(
        self,
        *,
        functions: FunctionsClient,
        cfg: AppConfig,
        agent_id: str | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._functions = functions
        self._cfg = cfg
        self.agent_id = agent_id or new_browser_agent_id()
        self._clock = clock
        self._lock = threading.Lock()
        self._state = "idle"
        self._stop = threading.Event()
        self._tasks: list[PeriodicTask] = []
        self.processed_jobs: list[str] = []

    @property
    def active(self) -> bool:
        return bool(self._tasks)

    @property
    def busy(self) -> bool:
        with self._lock:
            return self._state == "busy"

    def start(self) -> None:
        if self.active:
            return
        self._stop.clear()
        local = self._cfg.local_agent
        self._tasks = [
            PeriodicTask(
                name=f"{self.agent_id}-heartbeat",
                interval_s=self._cfg.presence.heartbeat_interval_s,
                fn=self.send_heartbeat,
            ),
            PeriodicTask(
                name=f"{self.agent_id}-poll",
                interval_s=local.poll_interval_s,
                fn=self.tick_poll,
                run_immediately=False,
            ),
        ]
        for task in self._tasks:
            task.start()
        logger.info("Browser agent %s activated", self.agent_id)

    def stop(self, *, timeout_s: float = 5.0) -> None:
        self._stop.set()
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.stop(timeout_s=timeout_s)
        if tasks:
            logger.info("Browser agent %s deactivated", self.agent_id)

    def _invoke(self, body: dict[str, Any]) -> Any:
        response = self._functions.invoke(AGENT_API, {**body, "agentId": self.agent_id})
        if response.error is not None:
            raise RuntimeError(response.error.message)
        return response.data

    def send_heartbeat(self) -> Any:
        local = self._cfg.local_agent
        return self._invoke(
            {
                "action": "heartbeat",
                "status": AGENT_BUSY if self.busy else AGENT_ONLINE,
                "capacity": local.capacity,
                "browsers": list(local.browsers),
                "system_info": {"runtime": "agent-hub", "kind": "browser"},
            }
        )

    def tick_poll(self) -> str | None:
        """Poll once and run at most one job; returns the processed job id."""
        with self._lock:
            if self._state == "busy":
                return None
        data = self._invoke({"action": "poll", "limit": 1})
        jobs = (data or {}).get("jobs") or []
        if not jobs:
            return None

        job_id = str(jobs[0]["id"])
        with self._lock:
            self._state = "busy"
        try:
            self._invoke({"action": "start", "jobId": job_id})
            started = time.monotonic()
            if self._stop.wait(self._cfg.local_agent.simulated_work_s):
                logger.info("Browser agent %s stopped while running job %s", self.agent_id, job_id)
                return None
            self._invoke(
                {
                    "action": "result",
                    "jobId": job_id,
                    "status": JOB_COMPLETED,
                    "result_data": {"message": SIMULATED_RESULT_MESSAGE},
                    "execution_time_ms": int((time.monotonic() - started) * 1000),
                }
            )
        finally:
            with self._lock:
                self._state = "idle"
        self.processed_jobs.append(job_id)
        return job_id

    def as_agent(self) -> dict[str, Any]:
        local = self._cfg.local_agent
        busy = self.busy
        now = self._clock()
        return {
            "agent_id": self.agent_id,
            "agent_name": BROWSER_AGENT_NAME,
            "status": AGENT_BUSY if busy else AGENT_ONLINE,
            "last_heartbeat": now,
            "capacity": local.capacity,
            "running_jobs": 1 if busy else 0,
            "browsers": list(local.browsers),
            "config": {},
            "created_at": now,
            "ephemeral": True,
        }


class MobileHelperSession:
    """Probes the mobile helper on the dashboard refresh cadence."""

    def __init__(self, *, client: MobileHelperClient, interval_s: float) -> None:
        self.client = client
        self._task = PeriodicTask(name="mobile-helper-probe", interval_s=interval_s, fn=self.refresh)

    @property
    def active(self) -> bool:
        return self._task.running

    def refresh(self) -> MobileHelperStatus:
        return self.client.status()

    def start(self) -> None:
        self._task.start()

    def stop(self, *, timeout_s: float = 5.0) -> None:
        self._task.stop(timeout_s=timeout_s)
