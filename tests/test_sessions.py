from __future__ import annotations

import dataclasses
import random
import re
import tempfile
import threading
from typing import Any, Callable, Mapping

import pytest

from agent_hub.config.load_config import AppConfig, load_app_config
from agent_hub.functions.client import FunctionError, FunctionResponse
from agent_hub.functions.registry import build_local_functions
from agent_hub.runtime.jobs import enqueue_job
from agent_hub.runtime.sessions import (
    SIMULATED_RESULT_MESSAGE,
    BrowserAgentSession,
    PeriodicTask,
    new_browser_agent_id,
)
from agent_hub.storage.sqlite_store import SQLiteStore, decode_json


def _fast_cfg() -> AppConfig:
    cfg = load_app_config()
    return dataclasses.replace(cfg, local_agent=dataclasses.replace(cfg.local_agent, simulated_work_s=0.0))


class _FakeFunctions:
    def __init__(self, responses: Mapping[str, Callable[[dict[str, Any]], FunctionResponse]]) -> None:
        self._responses = dict(responses)
        self.calls: list[dict[str, Any]] = []
        self.heartbeat_seen = threading.Event()

    def invoke(self, name: str, body: dict[str, Any], *, headers: Mapping[str, str] | None = None) -> FunctionResponse:
        self.calls.append(dict(body))
        action = str(body.get("action"))
        if action == "heartbeat":
            self.heartbeat_seen.set()
        handler = self._responses.get(action)
        return handler(body) if handler is not None else FunctionResponse(data={"success": True})

    def actions(self) -> list[str]:
        return [str(c.get("action")) for c in self.calls]


def test_browser_agent_id_format() -> None:
    agent_id = new_browser_agent_id(random.Random(7))
    assert re.fullmatch(r"browser-[a-z0-9]{9}", agent_id)
    assert new_browser_agent_id(random.Random(7)) == agent_id


def test_periodic_task_keeps_cadence_after_errors() -> None:
    calls: list[int] = []
    done = threading.Event()

    def _fn() -> None:
        calls.append(1)
        if len(calls) >= 3:
            done.set()
        if len(calls) == 1:
            raise RuntimeError("first tick fails")

    task = PeriodicTask(name="test-task", interval_s=0.01, fn=_fn)
    task.start()
    try:
        assert done.wait(timeout=5)
    finally:
        task.stop()
    assert not task.running
    assert task.ticks >= 3

    with pytest.raises(ValueError):
        PeriodicTask(name="bad", interval_s=0, fn=lambda: None)


def test_tick_poll_claims_and_completes_one_job() -> None:
    cfg = _fast_cfg()
    with tempfile.TemporaryDirectory() as td:
        db_path = f"{td}/app.db"
        functions = build_local_functions(cfg, db_path=db_path)
        store = SQLiteStore(db_path)
        try:
            test_id = store.create_test(name="Home", base_url="https://app.example.test", steps=[]).test_id
            job = enqueue_job(store, cfg=cfg, test_id=test_id)
        finally:
            store.close()

        session = BrowserAgentSession(functions=functions.client, cfg=cfg, agent_id="browser-abcdefghi")
        assert session.tick_poll() == job.job_id
        assert session.tick_poll() is None
        assert session.processed_jobs == [job.job_id]
        assert not session.busy

        store = SQLiteStore(db_path)
        try:
            row = store.get_job(job_id=job.job_id)
            assert row is not None
            assert row["status"] == "completed"
            assert row["agent_id"] == "browser-abcdefghi"
            assert decode_json(row["result_json"], {})["data"] == {"message": SIMULATED_RESULT_MESSAGE}
            execution = store.get_execution_for_job(job_id=job.job_id)
            assert execution is not None
            assert execution["status"] == "passed"
        finally:
            store.close()

        # Ephemeral agents are never persisted by their heartbeats.
        assert session.send_heartbeat()["persisted"] is False


def test_poll_is_skipped_while_a_job_is_in_flight() -> None:
    cfg = _fast_cfg()
    nested: list[str | None] = []
    session: BrowserAgentSession

    def _start(body: dict[str, Any]) -> FunctionResponse:
        assert session.busy
        nested.append(session.tick_poll())
        return FunctionResponse(data={"success": True})

    fake = _FakeFunctions(
        {
            "poll": lambda body: FunctionResponse(data={"jobs": [{"id": "job_1"}]}),
            "start": _start,
        }
    )
    session = BrowserAgentSession(functions=fake, cfg=cfg, agent_id="browser-000000001")

    assert session.tick_poll() == "job_1"
    assert nested == [None]
    assert fake.actions() == ["poll", "start", "result"]
    assert all(c["agentId"] == "browser-000000001" for c in fake.calls)
    result = fake.calls[-1]
    assert result["status"] == "completed"
    assert result["result_data"] == {"message": SIMULATED_RESULT_MESSAGE}


def test_failed_start_returns_session_to_idle() -> None:
    cfg = _fast_cfg()
    fake = _FakeFunctions(
        {
            "poll": lambda body: FunctionResponse(data={"jobs": [{"id": "job_1"}]}),
            "start": lambda body: FunctionResponse(error=FunctionError(message="Job was claimed concurrently.")),
        }
    )
    session = BrowserAgentSession(functions=fake, cfg=cfg)
    with pytest.raises(RuntimeError, match="claimed concurrently"):
        session.tick_poll()
    assert not session.busy
    assert session.processed_jobs == []


def test_start_and_stop_own_the_periodic_tasks() -> None:
    cfg = _fast_cfg()
    fake = _FakeFunctions({"poll": lambda body: FunctionResponse(data={"jobs": []})})
    session = BrowserAgentSession(functions=fake, cfg=cfg, clock=lambda: 100.0)
    assert not session.active

    session.start()
    try:
        assert session.active
        assert fake.heartbeat_seen.wait(timeout=5)
        agent = session.as_agent()
        assert agent["agent_name"] == "Local Browser Agent"
        assert agent["status"] == "online"
        assert agent["last_heartbeat"] == 100.0
        assert agent["browsers"] == list(cfg.local_agent.browsers)
    finally:
        session.stop()
    assert not session.active

    heartbeat = next(c for c in fake.calls if c["action"] == "heartbeat")
    assert heartbeat["status"] == "online"
    assert heartbeat["capacity"] == cfg.local_agent.capacity
