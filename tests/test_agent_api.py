from __future__ import annotations

import re
import tempfile

import pytest

from agent_hub.config.load_config import load_app_config
from agent_hub.functions.agent_api import AgentApi, hash_token
from agent_hub.functions.registry import build_local_functions
from agent_hub.runtime.errors import (
    ConflictError,
    InvalidArgumentError,
    InvalidTransitionError,
    NotFoundError,
    UnauthenticatedError,
)
from agent_hub.runtime.jobs import cancel_job, enqueue_job, enqueue_suite_run, retry_job
from agent_hub.storage.sqlite_store import SQLiteStore, decode_json


STEPS = [{"type": "navigate", "value": "/"}, {"type": "click", "selector": "#go"}]


def _seed_test(db_path: str) -> str:
    store = SQLiteStore(db_path)
    try:
        return store.create_test(name="Home", base_url="https://app.example.test", steps=STEPS).test_id
    finally:
        store.close()


def test_register_issues_prefixed_token_and_stores_hash() -> None:
    cfg = load_app_config()
    with tempfile.TemporaryDirectory() as td:
        db_path = f"{td}/app.db"
        api = AgentApi(cfg=cfg, db_path=db_path)

        out = api.register(agent_name="CI Runner", agent_id="agent-ci")
        assert out["success"] is True
        assert out["agent_id"] == "agent-ci"
        assert re.fullmatch(r"agent_[0-9a-f]{32}", out["api_token"])

        store = SQLiteStore(db_path)
        try:
            row = store.get_agent_by_token_hash(api_token_hash=hash_token(out["api_token"]))
            assert row is not None
            assert row["agent_id"] == "agent-ci"
            assert row["status"] == "offline"
            assert int(row["capacity"]) == cfg.registration.default_capacity
            assert decode_json(row["browsers_json"], []) == list(cfg.registration.default_browsers)
            raw = store._conn.execute(  # type: ignore[attr-defined]
                "SELECT api_token_hash FROM agents WHERE agent_id = 'agent-ci';"
            ).fetchone()
            assert raw["api_token_hash"] != out["api_token"]

            activity = store.list_activity(agent_id="agent-ci")
            assert [a["activity_type"] for a in activity] == ["agent_registered"]
        finally:
            store.close()

        assert api.authenticate(out["api_token"]) == "agent-ci"


def test_register_generates_id_and_rejects_duplicates() -> None:
    cfg = load_app_config()
    with tempfile.TemporaryDirectory() as td:
        api = AgentApi(cfg=cfg, db_path=f"{td}/app.db")

        generated = api.register(agent_name="Laptop")
        assert re.fullmatch(r"agent-\d+", generated["agent_id"])

        api.register(agent_name="One", agent_id="agent-dup")
        with pytest.raises(ConflictError):
            api.register(agent_name="Two", agent_id="agent-dup")

        with pytest.raises(InvalidArgumentError):
            api.register(agent_name="   ", agent_id="agent-blank")
        with pytest.raises(InvalidArgumentError):
            api.register(agent_name="Zero", agent_id="agent-zero", capacity=0)


def test_heartbeat_updates_registered_agent_only() -> None:
    cfg = load_app_config()
    with tempfile.TemporaryDirectory() as td:
        db_path = f"{td}/app.db"
        api = AgentApi(cfg=cfg, db_path=db_path)
        api.register(agent_name="Runner", agent_id="agent-1")

        out = api.heartbeat(agent_id="agent-1", status="busy", capacity=4, browsers=["firefox"], system_info={"os": "linux"})
        assert out["persisted"] is True
        assert out["pending_jobs"] == 0

        store = SQLiteStore(db_path)
        try:
            row = store.get_agent(agent_id="agent-1")
            assert row is not None
            assert row["status"] == "busy"
            assert row["last_heartbeat"] is not None
            assert int(row["capacity"]) == 4
            assert decode_json(row["browsers_json"], []) == ["firefox"]
            assert decode_json(row["config_json"], {})["system_info"] == {"os": "linux"}
        finally:
            store.close()

        # Unknown ids (in-page agents) are accepted but never persisted.
        ghost = api.heartbeat(agent_id="browser-abcdefghi", status="online")
        assert ghost["success"] is True
        assert ghost["persisted"] is False

        with pytest.raises(InvalidArgumentError):
            api.heartbeat(agent_id="agent-1", capacity=0)


def test_action_form_requires_agent_id_and_known_action() -> None:
    cfg = load_app_config()
    with tempfile.TemporaryDirectory() as td:
        api = AgentApi(cfg=cfg, db_path=f"{td}/app.db")
        with pytest.raises(InvalidArgumentError):
            api.handle_action({}, {})
        with pytest.raises(InvalidArgumentError):
            api.handle_action({"action": "poll"}, {})
        with pytest.raises(InvalidArgumentError):
            api.handle_action({"action": "dance", "agentId": "a"}, {})
        with pytest.raises(UnauthenticatedError):
            api.handle_action({"action": "poll"}, {"X-Agent-Key": "agent_nope"})


def test_poll_start_result_creates_and_finishes_execution() -> None:
    cfg = load_app_config()
    with tempfile.TemporaryDirectory() as td:
        db_path = f"{td}/app.db"
        functions = build_local_functions(cfg, db_path=db_path)
        reg = functions.client.invoke("agent-api", {"action": "register", "agentName": "Runner", "agentId": "agent-1"})
        assert reg.ok
        headers = {"X-Agent-Key": reg.data["api_token"]}

        test_id = _seed_test(db_path)
        store = SQLiteStore(db_path)
        try:
            job = enqueue_job(store, cfg=cfg, test_id=test_id)
        finally:
            store.close()

        polled = functions.client.invoke("agent-api", {"action": "poll", "limit": 1}, headers=headers)
        assert polled.ok
        assert [j["id"] for j in polled.data["jobs"]] == [job.job_id]
        assert polled.data["jobs"][0]["config"]["steps"] == STEPS

        started = functions.client.invoke("agent-api", {"action": "start", "jobId": job.job_id}, headers=headers)
        assert started.ok
        execution_id = started.data["execution_id"]

        # A second start on the same job is an invalid transition.
        again = functions.client.invoke("agent-api", {"action": "start", "jobId": job.job_id}, headers=headers)
        assert again.error is not None
        assert again.error.code == "invalid_transition"

        reported = functions.client.invoke(
            "agent-api",
            {
                "action": "result",
                "jobId": job.job_id,
                "status": "completed",
                "result_data": {"message": "ok"},
                "execution_time_ms": 1200,
                "step_results": [
                    {"status": "passed", "duration": 10},
                    {"status": "failed", "error": "Element not found"},
                ],
            },
            headers=headers,
        )
        assert reported.ok
        assert reported.data["execution_id"] == execution_id
        assert reported.data["execution_status"] == "failed"

        store = SQLiteStore(db_path)
        try:
            row = store.get_job(job_id=job.job_id)
            assert row is not None
            assert row["status"] == "completed"
            assert row["agent_id"] == "agent-1"
            assert row["started_at"] is not None
            assert row["completed_at"] is not None
            assert decode_json(row["result_json"], {})["data"] == {"message": "ok"}

            execution = store.get_execution(execution_id=execution_id)
            assert execution is not None
            assert execution["status"] == "failed"
            results = decode_json(execution["results_json"], [])
            assert results[1]["error"] == "Element not found"
            assert results[1]["step"]["selector"] == "#go"
        finally:
            store.close()

        status = functions.client.invoke("agent-api", {"action": "status"}, headers=headers)
        assert status.ok
        assert status.data["job_stats"]["by_status"] == {"completed": 1}


def test_result_rejects_bad_status_and_wrong_agent() -> None:
    cfg = load_app_config()
    with tempfile.TemporaryDirectory() as td:
        db_path = f"{td}/app.db"
        api = AgentApi(cfg=cfg, db_path=db_path)
        test_id = _seed_test(db_path)
        store = SQLiteStore(db_path)
        try:
            job = enqueue_job(store, cfg=cfg, test_id=test_id, agent_id="agent-1")
        finally:
            store.close()

        with pytest.raises(ConflictError):
            api.start(agent_id="agent-2", job_id=job.job_id)
        api.start(agent_id="agent-1", job_id=job.job_id)

        with pytest.raises(InvalidArgumentError):
            api.result(agent_id="agent-1", job_id=job.job_id, status="passed")
        with pytest.raises(NotFoundError):
            api.result(agent_id="agent-2", job_id=job.job_id, status="completed")

        api.result(agent_id="agent-1", job_id=job.job_id, status="failed", error_message="Browser crashed")
        with pytest.raises(InvalidTransitionError):
            api.result(agent_id="agent-1", job_id=job.job_id, status="completed")


def test_suite_member_results_finalize_suite() -> None:
    cfg = load_app_config()
    with tempfile.TemporaryDirectory() as td:
        db_path = f"{td}/app.db"
        api = AgentApi(cfg=cfg, db_path=db_path)
        store = SQLiteStore(db_path)
        try:
            test_ids = [
                store.create_test(name=f"T{i}", base_url="https://app.example.test", steps=STEPS).test_id
                for i in range(2)
            ]
            suite_id = store.create_suite(name="Nightly", test_ids=test_ids)
            suite_exec, jobs = enqueue_suite_run(store, cfg=cfg, suite_id=suite_id)
        finally:
            store.close()

        for job in jobs:
            api.start(agent_id="agent-1", job_id=job.job_id)

        store = SQLiteStore(db_path)
        try:
            running = store.get_suite_execution(suite_execution_id=suite_exec.suite_execution_id)
            assert running is not None
            assert running["status"] == "running"
        finally:
            store.close()

        first = api.result(agent_id="agent-1", job_id=jobs[0].job_id, status="completed")
        assert "suite_status" not in first
        last = api.result(agent_id="agent-1", job_id=jobs[1].job_id, status="completed")
        assert last["suite_status"] == "passed"

        store = SQLiteStore(db_path)
        try:
            final = store.get_suite_execution(suite_execution_id=suite_exec.suite_execution_id)
            assert final is not None
            assert final["status"] == "passed"
            assert int(final["passed_tests"]) == 2
            assert int(final["failed_tests"]) == 0
        finally:
            store.close()


def test_rerun_records_a_fresh_execution() -> None:
    cfg = load_app_config()
    with tempfile.TemporaryDirectory() as td:
        db_path = f"{td}/app.db"
        api = AgentApi(cfg=cfg, db_path=db_path)
        test_id = _seed_test(db_path)
        store = SQLiteStore(db_path)
        try:
            job = enqueue_job(store, cfg=cfg, test_id=test_id)
        finally:
            store.close()

        first_id = api.start(agent_id="agent-1", job_id=job.job_id)["execution_id"]
        first = api.result(
            agent_id="agent-1",
            job_id=job.job_id,
            status="completed",
            step_results=[{"status": "passed"}, {"status": "failed", "error": "boom"}],
        )
        assert first["execution_status"] == "failed"

        store = SQLiteStore(db_path)
        try:
            retry_job(store, job_id=job.job_id)
        finally:
            store.close()

        second_id = api.start(agent_id="agent-2", job_id=job.job_id)["execution_id"]
        assert second_id != first_id
        second = api.result(
            agent_id="agent-2",
            job_id=job.job_id,
            status="completed",
            step_results=[{"status": "passed"}, {"status": "passed"}],
        )
        assert second["execution_id"] == second_id
        assert second["execution_status"] == "passed"

        store = SQLiteStore(db_path)
        try:
            old = store.get_execution(execution_id=first_id)
            assert old is not None
            assert old["status"] == "failed"
            assert decode_json(old["results_json"], [])[1]["error"] == "boom"

            new = store.get_execution(execution_id=second_id)
            assert new is not None
            assert new["status"] == "passed"
            assert [r["status"] for r in decode_json(new["results_json"], [])] == ["passed", "passed"]

            latest = store.get_execution_for_job(job_id=job.job_id)
            assert latest is not None
            assert latest["execution_id"] == second_id
        finally:
            store.close()


def test_retried_suite_member_counts_its_latest_run() -> None:
    cfg = load_app_config()
    with tempfile.TemporaryDirectory() as td:
        db_path = f"{td}/app.db"
        api = AgentApi(cfg=cfg, db_path=db_path)
        store = SQLiteStore(db_path)
        try:
            test_ids = [
                store.create_test(name=f"T{i}", base_url="https://app.example.test", steps=STEPS).test_id
                for i in range(2)
            ]
            suite_id = store.create_suite(name="Nightly", test_ids=test_ids)
            suite_exec, jobs = enqueue_suite_run(store, cfg=cfg, suite_id=suite_id)
        finally:
            store.close()
        member_a, member_b = jobs

        api.start(agent_id="agent-1", job_id=member_a.job_id)
        api.result(
            agent_id="agent-1",
            job_id=member_a.job_id,
            status="completed",
            step_results=[{"status": "failed", "error": "boom"}],
        )

        store = SQLiteStore(db_path)
        try:
            retry_job(store, job_id=member_a.job_id)
        finally:
            store.close()

        api.start(agent_id="agent-1", job_id=member_a.job_id)
        api.result(
            agent_id="agent-1",
            job_id=member_a.job_id,
            status="completed",
            step_results=[{"status": "passed"}, {"status": "passed"}],
        )
        api.start(agent_id="agent-1", job_id=member_b.job_id)
        last = api.result(agent_id="agent-1", job_id=member_b.job_id, status="completed")
        assert last["suite_status"] == "passed"

        store = SQLiteStore(db_path)
        try:
            final = store.get_suite_execution(suite_execution_id=suite_exec.suite_execution_id)
            assert final is not None
            assert final["status"] == "passed"
            assert (int(final["passed_tests"]), int(final["failed_tests"])) == (2, 0)
        finally:
            store.close()


def test_cancelling_a_running_job_closes_its_execution() -> None:
    cfg = load_app_config()
    with tempfile.TemporaryDirectory() as td:
        db_path = f"{td}/app.db"
        api = AgentApi(cfg=cfg, db_path=db_path)
        test_id = _seed_test(db_path)
        store = SQLiteStore(db_path)
        try:
            job = enqueue_job(store, cfg=cfg, test_id=test_id)
        finally:
            store.close()

        execution_id = api.start(agent_id="agent-1", job_id=job.job_id)["execution_id"]

        store = SQLiteStore(db_path)
        try:
            cancel_job(store, job_id=job.job_id)
            row = store.get_job(job_id=job.job_id)
            assert row is not None
            assert row["status"] == "cancelled"
            execution = store.get_execution(execution_id=execution_id)
            assert execution is not None
            assert execution["status"] == "cancelled"
            assert execution["completed_at"] is not None
            assert execution["error_message"] == "Job cancelled"
        finally:
            store.close()

        # The agent's late report is refused and leaves the execution as it was.
        with pytest.raises(InvalidTransitionError):
            api.result(agent_id="agent-1", job_id=job.job_id, status="completed")
        store = SQLiteStore(db_path)
        try:
            execution = store.get_execution(execution_id=execution_id)
            assert execution is not None
            assert execution["status"] == "cancelled"
        finally:
            store.close()
