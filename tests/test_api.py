from __future__ import annotations

import os
import tempfile
import time
from typing import Any

import pytest
from fastapi.testclient import TestClient

from agent_hub.api.app import create_app


def _env(monkeypatch: pytest.MonkeyPatch, td: str) -> None:
    monkeypatch.setenv("AGENT_HUB_SQLITE_PATH", os.path.join(td, "app.db"))
    monkeypatch.setenv("AGENT_HUB_RECONCILE_ON_STARTUP", "1")
    monkeypatch.delenv("AGENT_HUB_FUNCTIONS_URL", raising=False)
    monkeypatch.delenv("AGENT_HUB_ENABLE_BROWSER_AGENT", raising=False)
    monkeypatch.delenv("AGENT_HUB_ENABLE_MOBILE_PROBE", raising=False)


def _create_test(client: TestClient, steps: list[dict[str, Any]] | None = None) -> str:
    r = client.post(
        "/api/v1/tests",
        json={"name": "Login", "base_url": "https://app.example.test", "steps": steps or [{"type": "navigate"}]},
    )
    assert r.status_code == 200, r.text
    return r.json()["test"]["test_id"]


def _wait_terminal(client: TestClient, execution_id: str, timeout_s: float = 5.0) -> dict[str, Any]:
    deadline = time.monotonic() + timeout_s
    while True:
        execution = client.get(f"/api/v1/executions/{execution_id}").json()["execution"]
        if execution["status"] in ("passed", "failed", "cancelled") or time.monotonic() > deadline:
            return execution
        time.sleep(0.02)


def test_health_and_version(monkeypatch: pytest.MonkeyPatch) -> None:
    with tempfile.TemporaryDirectory() as td:
        _env(monkeypatch, td)
        with TestClient(create_app()) as client:
            assert client.get("/api/v1/healthz").json() == {"status": "ok"}
            v = client.get("/api/v1/version").json()
            assert v["service"] == "agent-hub"
            assert set(v["deps"]) == {"fastapi", "pydantic", "uvicorn"}
            system = client.get("/api/v1/system").json()
            assert system["sessions"]["browser_agent"]["active"] is False
            assert system["startup"]["reconciled_executions"] == 0


def test_register_validation_and_agent_flow(monkeypatch: pytest.MonkeyPatch) -> None:
    with tempfile.TemporaryDirectory() as td:
        _env(monkeypatch, td)
        with TestClient(create_app()) as client:
            r = client.post("/api/v1/agents", json={"agent_name": "", "agent_id": "agent-1"})
            assert r.status_code == 400
            assert r.json()["error"]["message"] == "Please provide both agent name and ID"

            r = client.post("/api/v1/agents", json={"agent_name": "Runner", "agent_id": "agent-1"})
            assert r.status_code == 200, r.text
            token = r.json()["api_token"]

            dup = client.post("/api/v1/agents", json={"agent_name": "Runner", "agent_id": "agent-1"})
            assert dup.status_code == 409
            assert dup.json()["error"]["code"] == "conflict"

            assert client.get("/api/v1/agent-api/jobs").status_code == 401
            bad = client.get("/api/v1/agent-api/jobs", headers={"X-Agent-Key": "agent_wrong"})
            assert bad.status_code == 401

            headers = {"X-Agent-Key": token}
            assert client.get("/api/v1/agents", params={"online": True}).json()["items"] == []
            hb = client.post("/api/v1/agent-api/heartbeat", json={"status": "online"}, headers=headers)
            assert hb.status_code == 200 and hb.json()["persisted"] is True
            online = client.get("/api/v1/agents", params={"online": True}).json()["items"]
            assert [a["agent_id"] for a in online] == ["agent-1"]

            test_id = _create_test(client)
            job = client.post("/api/v1/jobs", json={"test_id": test_id, "agent_id": "agent-1"}).json()["job"]

            polled = client.get("/api/v1/agent-api/jobs", params={"limit": 1}, headers=headers).json()
            assert [j["id"] for j in polled["jobs"]] == [job["job_id"]]

            started = client.post(f"/api/v1/agent-api/jobs/{job['job_id']}/start", headers=headers)
            assert started.status_code == 200, started.text
            done = client.post(
                f"/api/v1/agent-api/jobs/{job['job_id']}/result",
                json={"status": "completed", "result_data": {"message": "ok"}},
                headers=headers,
            )
            assert done.status_code == 200, done.text
            assert done.json()["execution_status"] == "passed"

            job_row = client.get(f"/api/v1/jobs/{job['job_id']}").json()["job"]
            assert job_row["status"] == "completed"

            activity = client.get("/api/v1/agents/agent-1/activity").json()["items"]
            assert {a["activity_type"] for a in activity} == {"agent_registered", "job_started", "job_completed"}

            assert client.delete("/api/v1/agents/agent-1").status_code == 200
            assert client.get("/api/v1/agents/agent-1").status_code == 404


def test_job_actions_and_pagination(monkeypatch: pytest.MonkeyPatch) -> None:
    with tempfile.TemporaryDirectory() as td:
        _env(monkeypatch, td)
        with TestClient(create_app()) as client:
            test_id = _create_test(client)
            job_ids = [client.post("/api/v1/jobs", json={"test_id": test_id}).json()["job"]["job_id"] for _ in range(3)]

            page1 = client.get("/api/v1/jobs", params={"limit": 2}).json()
            assert page1["has_more"] is True
            page2 = client.get("/api/v1/jobs", params={"limit": 2, "cursor": page1["next_cursor"]}).json()
            assert page2["has_more"] is False
            seen = [j["job_id"] for j in page1["items"] + page2["items"]]
            assert sorted(seen) == sorted(job_ids)

            assert client.get("/api/v1/jobs", params={"cursor": "nope"}).status_code == 400

            cancelled = client.post(f"/api/v1/jobs/{job_ids[0]}/cancel").json()["job"]
            assert cancelled["status"] == "cancelled"
            assert cancelled["completed_at"] is not None

            again = client.post(f"/api/v1/jobs/{job_ids[0]}/cancel")
            assert again.status_code == 409
            assert again.json()["error"]["code"] == "invalid_transition"

            retried = client.post(f"/api/v1/jobs/{job_ids[0]}/retry").json()["job"]
            assert retried["status"] == "pending"
            assert retried["agent_id"] is None
            assert retried["started_at"] is None
            assert retried["completed_at"] is None

            bad = client.post(f"/api/v1/jobs/{job_ids[1]}/status", json={"status": "completed"})
            assert bad.status_code == 409

            assert client.delete(f"/api/v1/jobs/{job_ids[2]}").json()["deleted"] is True
            assert client.get(f"/api/v1/jobs/{job_ids[2]}").status_code == 404
            assert client.post("/api/v1/jobs", json={"test_id": "test_missing"}).status_code == 404


def test_direct_run_and_agent_run(monkeypatch: pytest.MonkeyPatch) -> None:
    with tempfile.TemporaryDirectory() as td:
        _env(monkeypatch, td)
        with TestClient(create_app()) as client:
            tc = client.post("/api/v1/test-cases", json={"title": "Login"}).json()["test_case"]
            r = client.post(
                "/api/v1/tests",
                json={"name": "Login", "base_url": "https://app.example.test", "steps": [], "test_case_id": tc["test_case_id"]},
            )
            test_id = r.json()["test"]["test_id"]
            missing_case = client.post("/api/v1/tests", json={"name": "X", "test_case_id": "tc_missing"})
            assert missing_case.status_code == 404

            run = client.post(f"/api/v1/tests/{test_id}/run", json={"target": "direct"}).json()
            assert run["target"] == "direct"
            execution = _wait_terminal(client, run["execution"]["execution_id"])
            assert execution["status"] == "passed"
            items = client.get(f"/api/v1/tests/{test_id}/executions").json()["items"]
            assert [e["execution_id"] for e in items] == [execution["execution_id"]]

            cancel = client.post(f"/api/v1/executions/{execution['execution_id']}/cancel")
            assert cancel.status_code == 409

            no_agent = client.post(f"/api/v1/tests/{test_id}/run", json={"target": "agent"})
            assert no_agent.status_code == 400

            client.post("/api/v1/agents", json={"agent_name": "Runner", "agent_id": "agent-off"})
            offline = client.post(f"/api/v1/tests/{test_id}/run", json={"target": "agent", "agent_id": "agent-off"})
            assert offline.status_code == 409
            assert offline.json()["error"]["code"] == "agent_offline"

            queued = client.post(
                f"/api/v1/tests/{test_id}/run",
                json={"target": "agent", "agent_id": "agent-off", "confirm_offline": True},
            ).json()
            assert queued["target"] == "agent"
            assert queued["job"]["status"] == "pending"
            assert queued["job"]["agent_id"] == "agent-off"


def test_suite_runs(monkeypatch: pytest.MonkeyPatch) -> None:
    with tempfile.TemporaryDirectory() as td:
        _env(monkeypatch, td)
        with TestClient(create_app()) as client:
            ids = [
                _create_test(client),
                _create_test(client, [{"type": "click", "simulate": "error"}]),
                _create_test(client),
            ]
            missing = client.post("/api/v1/suites", json={"name": "Bad", "test_ids": ["test_missing"]})
            assert missing.status_code == 404
            assert missing.json()["error"]["details"] == {"test_ids": ["test_missing"]}

            suite = client.post("/api/v1/suites", json={"name": "Smoke", "test_ids": ids}).json()["suite"]
            assert [t["test_id"] for t in suite["tests"]] == ids

            direct = client.post(f"/api/v1/suites/{suite['suite_id']}/run", json={"target": "direct"}).json()
            summary = direct["suite_execution"]
            assert (summary["total_tests"], summary["passed_tests"], summary["failed_tests"]) == (3, 2, 1)
            assert summary["status"] == "failed"

            client.post("/api/v1/agents", json={"agent_name": "Runner", "agent_id": "agent-1"})
            body = {"target": "agent", "agent_id": "agent-1", "confirm_offline": True}
            r1 = client.post(f"/api/v1/suites/{suite['suite_id']}/run", json=body, headers={"Idempotency-Key": "s1"})
            r2 = client.post(f"/api/v1/suites/{suite['suite_id']}/run", json=body, headers={"Idempotency-Key": "s1"})
            assert r1.status_code == 200, r1.text
            assert r1.json() == r2.json()
            assert len(r1.json()["job_ids"]) == 3
            sexec_id = r1.json()["suite_execution"]["suite_execution_id"]
            assert client.get(f"/api/v1/suite-executions/{sexec_id}").json()["suite_execution"]["status"] == "pending"

            history = client.get(f"/api/v1/suites/{suite['suite_id']}/executions").json()["items"]
            assert len(history) == 2

            empty = client.post("/api/v1/suites", json={"name": "Empty"}).json()["suite"]
            r = client.post(f"/api/v1/suites/{empty['suite_id']}/run", json={"target": "direct"})
            assert r.status_code == 400

            assert client.post("/api/v1/suite-executions/reconcile").json() == {"cancelled": 0, "finalized": 0}


def test_functions_endpoint_and_local_browser_agent(monkeypatch: pytest.MonkeyPatch) -> None:
    with tempfile.TemporaryDirectory() as td:
        _env(monkeypatch, td)
        with TestClient(create_app()) as client:
            r = client.post("/functions/v1/agent-api", json={"action": "heartbeat", "agentId": "browser-xyz"})
            assert r.status_code == 200
            assert r.json()["persisted"] is False

            unknown = client.post("/functions/v1/agent-api", json={"action": "dance", "agentId": "a"})
            assert unknown.status_code == 400

            status = client.post("/api/v1/local-agents/browser/activate").json()
            try:
                assert status["active"] is True
                agent_id = status["agent"]["agent_id"]
                listed = client.get("/api/v1/agents").json()["items"]
                assert agent_id in [a["agent_id"] for a in listed]
            finally:
                status = client.post("/api/v1/local-agents/browser/deactivate").json()
            assert status["active"] is False
            assert client.get("/api/v1/agents").json()["items"] == []


def test_startup_reconciles_interrupted_executions(monkeypatch: pytest.MonkeyPatch) -> None:
    from agent_hub.storage.sqlite_store import SQLiteStore

    with tempfile.TemporaryDirectory() as td:
        _env(monkeypatch, td)
        store = SQLiteStore(os.path.join(td, "app.db"))
        try:
            test_id = store.create_test(name="T", base_url="", steps=[]).test_id
            execution = store.create_execution(test_id=test_id, total_steps=0, status="running")
        finally:
            store.close()

        with TestClient(create_app()) as client:
            row = client.get(f"/api/v1/executions/{execution.execution_id}").json()["execution"]
            assert row["status"] == "failed"
            assert row["error_message"] == "server_restarted"
            assert client.get("/api/v1/system").json()["startup"]["reconciled_executions"] == 1
