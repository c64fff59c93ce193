from __future__ import annotations

import json
from typing import Any, Literal

from fastapi import APIRouter, Depends, Header, Query, Request
from pydantic import BaseModel, Field

from agent_hub.api.dependencies import get_functions, presence_tracker, require_schedulable_agent
from agent_hub.api.errors import APIError
from agent_hub.api.routers.jobs import request_hash
from agent_hub.config.load_config import load_app_config
from agent_hub.functions.registry import FunctionsRuntime
from agent_hub.runtime import jobs as job_service
from agent_hub.runtime.suite_runner import run_suite_direct
from agent_hub.storage.sqlite_store import SQLiteStore, row_to_dict


router = APIRouter()


class CreateSuiteRequest(BaseModel):
    name: str = Field(min_length=1)
    test_ids: list[str] = Field(default_factory=list)


class RunSuiteRequest(BaseModel):
    target: Literal["direct", "agent"] = Field(default="direct")
    agent_id: str | None = Field(default=None)
    confirm_offline: bool = Field(default=False)


@router.post("/suites")
def create_suite(body: CreateSuiteRequest) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        missing = [t for t in body.test_ids if store.get_test(test_id=t) is None]
        if missing:
            raise APIError(status_code=404, code="not_found", message="Test not found.", details={"test_ids": missing})
        suite_id = store.create_suite(name=body.name.strip(), test_ids=list(body.test_ids))
        return {"suite": _suite_payload(store, suite_id)}
    finally:
        store.close()


def _suite_payload(store: SQLiteStore, suite_id: str) -> dict[str, Any]:
    row = store.get_suite(suite_id=suite_id)
    if row is None:
        raise APIError(status_code=404, code="not_found", message="Suite not found.")
    out = dict(row_to_dict(row) or {})
    out["tests"] = [
        {"test_id": str(m["test_id"]), "name": str(m["name"]), "position": int(m["position"])}
        for m in store.list_suite_tests(suite_id=suite_id)
    ]
    return out


@router.get("/suites/{suite_id}")
def get_suite(suite_id: str) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        return {"suite": _suite_payload(store, suite_id)}
    finally:
        store.close()


@router.post("/suites/{suite_id}/run")
def run_suite(
    suite_id: str,
    body: RunSuiteRequest,
    request: Request,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    functions: FunctionsRuntime = Depends(get_functions),
) -> dict[str, Any]:
    if body.target == "direct":
        store = SQLiteStore()
        try:
            return {"target": "direct", "suite_execution": run_suite_direct(store, functions=functions.client, suite_id=suite_id)}
        finally:
            store.close()

    require_schedulable_agent(presence_tracker(request), body.agent_id, confirm_offline=body.confirm_offline)
    cfg = load_app_config()
    digest = request_hash(body)
    store = SQLiteStore()
    try:
        with store.transaction(mode="IMMEDIATE"):
            if idempotency_key:
                existing = store.get_idempotency(str(idempotency_key))
                if existing is not None:
                    if str(existing["request_hash"]) != digest:
                        raise APIError(
                            status_code=409,
                            code="conflict",
                            message="Idempotency-Key was already used with a different request body.",
                        )
                    return json.loads(str(existing["response_json"]))

            suite_exec, jobs = job_service.enqueue_suite_run(
                store,
                cfg=cfg,
                suite_id=suite_id,
                agent_id=body.agent_id,
                commit=False,
            )
            response: dict[str, Any] = {
                "target": "agent",
                "suite_execution": row_to_dict(
                    store.get_suite_execution(suite_execution_id=suite_exec.suite_execution_id)
                ),
                "job_ids": [j.job_id for j in jobs],
            }
            if idempotency_key:
                store.put_idempotency(
                    key=str(idempotency_key),
                    request_hash=digest,
                    response_json=json.dumps(response, ensure_ascii=False, separators=(",", ":")),
                    commit=False,
                )
            return response
    finally:
        store.close()


@router.get("/suites/{suite_id}/executions")
def list_suite_executions(suite_id: str, limit: int = Query(default=20, ge=1, le=100)) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        return {"items": store.list_suite_executions(suite_id=suite_id, limit=int(limit))}
    finally:
        store.close()


@router.get("/suite-executions/{suite_execution_id}")
def get_suite_execution(suite_execution_id: str) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        row = store.get_suite_execution(suite_execution_id=suite_execution_id)
        if row is None:
            raise APIError(status_code=404, code="not_found", message="Suite execution not found.")
        return {"suite_execution": row_to_dict(row)}
    finally:
        store.close()


@router.post("/suite-executions/reconcile")
def reconcile_suite_executions() -> dict[str, Any]:
    store = SQLiteStore()
    try:
        return job_service.reconcile_suite_executions(store)
    finally:
        store.close()
