from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from agent_hub.api.dependencies import get_functions, presence_tracker, require_schedulable_agent
from agent_hub.api.errors import APIError
from agent_hub.config.load_config import load_app_config
from agent_hub.functions.registry import FunctionsRuntime
from agent_hub.runtime import jobs as job_service
from agent_hub.runtime.executions import start_direct_execution
from agent_hub.storage.sqlite_store import SQLiteStore, row_to_dict


router = APIRouter()


class CreateTestCaseRequest(BaseModel):
    title: str = Field(min_length=1)


class CreateTestRequest(BaseModel):
    name: str = Field(min_length=1)
    base_url: str = Field(default="")
    steps: list[dict[str, Any]] = Field(default_factory=list)
    test_case_id: str | None = Field(default=None)


class RunTestRequest(BaseModel):
    target: Literal["direct", "agent"] = Field(default="direct")
    agent_id: str | None = Field(default=None)
    confirm_offline: bool = Field(default=False)


@router.post("/test-cases")
def create_test_case(body: CreateTestCaseRequest) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        test_case_id = store.create_test_case(title=body.title.strip())
        return {"test_case": row_to_dict(store.get_test_case(test_case_id=test_case_id))}
    finally:
        store.close()


@router.get("/test-cases/{test_case_id}")
def get_test_case(test_case_id: str) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        row = store.get_test_case(test_case_id=test_case_id)
        if row is None:
            raise APIError(status_code=404, code="not_found", message="Test case not found.")
        return {"test_case": row_to_dict(row)}
    finally:
        store.close()


@router.post("/tests")
def create_test(body: CreateTestRequest) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        if body.test_case_id and store.get_test_case(test_case_id=body.test_case_id) is None:
            raise APIError(
                status_code=404,
                code="not_found",
                message="Test case not found.",
                details={"test_case_id": body.test_case_id},
            )
        test = store.create_test(
            name=body.name.strip(),
            base_url=body.base_url.strip(),
            steps=body.steps,
            test_case_id=body.test_case_id,
        )
        return {"test": row_to_dict(store.get_test(test_id=test.test_id))}
    finally:
        store.close()


@router.get("/tests/{test_id}")
def get_test(test_id: str) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        row = store.get_test(test_id=test_id)
        if row is None:
            raise APIError(status_code=404, code="not_found", message="Test not found.")
        return {"test": row_to_dict(row)}
    finally:
        store.close()


@router.post("/tests/{test_id}/run")
def run_test(
    test_id: str,
    body: RunTestRequest,
    request: Request,
    functions: FunctionsRuntime = Depends(get_functions),
) -> dict[str, Any]:
    if body.target == "agent":
        require_schedulable_agent(presence_tracker(request), body.agent_id, confirm_offline=body.confirm_offline)
        store = SQLiteStore()
        try:
            job = job_service.enqueue_job(store, cfg=load_app_config(), test_id=test_id, agent_id=body.agent_id)
            return {"target": "agent", "job": row_to_dict(store.get_job(job_id=job.job_id))}
        finally:
            store.close()

    store = SQLiteStore()
    try:
        run = start_direct_execution(store, functions=functions.client, test_id=test_id)
        return {"target": "direct", "execution": row_to_dict(store.get_execution(execution_id=run.execution.execution_id))}
    finally:
        store.close()


@router.get("/tests/{test_id}/executions")
def list_test_executions(test_id: str, limit: int = Query(default=10, ge=1, le=100)) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        return {"items": store.list_executions_for_test(test_id=test_id, limit=int(limit))}
    finally:
        store.close()
