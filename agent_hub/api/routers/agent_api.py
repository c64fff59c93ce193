from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Header, Query

from agent_hub.api.dependencies import get_functions
from agent_hub.api.errors import APIError
from agent_hub.functions.agent_api import FUNCTION_NAME as AGENT_API
from agent_hub.functions.registry import FunctionsRuntime


router = APIRouter()


def _call(functions: FunctionsRuntime, body: dict[str, Any], agent_key: str | None) -> dict[str, Any]:
    headers = {"x-agent-key": agent_key} if agent_key else {}
    response = functions.client.invoke(AGENT_API, body, headers=headers)
    if response.error is not None:
        raise APIError.from_function_error(response.error)
    return dict(response.data or {})


def _require_key(agent_key: str | None) -> str:
    if not agent_key:
        raise APIError(status_code=401, code="unauthenticated", message="Missing X-Agent-Key header.")
    return agent_key


# Action form: `{"action": ..., "agentId": ...}` from the dashboard and in-page agents.
@router.post("/agent-api")
def agent_api_action(
    body: dict[str, Any],
    agent_key: str | None = Header(default=None, alias="X-Agent-Key"),
    functions: FunctionsRuntime = Depends(get_functions),
) -> dict[str, Any]:
    return _call(functions, body, agent_key)


# Path form: self-hosted agent processes authenticated by their token.
@router.post("/agent-api/heartbeat")
def agent_heartbeat(
    body: dict[str, Any] | None = None,
    agent_key: str | None = Header(default=None, alias="X-Agent-Key"),
    functions: FunctionsRuntime = Depends(get_functions),
) -> dict[str, Any]:
    return _call(functions, {**(body or {}), "action": "heartbeat"}, _require_key(agent_key))


@router.get("/agent-api/jobs")
def agent_poll(
    limit: int | None = Query(default=None, ge=1, le=50),
    agent_key: str | None = Header(default=None, alias="X-Agent-Key"),
    functions: FunctionsRuntime = Depends(get_functions),
) -> dict[str, Any]:
    body: dict[str, Any] = {"action": "poll"}
    if limit is not None:
        body["limit"] = int(limit)
    return _call(functions, body, _require_key(agent_key))


@router.post("/agent-api/jobs/{job_id}/start")
def agent_start_job(
    job_id: str,
    agent_key: str | None = Header(default=None, alias="X-Agent-Key"),
    functions: FunctionsRuntime = Depends(get_functions),
) -> dict[str, Any]:
    return _call(functions, {"action": "start", "jobId": job_id}, _require_key(agent_key))


@router.post("/agent-api/jobs/{job_id}/result")
def agent_report_result(
    job_id: str,
    body: dict[str, Any],
    agent_key: str | None = Header(default=None, alias="X-Agent-Key"),
    functions: FunctionsRuntime = Depends(get_functions),
) -> dict[str, Any]:
    return _call(functions, {**body, "action": "result", "jobId": job_id}, _require_key(agent_key))


@router.get("/agent-api/status")
def agent_status(
    agent_key: str | None = Header(default=None, alias="X-Agent-Key"),
    functions: FunctionsRuntime = Depends(get_functions),
) -> dict[str, Any]:
    return _call(functions, {"action": "status"}, _require_key(agent_key))
