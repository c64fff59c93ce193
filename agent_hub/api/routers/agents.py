from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from agent_hub.api.dependencies import get_functions, presence_tracker
from agent_hub.api.errors import APIError
from agent_hub.functions.agent_api import FUNCTION_NAME as AGENT_API
from agent_hub.functions.registry import FunctionsRuntime
from agent_hub.storage.sqlite_store import SQLiteStore


router = APIRouter()


class RegisterAgentRequest(BaseModel):
    agent_name: str = Field(default="")
    agent_id: str = Field(default="")
    browsers: list[str] | None = Field(default=None)
    capacity: int | None = Field(default=None, ge=1)
    capabilities: dict[str, Any] = Field(default_factory=dict)


@router.get("/agents")
def list_agents(request: Request, online: bool = Query(default=False)) -> dict[str, Any]:
    tracker = presence_tracker(request)
    agents = tracker.online_agents() if online else tracker.load_agents()
    return {"items": [a.to_dict() for a in agents]}


@router.post("/agents")
def register_agent(body: RegisterAgentRequest, functions: FunctionsRuntime = Depends(get_functions)) -> dict[str, Any]:
    name = body.agent_name.strip()
    agent_id = body.agent_id.strip()
    if not name or not agent_id:
        raise APIError(status_code=400, code="invalid_argument", message="Please provide both agent name and ID")

    payload: dict[str, Any] = {
        "action": "register",
        "agentName": name,
        "agentId": agent_id,
        "capabilities": body.capabilities,
    }
    if body.browsers is not None:
        payload["browsers"] = body.browsers
    if body.capacity is not None:
        payload["capacity"] = body.capacity
    response = functions.client.invoke(AGENT_API, payload)
    if response.error is not None:
        raise APIError.from_function_error(response.error)
    return dict(response.data or {})


@router.get("/agents/{agent_id}")
def get_agent(agent_id: str, request: Request) -> dict[str, Any]:
    agent = presence_tracker(request).get(agent_id)
    if agent is None:
        raise APIError(status_code=404, code="not_found", message="Agent not found.")
    return {"agent": agent.to_dict()}


@router.delete("/agents/{agent_id}")
def delete_agent(agent_id: str) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        if not store.delete_agent(agent_id=agent_id):
            raise APIError(status_code=404, code="not_found", message="Agent not found.")
        return {"agent_id": agent_id, "deleted": True}
    finally:
        store.close()


@router.get("/agents/{agent_id}/activity")
def list_agent_activity(agent_id: str, limit: int = Query(default=50, ge=1, le=200)) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        return {"items": store.list_activity(agent_id=agent_id, limit=int(limit))}
    finally:
        store.close()
