from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from agent_hub.api.dependencies import get_mobile_helper
from agent_hub.api.errors import APIError
from agent_hub.mobile.helper_client import MobileHelperClient, MobileHelperError


router = APIRouter()


class TerminalCommandRequest(BaseModel):
    command: str = Field(min_length=1)


@router.get("/mobile-helper/status")
def mobile_helper_status(
    force: bool = Query(default=False),
    client: MobileHelperClient = Depends(get_mobile_helper),
) -> dict[str, Any]:
    status = client.status(force=force)
    return {"status": status.to_dict(), "cooldown": client.in_cooldown()}


@router.post("/mobile-helper/terminal")
def mobile_helper_terminal(
    body: TerminalCommandRequest,
    client: MobileHelperClient = Depends(get_mobile_helper),
) -> dict[str, Any]:
    try:
        return {"result": client.send_terminal_command(body.command)}
    except MobileHelperError as e:
        raise APIError(status_code=502, code="dependency_unavailable", message=str(e)) from e
