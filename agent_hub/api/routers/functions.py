from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request

from agent_hub.api.dependencies import get_functions
from agent_hub.api.errors import APIError
from agent_hub.functions.registry import FunctionsRuntime


router = APIRouter()


@router.post("/{name}")
def invoke_function(
    name: str,
    body: dict[str, Any],
    request: Request,
    functions: FunctionsRuntime = Depends(get_functions),
) -> Any:
    """Serve in-process functions to remote `HttpFunctionsClient` callers."""
    if functions.executor is None:
        raise APIError(status_code=404, code="not_found", message="Functions are served remotely.")
    headers = {k.lower(): v for k, v in request.headers.items() if k.lower() == "x-agent-key"}
    response = functions.client.invoke(name, body, headers=headers)
    if response.error is not None:
        raise APIError.from_function_error(response.error)
    return response.data
