from __future__ import annotations

import threading
from typing import Any

from fastapi import APIRouter, Depends, Request

from agent_hub.api.dependencies import get_app_config, get_functions
from agent_hub.functions.registry import FunctionsRuntime
from agent_hub.runtime.sessions import BrowserAgentSession


router = APIRouter()

_SESSION_LOCK = threading.Lock()


def _snapshot(session: BrowserAgentSession | None) -> dict[str, Any]:
    if session is None:
        return {"active": False, "agent": None}
    return {
        "active": session.active,
        "agent": session.as_agent() if session.active else None,
        "processed_jobs": list(session.processed_jobs),
    }


@router.get("/local-agents/browser")
def browser_agent_status(request: Request) -> dict[str, Any]:
    return _snapshot(getattr(request.app.state, "browser_agent", None))


@router.post("/local-agents/browser/activate")
def activate_browser_agent(request: Request, functions: FunctionsRuntime = Depends(get_functions)) -> dict[str, Any]:
    with _SESSION_LOCK:
        session = getattr(request.app.state, "browser_agent", None)
        if session is None or not session.active:
            session = BrowserAgentSession(functions=functions.client, cfg=get_app_config())
            session.start()
            request.app.state.browser_agent = session
    return _snapshot(session)


@router.post("/local-agents/browser/deactivate")
def deactivate_browser_agent(request: Request) -> dict[str, Any]:
    with _SESSION_LOCK:
        session = getattr(request.app.state, "browser_agent", None)
        if session is not None:
            session.stop()
    return _snapshot(session)
