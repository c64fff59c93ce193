from __future__ import annotations

import importlib.metadata
import time
from typing import Any

from fastapi import APIRouter
from fastapi import Request

from agent_hub.storage.sqlite_store import SCHEMA_VERSION
from agent_hub.storage.sqlite_store import SQLiteStore


router = APIRouter()


def _pkg_version(name: str) -> str | None:
    try:
        return str(importlib.metadata.version(name))
    except importlib.metadata.PackageNotFoundError:
        return None


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/version")
def version() -> dict[str, Any]:
    return {
        "service": "agent-hub",
        "api": "v1",
        "schema_version": int(SCHEMA_VERSION),
        "deps": {
            "fastapi": _pkg_version("fastapi"),
            "pydantic": _pkg_version("pydantic"),
            "uvicorn": _pkg_version("uvicorn"),
        },
        "ts": time.time(),
    }


@router.get("/system")
def system(request: Request) -> dict[str, Any]:
    browser_agent = getattr(request.app.state, "browser_agent", None)
    mobile_session = getattr(request.app.state, "mobile_helper_session", None)

    store = SQLiteStore()
    try:
        return {
            "ts": time.time(),
            "sessions": {
                "browser_agent": {
                    "active": bool(browser_agent is not None and browser_agent.active),
                    "agent_id": browser_agent.agent_id if browser_agent is not None else None,
                },
                "mobile_helper_probe": {"active": bool(mobile_session is not None and mobile_session.active)},
            },
            "queue": {"jobs_by_status": store.count_jobs_by_status()},
            "startup": {
                "reconciled_executions": getattr(request.app.state, "reconciled_executions", 0),
                "reconciled_suites": getattr(request.app.state, "reconciled_suites", {}),
            },
        }
    finally:
        store.close()
