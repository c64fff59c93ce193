from __future__ import annotations

import threading
from typing import Any

from fastapi import Request

from agent_hub.agents.presence import AgentPresenceTracker
from agent_hub.api.errors import APIError
from agent_hub.config.load_config import AppConfig, ConfigError, load_app_config
from agent_hub.functions.registry import FunctionsRuntime, build_functions
from agent_hub.mobile.helper_client import MobileHelperClient


_INIT_LOCK = threading.Lock()


def get_app_config() -> AppConfig:
    try:
        return load_app_config()
    except ConfigError as e:
        raise APIError(status_code=500, code="internal", message=str(e)) from e


def get_functions(request: Request) -> FunctionsRuntime:
    """FastAPI dependency: the functions runtime cached in `app.state` (lazy init).

    The in-process executor keeps cancellation tokens for running executions,
    so every request must see the same instance.
    """
    cached = getattr(request.app.state, "functions", None)
    if isinstance(cached, FunctionsRuntime):
        return cached

    with _INIT_LOCK:
        cached2 = getattr(request.app.state, "functions", None)
        if isinstance(cached2, FunctionsRuntime):
            return cached2
        try:
            runtime = build_functions(load_app_config())
        except ConfigError as e:
            raise APIError(status_code=503, code="dependency_unavailable", message=str(e)) from e
        request.app.state.functions = runtime
        return runtime


def get_mobile_helper(request: Request) -> MobileHelperClient:
    cached = getattr(request.app.state, "mobile_helper", None)
    if isinstance(cached, MobileHelperClient):
        return cached

    with _INIT_LOCK:
        cached2 = getattr(request.app.state, "mobile_helper", None)
        if isinstance(cached2, MobileHelperClient):
            return cached2
        client = MobileHelperClient.from_config(get_app_config().mobile_helper)
        request.app.state.mobile_helper = client
        return client


def presence_tracker(request: Request) -> AgentPresenceTracker:
    """Persisted agents plus the ephemeral ones of sessions owned by this process."""

    def _browser_agent() -> dict[str, Any] | None:
        session = getattr(request.app.state, "browser_agent", None)
        if session is None or not session.active:
            return None
        return session.as_agent()

    def _mobile_helper() -> dict[str, Any] | None:
        client = getattr(request.app.state, "mobile_helper", None)
        return client.as_agent() if isinstance(client, MobileHelperClient) else None

    cfg = get_app_config()
    return AgentPresenceTracker(
        stale_after_s=cfg.presence.stale_after_s,
        ephemeral_sources=[_browser_agent, _mobile_helper],
    )


def require_schedulable_agent(tracker: AgentPresenceTracker, agent_id: str | None, *, confirm_offline: bool) -> None:
    if not agent_id:
        raise APIError(status_code=400, code="invalid_argument", message="agent_id is required for target=agent.")
    agent = tracker.get(agent_id)
    if agent is not None and not agent.is_online and not confirm_offline:
        raise APIError(
            status_code=409,
            code="agent_offline",
            message=f'Agent "{agent.agent_name}" is offline. Resend with confirm_offline=true to queue anyway.',
            details={"agent_id": agent_id, "effective_status": agent.effective_status},
        )
