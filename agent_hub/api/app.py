from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError

from agent_hub.api.errors import (
    APIError,
    api_error_handler,
    lifecycle_error_handler,
    unhandled_error_handler,
    validation_error_handler,
)
from agent_hub.config.load_config import load_app_config
from agent_hub.functions.registry import build_functions
from agent_hub.mobile.helper_client import MobileHelperClient
from agent_hub.runtime.errors import LifecycleError
from agent_hub.runtime.jobs import reconcile_suite_executions
from agent_hub.runtime.sessions import BrowserAgentSession, MobileHelperSession
from agent_hub.storage.sqlite_store import SQLiteStore

from .routers.agent_api import router as agent_api_router
from .routers.agents import router as agents_router
from .routers.executions import router as executions_router
from .routers.functions import router as functions_router
from .routers.health import router as health_router
from .routers.jobs import router as jobs_router
from .routers.local_agents import router as local_agents_router
from .routers.mobile_helper import router as mobile_helper_router
from .routers.suites import router as suites_router
from .routers.tests import router as tests_router


logger = logging.getLogger(__name__)


def _cors_origins_from_env() -> list[str]:
    raw = os.getenv("AGENT_HUB_CORS_ORIGINS", "").strip()
    if not raw:
        return [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
            "http://localhost:5173",
            "http://127.0.0.1:5173",
            "http://localhost:8080",
        ]
    return [o.strip() for o in raw.split(",") if o.strip()]


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    v = raw.strip().lower()
    if v in {"1", "true", "yes", "y", "on"}:
        return True
    if v in {"0", "false", "no", "n", "off"}:
        return False
    return default


def create_app() -> FastAPI:
    logging.basicConfig(
        level=os.getenv("AGENT_HUB_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):  # noqa: ANN202
        # Executions and suites left open by a previous process.
        if _env_bool("AGENT_HUB_RECONCILE_ON_STARTUP", True):
            store = SQLiteStore()
            try:
                app.state.reconciled_executions = int(store.reconcile_running_executions())
                app.state.reconciled_suites = reconcile_suite_executions(store)
            finally:
                store.close()
            logger.info(
                "Startup reconcile: %d executions, suites %s",
                app.state.reconciled_executions,
                app.state.reconciled_suites,
            )
        else:
            app.state.reconciled_executions = 0
            app.state.reconciled_suites = {}

        cfg = load_app_config()
        if _env_bool("AGENT_HUB_ENABLE_BROWSER_AGENT", False):
            functions = getattr(app.state, "functions", None) or build_functions(cfg)
            app.state.functions = functions
            session = BrowserAgentSession(functions=functions.client, cfg=cfg)
            session.start()
            app.state.browser_agent = session

        if _env_bool("AGENT_HUB_ENABLE_MOBILE_PROBE", False):
            client = MobileHelperClient.from_config(cfg.mobile_helper)
            app.state.mobile_helper = client
            probe = MobileHelperSession(client=client, interval_s=cfg.presence.dashboard_refresh_s)
            probe.start()
            app.state.mobile_helper_session = probe
        try:
            yield
        finally:
            for name in ("browser_agent", "mobile_helper_session"):
                session = getattr(app.state, name, None)
                if session is not None:
                    session.stop()

    app = FastAPI(title="agent-hub API", version="0.1.0", lifespan=lifespan)

    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(LifecycleError, lifecycle_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    origins = _cors_origins_from_env()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health_router, prefix="/api/v1", tags=["system"])
    app.include_router(agents_router, prefix="/api/v1", tags=["agents"])
    app.include_router(agent_api_router, prefix="/api/v1", tags=["agent-api"])
    app.include_router(jobs_router, prefix="/api/v1", tags=["jobs"])
    app.include_router(tests_router, prefix="/api/v1", tags=["tests"])
    app.include_router(executions_router, prefix="/api/v1", tags=["executions"])
    app.include_router(suites_router, prefix="/api/v1", tags=["suites"])
    app.include_router(local_agents_router, prefix="/api/v1", tags=["local-agents"])
    app.include_router(mobile_helper_router, prefix="/api/v1", tags=["mobile-helper"])
    app.include_router(functions_router, prefix="/functions/v1", tags=["functions"])

    return app


app = create_app()
