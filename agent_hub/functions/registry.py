from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from agent_hub.config.load_config import AppConfig, ConfigError
from agent_hub.functions.agent_api import FUNCTION_NAME as AGENT_API, AgentApi
from agent_hub.functions.client import FunctionsClient, HttpFunctionsClient, LocalFunctionsClient
from agent_hub.functions.execute_test import FUNCTION_NAME as EXECUTE_TEST, TestExecutor
from agent_hub.runtime.dry_run import DryRunStepRunner, StepRunner


@dataclass(frozen=True)
class FunctionsRuntime:
    client: FunctionsClient
    executor: TestExecutor | None  # None when functions run remotely

    def cancel_signal(self, execution_id: str) -> bool:
        if self.executor is None:
            return False
        return self.executor.request_cancel(execution_id)


def build_local_functions(
    cfg: AppConfig,
    *,
    db_path: str | Path | None = None,
    step_runner: StepRunner | None = None,
) -> FunctionsRuntime:
    executor = TestExecutor(db_path=db_path, step_runner=step_runner or DryRunStepRunner())
    client = LocalFunctionsClient({AGENT_API: AgentApi(cfg=cfg, db_path=db_path), EXECUTE_TEST: executor})
    return FunctionsRuntime(client=client, executor=executor)


def build_functions(cfg: AppConfig, *, db_path: str | Path | None = None) -> FunctionsRuntime:
    """Remote functions when AGENT_HUB_FUNCTIONS_URL is set, else in-process ones."""
    if os.getenv("AGENT_HUB_FUNCTIONS_URL", "").strip():
        return FunctionsRuntime(client=HttpFunctionsClient(), executor=None)
    if not cfg.executions.dry_run:
        raise ConfigError("executions.dry_run = false requires AGENT_HUB_FUNCTIONS_URL (no in-process browser runner).")
    return build_local_functions(cfg, db_path=db_path)
