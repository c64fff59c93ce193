from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Protocol


@dataclass(frozen=True)
class StepOutcome:
    status: str  # passed|failed
    duration_ms: int
    error: str | None = None
    screenshot: str | None = None


class StepRunner(Protocol):
    def run_step(self, step: dict[str, Any], *, base_url: str, index: int) -> StepOutcome: ...


class DryRunStepRunner:
    """Step runner that never touches a browser.

    Dry-run is for pipeline and UI testing: each step passes unless it carries a
    `simulate` hint. `simulate="fail"` records a failed step and
    `simulate="error"` raises, like a crashed executor would.
    """

    def __init__(self, *, step_delay_s: float = 0.0) -> None:
        self.step_delay_s = float(step_delay_s)

    def run_step(self, step: dict[str, Any], *, base_url: str, index: int) -> StepOutcome:
        started = time.monotonic()
        if self.step_delay_s > 0:
            time.sleep(self.step_delay_s)

        hint = str(step.get("simulate") or "").strip().lower()
        if hint == "error":
            raise RuntimeError(f"Simulated executor crash at step {index + 1}")

        duration_ms = int((time.monotonic() - started) * 1000)
        if hint == "fail":
            return StepOutcome(
                status="failed",
                duration_ms=duration_ms,
                error=str(step.get("error") or f"Simulated failure at step {index + 1}"),
            )
        return StepOutcome(status="passed", duration_ms=duration_ms)
