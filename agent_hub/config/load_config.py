from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any


_REPO_ROOT = Path(__file__).resolve().parents[2]


class ConfigError(RuntimeError):
    pass


def _as_int(value: Any, *, key: str, min_v: int | None = None) -> int:
    try:
        out = int(value)
    except Exception as e:
        raise ConfigError(f"Invalid int for {key}: {value!r}") from e
    if min_v is not None and out < min_v:
        raise ConfigError(f"Invalid {key}: must be >= {min_v}, got {out}")
    return out


def _as_float(value: Any, *, key: str, min_v: float | None = None) -> float:
    try:
        out = float(value)
    except Exception as e:
        raise ConfigError(f"Invalid float for {key}: {value!r}") from e
    if min_v is not None and out < min_v:
        raise ConfigError(f"Invalid {key}: must be >= {min_v}, got {out}")
    return out


def _as_str(value: Any, *, key: str) -> str:
    if value is None:
        raise ConfigError(f"Missing required config key: {key}")
    return str(value)


def _as_bool(value: Any, *, key: str) -> bool:
    if isinstance(value, bool):
        return value
    raise ConfigError(f"Invalid bool for {key}: {value!r}")


def _as_str_list(value: Any, *, key: str) -> tuple[str, ...]:
    if not isinstance(value, list) or not value:
        raise ConfigError(f"Invalid {key}: expected a non-empty list of strings")
    items = tuple(str(v).strip() for v in value if str(v).strip())
    if not items:
        raise ConfigError(f"Invalid {key}: expected a non-empty list of strings")
    return items


@dataclass(frozen=True)
class PresenceConfig:
    stale_after_s: float
    heartbeat_interval_s: float
    dashboard_refresh_s: float


@dataclass(frozen=True)
class LocalAgentConfig:
    poll_interval_s: float
    simulated_work_s: float
    capacity: int
    browsers: tuple[str, ...]


@dataclass(frozen=True)
class RegistrationConfig:
    default_capacity: int
    default_browsers: tuple[str, ...]
    token_prefix: str


@dataclass(frozen=True)
class JobsConfig:
    default_priority: int
    suite_priority: int
    default_max_retries: int
    poll_limit: int


@dataclass(frozen=True)
class ExecutionsConfig:
    auto_close_delay_s: float
    dry_run: bool


@dataclass(frozen=True)
class MobileHelperConfig:
    base_url: str
    timeout_s: float
    failure_cooldown_s: float


@dataclass(frozen=True)
class LimitsConfig:
    list_default_limit: int
    list_max_limit: int


@dataclass(frozen=True)
class AppConfig:
    presence: PresenceConfig
    local_agent: LocalAgentConfig
    registration: RegistrationConfig
    jobs: JobsConfig
    executions: ExecutionsConfig
    mobile_helper: MobileHelperConfig
    limits: LimitsConfig


def default_config_path() -> Path:
    raw = os.getenv("AGENT_HUB_CONFIG_PATH", "").strip()
    if raw:
        return Path(raw).expanduser().resolve()
    cwd_candidate = (Path.cwd() / "config" / "default.toml").resolve()
    if cwd_candidate.exists():
        return cwd_candidate
    return _REPO_ROOT / "config" / "default.toml"


def load_app_config(path: Path | None = None) -> AppConfig:
    cfg_path = path or default_config_path()
    if not cfg_path.exists():
        raise ConfigError(f"Config file not found: {cfg_path}")

    try:
        import tomllib  # py3.11+
    except Exception as e:
        raise ConfigError("tomllib is required (Python 3.11+).") from e

    try:
        raw = tomllib.loads(cfg_path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {cfg_path}: {e}") from e

    presence = raw.get("presence", {})
    local_agent = raw.get("local_agent", {})
    registration = raw.get("registration", {})
    jobs = raw.get("jobs", {})
    executions = raw.get("executions", {})
    mobile_helper = raw.get("mobile_helper", {})
    limits = raw.get("limits", {})

    list_default_limit = _as_int(limits.get("list_default_limit"), key="limits.list_default_limit", min_v=1)
    list_max_limit = _as_int(limits.get("list_max_limit"), key="limits.list_max_limit", min_v=1)
    if list_default_limit > list_max_limit:
        raise ConfigError("limits.list_default_limit must not exceed limits.list_max_limit")

    token_prefix = _as_str(registration.get("token_prefix"), key="registration.token_prefix").strip()
    if not token_prefix:
        raise ConfigError("Invalid registration.token_prefix: empty string")

    return AppConfig(
        presence=PresenceConfig(
            stale_after_s=_as_float(presence.get("stale_after_s"), key="presence.stale_after_s", min_v=0.0),
            heartbeat_interval_s=_as_float(
                presence.get("heartbeat_interval_s"), key="presence.heartbeat_interval_s", min_v=0.0
            ),
            dashboard_refresh_s=_as_float(
                presence.get("dashboard_refresh_s"), key="presence.dashboard_refresh_s", min_v=0.0
            ),
        ),
        local_agent=LocalAgentConfig(
            poll_interval_s=_as_float(local_agent.get("poll_interval_s"), key="local_agent.poll_interval_s", min_v=0.0),
            simulated_work_s=_as_float(
                local_agent.get("simulated_work_s"), key="local_agent.simulated_work_s", min_v=0.0
            ),
            capacity=_as_int(local_agent.get("capacity"), key="local_agent.capacity", min_v=1),
            browsers=_as_str_list(local_agent.get("browsers"), key="local_agent.browsers"),
        ),
        registration=RegistrationConfig(
            default_capacity=_as_int(
                registration.get("default_capacity"), key="registration.default_capacity", min_v=1
            ),
            default_browsers=_as_str_list(registration.get("default_browsers"), key="registration.default_browsers"),
            token_prefix=token_prefix,
        ),
        jobs=JobsConfig(
            default_priority=_as_int(jobs.get("default_priority"), key="jobs.default_priority"),
            suite_priority=_as_int(jobs.get("suite_priority"), key="jobs.suite_priority"),
            default_max_retries=_as_int(jobs.get("default_max_retries"), key="jobs.default_max_retries", min_v=0),
            poll_limit=_as_int(jobs.get("poll_limit"), key="jobs.poll_limit", min_v=1),
        ),
        executions=ExecutionsConfig(
            auto_close_delay_s=_as_float(
                executions.get("auto_close_delay_s"), key="executions.auto_close_delay_s", min_v=0.0
            ),
            dry_run=_as_bool(executions.get("dry_run"), key="executions.dry_run"),
        ),
        mobile_helper=MobileHelperConfig(
            base_url=_as_str(mobile_helper.get("base_url"), key="mobile_helper.base_url").rstrip("/"),
            timeout_s=_as_float(mobile_helper.get("timeout_s"), key="mobile_helper.timeout_s", min_v=0.0),
            failure_cooldown_s=_as_float(
                mobile_helper.get("failure_cooldown_s"), key="mobile_helper.failure_cooldown_s", min_v=0.0
            ),
        ),
        limits=LimitsConfig(
            list_default_limit=list_default_limit,
            list_max_limit=list_max_limit,
        ),
    )
