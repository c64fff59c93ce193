from __future__ import annotations

import json
import logging
import threading
import time
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from typing import Any, Callable

from agent_hub.config.load_config import MobileHelperConfig


logger = logging.getLogger(__name__)

MOBILE_HELPER_AGENT_ID = "mobile-helper-local"
MOBILE_HELPER_AGENT_NAME = "Mobile Automation Helper"


class MobileHelperError(RuntimeError):
    pass


@dataclass(frozen=True)
class MobileHelperStatus:
    running: bool
    last_checked: float
    uptime: float = 0.0
    port: int | None = None
    devices: list[Any] = field(default_factory=list)
    physical_device: bool = False
    appium: bool = False
    emulator: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "last_checked": self.last_checked,
            "uptime": self.uptime,
            "port": self.port,
            "devices": list(self.devices),
            "physicalDevice": self.physical_device,
            "appium": self.appium,
            "emulator": self.emulator,
        }


def _http_json(
    url: str,
    *,
    timeout_s: float,
    payload: dict[str, Any] | None = None,
) -> dict[str, Any]:
    data = None
    headers = {"Accept": "application/json"}
    if payload is not None:
        data = json.dumps(payload).encode("utf-8")
        headers["Content-Type"] = "application/json"
    req = urllib.request.Request(url, data=data, headers=headers, method="POST" if payload is not None else "GET")
    try:
        with urllib.request.urlopen(req, timeout=float(timeout_s)) as resp:
            raw = resp.read().decode("utf-8", errors="replace")
    except urllib.error.HTTPError as e:
        body = ""
        try:
            body = e.read().decode("utf-8", errors="replace")
        except Exception:
            body = ""
        raise MobileHelperError(f"HTTP {e.code} for {url}. {body[:200]}".strip()) from e
    except (urllib.error.URLError, TimeoutError, OSError) as e:
        raise MobileHelperError(f"Network error for {url}: {e}") from e

    try:
        obj = json.loads(raw) if raw.strip() else {}
    except Exception as e:
        raise MobileHelperError(f"Invalid JSON from mobile helper: {e}") from e
    return obj if isinstance(obj, dict) else {}


class MobileHelperClient:
    """Client for the local mobile automation helper (`http://localhost:3001`).

    `status()` never raises: an unreachable helper is reported as not running.
    After a failed probe, further probes are skipped for `failure_cooldown_s`
    and the last (not running) status is returned instead.
    """

    def __init__(
        self,
        *,
        base_url: str,
        timeout_s: float = 5.0,
        failure_cooldown_s: float = 60.0,
        clock: Callable[[], float] = time.time,
        fetch_json: Callable[..., dict[str, Any]] | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_s = float(timeout_s)
        self.failure_cooldown_s = float(failure_cooldown_s)
        self._clock = clock
        self._fetch_json = fetch_json or _http_json
        self._lock = threading.Lock()
        self._last_failure_at: float | None = None
        self._last_status = MobileHelperStatus(running=False, last_checked=0.0)

    @classmethod
    def from_config(cls, cfg: MobileHelperConfig) -> "MobileHelperClient":
        return cls(base_url=cfg.base_url, timeout_s=cfg.timeout_s, failure_cooldown_s=cfg.failure_cooldown_s)

    @property
    def last_status(self) -> MobileHelperStatus:
        with self._lock:
            return self._last_status

    def in_cooldown(self) -> bool:
        with self._lock:
            if self._last_failure_at is None:
                return False
            return (self._clock() - self._last_failure_at) < self.failure_cooldown_s

    def status(self, *, force: bool = False) -> MobileHelperStatus:
        if not force and self.in_cooldown():
            return self.last_status

        now = self._clock()
        try:
            data = self._fetch_json(f"{self.base_url}/setup/status", timeout_s=self.timeout_s)
        except MobileHelperError as e:
            logger.debug("Mobile helper probe failed: %s", e)
            status = MobileHelperStatus(running=False, last_checked=now)
            with self._lock:
                self._last_failure_at = now
                self._last_status = status
            return status

        devices = data.get("devices")
        port = data.get("port")
        status = MobileHelperStatus(
            running=True,
            last_checked=now,
            uptime=float(data.get("uptime") or 0),
            port=int(port) if isinstance(port, int) else None,
            devices=devices if isinstance(devices, list) else [],
            physical_device=bool(data.get("physicalDevice")),
            appium=bool(data.get("appium")),
            emulator=bool(data.get("emulator")),
        )
        with self._lock:
            self._last_failure_at = None
            self._last_status = status
        return status

    def send_terminal_command(self, command: str) -> dict[str, Any]:
        cmd = (command or "").strip()
        if not cmd:
            raise MobileHelperError("command is required")
        return self._fetch_json(f"{self.base_url}/terminal", timeout_s=self.timeout_s, payload={"command": cmd})

    def as_agent(self) -> dict[str, Any] | None:
        """Synthesised agent entry while the helper is reachable, else None."""
        status = self.last_status
        if not status.running:
            return None
        return {
            "agent_id": MOBILE_HELPER_AGENT_ID,
            "agent_name": MOBILE_HELPER_AGENT_NAME,
            "status": "online",
            "last_heartbeat": status.last_checked,
            "capacity": 1,
            "running_jobs": 0,
            "browsers": [],
            "config": {"devices": list(status.devices), "appium": status.appium, "emulator": status.emulator},
            "created_at": status.last_checked,
            "ephemeral": True,
        }
