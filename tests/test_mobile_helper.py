from __future__ import annotations

from typing import Any

import pytest

from agent_hub.mobile.helper_client import (
    MOBILE_HELPER_AGENT_ID,
    MobileHelperClient,
    MobileHelperError,
)


class _Clock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class _Helper:
    def __init__(self) -> None:
        self.up = True
        self.calls: list[tuple[str, dict[str, Any] | None]] = []

    def __call__(self, url: str, *, timeout_s: float, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        self.calls.append((url, payload))
        if not self.up:
            raise MobileHelperError(f"Network error for {url}: connection refused")
        if url.endswith("/terminal"):
            return {"output": f"ran {payload['command']}" if payload else ""}
        return {
            "uptime": 42.5,
            "port": 3001,
            "devices": [{"id": "emulator-5554"}],
            "physicalDevice": False,
            "appium": True,
            "emulator": True,
        }


def test_status_reports_running_helper() -> None:
    helper = _Helper()
    client = MobileHelperClient(base_url="http://localhost:3001/", clock=_Clock(), fetch_json=helper)

    status = client.status()
    assert status.running
    assert status.port == 3001
    assert status.appium and status.emulator
    assert status.to_dict()["physicalDevice"] is False
    assert helper.calls[0][0] == "http://localhost:3001/setup/status"

    agent = client.as_agent()
    assert agent is not None
    assert agent["agent_id"] == MOBILE_HELPER_AGENT_ID
    assert agent["ephemeral"] is True
    assert agent["config"]["devices"] == [{"id": "emulator-5554"}]


def test_unreachable_helper_enters_cooldown() -> None:
    helper = _Helper()
    helper.up = False
    clock = _Clock()
    client = MobileHelperClient(base_url="http://localhost:3001", failure_cooldown_s=60, clock=clock, fetch_json=helper)

    status = client.status()
    assert not status.running
    assert client.in_cooldown()
    assert client.as_agent() is None

    helper.up = True
    clock.now += 30
    assert not client.status().running
    assert len(helper.calls) == 1

    # `force` bypasses the cooldown.
    assert client.status(force=True).running
    assert not client.in_cooldown()
    assert len(helper.calls) == 2


def test_cooldown_expires() -> None:
    helper = _Helper()
    helper.up = False
    clock = _Clock()
    client = MobileHelperClient(base_url="http://localhost:3001", failure_cooldown_s=60, clock=clock, fetch_json=helper)
    client.status()

    helper.up = True
    clock.now += 61
    assert not client.in_cooldown()
    assert client.status().running


def test_terminal_command() -> None:
    helper = _Helper()
    client = MobileHelperClient(base_url="http://localhost:3001", clock=_Clock(), fetch_json=helper)

    assert client.send_terminal_command(" adb devices ") == {"output": "ran adb devices"}
    assert helper.calls[-1] == ("http://localhost:3001/terminal", {"command": "adb devices"})

    with pytest.raises(MobileHelperError):
        client.send_terminal_command("   ")

    helper.up = False
    with pytest.raises(MobileHelperError):
        client.send_terminal_command("adb devices")
