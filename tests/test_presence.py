from __future__ import annotations

import tempfile

from agent_hub.agents.presence import AgentPresenceTracker, effective_status, is_stale
from agent_hub.storage.sqlite_store import SQLiteStore


NOW = 1_700_000_000.0


def _seed_agent(db_path: str, agent_id: str, *, status: str, last_heartbeat: float | None) -> None:
    store = SQLiteStore(db_path)
    try:
        store.create_agent(
            agent_id=agent_id,
            agent_name=f"Agent {agent_id}",
            api_token_hash=f"hash-{agent_id}",
            capacity=2,
            browsers=["chromium"],
            config={},
            status=status,
        )
        if last_heartbeat is not None:
            store._conn.execute(  # type: ignore[attr-defined]
                "UPDATE agents SET last_heartbeat = ? WHERE agent_id = ?;",
                (last_heartbeat, agent_id),
            )
            store.commit()
    finally:
        store.close()


def test_stale_heartbeat_renders_offline() -> None:
    three_minutes_ago = NOW - 180
    assert is_stale(three_minutes_ago, now=NOW)
    assert effective_status("online", three_minutes_ago, now=NOW) == "offline"
    assert effective_status("busy", three_minutes_ago, now=NOW) == "offline"


def test_missing_heartbeat_is_stale() -> None:
    assert is_stale(None, now=NOW)
    assert effective_status("online", None, now=NOW) == "offline"


def test_fresh_heartbeat_keeps_stored_status() -> None:
    assert not is_stale(NOW - 30, now=NOW)
    assert effective_status("busy", NOW - 30, now=NOW) == "busy"
    # Exactly at the window edge is still fresh.
    assert effective_status("online", NOW - 120, now=NOW) == "online"


def test_stored_offline_stays_offline() -> None:
    assert effective_status("offline", NOW - 10, now=NOW) == "offline"
    assert effective_status("offline", None, now=NOW) == "offline"


def test_load_agents_merges_ephemeral_agents_deterministically() -> None:
    with tempfile.TemporaryDirectory() as td:
        db_path = f"{td}/app.db"
        _seed_agent(db_path, "agent-fresh", status="online", last_heartbeat=NOW - 5)
        _seed_agent(db_path, "agent-stale", status="online", last_heartbeat=NOW - 600)

        browser = {"agent_id": "browser-abc123xyz", "agent_name": "Local Browser Agent", "status": "busy", "capacity": 1}
        duplicate = {"agent_id": "agent-fresh", "agent_name": "Shadow", "status": "online"}
        tracker = AgentPresenceTracker(
            db_path=db_path,
            ephemeral_sources=[lambda: browser, lambda: duplicate, lambda: None],
            clock=lambda: NOW,
        )

        first = tracker.load_agents()
        second = tracker.load_agents()
        assert [a.to_dict() for a in first] == [a.to_dict() for a in second]

        ids = [a.agent_id for a in first]
        assert sorted(ids) == ["agent-fresh", "agent-stale", "browser-abc123xyz"]
        assert ids[-1] == "browser-abc123xyz"

        by_id = {a.agent_id: a for a in first}
        assert by_id["agent-fresh"].agent_name == "Agent agent-fresh"
        assert by_id["agent-stale"].effective_status == "offline"
        assert by_id["browser-abc123xyz"].ephemeral
        assert by_id["browser-abc123xyz"].effective_status == "busy"

        online = {a.agent_id for a in tracker.online_agents()}
        assert online == {"agent-fresh", "browser-abc123xyz"}


def test_deactivated_ephemeral_agent_disappears() -> None:
    with tempfile.TemporaryDirectory() as td:
        active = {"on": True}

        def _source() -> dict | None:
            if not active["on"]:
                return None
            return {"agent_id": "browser-000000000", "agent_name": "Local Browser Agent", "status": "online"}

        tracker = AgentPresenceTracker(db_path=f"{td}/app.db", ephemeral_sources=[_source], clock=lambda: NOW)
        assert [a.agent_id for a in tracker.load_agents()] == ["browser-000000000"]
        active["on"] = False
        assert tracker.load_agents() == []
