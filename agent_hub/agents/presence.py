from __future__ import annotations

import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable

from agent_hub.runtime.types import AGENT_BUSY, AGENT_OFFLINE, AGENT_ONLINE
from agent_hub.storage.sqlite_store import SQLiteStore


STALE_AFTER_S = 120.0


def is_stale(last_heartbeat: float | None, *, now: float | None = None, stale_after_s: float = STALE_AFTER_S) -> bool:
    """True when no heartbeat was ever seen or the last one is older than the window."""
    if last_heartbeat is None:
        return True
    current = time.time() if now is None else now
    return (current - float(last_heartbeat)) > stale_after_s


def effective_status(
    status: str | None,
    last_heartbeat: float | None,
    *,
    now: float | None = None,
    stale_after_s: float = STALE_AFTER_S,
) -> str | None:
    if is_stale(last_heartbeat, now=now, stale_after_s=stale_after_s) and status != AGENT_OFFLINE:
        return AGENT_OFFLINE
    return status


@dataclass(frozen=True)
class AgentView:
    agent_id: str
    agent_name: str
    status: str | None
    effective_status: str | None
    last_heartbeat: float | None
    capacity: int
    running_jobs: int
    browsers: list[str] = field(default_factory=list)
    config: dict[str, Any] = field(default_factory=dict)
    created_at: float | None = None
    ephemeral: bool = False

    @property
    def is_online(self) -> bool:
        return self.effective_status in (AGENT_ONLINE, AGENT_BUSY)

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "agent_name": self.agent_name,
            "status": self.status,
            "effective_status": self.effective_status,
            "last_heartbeat": self.last_heartbeat,
            "capacity": self.capacity,
            "running_jobs": self.running_jobs,
            "browsers": list(self.browsers),
            "config": dict(self.config),
            "created_at": self.created_at,
            "ephemeral": self.ephemeral,
        }


EphemeralSource = Callable[[], dict[str, Any] | None]


class AgentPresenceTracker:
    """Builds the agent list shown to users.

    Persisted rows come first (newest first), followed by the ephemeral agents
    of active local sessions whose id is not already persisted. For an
    unchanged store, clock and set of sources the result is identical.
    """

    def __init__(
        self,
        *,
        db_path: str | Path | None = None,
        stale_after_s: float = STALE_AFTER_S,
        ephemeral_sources: Iterable[EphemeralSource] = (),
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._db_path = db_path
        self.stale_after_s = float(stale_after_s)
        self._sources = list(ephemeral_sources)
        self._clock = clock

    def add_source(self, source: EphemeralSource) -> None:
        self._sources.append(source)

    def view_of(self, row: dict[str, Any], *, now: float, ephemeral: bool = False) -> AgentView:
        status = row.get("status")
        last = row.get("last_heartbeat")
        last_f = float(last) if last is not None else None
        if ephemeral:
            # Live by construction: the session only reports itself while active.
            last_f = now
        return AgentView(
            agent_id=str(row["agent_id"]),
            agent_name=str(row.get("agent_name") or ""),
            status=status,
            effective_status=effective_status(status, last_f, now=now, stale_after_s=self.stale_after_s),
            last_heartbeat=last_f,
            capacity=int(row.get("capacity") or 1),
            running_jobs=int(row.get("running_jobs") or 0),
            browsers=list(row.get("browsers") or []),
            config=dict(row.get("config") or {}),
            created_at=row.get("created_at"),
            ephemeral=ephemeral,
        )

    def load_agents(self) -> list[AgentView]:
        now = self._clock()
        store = SQLiteStore(self._db_path)
        try:
            rows = store.list_agents()
        finally:
            store.close()

        views = [self.view_of(r, now=now) for r in rows]
        seen = {v.agent_id for v in views}
        for source in self._sources:
            row = source()
            if row is None or str(row["agent_id"]) in seen:
                continue
            seen.add(str(row["agent_id"]))
            views.append(self.view_of(row, now=now, ephemeral=True))
        return views

    def online_agents(self) -> list[AgentView]:
        return [a for a in self.load_agents() if a.is_online]

    def get(self, agent_id: str) -> AgentView | None:
        for a in self.load_agents():
            if a.agent_id == agent_id:
                return a
        return None
