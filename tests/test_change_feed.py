from __future__ import annotations

import tempfile

import pytest

from agent_hub.storage.change_feed import ChangeEvent, feed_for
from agent_hub.storage.sqlite_store import SQLiteStore


def test_committed_changes_reach_row_and_table_subscribers() -> None:
    with tempfile.TemporaryDirectory() as td:
        db_path = f"{td}/app.db"
        store = SQLiteStore(db_path)
        try:
            test_id = store.create_test(name="T", base_url="https://a.test", steps=[]).test_id
            execution = store.create_execution(test_id=test_id, total_steps=0, status="running")

            row_events: list[ChangeEvent] = []
            table_events: list[ChangeEvent] = []
            feed = feed_for(db_path)
            assert feed is store.feed
            sub = feed.subscribe("executions", row_events.append, row_id=execution.execution_id)
            feed.subscribe("executions", table_events.append)

            store.finish_execution(execution_id=execution.execution_id, status="passed")
            assert [e.event for e in row_events] == ["UPDATE"]
            assert row_events[0].new is not None
            assert row_events[0].new["status"] == "passed"
            assert len(table_events) == 1

            sub.close()
            other = store.create_execution(test_id=test_id, total_steps=0, status="running")
            assert len(row_events) == 1
            assert [e.row_id for e in table_events] == [execution.execution_id, other.execution_id]
        finally:
            store.close()


def test_rolled_back_changes_are_not_published() -> None:
    with tempfile.TemporaryDirectory() as td:
        db_path = f"{td}/app.db"
        store = SQLiteStore(db_path)
        try:
            events: list[ChangeEvent] = []
            feed_for(db_path).subscribe("tests", events.append)
            test_id = store.create_test(name="T", base_url="https://a.test", steps=[]).test_id
            events.clear()

            with pytest.raises(RuntimeError):
                with store.transaction():
                    store._conn.execute(  # type: ignore[attr-defined]
                        "UPDATE tests SET name = 'renamed' WHERE test_id = ?;", (test_id,)
                    )
                    store._note_change("tests", test_id, "UPDATE")  # type: ignore[attr-defined]
                    raise RuntimeError("abort")
            assert events == []
            row = store.get_test(test_id=test_id)
            assert row is not None and row["name"] == "T"
        finally:
            store.close()


def test_failing_subscriber_does_not_block_others() -> None:
    with tempfile.TemporaryDirectory() as td:
        db_path = f"{td}/app.db"
        store = SQLiteStore(db_path)
        try:
            seen: list[str] = []

            def _boom(event: ChangeEvent) -> None:
                raise ValueError("subscriber bug")

            feed_for(db_path).subscribe("test_cases", _boom)
            feed_for(db_path).subscribe("test_cases", lambda e: seen.append(e.row_id))
            test_case_id = store.create_test_case(title="Case")
            assert seen == [test_case_id]
        finally:
            store.close()
