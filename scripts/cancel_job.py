#!/usr/bin/env python3
from __future__ import annotations

import argparse
import sys
from pathlib import Path


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

from agent_hub.runtime.errors import LifecycleError  # noqa: E402
from agent_hub.runtime.executions import cancel_execution  # noqa: E402
from agent_hub.runtime.jobs import cancel_job, retry_job  # noqa: E402
from agent_hub.storage.sqlite_store import SQLiteStore  # noqa: E402


def _parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Cancel or re-run a queued job, or cancel a direct execution (SQLite-backed).")
    target = p.add_mutually_exclusive_group(required=True)
    target.add_argument("--job-id", help="Job id to cancel (pending/running) or retry.")
    target.add_argument("--execution-id", help="Direct execution id to move to 'cancelling'.")
    p.add_argument("--retry", action="store_true", help="Move a terminal job back to 'pending' instead of cancelling.")
    p.add_argument("--db-path", default="", help="SQLite path (default: env AGENT_HUB_SQLITE_PATH or data/agent_hub.db).")
    return p.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv or sys.argv[1:])
    store = SQLiteStore(args.db_path or None)
    try:
        if args.execution_id:
            cancel_execution(store, execution_id=str(args.execution_id))
            print(f"{args.execution_id} cancelling")
        elif args.retry:
            retry_job(store, job_id=str(args.job_id))
            print(f"{args.job_id} pending")
        else:
            cancel_job(store, job_id=str(args.job_id))
            print(f"{args.job_id} cancelled")
        return 0
    except LifecycleError as e:
        print(f"{e.code}: {e.message}", file=sys.stderr)
        return 2
    finally:
        store.close()


if __name__ == "__main__":
    raise SystemExit(main())
