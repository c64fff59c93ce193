from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any

from agent_hub.config.load_config import load_app_config
from agent_hub.functions.registry import build_functions, build_local_functions
from agent_hub.runtime.errors import LifecycleError
from agent_hub.runtime.jobs import enqueue_suite_run
from agent_hub.runtime.suite_runner import run_suite_direct
from agent_hub.storage.sqlite_store import SQLiteStore, row_to_dict


def _parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a test suite directly or queue it for an agent.")
    parser.add_argument("--suite-id", required=True, help="Suite id (e.g. suite_<uuid>).")
    parser.add_argument(
        "--target",
        choices=["direct", "agent"],
        default="direct",
        help="direct: run members sequentially now; agent: queue one job per member.",
    )
    parser.add_argument("--agent-id", default="", help="Agent to assign queued jobs to (agent target only).")
    parser.add_argument(
        "--db-path",
        default="",
        help="SQLite path (default: env AGENT_HUB_SQLITE_PATH or data/agent_hub.db).",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Force the in-process dry-run executor even when remote functions are configured.",
    )
    return parser.parse_args(argv)


def _print_progress(summary: dict[str, Any]) -> None:
    done = int(summary.get("passed_tests") or 0) + int(summary.get("failed_tests") or 0)
    print(
        f"[{done}/{summary.get('total_tests')}] passed={summary.get('passed_tests')} failed={summary.get('failed_tests')}",
        file=sys.stderr,
    )


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv or sys.argv[1:])
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    cfg = load_app_config()
    db_path = args.db_path or None
    store = SQLiteStore(db_path)
    try:
        if args.target == "agent":
            suite_exec, jobs = enqueue_suite_run(store, cfg=cfg, suite_id=str(args.suite_id), agent_id=args.agent_id or None)
            out: dict[str, Any] = {
                "suite_execution": row_to_dict(store.get_suite_execution(suite_execution_id=suite_exec.suite_execution_id)),
                "job_ids": [j.job_id for j in jobs],
            }
        else:
            runtime = build_local_functions(cfg, db_path=db_path) if args.dry_run else build_functions(cfg, db_path=db_path)
            out = {
                "suite_execution": run_suite_direct(
                    store,
                    functions=runtime.client,
                    suite_id=str(args.suite_id),
                    on_progress=_print_progress,
                )
            }
    except LifecycleError as e:
        print(f"{e.code}: {e.message}", file=sys.stderr)
        return 2
    finally:
        store.close()

    print(json.dumps(out, ensure_ascii=False, indent=2))
    status = (out.get("suite_execution") or {}).get("status")
    return 1 if status == "failed" else 0


if __name__ == "__main__":
    raise SystemExit(main())
