#!/usr/bin/env python3
from __future__ import annotations

import argparse
import logging
import sys
import time
from pathlib import Path


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

from agent_hub.config.load_config import load_app_config  # noqa: E402
from agent_hub.functions.client import HttpFunctionsClient  # noqa: E402
from agent_hub.functions.registry import build_local_functions  # noqa: E402
from agent_hub.runtime.sessions import BrowserAgentSession  # noqa: E402


def _parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Run the simulated browser agent until interrupted.")
    p.add_argument("--agent-id", default="", help="Agent id (default: browser-<random>).")
    p.add_argument(
        "--functions-url",
        default="",
        help="Remote functions base URL (e.g. http://127.0.0.1:8000/functions/v1). Default: in-process.",
    )
    p.add_argument("--db-path", default="", help="SQLite path for in-process functions.")
    p.add_argument("--duration-s", type=float, default=0.0, help="Stop after N seconds (0 = run until Ctrl-C).")
    return p.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv or sys.argv[1:])
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    cfg = load_app_config()
    if args.functions_url:
        client = HttpFunctionsClient(base_url=str(args.functions_url))
    else:
        client = build_local_functions(cfg, db_path=args.db_path or None).client

    session = BrowserAgentSession(functions=client, cfg=cfg, agent_id=args.agent_id or None)
    session.start()
    print(session.agent_id)
    deadline = time.monotonic() + float(args.duration_s) if args.duration_s > 0 else None
    try:
        while deadline is None or time.monotonic() < deadline:
            time.sleep(0.5)
    except KeyboardInterrupt:
        pass
    finally:
        session.stop()
    print(f"processed {len(session.processed_jobs)} job(s)")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
