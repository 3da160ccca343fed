#!/usr/bin/env python3
"""Run the pre-flight API with explicit args (avoids shell interpolation)."""
from __future__ import annotations

import argparse
from dataclasses import replace

import uvicorn

from profile_preflight import PreflightSettings, create_app


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser()
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--state-dir", default=None, help="Persist workflow snapshots as JSON here")
    parser.add_argument("--console-logs", action="store_true", help="Human-readable logs instead of JSON")
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    settings = PreflightSettings.from_env()
    overrides = {}
    if args.state_dir:
        overrides["state_dir"] = args.state_dir
    if args.console_logs:
        overrides["log_json"] = False
    settings = replace(settings, **overrides)
    app = create_app(settings)
    uvicorn.run(app, host=args.host, port=args.port)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
