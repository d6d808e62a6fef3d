#!/usr/bin/env python3
"""Run the provisioner service with explicit args (avoids shell interpolation)."""
from __future__ import annotations

import argparse
import dataclasses

import uvicorn

from training_provisioner.app import ProvisionerSettings, create_app


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser()
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8080)
    parser.add_argument("--mode", choices=("hybrid", "platform", "broker"), default=None)
    parser.add_argument("--start-loops", action=argparse.BooleanOptionalAction, default=True)
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    settings = ProvisionerSettings.from_env()
    if args.mode is not None:
        settings = dataclasses.replace(settings, integration_mode=args.mode)
    app = create_app(settings, start_loops=args.start_loops)
    uvicorn.run(app, host=args.host, port=args.port)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
