#!/usr/bin/env python3
"""
VPC MidoNet Driver - Main Entry Point

Commands:
- serve: admin REST API plus the reconciliation loop in the background
- reconcile: run the loop, or a single pass with --once
- list / teardown / delete-dups / delete-object: one-shot administration

The process exit code is the driver's integer status.
"""

import argparse
import json
import logging
import sys
import threading
from typing import List, Optional

import uvicorn

from vpcmido.config import load_config
from vpcmido.diagnostic_logger import setup_logging
from vpcmido.errors import ConfigError, ExitCode
from vpcmido.reconciler.reconciler import ReconciliationEngine, build_engine

logger = logging.getLogger("vpcmido.main")


def start_rest_api(engine: ReconciliationEngine, port: int):
    """Start the FastAPI REST API server (blocking)."""
    from vpcmido.api.rest_api_server import app, set_engine

    set_engine(engine)
    logger.info(f"Starting REST API on port {port}...")
    uvicorn.run(app, host="0.0.0.0", port=port, log_level="info")


def _print(data):
    print(json.dumps(data, indent=2, sort_keys=True, default=str))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vpcmido", description="VPC to MidoNet reconciliation driver")
    parser.add_argument("-c", "--config", help="YAML configuration file (overrides VPCMIDO_* variables)")
    parser.add_argument("--log-level", help="logging level (default from config)")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("serve", help="run the admin REST API and the reconciliation loop")
    reconcile = sub.add_parser("reconcile", help="reconcile the backend with the network model")
    reconcile.add_argument("--once", action="store_true", help="run a single reconciliation and exit")
    sub.add_parser("list", help="print the populated backend inventory")
    sub.add_parser("teardown", help="delete every object owned by the driver")
    dups = sub.add_parser("delete-dups", help="delete duplicate and orphaned backend objects")
    dups.add_argument("--check-only", action="store_true", help="report without deleting")
    obj = sub.add_parser("delete-object", help="delete one VPC, subnet, NAT gateway, interface or group")
    obj.add_argument("id", help="identifier such as vpc-..., subnet-..., nat-..., eni-..., sg-...")
    obj.add_argument("--check-only", action="store_true", help="report without deleting")
    return parser


def run(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        config = load_config(args.config)
    except ConfigError as e:
        setup_logging(args.log_level or "INFO")
        logger.error(f"configuration error: {e}")
        return int(ExitCode.CONFIG_ERROR)
    setup_logging(args.log_level or config.log_level)
    engine = build_engine(config)

    if args.command == "serve":
        loop = threading.Thread(target=engine.run, daemon=True)
        loop.start()
        logger.info("Reconciliation Engine started")
        try:
            start_rest_api(engine, config.rest_port)
        finally:
            engine.stop()
        return int(ExitCode.OK)

    if args.command == "reconcile":
        if args.once:
            result = engine.reconcile()
            _print(result.to_dict())
            return result.status
        try:
            engine.run()
        except KeyboardInterrupt:
            engine.stop()
        return int(ExitCode.OK)

    if args.command == "list":
        status, inventory = engine.list_inventory()
        _print(inventory)
        return status

    if args.command == "teardown":
        return engine.teardown()

    if args.command == "delete-dups":
        status, report = engine.delete_dups_and_orphans(check_only=args.check_only)
        _print(report)
        return status

    return engine.delete_object(args.id, check_only=args.check_only)


def main():
    sys.exit(run())


if __name__ == "__main__":
    main()
