#!/usr/bin/env python3
"""
Command-line entry point for Citrea Pay.

Usage:
    citrea-pay serve [--host 0.0.0.0] [--port 3000] [--no-jobs]
    citrea-pay scan-once
    citrea-pay sweep-once
    citrea-pay derive <invoice_id>

`scan-once` and `sweep-once` run a single observer tick / sweep cycle, which is
handy from cron or when the server runs with --no-jobs.
"""

import argparse
import json
import sys
from typing import List, Optional

from dotenv import load_dotenv

from citrea_pay.chain.accounts import AddressDeriver
from citrea_pay.settings import get_settings


def _components():
    from citrea_pay.main import build_components

    return build_components(get_settings())


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    from citrea_pay.main import create_app

    settings = get_settings()
    components = _components()
    app = create_app(components, start_jobs=not args.no_jobs)
    uvicorn.run(app, host=args.host, port=args.port or settings.port, log_level=settings.log_level.lower())
    return 0


def cmd_scan_once(args: argparse.Namespace) -> int:
    report = _components().observer.tick()
    print(json.dumps({
        "cursor": report.cursor,
        "blocksScanned": report.blocks_scanned,
        "fulfilled": report.fulfilled,
        "error": report.error,
    }, indent=2))
    return 1 if report.error else 0


def cmd_sweep_once(args: argparse.Namespace) -> int:
    report = _components().sweeper.run_cycle()
    print(json.dumps({
        "outcomes": {k: v.value for k, v in report.outcomes.items()},
        "error": report.error,
    }, indent=2))
    return 1 if report.error else 0


def cmd_derive(args: argparse.Namespace) -> int:
    settings = get_settings()
    if not settings.mnemonic:
        print("Error: MNEMONIC environment variable is not set.")
        return 1
    deriver = AddressDeriver(settings.mnemonic, index_range=settings.derivation_index_range)
    account = deriver.derive(args.invoice_id)
    print(json.dumps({"invoiceId": args.invoice_id, "index": account.index, "address": account.address}, indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="citrea-pay", description="Citrea invoice watcher and sweeper")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP API with the observer and sweeper jobs")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=None)
    serve.add_argument("--no-jobs", action="store_true", help="Do not start the periodic jobs")
    serve.set_defaults(func=cmd_serve)

    sub.add_parser("scan-once", help="Run one observer tick").set_defaults(func=cmd_scan_once)
    sub.add_parser("sweep-once", help="Run one sweep cycle").set_defaults(func=cmd_sweep_once)

    derive = sub.add_parser("derive", help="Show the receiving address for an invoice id")
    derive.add_argument("invoice_id")
    derive.set_defaults(func=cmd_derive)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)

    from citrea_pay.main import configure_logging

    configure_logging(get_settings().log_level)
    try:
        return args.func(args)
    except ValueError as e:
        print(f"Error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
