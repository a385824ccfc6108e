# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Creditline Engine.
#
# Creditline Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""
Operator CLI Commands

Runs the engine's scheduled passes on demand and inspects balances.
Every command returns a process exit code.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime
from typing import Any, NoReturn

from creditline_core.config import EngineConfig
from creditline_core.config_loader import load_engine_config
from creditline_core.facade import CreditEngineFacade
from creditline_core.services.store import EngineError, EngineStore
from creditline_core.types import ensure_utc

logger = logging.getLogger(__name__)


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2, default=str))


def _parse_now(value: str | None) -> datetime | None:
    return ensure_utc(datetime.fromisoformat(value)) if value else None


def build_store(args: argparse.Namespace, cfg: EngineConfig) -> EngineStore:
    if args.backend == "memory":
        from creditline_core.adapters.memory import InMemoryEngineStore

        return InMemoryEngineStore()

    import firebase_admin
    from firebase_admin import credentials, firestore

    from creditline_core.adapters.firestore import FirestoreEngineStore

    try:
        firebase_admin.get_app()
    except ValueError:
        cred = credentials.Certificate(args.credentials) if args.credentials else None
        firebase_admin.initialize_app(cred)
    return FirestoreEngineStore(firestore.client(), config=cfg)


def build_engine(args: argparse.Namespace) -> CreditEngineFacade:
    cfg = load_engine_config(args.config)
    return CreditEngineFacade(store=build_store(args, cfg), config=cfg)


def cmd_config(args: argparse.Namespace) -> int:
    """Print the effective configuration (defaults, file, environment)."""
    try:
        cfg = load_engine_config(args.config)
    except (OSError, ValueError) as e:
        print(f"✗ Invalid configuration: {e}", file=sys.stderr)
        return 1
    print(cfg.model_dump_json(indent=2))
    return 0


def cmd_sweep(args: argparse.Namespace) -> int:
    """Run one expiration sweep."""
    engine = build_engine(args)
    report = engine.sweep_expired(_parse_now(args.now))
    _print_json(report.to_dict())
    if report.failed_users:
        print(f"✗ Sweep failed for {len(report.failed_users)} user(s)", file=sys.stderr)
        return 1
    print(f"✓ Expired {report.expired_amount} credits in {report.expired_count} entries")
    return 0


def cmd_rollover(args: argparse.Namespace) -> int:
    """Roll over ended subscription periods."""
    engine = build_engine(args)
    report = engine.rollover_periods(_parse_now(args.now))
    _print_json(report.to_dict())
    if report.failed:
        print(f"✗ Rollover failed for {len(report.failed)} subscription(s)", file=sys.stderr)
        return 1
    print(f"✓ Rolled over {len(report.rolled_over)} subscription(s)")
    return 0


def cmd_reconcile(args: argparse.Namespace) -> int:
    """Run one reconciliation pass."""
    engine = build_engine(args)
    report = engine.reconcile(_parse_now(args.now))
    _print_json(report.to_dict())
    if report.failures:
        print(f"✗ {len(report.failures)} item(s) could not be repaired", file=sys.stderr)
        return 1
    print(f"✓ Repaired {report.repaired} item(s)")
    return 0


def cmd_balance(args: argparse.Namespace) -> int:
    """Show a user's credit balance."""
    engine = build_engine(args)
    if args.recompute:
        balance = engine.recompute_balance(args.user_id)
    else:
        balance = engine.get_credit_balance(args.user_id)
    _print_json(balance.to_dict())
    if args.expiring is not None:
        expiring = engine.get_expiring_credits(args.user_id, args.expiring)
        print(f"Expiring within {args.expiring} day(s):")
        for entry in expiring:
            print(f"  - {entry.amount} ({entry.kind.value}) at {entry.expires_at.isoformat()}")
    return 0


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="creditline",
        description="Credit ledger and usage metering operator commands",
    )
    parser.add_argument("--config", "-c", help="Path to engine config JSON")
    parser.add_argument(
        "--backend",
        choices=("firestore", "memory"),
        default="firestore",
        help="Store backend (default: firestore)",
    )
    parser.add_argument(
        "--credentials",
        help="Service account JSON for Firestore (default: application default credentials)",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    config_parser = subparsers.add_parser("config", help="Print the effective configuration")
    config_parser.set_defaults(func=cmd_config)

    for name, func, help_text in (
        ("sweep", cmd_sweep, "Expire unused credits past their expiry"),
        ("rollover", cmd_rollover, "Start new periods for ended subscriptions"),
        ("reconcile", cmd_reconcile, "Repair drifted aggregates"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("--now", help="ISO timestamp to run as of (default: current time)")
        sub.set_defaults(func=func)

    balance_parser = subparsers.add_parser("balance", help="Show a user's credit balance")
    balance_parser.add_argument("user_id", help="User id")
    balance_parser.add_argument(
        "--recompute",
        action="store_true",
        help="Replay the ledger and rewrite the cached balance",
    )
    balance_parser.add_argument(
        "--expiring",
        type=int,
        metavar="DAYS",
        help="Also list credits expiring within DAYS days",
    )
    balance_parser.set_defaults(func=cmd_balance)

    return parser


def main(argv: list[str] | None = None) -> NoReturn:
    """Main entry point for the operator CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        exit_code = args.func(args)
        sys.exit(exit_code)
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        sys.exit(130)
    except EngineError as e:
        logger.debug("command failed", exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
