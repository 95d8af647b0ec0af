"""Command line helper for the registration ledger sync."""

from __future__ import annotations

import argparse
import logging
import sys
import time

from pymongo.errors import PyMongoError

from core.admin_actions import AdminActions, create_admin_actions
from core.errors import LedgerSyncError
from core.logging_config import configure_logging
from settings import SYNC_SETTINGS_PATH, load_sync_settings


def _actions(args: argparse.Namespace) -> AdminActions:
    settings = load_sync_settings(args.settings)
    return create_admin_actions(settings, synchronous=True)


def _report(result) -> int:
    stream = sys.stdout if result.success else sys.stderr
    print(result.message, file=stream)
    return 0 if result.success else 1


def command_push(args: argparse.Namespace) -> int:
    actions = _actions(args)
    try:
        result = actions.push_collection(args.collection, args.sheet)
    finally:
        actions.close()
    if result.success:
        print(f"Rows written: {result.count}")
    return _report(result)


def command_pull(args: argparse.Namespace) -> int:
    actions = _actions(args)
    try:
        result = actions.pull_sheet(args.sheet, args.collection)
    finally:
        actions.close()
    if result.success:
        print(f"Updated  : {result.updated_count}")
        print(f"Not found: {result.not_found_count}")
        print(f"Skipped  : {result.skipped_count}")
    for error in result.errors:
        print(f"Error: {error}", file=sys.stderr)
    return _report(result)


def command_sync_record(args: argparse.Namespace) -> int:
    actions = _actions(args)
    try:
        result = actions.sync_record(args.collection, args.record_id, args.sheet)
    finally:
        actions.close()
    return _report(result)


def command_reconcile(args: argparse.Namespace) -> int:
    actions = _actions(args)
    try:
        report = actions.reconcile()
    finally:
        actions.close()

    print(f"Users with forms   : {report.total_users}")
    print(f"Successful updates : {report.successful_updates}")
    print(f"Failed updates     : {report.failed_updates}")
    for entry in report.updates:
        print(f"  {entry['userId']} {entry['sport']}: {entry['players']} players ({entry['status']})")
    for error in report.errors:
        print(f"Error: {error}", file=sys.stderr)
    return 0 if not report.errors else 1


def command_due_payments(args: argparse.Namespace) -> int:
    actions = _actions(args)
    try:
        records = actions.due_payments()
        for record in records:
            print(
                f"{record.user_email:<32} {record.status:<10} "
                f"{record.original_player_count:>3} -> {record.current_player_count:<3} "
                f"due {record.amount_due}"
            )
        print(f"Due payment records: {len(records)}")
        if not args.push:
            return 0
        result = actions.full.push_due_payments(records)
    finally:
        actions.close()
    return _report(result)


def command_set_due_status(args: argparse.Namespace) -> int:
    actions = _actions(args)
    try:
        actions.set_due_payment_status(args.record_id, args.status)
    finally:
        actions.close()
    print(f"Due payment {args.record_id} marked {args.status}")
    return 0


def command_auto(args: argparse.Namespace) -> int:
    actions = _actions(args)
    scheduler = actions.scheduled_sync()
    try:
        if args.once:
            results = scheduler.run_once()
            failed = [key for key, value in results.items() if not value.get("success")]
            for key, value in results.items():
                print(f"{key}: {value.get('message', '')}")
            return 1 if failed else 0

        scheduler.start()
        print(f"Scheduled sync running every {scheduler.interval_seconds}s. Press Ctrl+C to stop.")
        try:
            while scheduler.is_running():
                time.sleep(1)
        except KeyboardInterrupt:
            pass
        scheduler.stop()
        return 0
    finally:
        actions.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Registration ledger sync tool")
    parser.add_argument("--settings", default=SYNC_SETTINGS_PATH, help="Path to the sync settings JSON file")
    parser.add_argument("--verbose", action="store_true", help="Log debug output")
    subparsers = parser.add_subparsers(dest="command", required=True)

    push_parser = subparsers.add_parser("push", help="Rewrite a worksheet from a whole collection")
    push_parser.add_argument("collection")
    push_parser.add_argument("--sheet", help="Target worksheet (defaults per collection)")
    push_parser.set_defaults(func=command_push)

    pull_parser = subparsers.add_parser("pull", help="Apply allow-listed worksheet edits to a collection")
    pull_parser.add_argument("collection")
    pull_parser.add_argument("--sheet", help="Source worksheet (defaults per collection)")
    pull_parser.set_defaults(func=command_pull)

    record_parser = subparsers.add_parser("sync-record", help="Push one record to its worksheet")
    record_parser.add_argument("collection")
    record_parser.add_argument("record_id")
    record_parser.add_argument("--sheet", help="Target worksheet (defaults per collection)")
    record_parser.set_defaults(func=command_sync_record)

    reconcile_parser = subparsers.add_parser("reconcile", help="Rebuild users' submittedForms from the forms")
    reconcile_parser.set_defaults(func=command_reconcile)

    due_parser = subparsers.add_parser("due-payments", help="List owners whose player count differs from payment")
    due_parser.add_argument("--push", action="store_true", help="Also rewrite the due payments worksheet")
    due_parser.set_defaults(func=command_due_payments)

    status_parser = subparsers.add_parser("set-due-status", help="Record the resolution of a due payment")
    status_parser.add_argument("record_id")
    status_parser.add_argument("status", choices=["pending", "in_progress", "resolved"])
    status_parser.set_defaults(func=command_set_due_status)

    auto_parser = subparsers.add_parser("auto", help="Run the scheduled full sync")
    auto_parser.add_argument("--once", action="store_true", help="Run a single pass and exit")
    auto_parser.set_defaults(func=command_auto)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(logging.DEBUG if args.verbose else logging.INFO)
    try:
        return args.func(args)
    except (LedgerSyncError, PyMongoError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover - manual invocation
    sys.exit(main())
