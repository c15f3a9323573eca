"""
kitdesk command line

    kitdesk sync               refresh the custody cache from Snipe-IT
    kitdesk diagnose           report ledger/custody drift (exit 1 if any)
    kitdesk repair [--dry-run] create checkout records for orphaned assets
    kitdesk mark-missed        flag reservations not collected in time
"""

import argparse
import sys
from typing import List, Optional

from .config import settings
from .database import SessionLocal, create_tables
from .exceptions import KitdeskError
from .services.booking_service import BookingService
from .services.custody_sync import CACHE_STALE_SECONDS, CustodySyncReconciler, DiagnosisReport
from .services.snipeit_client import get_snipeit_client
from .utils.logging_config import setup_logging


def _fmt(value) -> str:
    if value is None:
        return "-"
    if hasattr(value, "isoformat"):
        return value.isoformat(sep=" ", timespec="minutes")
    return str(value)


def render_diagnosis(report: DiagnosisReport) -> str:
    lines = []

    lines.append("=" * 60)
    lines.append(f"(a) Assigned in Snipe-IT, no open local checkout: {len(report.orphaned)}")
    lines.append("=" * 60)
    for row in report.orphaned:
        lines.append(
            f"  asset #{row['asset_id']} {row['asset_tag']} ({row['model_name'] or '?'}) -> "
            f"{row['assigned_to_name'] or '?'} <{row['assigned_to_email'] or '-'}> "
            f"since {_fmt(row['last_checkout'])}, due {_fmt(row['expected_checkin'])}"
        )

    lines.append("")
    lines.append(f"(b) Open locally, no longer assigned in Snipe-IT: {len(report.stale_local)}")
    lines.append("-" * 60)
    for row in report.stale_local:
        lines.append(
            f"  checkout {row['checkout_id']} item #{row['checkout_item_id']} {row['asset_tag']} "
            f"({row['user_email']}, out since {_fmt(row['checked_out_at'])})"
        )

    lines.append("")
    lines.append(f"(c) Fulfilled reservations without a checkout: {len(report.fulfilled_without_checkout)}")
    lines.append("-" * 60)
    for row in report.fulfilled_without_checkout:
        lines.append(
            f"  reservation {row['reservation_id']} {row['user_email']} "
            f"{_fmt(row['start_datetime'])} -> {_fmt(row['end_datetime'])}"
        )

    lines.append("")
    lines.append(f"(d) Checkouts with no items: {len(report.empty_checkouts)}")
    lines.append("-" * 60)
    for row in report.empty_checkouts:
        lines.append(
            f"  checkout {row['checkout_id']} {row['user_email']} [{row['status']}] "
            f"created {_fmt(row['created_at'])}"
        )

    lines.append("")
    age = report.cache_age_seconds()
    if age is None:
        lines.append("Custody cache is empty; run `kitdesk sync` first.")
    else:
        lines.append(f"Custody cache: {report.cache_rows} row(s), last refreshed {int(age)}s ago")
        if age > CACHE_STALE_SECONDS:
            lines.append("WARNING: custody cache is stale; results may be out of date.")

    lines.append("")
    lines.append("No discrepancies found." if not report.has_issues else f"{report.total_issues} discrepancy(ies) found.")
    return "\n".join(lines)


def cmd_sync(args) -> int:
    db = SessionLocal()
    try:
        report = CustodySyncReconciler(db, get_snipeit_client()).sync()
    except KitdeskError as e:
        print(f"Sync failed: {e.message}", file=sys.stderr)
        return 1
    finally:
        db.close()

    print(
        f"Synced {report.inserted} checked-out asset(s) "
        f"({report.duplicates_skipped} duplicate(s) skipped), "
        f"{len(report.completed_reservations)} reservation(s) completed"
    )
    return 0


def cmd_diagnose(args) -> int:
    db = SessionLocal()
    try:
        report = CustodySyncReconciler(db).diagnose()
    finally:
        db.close()

    print(render_diagnosis(report))
    return 1 if report.has_issues else 0


def cmd_repair(args) -> int:
    db = SessionLocal()
    try:
        report = CustodySyncReconciler(db).repair(dry_run=args.dry_run)
    finally:
        db.close()

    for action in report.actions:
        print(action)
    for user_id, error in report.failed_users.items():
        print(f"FAILED Snipe-IT user #{user_id}: {error}", file=sys.stderr)
    return 0 if report.success else 1


def cmd_mark_missed(args) -> int:
    db = SessionLocal()
    try:
        count = BookingService(db).mark_missed(cutoff_minutes=args.cutoff)
    finally:
        db.close()

    print(f"Marked {count} reservation(s) as missed")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="kitdesk", description="Equipment booking engine maintenance")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    subparsers = parser.add_subparsers(dest="command", required=True)

    sync = subparsers.add_parser("sync", help="Refresh the custody cache from Snipe-IT")
    sync.set_defaults(func=cmd_sync)

    diagnose = subparsers.add_parser("diagnose", help="Report discrepancies between ledger and custody")
    diagnose.set_defaults(func=cmd_diagnose)

    repair = subparsers.add_parser("repair", help="Create checkout records for orphaned assets")
    repair.add_argument("--dry-run", action="store_true", help="Show what would change without writing")
    repair.set_defaults(func=cmd_repair)

    missed = subparsers.add_parser("mark-missed", help="Flag reservations not collected within the cutoff")
    missed.add_argument("--cutoff", type=int, default=None, help="Minutes after start (default MISSED_CUTOFF_MINUTES)")
    missed.set_defaults(func=cmd_mark_missed)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(level=args.log_level or settings.log_level, json_format=settings.log_json, include_uvicorn=False)
    create_tables()
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
