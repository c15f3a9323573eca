"""
Custody Sync Reconciler

Keeps the local custody cache in step with Snipe-IT and reports/repairs drift
between the cache and the checkout ledger.

- sync():     full truncate-and-reinsert of custody_cache from a fresh Snipe-IT fetch,
              then completes checked_out reservations whose assets are all back
- diagnose(): read-only, four categories
    (a) orphaned: assigned in Snipe-IT, no open local CheckoutItem
    (b) stale local: open CheckoutItem, asset no longer assigned in Snipe-IT
    (c) fulfilled reservation with no checkout
    (d) checkout with zero items
- repair():   fixes category (a) only, one transaction per Snipe-IT user

Only (a) is mechanically certain; (b)-(d) need a human to decide intent.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy import and_, func
from sqlalchemy.orm import Session

from ..exceptions import ExternalSystemError
from ..models.checkout import ACTIVE_CHECKOUT_STATUSES, Checkout, CheckoutItem, CheckoutStatus
from ..models.custody_cache import CustodyCacheEntry
from ..models.reservation import Reservation, ReservationStatus
from ..utils.datetime_helpers import utcnow
from ..utils.logging_config import get_logger
from .booking_service import derive_checkout_status

logger = get_logger(__name__)

REPAIR_DEFAULT_DAYS = 7
# Cache older than this is reported as stale
CACHE_STALE_SECONDS = 300


@dataclass
class SyncReport:
    fetched: int = 0
    inserted: int = 0
    duplicates_skipped: int = 0
    completed_reservations: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "fetched": self.fetched,
            "inserted": self.inserted,
            "duplicates_skipped": self.duplicates_skipped,
            "completed_reservations": list(self.completed_reservations),
        }


@dataclass
class DiagnosisReport:
    orphaned: List[Dict] = field(default_factory=list)
    stale_local: List[Dict] = field(default_factory=list)
    fulfilled_without_checkout: List[Dict] = field(default_factory=list)
    empty_checkouts: List[Dict] = field(default_factory=list)
    cache_rows: int = 0
    cache_newest_update: Optional[datetime] = None

    @property
    def total_issues(self) -> int:
        return (
            len(self.orphaned)
            + len(self.stale_local)
            + len(self.fulfilled_without_checkout)
            + len(self.empty_checkouts)
        )

    @property
    def has_issues(self) -> bool:
        return self.total_issues > 0

    def cache_age_seconds(self, now: Optional[datetime] = None) -> Optional[float]:
        if self.cache_newest_update is None:
            return None
        return ((now or utcnow()) - self.cache_newest_update).total_seconds()

    def to_dict(self) -> Dict:
        return {
            "orphaned": self.orphaned,
            "stale_local": self.stale_local,
            "fulfilled_without_checkout": self.fulfilled_without_checkout,
            "empty_checkouts": self.empty_checkouts,
            "cache_rows": self.cache_rows,
            "cache_newest_update": self.cache_newest_update.isoformat() if self.cache_newest_update else None,
            "total_issues": self.total_issues,
        }


@dataclass
class RepairReport:
    dry_run: bool = False
    orphans_found: int = 0
    items_added: int = 0
    checkouts_created: int = 0
    appended_to: List[str] = field(default_factory=list)
    skipped_assets: List[int] = field(default_factory=list)
    failed_users: Dict[int, str] = field(default_factory=dict)
    actions: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failed_users

    def log(self, message: str):
        prefix = "[dry-run] " if self.dry_run else ""
        self.actions.append(prefix + message)
        logger.info(prefix + message)


class CustodySyncReconciler:
    """
    Usage:
        reconciler = CustodySyncReconciler(db, get_snipeit_client())
        reconciler.sync()
        report = reconciler.diagnose()
        reconciler.repair(dry_run=True)
    """

    def __init__(self, db: Session, custody_client=None):
        self.db = db
        self.custody_client = custody_client

    # ==================
    # Sync
    # ==================

    def sync(self) -> SyncReport:
        """
        Replace the custody cache with a fresh Snipe-IT snapshot.

        The fetch completes before anything local is touched, so a failed fetch
        leaves the previous cache intact.

        Raises:
            ExternalSystemError: Snipe-IT fetch failed
        """
        if self.custody_client is None:
            raise ExternalSystemError("No custody client configured")

        assets = self.custody_client.list_checked_out_assets()
        report = SyncReport(fetched=len(assets))

        try:
            self.db.query(CustodyCacheEntry).delete(synchronize_session=False)

            now = utcnow()
            seen = set()
            for asset in assets:
                # Pages can shift under concurrent changes; first occurrence wins
                if asset.asset_id in seen:
                    report.duplicates_skipped += 1
                    continue
                seen.add(asset.asset_id)
                self.db.add(CustodyCacheEntry(
                    asset_id=asset.asset_id,
                    asset_tag=asset.asset_tag,
                    asset_name=asset.asset_name or None,
                    model_id=asset.model_id,
                    model_name=asset.model_name or None,
                    assigned_to_id=asset.assigned_to_id,
                    assigned_to_name=asset.assigned_to_name or None,
                    assigned_to_email=asset.assigned_to_email or None,
                    assigned_to_username=asset.assigned_to_username or None,
                    status_label=asset.status_label or None,
                    last_checkout=asset.last_checkout,
                    expected_checkin=asset.expected_checkin,
                    updated_at=now
                ))
                report.inserted += 1

            self.db.flush()
            report.completed_reservations = self._complete_returned_reservations()
            self.db.commit()
        except Exception:
            self.db.rollback()
            logger.error("Custody sync failed, previous cache kept")
            raise

        logger.sync_completed(report.fetched, report.inserted, len(report.completed_reservations))
        return report

    def _complete_returned_reservations(self) -> List[str]:
        """checked_out reservations whose cached tags are all gone from custody -> completed"""
        held_tags = {row[0] for row in self.db.query(CustodyCacheEntry.asset_tag).all()}

        completed = []
        candidates = self.db.query(Reservation).filter(
            Reservation.status == ReservationStatus.CHECKED_OUT.value,
            Reservation.asset_tags_cache.isnot(None),
            Reservation.asset_tags_cache != ""
        ).all()

        for reservation in candidates:
            tags = reservation.asset_tags
            if tags and not any(tag in held_tags for tag in tags):
                reservation.status = ReservationStatus.COMPLETED.value
                completed.append(reservation.id)
                logger.info(f"Reservation {reservation.id} completed: {', '.join(tags)} returned")

        return completed

    # ==================
    # Diagnose
    # ==================

    def find_orphans(self) -> List[CustodyCacheEntry]:
        return self.db.query(CustodyCacheEntry).outerjoin(
            CheckoutItem,
            and_(
                CheckoutItem.asset_id == CustodyCacheEntry.asset_id,
                CheckoutItem.checked_in_at.is_(None)
            )
        ).filter(
            CheckoutItem.id.is_(None)
        ).order_by(
            CustodyCacheEntry.assigned_to_id,
            CustodyCacheEntry.last_checkout
        ).all()

    def diagnose(self) -> DiagnosisReport:
        report = DiagnosisReport()

        for entry in self.find_orphans():
            report.orphaned.append({
                "asset_id": entry.asset_id,
                "asset_tag": entry.asset_tag,
                "asset_name": entry.asset_name,
                "model_name": entry.model_name,
                "assigned_to_id": entry.assigned_to_id,
                "assigned_to_name": entry.assigned_to_name,
                "assigned_to_email": entry.assigned_to_email,
                "last_checkout": entry.last_checkout,
                "expected_checkin": entry.expected_checkin,
            })

        stale = self.db.query(CheckoutItem, Checkout).join(
            Checkout, Checkout.id == CheckoutItem.checkout_id
        ).outerjoin(
            CustodyCacheEntry, CustodyCacheEntry.asset_id == CheckoutItem.asset_id
        ).filter(
            CheckoutItem.checked_in_at.is_(None),
            Checkout.status.in_(ACTIVE_CHECKOUT_STATUSES),
            CustodyCacheEntry.id.is_(None)
        ).order_by(CheckoutItem.checked_out_at).all()

        for item, checkout in stale:
            report.stale_local.append({
                "checkout_item_id": item.id,
                "checkout_id": checkout.id,
                "asset_id": item.asset_id,
                "asset_tag": item.asset_tag,
                "model_name": item.model_name,
                "checked_out_at": item.checked_out_at,
                "user_email": checkout.user_email,
                "checkout_status": checkout.status,
            })

        fulfilled = self.db.query(Reservation).outerjoin(
            Checkout, Checkout.reservation_id == Reservation.id
        ).filter(
            Reservation.status == ReservationStatus.FULFILLED.value,
            Checkout.id.is_(None)
        ).order_by(Reservation.start_datetime).all()

        for reservation in fulfilled:
            report.fulfilled_without_checkout.append({
                "reservation_id": reservation.id,
                "user_email": reservation.user_email,
                "start_datetime": reservation.start_datetime,
                "end_datetime": reservation.end_datetime,
            })

        empty = self.db.query(Checkout).outerjoin(
            CheckoutItem, CheckoutItem.checkout_id == Checkout.id
        ).filter(
            CheckoutItem.id.is_(None)
        ).order_by(Checkout.created_at).all()

        for checkout in empty:
            report.empty_checkouts.append({
                "checkout_id": checkout.id,
                "reservation_id": checkout.reservation_id,
                "user_email": checkout.user_email,
                "status": checkout.status,
                "created_at": checkout.created_at,
            })

        report.cache_rows, report.cache_newest_update = self.db.query(
            func.count(CustodyCacheEntry.id),
            func.max(CustodyCacheEntry.updated_at)
        ).one()

        logger.info(
            f"Diagnose: {len(report.orphaned)} orphaned, {len(report.stale_local)} stale, "
            f"{len(report.fulfilled_without_checkout)} fulfilled without checkout, "
            f"{len(report.empty_checkouts)} empty checkouts"
        )
        return report

    # ==================
    # Repair
    # ==================

    def _active_root_for(self, snipeit_user_id: int) -> Optional[Checkout]:
        return self.db.query(Checkout).filter(
            Checkout.external_user_id == snipeit_user_id,
            Checkout.parent_checkout_id.is_(None),
            Checkout.status.in_(ACTIVE_CHECKOUT_STATUSES)
        ).order_by(Checkout.created_at.desc()).first()

    def repair(self, dry_run: bool = False) -> RepairReport:
        """Create/append checkout records for orphaned assets, per Snipe-IT user"""
        report = RepairReport(dry_run=dry_run)
        orphans = self.find_orphans()
        report.orphans_found = len(orphans)

        if not orphans:
            report.log("No orphaned assets found. Nothing to repair.")
            return report

        report.log(f"Found {len(orphans)} orphaned asset(s).")

        by_user: Dict[int, List[CustodyCacheEntry]] = {}
        for entry in orphans:
            if not entry.assigned_to_id:
                report.skipped_assets.append(entry.asset_id)
                report.log(f"SKIP asset #{entry.asset_id} {entry.asset_tag}: no assigned user in cache")
                continue
            by_user.setdefault(entry.assigned_to_id, []).append(entry)

        for user_id, entries in by_user.items():
            try:
                self._repair_user(user_id, entries, report)
                if not dry_run:
                    self.db.commit()
            except Exception as e:
                self.db.rollback()
                report.failed_users[user_id] = str(e)
                logger.exception(f"Repair failed for Snipe-IT user #{user_id}, continuing with others")

        report.log(
            f"Summary: {report.items_added} item(s) repaired, "
            f"{report.checkouts_created} checkout(s) created, {len(report.failed_users)} user(s) failed"
        )
        return report

    def _repair_user(self, user_id: int, entries: List[CustodyCacheEntry], report: RepairReport):
        sample = entries[0]
        user_name = sample.assigned_to_name or f"User #{user_id}"
        user_email = sample.assigned_to_email or sample.assigned_to_username or f"snipeit-{user_id}"
        report.log(f"User {user_name} <{user_email}> (Snipe-IT #{user_id}): {len(entries)} orphaned asset(s)")

        now = utcnow()
        checkout = self._active_root_for(user_id)
        if checkout is not None:
            report.log(f"  Appending to open checkout {checkout.id}")
            report.appended_to.append(checkout.id)
        else:
            starts = [e.last_checkout for e in entries if e.last_checkout]
            ends = [e.expected_checkin for e in entries if e.expected_checkin]
            start = min(starts) if starts else now
            end = max(ends) if ends else now + timedelta(days=REPAIR_DEFAULT_DAYS)
            if end <= start:
                end = start + timedelta(days=REPAIR_DEFAULT_DAYS)

            report.log(f"  Creating checkout {start.isoformat()} -> {end.isoformat()}")
            report.checkouts_created += 1
            if not report.dry_run:
                checkout = Checkout(
                    user_name=user_name,
                    user_email=user_email,
                    external_user_id=user_id,
                    start_datetime=start,
                    end_datetime=end,
                    status=CheckoutStatus.OPEN.value
                )
                self.db.add(checkout)

        for entry in entries:
            checked_out_at = entry.last_checkout or now
            report.log(
                f"  + asset #{entry.asset_id} {entry.asset_tag} ({entry.model_name or '?'}) "
                f"checked_out_at={checked_out_at.isoformat()}"
            )
            report.items_added += 1
            if not report.dry_run:
                checkout.items.append(CheckoutItem(
                    asset_id=entry.asset_id,
                    asset_tag=entry.asset_tag,
                    asset_name=entry.asset_name or entry.asset_tag,
                    model_id=entry.model_id or 0,
                    model_name=entry.model_name,
                    checked_out_at=checked_out_at
                ))

        if not report.dry_run:
            checkout.status = derive_checkout_status(checkout.items).value
