# Services package
from .snipeit_client import SnipeITClient, get_snipeit_client, CustodyAsset, AuthRequirements
from .opening_hours import OpeningHoursResolver, DayHours
from .availability import AvailabilityCalculator, AvailabilityResult, overlaps, compute_free
from .slot_scheduler import SlotScheduler, Slot, effective_capacity, bucket_events
from .checkout_rules import CheckoutRulesEngine, CheckoutLimits, RulesOutcome, resolve_effective_limits
from .booking_service import BookingService, derive_checkout_status, chain_root, link_to_parent
from .custody_sync import CustodySyncReconciler, SyncReport, DiagnosisReport, RepairReport

__all__ = [
    "SnipeITClient", "get_snipeit_client", "CustodyAsset", "AuthRequirements",
    "OpeningHoursResolver", "DayHours",
    "AvailabilityCalculator", "AvailabilityResult", "overlaps", "compute_free",
    "SlotScheduler", "Slot", "effective_capacity", "bucket_events",
    "CheckoutRulesEngine", "CheckoutLimits", "RulesOutcome", "resolve_effective_limits",
    "BookingService", "derive_checkout_status", "chain_root", "link_to_parent",
    "CustodySyncReconciler", "SyncReport", "DiagnosisReport", "RepairReport"
]
