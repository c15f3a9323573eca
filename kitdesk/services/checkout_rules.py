"""
Checkout Rules Engine

Centralised policy enforcement for bookings and checkouts:
- Access group gate (user must hold at least one "Access - ..." group)
- Per-model authorization (certifications + access levels from Snipe-IT custom fields)
- Duration limits: initial / renewal / cumulative total (0 = unlimited)
- Advance-booking limit
- Single active checkout (block, or append to the active chain with a clamped end)

evaluate() always returns every violation at once; callers decide whether to raise.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..config import settings
from ..exceptions import AuthorizationDenied, ValidationError
from ..models.checkout import ACTIVE_CHECKOUT_STATUSES, Checkout
from ..schemas.booking import BookingContext, Violation
from ..utils.datetime_helpers import hours_between, to_utc_naive, utcnow
from .snipeit_client import AuthRequirements

logger = logging.getLogger(__name__)

LIMIT_FACETS = ("max_checkout_hours", "max_renewal_hours", "max_total_hours")


@dataclass
class CheckoutLimits:
    """Hour limits, 0 = unlimited"""
    max_checkout_hours: int = 0
    max_renewal_hours: int = 0
    max_total_hours: int = 0

    @classmethod
    def unlimited(cls) -> "CheckoutLimits":
        return cls()

    @classmethod
    def from_dict(cls, data: Dict[str, int]) -> "CheckoutLimits":
        return cls(**{facet: int(data.get(facet, 0) or 0) for facet in LIMIT_FACETS})


def resolve_effective_limits(
    defaults: CheckoutLimits,
    group_overrides: Dict[int, Dict[str, int]],
    user_group_ids: Iterable[int],
    enabled: bool = True
) -> CheckoutLimits:
    """
    Most permissive group override wins, per facet.

    - limits disabled: everything unlimited
    - no user group has an override: defaults
    - otherwise, over the matched overrides only: any 0 makes the facet
      unlimited, else the largest value applies
    """
    if not enabled:
        return CheckoutLimits.unlimited()

    matched = [group_overrides[gid] for gid in user_group_ids if gid in group_overrides]
    if not matched:
        return defaults

    resolved = {}
    for facet in LIMIT_FACETS:
        values = [int(ov.get(facet, 0) or 0) for ov in matched]
        resolved[facet] = 0 if any(v <= 0 for v in values) else max(values)
    return CheckoutLimits(**resolved)


def _days(hours: int) -> str:
    return f"{round(hours / 24, 1)} days"


@dataclass
class RulesOutcome:
    violations: List[Violation] = field(default_factory=list)
    limits: CheckoutLimits = field(default_factory=CheckoutLimits)
    parent_checkout_id: Optional[str] = None
    clamped_end: Optional[datetime] = None

    @property
    def allowed(self) -> bool:
        return not self.violations

    def raise_if_denied(self):
        if self.violations:
            raise AuthorizationDenied(self.violations)


class CheckoutRulesEngine:
    """
    Usage:
        engine = CheckoutRulesEngine(db, get_snipeit_client())
        outcome = engine.evaluate(ctx, start, end, [model_id, ...])
        outcome.raise_if_denied()
    """

    def __init__(
        self,
        db: Session,
        custody_client=None,
        limits_enabled: Optional[bool] = None,
        defaults: Optional[CheckoutLimits] = None,
        group_overrides: Optional[Dict[int, Dict[str, int]]] = None,
        single_active_checkout: Optional[bool] = None,
        max_advance_hours: Optional[int] = None,
        access_group_prefix: Optional[str] = None
    ):
        self.db = db
        self.custody_client = custody_client
        self.limits_enabled = settings.checkout_limits_enabled if limits_enabled is None else limits_enabled
        self.defaults = defaults or CheckoutLimits(
            max_checkout_hours=settings.max_checkout_hours,
            max_renewal_hours=settings.max_renewal_hours,
            max_total_hours=settings.max_total_hours
        )
        self.group_overrides = (
            settings.checkout_group_override_map if group_overrides is None else group_overrides
        )
        self.single_active_checkout = (
            settings.single_active_checkout if single_active_checkout is None else single_active_checkout
        )
        self.max_advance_hours = settings.max_advance_hours if max_advance_hours is None else max_advance_hours
        self.access_group_prefix = (
            settings.access_group_prefix if access_group_prefix is None else access_group_prefix
        )
        self._requirements: Dict[int, AuthRequirements] = {}

    # ==================
    # Limits
    # ==================

    def limits_for(self, ctx: BookingContext) -> CheckoutLimits:
        return resolve_effective_limits(
            self.defaults,
            self.group_overrides,
            ctx.group_ids,
            enabled=self.limits_enabled
        )

    def max_checkout_end(self, start: datetime, limits: CheckoutLimits) -> Optional[datetime]:
        if limits.max_checkout_hours <= 0:
            return None
        return to_utc_naive(start) + timedelta(hours=limits.max_checkout_hours)

    def max_renewal_end(self, checkout: Checkout, limits: CheckoutLimits) -> Optional[datetime]:
        """Most restrictive of (current end + renewal limit) and (start + total limit)"""
        candidates = []
        if limits.max_renewal_hours > 0:
            candidates.append(checkout.end_datetime + timedelta(hours=limits.max_renewal_hours))
        if limits.max_total_hours > 0:
            candidates.append(checkout.start_datetime + timedelta(hours=limits.max_total_hours))
        return min(candidates) if candidates else None

    # ==================
    # Individual rules
    # ==================

    def check_access_group(self, ctx: BookingContext) -> Optional[Violation]:
        prefix = self.access_group_prefix.lower()
        if any(name.lower().startswith(prefix) for name in ctx.group_names):
            return None
        return Violation(
            code="no_access_group",
            message="You do not have access to reserve equipment. "
                    "Please contact an administrator to be assigned an Access group."
        )

    def requirements_for(self, model_id: int) -> AuthRequirements:
        if model_id not in self._requirements:
            if self.custody_client is None:
                self._requirements[model_id] = AuthRequirements()
            else:
                self._requirements[model_id] = self.custody_client.get_model_auth_requirements(model_id)
        return self._requirements[model_id]

    def check_model_authorization(
        self,
        ctx: BookingContext,
        model_id: int,
        requirements: AuthRequirements,
        model_name: Optional[str] = None
    ) -> List[Violation]:
        """
        Certifications: every one is required.
        Access levels: holding any one of them is enough.
        Group names compare case-insensitively.
        """
        held = {name.strip().lower() for name in ctx.group_names}
        label = model_name or f"model #{model_id}"
        violations = []

        missing_certs = [c for c in requirements.certifications if c.strip().lower() not in held]
        if missing_certs:
            violations.append(Violation(
                code="missing_certification",
                message=f"You lack required certification(s) for \"{label}\": {', '.join(missing_certs)}",
                model_id=model_id,
                missing=missing_certs
            ))

        levels = requirements.access_levels
        if levels and not any(level.strip().lower() in held for level in levels):
            violations.append(Violation(
                code="missing_access_level",
                message=f"You lack the required access level for \"{label}\": {', '.join(levels)}",
                model_id=model_id,
                missing=list(levels)
            ))

        return violations

    def check_duration(self, start: datetime, end: datetime, limits: CheckoutLimits) -> Optional[Violation]:
        max_hours = limits.max_checkout_hours
        if max_hours <= 0:
            return None
        if hours_between(start, end) > max_hours:
            return Violation(
                code="duration_exceeded",
                message=f"Checkout duration exceeds the maximum allowed ({max_hours} hours / {_days(max_hours)}). "
                        "Please select a shorter period."
            )
        return None

    def check_advance(self, start: datetime, now: datetime) -> Optional[Violation]:
        if self.max_advance_hours <= 0:
            return None
        if hours_between(now, start) > self.max_advance_hours:
            return Violation(
                code="advance_limit_exceeded",
                message=f"Bookings can only be made up to {self.max_advance_hours} hours "
                        f"({_days(self.max_advance_hours)}) in advance."
            )
        return None

    def find_active_root_checkout(self, ctx: BookingContext) -> Optional[Checkout]:
        """The user's open/partial chain root (no parent), newest first"""
        identity = [Checkout.user_email == ctx.user_email]
        if ctx.external_user_id:
            identity.append(Checkout.external_user_id == ctx.external_user_id)

        return self.db.query(Checkout).filter(
            Checkout.status.in_(ACTIVE_CHECKOUT_STATUSES),
            Checkout.parent_checkout_id.is_(None),
            or_(*identity)
        ).order_by(Checkout.created_at.desc()).first()

    # ==================
    # Evaluation
    # ==================

    def evaluate(
        self,
        ctx: BookingContext,
        start: datetime,
        end: datetime,
        model_ids: Iterable[int],
        append_to_active: bool = False,
        model_names: Optional[Dict[int, str]] = None
    ) -> RulesOutcome:
        """Evaluate every applicable rule and collect all violations"""
        start, end = to_utc_naive(start), to_utc_naive(end)
        if end <= start:
            raise ValidationError("End must be after start")

        now = to_utc_naive(ctx.now) if ctx.now else utcnow()
        model_names = model_names or {}
        limits = self.limits_for(ctx)
        outcome = RulesOutcome(limits=limits)

        access = self.check_access_group(ctx)
        if access:
            outcome.violations.append(access)

        for model_id in dict.fromkeys(model_ids):
            outcome.violations.extend(self.check_model_authorization(
                ctx, model_id, self.requirements_for(model_id), model_names.get(model_id)
            ))

        if not ctx.bypass_rules:
            for violation in (self.check_duration(start, end, limits), self.check_advance(start, now)):
                if violation:
                    outcome.violations.append(violation)

        if self.single_active_checkout:
            active = self.find_active_root_checkout(ctx)
            if active is not None:
                if not append_to_active:
                    outcome.violations.append(Violation(
                        code="active_checkout_exists",
                        message="You already have equipment checked out "
                                f"(return expected {active.end_datetime.isoformat()}). "
                                "Single active checkout is enforced; append to the active checkout instead."
                    ))
                elif active.end_datetime <= start:
                    outcome.violations.append(Violation(
                        code="active_checkout_exists",
                        message="Your active checkout is due back before the requested start, "
                                "items cannot be appended to it."
                    ))
                else:
                    outcome.parent_checkout_id = active.id
                    outcome.clamped_end = active.end_datetime

        if outcome.violations:
            logger.info(
                f"Rules denied booking for {ctx.user_email}: "
                f"{', '.join(v.code for v in outcome.violations)}"
            )
        return outcome

    def validate_renewal(self, ctx: BookingContext, checkout: Checkout, new_end: datetime) -> RulesOutcome:
        """
        Renewal extends the expected return of an existing checkout.

        renewal hours = new end - current end, total hours = new end - checkout start.
        """
        new_end = to_utc_naive(new_end)
        if new_end <= checkout.end_datetime:
            raise ValidationError("New return time must be after the current expected return")

        limits = self.limits_for(ctx)
        outcome = RulesOutcome(limits=limits)
        if ctx.bypass_rules:
            return outcome

        renewal_hours = hours_between(checkout.end_datetime, new_end)
        if limits.max_renewal_hours > 0 and renewal_hours > limits.max_renewal_hours:
            outcome.violations.append(Violation(
                code="renewal_exceeded",
                message=f"Renewal extension exceeds the maximum allowed "
                        f"({limits.max_renewal_hours} hours / {_days(limits.max_renewal_hours)})."
            ))

        total_hours = hours_between(checkout.start_datetime, new_end)
        if limits.max_total_hours > 0 and total_hours > limits.max_total_hours:
            outcome.violations.append(Violation(
                code="total_duration_exceeded",
                message=f"Total checkout duration (including renewals) exceeds the maximum allowed "
                        f"({limits.max_total_hours} hours / {_days(limits.max_total_hours)})."
            ))

        return outcome
