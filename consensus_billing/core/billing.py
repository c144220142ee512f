"""
Billing engine.

Owns subscriptions and their lifecycle, decides message quotas from the
tracked usage, and turns subscription periods into billing periods and
invoices.

Subscription status machine:
    trialing -> active      activate(), or trial expiry
    active   -> past_due    mark_past_due() (failed renewal, external signal)
    past_due -> active      mark_renewed()
    any      -> canceled    cancel(); canceled is terminal
"""

import calendar
import math
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, FrozenSet, List, Optional, Union

from consensus_billing.config.logger import get_logger
from consensus_billing.storage.base import AccountingStore
from consensus_billing.storage.models import (
    BillingCycle,
    BillingPeriod,
    Invoice,
    LineItem,
    Subscription,
    SubscriptionStatus,
    SubscriptionTier,
)

from .aggregates import Period, UsageAggregate
from .errors import (
    BillingPeriodNotFoundError,
    DuplicateSubscriptionError,
    InvalidTransitionError,
    QuotaExceededError,
    SubscriptionNotFoundError,
    ValidationError,
)
from .pricing import to_cents, to_decimal
from .tiers import DEFAULT_TIER_TABLE, UNLIMITED, TierConfig, TierTable
from .tracker import UsageTracker

LOGGER = get_logger("consensus_billing.billing")

DEFAULT_TAX_RATE = Decimal("0.08")
PRORATION_THRESHOLD = Decimal("0.01")
SECONDS_PER_DAY = 86400

ALLOWED_TRANSITIONS: Dict[SubscriptionStatus, FrozenSet[SubscriptionStatus]] = {
    SubscriptionStatus.TRIALING: frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELED}),
    SubscriptionStatus.ACTIVE: frozenset({SubscriptionStatus.PAST_DUE, SubscriptionStatus.CANCELED}),
    SubscriptionStatus.PAST_DUE: frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELED}),
    SubscriptionStatus.CANCELED: frozenset(),
}


@dataclass(frozen=True)
class QuotaDecision:
    """Allow/deny answer for a user's monthly message quota."""
    allowed: bool
    status: Optional[SubscriptionStatus]
    tier: SubscriptionTier
    limit: int
    message_count: int
    overage: int
    overage_charge: Decimal
    reason: str


@dataclass(frozen=True)
class UsageCharges:
    """Usage-based charges on top of the subscription fee."""
    total: Decimal
    items: List[LineItem] = field(default_factory=list)


@dataclass(frozen=True)
class RenewalResult:
    """Outcome of a renewal run."""
    processed: int
    failed: int
    errors: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class BillingHistory:
    """A user's subscription with billing periods and invoices, newest first."""
    subscription: Optional[Subscription]
    billing_periods: List[BillingPeriod]
    invoices: List[Invoice]


@dataclass(frozen=True)
class BillEstimate:
    """What the user will be charged at the end of the current period."""
    tier: SubscriptionTier
    usage: UsageAggregate
    subscription_fee: Decimal
    usage_charges: Decimal
    estimated_bill: Decimal
    next_billing_date: datetime
    days_until_billing: int


def add_billing_cycle(start: datetime, cycle: BillingCycle) -> datetime:
    """Advance ``start`` by one month or one year, clamping to month end."""
    months = 12 if cycle == BillingCycle.ANNUAL else 1
    index = start.month - 1 + months
    year = start.year + index // 12
    month = index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def parse_cycle(value: Union[BillingCycle, str]) -> BillingCycle:
    if isinstance(value, BillingCycle):
        return value
    normalized = str(value).strip().lower()
    if normalized == "yearly":
        return BillingCycle.ANNUAL
    try:
        return BillingCycle(normalized)
    except ValueError:
        raise ValidationError(f"Unknown billing cycle '{value}'; expected monthly or annual")


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def _days_between(start: datetime, end: datetime) -> int:
    return math.ceil((end - start).total_seconds() / SECONDS_PER_DAY)


class BillingEngine:
    """Subscriptions, quotas, billing periods and invoices.

    Usage numbers always come from the tracker, so a quota decision reflects
    exactly the events recorded for the user.
    """

    def __init__(
        self,
        store: AccountingStore,
        tracker: UsageTracker,
        tiers: TierTable = DEFAULT_TIER_TABLE,
        tax_rate: Union[Decimal, float, str] = DEFAULT_TAX_RATE,
    ):
        self.store = store
        self.tracker = tracker
        self.tiers = tiers
        self.tax_rate = to_decimal(tax_rate)
        if self.tax_rate < 0:
            raise ValueError("tax_rate cannot be negative")
        self.clock = tracker.clock
        self._lock = threading.RLock()

    def create_subscription(
        self,
        user_id: str,
        tier: Union[SubscriptionTier, str],
        cycle: Union[BillingCycle, str] = BillingCycle.MONTHLY,
        trial_days: Optional[int] = None,
    ) -> Subscription:
        """Start a subscription for a user.

        The first paid period starts when the trial ends, or immediately
        when there is no trial. A billing period is opened right away.

        Args:
            user_id: User subscribing
            tier: Tier to subscribe to
            cycle: "monthly" or "annual"
            trial_days: Trial length; None uses the tier's free trial

        Returns:
            The new subscription, "trialing" or "active"

        Raises:
            ValidationError: If the user, tier, cycle or trial is invalid
            DuplicateSubscriptionError: If the user already holds a
                subscription that is not canceled
        """
        if not isinstance(user_id, str) or not user_id.strip():
            raise ValidationError("user_id is required and cannot be empty")
        config = self._tier_config(tier)
        cycle = parse_cycle(cycle)
        if trial_days is None:
            trial_days = config.pricing.free_trial_days
        if isinstance(trial_days, bool) or not isinstance(trial_days, int):
            raise ValidationError("trial_days must be an integer")
        if trial_days < 0:
            raise ValidationError("trial_days cannot be negative")

        with self._lock:
            existing = self.store.read_subscription(user_id)
            if existing is not None and existing.status != SubscriptionStatus.CANCELED:
                raise DuplicateSubscriptionError(user_id, existing.subscription_id)

            now = self.clock()
            trial_end = now + timedelta(days=trial_days) if trial_days > 0 else None
            period_start = trial_end or now
            subscription = Subscription(
                subscription_id=_new_id("sub"),
                user_id=user_id,
                tier=config.tier,
                billing_cycle=cycle,
                status=SubscriptionStatus.TRIALING if trial_end else SubscriptionStatus.ACTIVE,
                current_period_start=period_start,
                current_period_end=add_billing_cycle(period_start, cycle),
                created_at=now,
                updated_at=now,
                trial_end=trial_end,
            )
            self.store.upsert_subscription(subscription)
            self.open_billing_cycle(subscription)

        LOGGER.info(
            "Subscription created",
            extra={
                "userId": user_id,
                "subscriptionId": subscription.subscription_id,
                "tier": config.tier.value,
                "status": subscription.status.value,
            },
        )
        return subscription

    def get_subscription(self, user_id: str) -> Optional[Subscription]:
        """Current subscription of a user, activating an expired trial."""
        with self._lock:
            return self._refresh(self.store.read_subscription(user_id))

    def check_quota(self, user_id: str) -> QuotaDecision:
        """Compare this month's messages against the user's tier limit.

        Denies exactly when the monthly message count exceeds the tier's
        ``messages_per_month``; unlimited tiers never deny on count. A
        canceled subscription is always denied. Users without a
        subscription are checked against Starter.
        """
        subscription = self.get_subscription(user_id)
        tier = subscription.tier if subscription else SubscriptionTier.STARTER
        status = subscription.status if subscription else None
        config = self.tiers.get(tier)
        limit = config.limits.messages_per_month
        count = self.tracker.get_usage_summary(user_id, Period.MONTHLY).message_count

        overage = 0 if limit == UNLIMITED else max(0, count - limit)
        overage_charge = config.pricing.price_per_extra_message * overage
        if status == SubscriptionStatus.CANCELED:
            allowed, reason = False, "Subscription is canceled"
        elif overage > 0:
            allowed, reason = False, f"Monthly message limit of {limit} exceeded by {overage}"
        else:
            allowed, reason = True, "Within monthly message limit"

        return QuotaDecision(
            allowed=allowed,
            status=status,
            tier=tier,
            limit=limit,
            message_count=count,
            overage=overage,
            overage_charge=overage_charge,
            reason=reason,
        )

    def enforce_quota(self, user_id: str) -> QuotaDecision:
        """Like ``check_quota`` but raises when denied.

        Raises:
            QuotaExceededError: Carrying the denying decision
        """
        decision = self.check_quota(user_id)
        if not decision.allowed:
            LOGGER.warning(
                "Quota denied",
                extra={"userId": user_id, "reason": decision.reason, "overage": decision.overage},
            )
            raise QuotaExceededError(decision.reason, decision)
        return decision

    def activate(self, user_id: str) -> Subscription:
        """End a trial early and start the first paid period now."""
        with self._lock:
            subscription = self._require(user_id)
            return self._activate(subscription, early=True)

    def mark_past_due(self, user_id: str) -> Subscription:
        with self._lock:
            subscription = self._require(user_id)
            return self._transition(subscription, SubscriptionStatus.PAST_DUE)

    def mark_renewed(self, user_id: str) -> Subscription:
        with self._lock:
            subscription = self._require(user_id)
            if subscription.status != SubscriptionStatus.PAST_DUE:
                raise InvalidTransitionError(subscription.status.value, "active (renewal)")
            return self._transition(subscription, SubscriptionStatus.ACTIVE)

    def cancel(
        self,
        user_id: str,
        at_period_end: bool = False,
        reason: Optional[str] = None,
    ) -> Subscription:
        """Cancel a subscription now, or flag it to end with the period.

        Raises:
            SubscriptionNotFoundError: If the user has no subscription
            InvalidTransitionError: If it is already canceled
        """
        with self._lock:
            subscription = self._require(user_id)
            if subscription.status == SubscriptionStatus.CANCELED:
                raise InvalidTransitionError(subscription.status.value, "canceled")
            now = self.clock()
            metadata = dict(subscription.metadata)
            metadata["cancelRequestedAt"] = now.isoformat()
            if reason:
                metadata["cancelReason"] = reason
            if at_period_end:
                updated = subscription.evolve(
                    cancel_at_period_end=True, updated_at=now, metadata=metadata
                )
                self.store.upsert_subscription(updated)
            else:
                updated = self._transition(
                    subscription, SubscriptionStatus.CANCELED, canceled_at=now, metadata=metadata
                )
        LOGGER.info(
            "Subscription canceled",
            extra={"userId": user_id, "atPeriodEnd": at_period_end},
        )
        return updated

    def change_tier(
        self,
        user_id: str,
        new_tier: Union[SubscriptionTier, str],
        effective: Optional[datetime] = None,
    ) -> Subscription:
        """Move a subscription to another tier mid-period.

        The unused share of the old price is credited against the new price
        for the days left in the period. A difference above one cent is
        billed as a separate addon period. Trials are not prorated.

        Raises:
            SubscriptionNotFoundError: If the user has no subscription
            InvalidTransitionError: If the subscription is canceled
        """
        config = self._tier_config(new_tier)
        with self._lock:
            subscription = self._require(user_id)
            if subscription.status == SubscriptionStatus.CANCELED:
                raise InvalidTransitionError(subscription.status.value, "tier change")
            now = effective or self.clock()

            difference = Decimal("0")
            if subscription.status != SubscriptionStatus.TRIALING:
                old_config = self.tiers.get(subscription.tier)
                cycle = subscription.billing_cycle
                total_days = max(1, _days_between(
                    subscription.current_period_start, subscription.current_period_end
                ))
                remaining_days = min(total_days, max(0, _days_between(
                    now, subscription.current_period_end
                )))
                per_day_delta = (
                    config.pricing.price_for(cycle) - old_config.pricing.price_for(cycle)
                ) / total_days
                difference = to_cents(per_day_delta * remaining_days)

            metadata = dict(subscription.metadata)
            metadata.update({
                "lastTierChange": now.isoformat(),
                "previousTier": subscription.tier.value,
                "proratedAmount": str(difference),
            })
            updated = subscription.evolve(tier=config.tier, updated_at=now, metadata=metadata)
            self.store.upsert_subscription(updated)

            if abs(difference) > PRORATION_THRESHOLD:
                amount = float(difference)
                self.store.append_billing_period(BillingPeriod(
                    period_id=_new_id("bp"),
                    user_id=user_id,
                    tier=config.tier,
                    start=now,
                    end=subscription.current_period_end,
                    subscription_fee=0.0,
                    usage_charges=amount,
                    total_amount=amount,
                    due_date=now,
                    items=[LineItem(
                        description="Prorated charge (tier change)",
                        quantity=1,
                        unit_price=amount,
                        total_price=amount,
                        kind="addon",
                    )],
                ))

        LOGGER.info(
            "Subscription tier changed",
            extra={
                "userId": user_id,
                "fromTier": subscription.tier.value,
                "toTier": config.tier.value,
                "proratedAmount": str(difference),
            },
        )
        return updated

    def calculate_usage_charges(
        self,
        user_id: str,
        tier: Optional[Union[SubscriptionTier, str]] = None,
    ) -> UsageCharges:
        """Message overage for the current month, priced per extra message."""
        if tier is None:
            subscription = self.store.read_subscription(user_id)
            tier = subscription.tier if subscription else SubscriptionTier.STARTER
        config = self.tiers.get(tier)
        limit = config.limits.messages_per_month
        if limit == UNLIMITED or limit <= 0:
            return UsageCharges(total=Decimal("0"))

        count = self.tracker.get_usage_summary(user_id, Period.MONTHLY).message_count
        overage = max(0, count - limit)
        if overage == 0:
            return UsageCharges(total=Decimal("0"))

        unit_price = config.pricing.price_per_extra_message
        charge = unit_price * overage
        return UsageCharges(
            total=charge,
            items=[LineItem(
                description=f"Message overage ({overage} messages)",
                quantity=overage,
                unit_price=float(unit_price),
                total_price=float(to_cents(charge)),
                kind="overage",
            )],
        )

    def open_billing_cycle(self, subscription: Subscription) -> BillingPeriod:
        """Open a billing period for the subscription's current period.

        Trialing subscriptions owe no subscription fee for the period.
        """
        config = self.tiers.get(subscription.tier)
        price = config.pricing.price_for(subscription.billing_cycle)
        fee = Decimal("0") if subscription.status == SubscriptionStatus.TRIALING else price
        usage = self.calculate_usage_charges(subscription.user_id, subscription.tier)
        items = [LineItem(
            description=f"{config.name} Plan ({subscription.billing_cycle.value})",
            quantity=1,
            unit_price=float(price),
            total_price=float(fee),
            kind="subscription",
        )]
        items.extend(usage.items)

        period = BillingPeriod(
            period_id=_new_id("bp"),
            user_id=subscription.user_id,
            tier=subscription.tier,
            start=subscription.current_period_start,
            end=subscription.current_period_end,
            subscription_fee=float(to_cents(fee)),
            usage_charges=float(to_cents(usage.total)),
            total_amount=float(to_cents(fee + usage.total)),
            due_date=subscription.current_period_end,
            items=items,
        )
        self.store.append_billing_period(period)
        LOGGER.debug(
            "Billing period opened",
            extra={"userId": subscription.user_id, "periodId": period.period_id},
        )
        return period

    def process_renewals(self) -> RenewalResult:
        """Roll every active subscription whose period has ended.

        Trials that have expired are activated first, so they are renewed
        like any other active subscription. Subscriptions flagged to cancel
        at period end are canceled instead of renewed. Each subscription is
        rolled forward by one cycle per run.
        """
        now = self.clock()
        processed, failed, errors = 0, 0, []
        for subscription in self.store.list_subscriptions():
            try:
                if subscription.status == SubscriptionStatus.TRIALING:
                    subscription = self.get_subscription(subscription.user_id)
                due = (
                    subscription.status == SubscriptionStatus.ACTIVE
                    and now >= subscription.current_period_end
                )
                if due:
                    self._renew(subscription, now)
            except Exception as exc:
                failed += 1
                errors.append(f"{subscription.subscription_id}: {exc}")
                LOGGER.exception(
                    "Renewal failed",
                    extra={"subscriptionId": subscription.subscription_id},
                )
            else:
                if due:
                    processed += 1
        LOGGER.info("Renewals processed", extra={"processed": processed, "failed": failed})
        return RenewalResult(processed=processed, failed=failed, errors=errors)

    def generate_invoice(self, period_id: str) -> Invoice:
        """Issue an invoice for a billing period, with tax applied.

        Raises:
            BillingPeriodNotFoundError: If the period does not exist
            SubscriptionNotFoundError: If its user has no subscription
        """
        period = self.store.find_billing_period(period_id)
        if period is None:
            raise BillingPeriodNotFoundError(period_id)
        subscription = self.store.read_subscription(period.user_id)
        if subscription is None:
            raise SubscriptionNotFoundError(period.user_id)

        subtotal = to_cents(period.total_amount)
        taxes = to_cents(subtotal * self.tax_rate)
        invoice = Invoice(
            invoice_id=_new_id("inv"),
            user_id=period.user_id,
            subscription_id=subscription.subscription_id,
            period_id=period.period_id,
            subtotal=float(subtotal),
            taxes=float(taxes),
            total=float(subtotal + taxes),
            created_at=self.clock(),
            due_date=period.due_date,
            items=list(period.items),
        )
        self.store.append_invoice(invoice)
        LOGGER.info(
            "Invoice generated",
            extra={"userId": period.user_id, "invoiceId": invoice.invoice_id, "total": invoice.total},
        )
        return invoice

    def get_billing_history(self, user_id: str) -> BillingHistory:
        periods = self.store.read_billing_periods(user_id)
        invoices = self.store.read_invoices(user_id)
        return BillingHistory(
            subscription=self.store.read_subscription(user_id),
            billing_periods=list(reversed(periods)),
            invoices=list(reversed(invoices)),
        )

    def estimate_bill(self, user_id: str) -> BillEstimate:
        """Subscription fee plus overage for the current period.

        Raises:
            SubscriptionNotFoundError: If the user has no live subscription
        """
        subscription = self.get_subscription(user_id)
        if subscription is None or subscription.status == SubscriptionStatus.CANCELED:
            raise SubscriptionNotFoundError(user_id)
        config = self.tiers.get(subscription.tier)
        fee = config.pricing.price_for(subscription.billing_cycle)
        usage = self.calculate_usage_charges(user_id, subscription.tier)
        now = self.clock()
        return BillEstimate(
            tier=subscription.tier,
            usage=self.tracker.get_usage_summary(user_id, Period.MONTHLY),
            subscription_fee=fee,
            usage_charges=to_cents(usage.total),
            estimated_bill=to_cents(fee + usage.total),
            next_billing_date=subscription.current_period_end,
            days_until_billing=max(0, _days_between(now, subscription.current_period_end)),
        )

    def _renew(self, subscription: Subscription, now: datetime) -> None:
        with self._lock:
            subscription = self.store.read_subscription(subscription.user_id)
            if subscription is None or subscription.status != SubscriptionStatus.ACTIVE:
                return
            if subscription.cancel_at_period_end:
                self._transition(subscription, SubscriptionStatus.CANCELED, canceled_at=now)
                return
            start = subscription.current_period_end
            renewed = subscription.evolve(
                current_period_start=start,
                current_period_end=add_billing_cycle(start, subscription.billing_cycle),
                updated_at=now,
            )
            self.store.upsert_subscription(renewed)
            self.open_billing_cycle(renewed)

    def _refresh(self, subscription: Optional[Subscription]) -> Optional[Subscription]:
        if subscription is None or subscription.status != SubscriptionStatus.TRIALING:
            return subscription
        if subscription.trial_end is not None and self.clock() >= subscription.trial_end:
            return self._activate(subscription, early=False)
        return subscription

    def _activate(self, subscription: Subscription, early: bool) -> Subscription:
        if subscription.status != SubscriptionStatus.TRIALING:
            raise InvalidTransitionError(subscription.status.value, SubscriptionStatus.ACTIVE.value)
        changes = {}
        if early:
            now = self.clock()
            changes = {
                "trial_end": now,
                "current_period_start": now,
                "current_period_end": add_billing_cycle(now, subscription.billing_cycle),
            }
        activated = self._transition(subscription, SubscriptionStatus.ACTIVE, **changes)
        self.open_billing_cycle(activated)
        return activated

    def _transition(
        self,
        subscription: Subscription,
        target: SubscriptionStatus,
        **changes,
    ) -> Subscription:
        if target not in ALLOWED_TRANSITIONS[subscription.status]:
            raise InvalidTransitionError(subscription.status.value, target.value)
        updated = subscription.evolve(status=target, updated_at=self.clock(), **changes)
        self.store.upsert_subscription(updated)
        LOGGER.info(
            "Subscription status changed",
            extra={
                "userId": subscription.user_id,
                "fromStatus": subscription.status.value,
                "toStatus": target.value,
            },
        )
        return updated

    def _require(self, user_id: str) -> Subscription:
        subscription = self._refresh(self.store.read_subscription(user_id))
        if subscription is None:
            raise SubscriptionNotFoundError(user_id)
        return subscription

    def _tier_config(self, tier: Union[SubscriptionTier, str]) -> TierConfig:
        try:
            return self.tiers.get(tier)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
