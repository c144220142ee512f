"""
Unit tests for the billing engine.

Tests subscriptions, the status machine, quota decisions, proration,
renewals and invoices.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from consensus_billing.config.loader import BillingConfig, BillingSettings
from consensus_billing.core.accounting import build_accounting
from consensus_billing.core.billing import add_billing_cycle
from consensus_billing.core.errors import (
    BillingPeriodNotFoundError,
    DuplicateSubscriptionError,
    InvalidTransitionError,
    QuotaExceededError,
    SubscriptionNotFoundError,
    ValidationError,
)
from consensus_billing.storage.models import (
    BillingCycle,
    SubscriptionStatus,
    SubscriptionTier,
)

from conftest import START


@pytest.fixture
def small_quota(store, clock):
    """Accounting where Starter allows three messages a month."""
    config = BillingConfig(tier_limits={SubscriptionTier.STARTER: {"messages_per_month": 3}})
    return build_accounting(config, store=store, clock=clock)


def _record(accounting, count, user_id="u1"):
    for _ in range(count):
        accounting.tracker.record_message(user_id, "gpt-4", 10, 0.0003)


class TestCreateSubscription:
    """Test subscription creation."""

    def test_trial_subscription_is_allowed(self, accounting):
        """A new professional trial is trialing and within quota."""
        billing = accounting.billing
        subscription = billing.create_subscription("u1", "professional", "monthly", 14)

        decision = billing.check_quota("u1")

        assert subscription.status == SubscriptionStatus.TRIALING
        assert subscription.trial_end == START + timedelta(days=14)
        assert subscription.trial_days_remaining(START) == 14
        assert decision.status == SubscriptionStatus.TRIALING
        assert decision.tier == SubscriptionTier.PROFESSIONAL
        assert decision.allowed

    def test_paid_period_starts_after_trial(self, accounting):
        subscription = accounting.billing.create_subscription("u1", "professional", trial_days=14)
        assert subscription.current_period_start == subscription.trial_end
        assert subscription.current_period_end == datetime(2024, 4, 29, 12, tzinfo=timezone.utc)

    def test_default_trial_comes_from_tier(self, accounting):
        """Omitting trial_days uses the tier's free trial."""
        boardroom = accounting.billing.create_subscription("u1", "boardroom")
        starter = accounting.billing.create_subscription("u2", "starter")

        assert boardroom.trial_end == START + timedelta(days=30)
        assert starter.status == SubscriptionStatus.ACTIVE
        assert starter.trial_end is None

    def test_zero_trial_is_active(self, accounting):
        subscription = accounting.billing.create_subscription("u1", "professional", trial_days=0)
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.current_period_start == START

    def test_annual_cycle(self, accounting):
        subscription = accounting.billing.create_subscription(
            "u1", "boardroom", "annual", trial_days=0
        )
        assert subscription.billing_cycle == BillingCycle.ANNUAL
        assert subscription.current_period_end == datetime(2025, 3, 15, 12, tzinfo=timezone.utc)

    def test_duplicate_subscription_rejected(self, accounting):
        """A second live subscription for the same user fails."""
        billing = accounting.billing
        first = billing.create_subscription("u1", "professional")

        with pytest.raises(DuplicateSubscriptionError) as exc_info:
            billing.create_subscription("u1", "boardroom")

        assert exc_info.value.subscription_id == first.subscription_id
        assert billing.get_subscription("u1") == first

    def test_resubscribe_after_cancel(self, accounting):
        """A canceled subscription can be replaced."""
        billing = accounting.billing
        billing.create_subscription("u1", "professional")
        billing.cancel("u1")

        again = billing.create_subscription("u1", "boardroom", trial_days=0)

        assert again.status == SubscriptionStatus.ACTIVE
        assert billing.get_subscription("u1").tier == SubscriptionTier.BOARDROOM

    @pytest.mark.parametrize("args", [
        ("", "professional"),
        ("u1", "platinum"),
        ("u1", "professional", "weekly"),
        ("u1", "professional", "monthly", -1),
        ("u1", "professional", "monthly", "14"),
        ("u1", "professional", "monthly", True),
    ])
    def test_invalid_input_rejected(self, accounting, args):
        with pytest.raises(ValidationError):
            accounting.billing.create_subscription(*args)
        assert accounting.store.list_subscriptions() == []

    def test_first_billing_period_opened(self, accounting):
        """Creating a subscription opens its first billing period."""
        accounting.billing.create_subscription("u1", "professional", trial_days=0)

        periods = accounting.store.read_billing_periods("u1")

        assert len(periods) == 1
        assert periods[0].subscription_fee == 29.0
        assert periods[0].items[0].description == "Professional Plan (monthly)"

    def test_trial_period_has_no_fee(self, accounting):
        accounting.billing.create_subscription("u1", "professional", trial_days=14)
        period = accounting.store.read_billing_periods("u1")[0]
        assert period.subscription_fee == 0.0
        assert period.items[0].unit_price == 29.0


class TestCheckQuota:
    """Test quota decisions against monthly usage."""

    def test_no_subscription_uses_starter(self, accounting):
        decision = accounting.billing.check_quota("u1")
        assert decision.allowed
        assert decision.status is None
        assert decision.tier == SubscriptionTier.STARTER
        assert decision.limit == 100

    def test_at_limit_is_allowed(self, small_quota):
        """Exactly reaching the limit is still allowed."""
        _record(small_quota, 3)
        decision = small_quota.billing.check_quota("u1")
        assert decision.allowed
        assert decision.overage == 0

    def test_over_limit_is_denied(self, small_quota):
        """Going past the limit denies and prices the overage."""
        _record(small_quota, 4)

        decision = small_quota.billing.check_quota("u1")

        assert not decision.allowed
        assert decision.message_count == 4
        assert decision.overage == 1
        assert decision.overage_charge == Decimal("0.05")

    def test_unlimited_tier_never_denies(self, accounting):
        accounting.billing.create_subscription("u1", "enterprise", trial_days=0)
        _record(accounting, 150)

        decision = accounting.billing.check_quota("u1")

        assert decision.allowed
        assert decision.limit == -1
        assert decision.overage == 0

    def test_canceled_subscription_denied(self, accounting):
        accounting.billing.create_subscription("u1", "professional")
        accounting.billing.cancel("u1")

        decision = accounting.billing.check_quota("u1")

        assert not decision.allowed
        assert decision.status == SubscriptionStatus.CANCELED

    def test_past_due_still_governed_by_limits(self, accounting):
        billing = accounting.billing
        billing.create_subscription("u1", "professional", trial_days=0)
        billing.mark_past_due("u1")

        decision = billing.check_quota("u1")

        assert decision.allowed
        assert decision.status == SubscriptionStatus.PAST_DUE

    def test_enforce_quota_raises(self, small_quota):
        _record(small_quota, 5)

        with pytest.raises(QuotaExceededError) as exc_info:
            small_quota.billing.enforce_quota("u1")

        assert exc_info.value.decision.overage == 2

    def test_enforce_quota_returns_allowed_decision(self, accounting):
        assert accounting.billing.enforce_quota("u1").allowed


class TestStatusMachine:
    """Test subscription status transitions."""

    def test_trial_expiry_activates(self, accounting, clock):
        """Once the trial ends the subscription reads as active."""
        billing = accounting.billing
        billing.create_subscription("u1", "professional", trial_days=14)

        clock.advance(days=15)

        assert billing.check_quota("u1").status == SubscriptionStatus.ACTIVE
        assert accounting.store.read_subscription("u1").status == SubscriptionStatus.ACTIVE
        assert len(accounting.store.read_billing_periods("u1")) == 2

    def test_activate_ends_trial_early(self, accounting, clock):
        billing = accounting.billing
        billing.create_subscription("u1", "professional", trial_days=14)
        clock.advance(days=2)

        active = billing.activate("u1")

        assert active.status == SubscriptionStatus.ACTIVE
        assert active.trial_end == clock()
        assert active.current_period_start == clock()
        assert active.current_period_end == datetime(2024, 4, 17, 12, tzinfo=timezone.utc)

    def test_activate_requires_trial(self, accounting):
        accounting.billing.create_subscription("u1", "professional", trial_days=0)
        with pytest.raises(InvalidTransitionError):
            accounting.billing.activate("u1")

    def test_past_due_and_renewed(self, accounting):
        billing = accounting.billing
        billing.create_subscription("u1", "professional", trial_days=0)

        assert billing.mark_past_due("u1").status == SubscriptionStatus.PAST_DUE
        assert billing.mark_renewed("u1").status == SubscriptionStatus.ACTIVE

    def test_trialing_cannot_be_past_due(self, accounting):
        accounting.billing.create_subscription("u1", "professional", trial_days=14)
        with pytest.raises(InvalidTransitionError, match="from trialing to past_due"):
            accounting.billing.mark_past_due("u1")

    def test_expired_trial_can_be_past_due(self, accounting, clock):
        """Status changes see a trial that has ended as active."""
        billing = accounting.billing
        billing.create_subscription("u1", "professional", trial_days=14)
        clock.advance(days=20)

        assert billing.mark_past_due("u1").status == SubscriptionStatus.PAST_DUE

    def test_renewed_requires_past_due(self, accounting):
        accounting.billing.create_subscription("u1", "professional", trial_days=0)
        with pytest.raises(InvalidTransitionError):
            accounting.billing.mark_renewed("u1")

    def test_canceled_is_terminal(self, accounting):
        billing = accounting.billing
        billing.create_subscription("u1", "professional", trial_days=0)
        canceled = billing.cancel("u1", reason="too expensive")

        assert canceled.status == SubscriptionStatus.CANCELED
        assert canceled.canceled_at == START
        assert canceled.metadata["cancelReason"] == "too expensive"
        with pytest.raises(InvalidTransitionError):
            billing.cancel("u1")
        with pytest.raises(InvalidTransitionError):
            billing.mark_past_due("u1")

    def test_cancel_at_period_end_only_flags(self, accounting):
        billing = accounting.billing
        billing.create_subscription("u1", "professional", trial_days=0)

        flagged = billing.cancel("u1", at_period_end=True)

        assert flagged.status == SubscriptionStatus.ACTIVE
        assert flagged.cancel_at_period_end

    def test_missing_subscription(self, accounting):
        with pytest.raises(SubscriptionNotFoundError):
            accounting.billing.cancel("ghost")
        with pytest.raises(SubscriptionNotFoundError):
            accounting.billing.mark_past_due("ghost")


class TestTierChange:
    """Test mid-period tier changes."""

    def test_upgrade_is_prorated(self, accounting):
        """Upgrading on day one bills the full price difference."""
        billing = accounting.billing
        billing.create_subscription("u1", "professional", trial_days=0)

        updated = billing.change_tier("u1", "boardroom")

        assert updated.tier == SubscriptionTier.BOARDROOM
        assert updated.metadata["proratedAmount"] == "70.00"
        assert updated.metadata["previousTier"] == "professional"
        addon = accounting.store.read_billing_periods("u1")[-1]
        assert addon.total_amount == 70.0
        assert addon.items[0].kind == "addon"

    def test_mid_period_upgrade(self, accounting, clock):
        """Only the remaining days are charged."""
        billing = accounting.billing
        billing.create_subscription("u1", "professional", trial_days=0)
        clock.advance(days=16)

        updated = billing.change_tier("u1", "boardroom")

        # 15 of 31 days left: 70 / 31 * 15
        assert updated.metadata["proratedAmount"] == "33.87"

    def test_downgrade_credits(self, accounting):
        billing = accounting.billing
        billing.create_subscription("u1", "boardroom", trial_days=0)

        updated = billing.change_tier("u1", "professional")

        assert updated.metadata["proratedAmount"] == "-70.00"

    def test_trial_change_not_prorated(self, accounting):
        billing = accounting.billing
        billing.create_subscription("u1", "professional", trial_days=14)

        updated = billing.change_tier("u1", "boardroom")

        assert updated.metadata["proratedAmount"] == "0"
        assert len(accounting.store.read_billing_periods("u1")) == 1

    def test_change_after_expired_trial_is_prorated(self, accounting, clock):
        """A trial that has ended is billed like an active subscription."""
        billing = accounting.billing
        billing.create_subscription("u1", "professional", trial_days=14)
        clock.advance(days=20)

        updated = billing.change_tier("u1", "boardroom")

        # 25 of 31 days left in the first paid period: 70 / 31 * 25
        assert updated.status == SubscriptionStatus.ACTIVE
        assert updated.metadata["proratedAmount"] == "56.45"
        assert accounting.store.read_billing_periods("u1")[-1].items[0].kind == "addon"

    def test_canceled_cannot_change(self, accounting):
        accounting.billing.create_subscription("u1", "professional")
        accounting.billing.cancel("u1")
        with pytest.raises(InvalidTransitionError):
            accounting.billing.change_tier("u1", "boardroom")


class TestRenewals:
    """Test renewal processing."""

    def test_renewal_rolls_period(self, accounting, clock):
        billing = accounting.billing
        billing.create_subscription("u1", "professional", trial_days=0)
        clock.advance(days=31)

        result = billing.process_renewals()

        assert result.processed == 1
        assert result.failed == 0
        renewed = accounting.store.read_subscription("u1")
        assert renewed.current_period_start == datetime(2024, 4, 15, 12, tzinfo=timezone.utc)
        assert renewed.current_period_end == datetime(2024, 5, 15, 12, tzinfo=timezone.utc)
        assert len(accounting.store.read_billing_periods("u1")) == 2

    def test_expired_trial_is_activated_and_renewed(self, accounting, clock):
        """A trial nobody has read since it ended is still renewed."""
        billing = accounting.billing
        billing.create_subscription("u1", "professional", trial_days=14)
        clock.advance(days=46)

        result = billing.process_renewals()

        assert result.processed == 1
        renewed = accounting.store.read_subscription("u1")
        assert renewed.status == SubscriptionStatus.ACTIVE
        assert renewed.current_period_start == datetime(2024, 4, 29, 12, tzinfo=timezone.utc)
        assert renewed.current_period_end == datetime(2024, 5, 29, 12, tzinfo=timezone.utc)
        assert len(accounting.store.read_billing_periods("u1")) == 3

    def test_expired_trial_activated_before_period_end(self, accounting, clock):
        billing = accounting.billing
        billing.create_subscription("u1", "professional", trial_days=14)
        clock.advance(days=15)

        assert billing.process_renewals().processed == 0
        assert accounting.store.read_subscription("u1").status == SubscriptionStatus.ACTIVE

    def test_nothing_due(self, accounting):
        accounting.billing.create_subscription("u1", "professional", trial_days=0)
        assert accounting.billing.process_renewals().processed == 0

    def test_cancel_at_period_end_applied(self, accounting, clock):
        billing = accounting.billing
        billing.create_subscription("u1", "professional", trial_days=0)
        billing.cancel("u1", at_period_end=True)
        clock.advance(days=31)

        billing.process_renewals()

        subscription = accounting.store.read_subscription("u1")
        assert subscription.status == SubscriptionStatus.CANCELED
        assert len(accounting.store.read_billing_periods("u1")) == 1


class TestChargesAndInvoices:
    """Test usage charges, invoices and estimates."""

    def test_usage_charges(self, small_quota):
        _record(small_quota, 5)

        charges = small_quota.billing.calculate_usage_charges("u1")

        assert charges.total == Decimal("0.10")
        assert charges.items[0].quantity == 2
        assert charges.items[0].kind == "overage"

    def test_no_usage_charges_under_limit(self, accounting):
        _record(accounting, 3)
        charges = accounting.billing.calculate_usage_charges("u1", "starter")
        assert charges.total == Decimal("0")
        assert charges.items == []

    def test_generate_invoice(self, accounting):
        """Invoices add tax to the billing period total."""
        billing = accounting.billing
        subscription = billing.create_subscription("u1", "professional", trial_days=0)
        period = accounting.store.read_billing_periods("u1")[0]

        invoice = billing.generate_invoice(period.period_id)

        assert invoice.subscription_id == subscription.subscription_id
        assert invoice.subtotal == 29.0
        assert invoice.taxes == 2.32
        assert invoice.total == 31.32
        assert invoice.status == "draft"
        assert accounting.store.read_invoices("u1") == [invoice]

    def test_configured_tax_rate(self, store, clock):
        config = BillingConfig(billing=BillingSettings(tax_rate=Decimal("0.2")))
        accounting = build_accounting(config, store=store, clock=clock)
        accounting.billing.create_subscription("u1", "professional", trial_days=0)
        period = store.read_billing_periods("u1")[0]

        invoice = accounting.billing.generate_invoice(period.period_id)

        assert invoice.taxes == 5.8
        assert invoice.total == 34.8

    def test_unknown_period(self, accounting):
        with pytest.raises(BillingPeriodNotFoundError):
            accounting.billing.generate_invoice("bp_missing")

    def test_billing_history_newest_first(self, accounting):
        billing = accounting.billing
        billing.create_subscription("u1", "professional", trial_days=0)
        billing.change_tier("u1", "boardroom")
        periods = accounting.store.read_billing_periods("u1")
        first = billing.generate_invoice(periods[0].period_id)
        second = billing.generate_invoice(periods[1].period_id)

        history = billing.get_billing_history("u1")

        assert history.subscription.tier == SubscriptionTier.BOARDROOM
        assert [p.period_id for p in history.billing_periods] == [
            periods[1].period_id, periods[0].period_id,
        ]
        assert history.invoices == [second, first]

    def test_estimate_bill(self, accounting):
        accounting.billing.create_subscription("u1", "professional", trial_days=0)

        estimate = accounting.billing.estimate_bill("u1")

        assert estimate.subscription_fee == Decimal("29")
        assert estimate.usage_charges == Decimal("0.00")
        assert estimate.estimated_bill == Decimal("29.00")
        assert estimate.days_until_billing == 31

    def test_estimate_requires_subscription(self, accounting):
        with pytest.raises(SubscriptionNotFoundError):
            accounting.billing.estimate_bill("u1")


class TestBillingCycleDates:
    """Test period arithmetic."""

    def test_month_end_is_clamped(self):
        start = datetime(2024, 1, 31, tzinfo=timezone.utc)
        assert add_billing_cycle(start, BillingCycle.MONTHLY) == datetime(
            2024, 2, 29, tzinfo=timezone.utc
        )

    def test_december_rolls_year(self):
        start = datetime(2024, 12, 10, tzinfo=timezone.utc)
        assert add_billing_cycle(start, BillingCycle.MONTHLY) == datetime(
            2025, 1, 10, tzinfo=timezone.utc
        )

    def test_leap_day_annual(self):
        start = datetime(2024, 2, 29, tzinfo=timezone.utc)
        assert add_billing_cycle(start, BillingCycle.ANNUAL) == datetime(
            2025, 2, 28, tzinfo=timezone.utc
        )
