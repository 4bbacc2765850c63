from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from tokenapi.config import settings
from tokenapi.utils.token_utils import (
    apply_deduction,
    calculate_total_tokens,
    generate_reference,
    generate_referral_code,
    get_token_breakdown,
    is_plan_active,
    plan_deduction,
    zero_buckets,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def make_account(days_left=10, **buckets):
    fields = dict(
        subscription_end_date=NOW + timedelta(days=days_left),
        daily_current=0,
        daily_limit=100,
        daily_used_today=0,
        purchased_current=0,
        purchased_total=0,
        purchased_used=0,
        bonus_current=0,
        bonus_initial=0,
        bonus_used=0,
        prize_current=0,
        prize_used=0,
        stats_total_used=0,
        stats_daily_used=0,
        stats_purchased_used=0,
        stats_bonus_used=0,
        stats_prize_used=0,
        stats_plan_period_used=0,
        prize_history=[],
    )
    fields.update(buckets)
    return SimpleNamespace(**fields)


class TestPlanActivity:
    """플랜 활성 여부 / 총 잔액"""

    def test_active_when_end_date_in_future(self):
        assert is_plan_active(make_account(days_left=1), NOW) is True

    def test_inactive_at_exact_end_date(self):
        account = make_account(days_left=0)
        assert is_plan_active(account, NOW) is False

    def test_inactive_without_plan(self):
        account = make_account()
        account.subscription_end_date = None
        assert is_plan_active(account, NOW) is False

    def test_naive_end_date_treated_as_utc(self):
        account = make_account()
        account.subscription_end_date = (NOW + timedelta(hours=1)).replace(tzinfo=None)
        assert is_plan_active(account, NOW) is True

    def test_total_is_sum_of_buckets(self):
        account = make_account(daily_current=50, purchased_current=200, bonus_current=500, prize_current=300)
        assert calculate_total_tokens(account, NOW) == 1050

    def test_total_is_zero_after_expiry_even_with_leftovers(self):
        """만료된 플랜의 잔량은 보이지 않음"""
        account = make_account(days_left=-1, daily_current=50, purchased_current=200)
        assert calculate_total_tokens(account, NOW) == 0


class TestBreakdown:
    def test_expired_breakdown_reports_all_zero(self):
        account = make_account(days_left=-2, daily_current=10, purchased_current=20, bonus_current=30, prize_current=40)

        breakdown = get_token_breakdown(account, NOW)

        assert breakdown.total == 0
        assert breakdown.daily.current == 0
        assert breakdown.purchased.current == 0
        assert breakdown.bonus.current == 0
        assert breakdown.prize.current == 0
        assert breakdown.plan_expiry.is_active is False
        assert breakdown.plan_expiry.days_remaining == 0

    def test_days_remaining_rounds_up(self):
        account = make_account(days_left=0)
        account.subscription_end_date = NOW + timedelta(days=2, hours=1)

        breakdown = get_token_breakdown(account, NOW)

        assert breakdown.plan_expiry.days_remaining == 3

    def test_missing_daily_limit_uses_configured_default(self, monkeypatch):
        monkeypatch.setattr(settings, "DEFAULT_DAILY_TOKEN_LIMIT", 250)
        account = make_account(daily_limit=None)

        breakdown = get_token_breakdown(account, NOW)

        assert breakdown.daily.limit == 250

    def test_legacy_view_groups_extra_buckets(self):
        account = make_account(daily_current=40, daily_used_today=60, purchased_current=100, bonus_current=0, prize_current=5)

        legacy = get_token_breakdown(account, NOW).legacy()

        assert legacy.total == 145
        assert legacy.regular == 40
        assert legacy.extra == 105
        assert legacy.used == 60
        assert legacy.has_extra_tokens is True


class TestDeductionOrder:
    """daily → purchased → bonus → prize"""

    def test_large_request_spills_across_buckets(self):
        # Given
        account = make_account(daily_current=50, purchased_current=200, bonus_current=500, prize_current=300)

        # When
        breakdown = apply_deduction(account, 300)

        # Then
        assert breakdown.model_dump() == {"daily": 50, "purchased": 200, "bonus": 50, "prize": 0}
        assert (account.daily_current, account.purchased_current, account.bonus_current, account.prize_current) == (0, 0, 450, 300)
        assert calculate_total_tokens(account, NOW) == 750

    def test_daily_then_purchased(self):
        account = make_account(daily_current=5, purchased_current=10)

        breakdown = apply_deduction(account, 8)

        assert breakdown.model_dump() == {"daily": 5, "purchased": 3, "bonus": 0, "prize": 0}

    @pytest.mark.parametrize("amount", [1, 49, 50, 51, 250, 749, 1050])
    def test_deduction_conserves_total(self, amount):
        account = make_account(daily_current=50, purchased_current=200, bonus_current=500, prize_current=300)
        before = calculate_total_tokens(account, NOW)

        breakdown = apply_deduction(account, amount)

        assert breakdown.total == amount
        assert sum(breakdown.model_dump().values()) == amount
        assert calculate_total_tokens(account, NOW) == before - amount

    def test_deduction_updates_usage_stats(self):
        account = make_account(daily_current=10, prize_current=10)

        apply_deduction(account, 15)

        assert account.daily_used_today == 10
        assert account.stats_daily_used == 10
        assert account.prize_used == 5
        assert account.stats_prize_used == 5
        assert account.stats_total_used == 15
        assert account.stats_plan_period_used == 15

    def test_exact_total_empties_every_bucket(self):
        account = make_account(daily_current=1, purchased_current=2, bonus_current=3, prize_current=4)

        breakdown = apply_deduction(account, 10)

        assert breakdown.total == 10
        assert calculate_total_tokens(account, NOW) == 0

    def test_plan_deduction_does_not_mutate(self):
        account = make_account(daily_current=5, bonus_current=5)

        breakdown = plan_deduction(account, 7)

        assert breakdown.daily == 5
        assert breakdown.bonus == 2
        assert account.daily_current == 5
        assert account.bonus_current == 5

    def test_later_bucket_untouched_while_earlier_has_tokens(self):
        account = make_account(daily_current=100, prize_current=100)

        breakdown = apply_deduction(account, 99)

        assert breakdown.prize == 0
        assert account.prize_current == 100


class TestHelpers:
    def test_zero_buckets_returns_discarded(self):
        account = make_account(daily_current=3, purchased_current=4, bonus_current=0, prize_current=7)

        discarded = zero_buckets(account)

        assert discarded == {"daily": 3, "purchased": 4, "bonus": 0, "prize": 7}
        assert account.prize_current == 0

    def test_reference_format(self):
        reference = generate_reference("TKN")
        prefix, millis, suffix = reference.split("_")
        assert prefix == "TKN"
        assert millis.isdigit()
        assert len(suffix) == 8 and suffix == suffix.upper()

    @pytest.mark.parametrize("_", range(3))
    def test_referral_code_is_upper_hex(self, _):
        code = generate_referral_code()
        assert len(code) == 12
        int(code, 16)
        assert code == code.upper()
