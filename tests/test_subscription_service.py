from datetime import timedelta
from unittest.mock import Mock

import pytest

from tokenapi.core.exceptions import NotFoundError, ValidationError
from tokenapi.models.account import Account, PrizeGrant
from tokenapi.models.payment import TokenTransaction, TransactionType
from tokenapi.models.referral import ReferralEntry, ReferralStatus
from tokenapi.services.subscription_service import SubscriptionService


@pytest.fixture
def notifier():
    return Mock()


@pytest.fixture
def subscription_service(db, test_settings, notifier):
    return SubscriptionService(db, test_settings, notifier=notifier)


@pytest.fixture
def plan(plan_factory):
    return plan_factory(name="Standard", duration_days=95, daily=100, bonus=500)


def _transactions(db, account_id, type_):
    return (
        db.query(TokenTransaction)
        .filter(TokenTransaction.account_id == account_id, TokenTransaction.type == type_.value)
        .all()
    )


class TestApplyPlan:
    """가입 / 갱신"""

    def test_first_activation_sets_window_and_buckets(self, subscription_service, account_factory, plan, db, now):
        # Given
        account = account_factory(email="new@example.com")

        # When
        discarded = subscription_service.apply_plan(account, plan, now)
        db.commit()

        # Then
        assert discarded == {}
        assert account.plan_id == plan.id
        assert account.subscription_start_date == now
        assert account.subscription_end_date == now + timedelta(days=95)
        assert account.daily_current == 100
        assert account.daily_limit == 100
        assert account.bonus_current == 500
        assert account.bonus_initial == 500
        assert account.referral_code is not None
        assert len(_transactions(db, account.id, TransactionType.BONUS)) == 1

    def test_renewal_restarts_window_from_now(self, subscription_service, account_factory, plan, db, now):
        """남은 기간은 이어붙이지 않음"""
        account = account_factory(plan=plan, days_left=40)

        subscription_service.apply_plan(account, plan, now)
        db.commit()

        assert account.subscription_end_date == now + timedelta(days=95)

    def test_renew_after_expiry_starts_new_window(self, subscription_service, account_factory, plan, db, now):
        account = account_factory(plan=plan, days_left=-10)

        subscription_service.renew(account, plan, now)
        db.commit()

        assert account.subscription_start_date == now
        assert account.subscription_end_date == now + timedelta(days=95)
        assert account.subscription_is_active is True

    def test_activate_and_renew_have_same_effect(self, subscription_service, account_factory, plan, now):
        first = account_factory(email="first@example.com")
        second = account_factory(email="second@example.com", plan=plan, days_left=3)

        subscription_service.activate(first, plan, now)
        subscription_service.renew(second, plan, now)

        assert first.subscription_end_date == second.subscription_end_date
        assert (first.daily_current, first.bonus_current) == (second.daily_current, second.bonus_current)

    def test_renewal_reset_discards_unused_tokens(self, subscription_service, account_factory, plan, db, now):
        # Given
        account = account_factory(plan=plan, daily_current=20, purchased_current=150, bonus_current=80, prize_current=40)

        # When
        discarded = subscription_service.apply_plan(account, plan, now)
        db.commit()

        # Then
        assert discarded == {"purchased": 150, "bonus": 80, "prize": 40}
        assert account.purchased_current == 0
        assert account.prize_current == 0
        assert account.bonus_current == 500
        assert account.daily_current == 100
        expiry = _transactions(db, account.id, TransactionType.EXPIRY)
        assert [t.token_amount for t in expiry] == [270]
        assert expiry[0].reason == "renewal_reset"

    def test_carry_over_keeps_buckets_of_active_plan(self, db, test_settings, account_factory, plan, now):
        settings = test_settings.model_copy(update={"RENEWAL_CARRYOVER_POLICY": "carry_over"})
        service = SubscriptionService(db, settings)
        account = account_factory(plan=plan, purchased_current=150, bonus_current=80, prize_current=40)

        discarded = service.apply_plan(account, plan, now)
        db.commit()

        assert discarded == {}
        assert account.purchased_current == 150
        assert account.prize_current == 40
        assert account.bonus_current == 580
        assert account.purchased_expires_at == account.subscription_end_date

    def test_carry_over_does_not_revive_expired_tokens(self, db, test_settings, account_factory, plan, now):
        settings = test_settings.model_copy(update={"RENEWAL_CARRYOVER_POLICY": "carry_over"})
        service = SubscriptionService(db, settings)
        account = account_factory(plan=plan, days_left=-5, purchased_current=150)

        discarded = service.apply_plan(account, plan, now)

        assert discarded == {"purchased": 150}
        assert account.purchased_current == 0

    def test_plan_without_bonus_records_no_bonus(self, subscription_service, account_factory, plan_factory, db, now):
        basic = plan_factory(name="Basic", price="999", duration_days=30, bonus=0)
        account = account_factory(email="basic@example.com")

        subscription_service.apply_plan(account, basic, now)
        db.commit()

        assert account.bonus_current == 0
        assert _transactions(db, account.id, TransactionType.BONUS) == []

    def test_admin_activation_commits_and_notifies(self, subscription_service, account_factory, plan, db, notifier):
        account = account_factory(email="manual@example.com")

        view = subscription_service.activate_by_admin(account.id, plan.id)

        assert view.is_active is True
        assert view.plan_id == plan.id
        db.expire_all()
        assert db.get(Account, account.id).daily_current == 100
        notifier.send.assert_called_once()

    def test_admin_activation_sends_deferred_milestone_notice(self, subscription_service, account_factory, plan, db, notifier):
        """보류된 마일스톤이 관리자 활성화로 지급되면 알림도 발송"""
        # Given
        lapsed = account_factory(email="lapsed@example.com", plan=plan, days_left=-1, referral_active=8, referral_code="LAPSED000001")

        # When
        subscription_service.activate_by_admin(lapsed.id, plan.id)

        # Then
        db.expire_all()
        assert db.get(Account, lapsed.id).prize_current == 300
        kinds = [c.args[1] for c in notifier.send.call_args_list]
        assert kinds == ["subscription_activated", "referral_milestone"]

    def test_admin_activation_failure_drops_queued_notices(self, db, test_settings, account_factory, plan, notifier):
        service = SubscriptionService(db, test_settings, notifier=notifier)
        lapsed = account_factory(email="lapsed@example.com", plan=plan, days_left=-1, referral_active=8)
        original = service.apply_plan

        def apply_then_fail(account, plan, now=None):
            original(account, plan, now)
            raise ValidationError("activation rejected")

        service.apply_plan = apply_then_fail

        with pytest.raises(ValidationError):
            service.activate_by_admin(lapsed.id, plan.id)

        service.referral_service.flush_notifications()
        notifier.send.assert_not_called()
        db.expire_all()
        assert db.get(Account, lapsed.id).prize_current == 0

    def test_admin_activation_unknown_plan(self, subscription_service, account_factory):
        account = account_factory()

        with pytest.raises(NotFoundError):
            subscription_service.activate_by_admin(account.id, 404)


class TestDailyRefresh:
    """일일 리필 (서비스 타임존 하루 한 번)"""

    @pytest.fixture
    def midday(self, now):
        # 06:00 UTC = 11:30 IST, 자정 경계에서 멀리
        return now.replace(hour=6, minute=0, second=0, microsecond=0)

    def test_refresh_restores_daily_limit(self, subscription_service, account_factory, plan, db, now):
        account = account_factory(plan=plan, daily_current=3, daily_used_today=97)

        result = subscription_service.refresh_daily_tokens(now)

        assert result.refreshed == 1
        db.expire_all()
        stored = db.get(Account, account.id)
        assert stored.daily_current == 100
        assert stored.daily_used_today == 0

    def test_second_run_same_day_is_noop(self, subscription_service, account_factory, plan, db, midday):
        account = account_factory(plan=plan, daily_current=100)
        subscription_service.refresh_daily_tokens(midday)
        account.daily_current = 40
        db.commit()

        result = subscription_service.refresh_daily_tokens(midday + timedelta(hours=3))

        assert result.refreshed == 0
        assert result.skipped == 1
        db.expire_all()
        assert db.get(Account, account.id).daily_current == 40

    def test_next_day_refreshes_again(self, subscription_service, account_factory, plan, midday):
        account_factory(plan=plan)
        subscription_service.refresh_daily_tokens(midday)

        result = subscription_service.refresh_daily_tokens(midday + timedelta(days=1))

        assert result.refreshed == 1

    def test_expired_accounts_are_not_refreshed(self, subscription_service, account_factory, plan, db, now):
        account = account_factory(plan=plan, days_left=-1, daily_current=0)

        result = subscription_service.refresh_daily_tokens(now)

        assert result.refreshed == 0
        db.expire_all()
        assert db.get(Account, account.id).daily_current == 0


class TestExpirySweep:
    """만료 구독 정리"""

    def test_sweep_zeroes_buckets_and_keeps_history(self, subscription_service, account_factory, plan, db, now):
        # Given
        account = account_factory(
            plan=plan,
            days_left=-1,
            daily_current=10,
            purchased_current=200,
            purchased_total=300,
            purchased_used=100,
            prize_current=5,
        )

        # When
        result = subscription_service.sweep_expired_subscriptions(now)

        # Then
        assert result.expired_accounts == 1
        assert result.tokens_expired == 215
        db.expire_all()
        stored = db.get(Account, account.id)
        assert stored.subscription_is_active is False
        assert (stored.daily_current, stored.purchased_current, stored.prize_current) == (0, 0, 0)
        assert stored.purchased_total == 300
        assert stored.purchased_used == 100
        assert [t.token_amount for t in _transactions(db, account.id, TransactionType.EXPIRY)] == [215]

    def test_sweep_is_idempotent(self, subscription_service, account_factory, plan, now):
        account_factory(plan=plan, days_left=-1, purchased_current=20)
        subscription_service.sweep_expired_subscriptions(now)

        result = subscription_service.sweep_expired_subscriptions(now)

        assert result.expired_accounts == 0
        assert result.tokens_expired == 0

    def test_active_accounts_untouched(self, subscription_service, account_factory, plan, db, now):
        account = account_factory(plan=plan, purchased_current=20)

        result = subscription_service.sweep_expired_subscriptions(now)

        assert result.expired_accounts == 0
        db.expire_all()
        assert db.get(Account, account.id).purchased_current == 20

    def test_sweep_expires_referral_entries(self, subscription_service, account_factory, plan, db, now):
        # Given
        referrer = account_factory(email="referrer@example.com", plan=plan, referral_active=1, referral_total=1)
        referred = account_factory(email="friend@example.com", plan=plan, days_left=-1, referred_by_id=referrer.id)
        db.add(
            ReferralEntry(
                referrer_id=referrer.id,
                referred_account_id=referred.id,
                joined_at=now - timedelta(days=60),
                is_active=True,
                subscription_status=ReferralStatus.ACTIVE.value,
            )
        )
        db.commit()

        # When
        result = subscription_service.sweep_expired_subscriptions(now)

        # Then
        assert result.referral_entries_expired == 1
        db.expire_all()
        entry = db.query(ReferralEntry).one()
        assert entry.is_active is False
        assert entry.subscription_status == ReferralStatus.EXPIRED.value
        stored_referrer = db.get(Account, referrer.id)
        assert stored_referrer.referral_active == 0
        assert stored_referrer.referral_total == 1

    def test_sweep_prunes_old_prize_history(self, subscription_service, account_factory, plan, db, now):
        account = account_factory(plan=plan)
        db.add_all(
            [
                PrizeGrant(account_id=account.id, amount=10, granted_at=now - timedelta(days=400), granted_by="system", prize_type="old"),
                PrizeGrant(account_id=account.id, amount=20, granted_at=now - timedelta(days=10), granted_by="system", prize_type="recent"),
            ]
        )
        db.commit()

        result = subscription_service.sweep_expired_subscriptions(now)

        assert result.prize_history_pruned == 1
        assert [g.prize_type for g in db.query(PrizeGrant).all()] == ["recent"]
