"""
구독 라이프사이클 서비스

NoSubscription → Active → Expired
- apply_plan: 가입/갱신 (갱신도 항상 지금부터 기간을 다시 시작)
- refresh_daily_tokens: 서비스 타임존 기준 하루 한 번 일일 토큰 리필 (멱등)
- sweep_expired_subscriptions: 종료일이 지난 계정의 모든 버킷 소멸
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from tokenapi.config import Settings, settings as default_settings
from tokenapi.core.exceptions import BaseAPIException, NotFoundError
from tokenapi.models.account import Account
from tokenapi.models.payment import TransactionType
from tokenapi.models.plan import Plan
from tokenapi.models.referral import ReferralStatus
from tokenapi.providers.notifications import NotificationSender, notify_safely
from tokenapi.repositories.account_repository import AccountRepository
from tokenapi.repositories.catalog_repository import PlanRepository
from tokenapi.repositories.referral_repository import ReferralRepository
from tokenapi.schemas.subscription import (
    DailyRefreshResult,
    ExpirySweepResult,
    PlanView,
    SubscriptionView,
)
from tokenapi.services.referral_service import ReferralService
from tokenapi.services.token_service import TokenService
from tokenapi.utils.date_utils import add_days, service_date, utc_now
from tokenapi.utils.token_utils import calculate_total_tokens, is_plan_active, zero_buckets

logger = logging.getLogger(__name__)

CARRY_OVER = "carry_over"


class SubscriptionService:
    """구독 활성화 / 갱신 / 일일 리필 / 만료 처리"""

    def __init__(
        self,
        db: Session,
        settings: Settings = default_settings,
        token_service: Optional[TokenService] = None,
        referral_service: Optional[ReferralService] = None,
        notifier: Optional[NotificationSender] = None,
    ):
        self.db = db
        self.settings = settings
        self.notifier = notifier
        self.account_repo = AccountRepository(db)
        self.plan_repo = PlanRepository(db)
        self.referral_repo = ReferralRepository(db)
        self.token_service = token_service or TokenService(db, settings, notifier)
        self.referral_service = referral_service or ReferralService(
            db, settings, token_service=self.token_service, notifier=notifier
        )

    def apply_plan(self, account: Account, plan: Plan, now: Optional[datetime] = None) -> Dict[str, int]:
        """가입/갱신 공통 처리 (잠긴 계정 위에서, 커밋하지 않음)

        Returns:
            갱신 정책에 따라 소멸된 버킷별 토큰 수
        """
        now = now or utc_now()
        was_active = is_plan_active(account, now)
        balance_before = calculate_total_tokens(account, now)
        carry_over = self.settings.RENEWAL_CARRYOVER_POLICY == CARRY_OVER and was_active

        # 일일 토큰은 새 할당량으로 덮어쓰므로 소멸 기록 대상이 아님
        discarded: Dict[str, int] = {}
        if not carry_over:
            for bucket in ("purchased", "bonus", "prize"):
                amount = getattr(account, f"{bucket}_current") or 0
                if amount > 0:
                    discarded[bucket] = amount
                setattr(account, f"{bucket}_current", 0)

        end_date = add_days(now, plan.duration_days)
        quota = plan.daily_token_quota or self.settings.DEFAULT_DAILY_TOKEN_LIMIT

        account.plan_id = plan.id
        account.plan = plan
        account.subscription_start_date = now
        account.subscription_end_date = end_date
        account.subscription_is_active = True
        account.daily_token_quota = quota
        account.daily_limit = quota
        account.daily_current = quota
        account.daily_used_today = 0
        account.daily_last_refreshed_at = now
        account.stats_plan_period_used = 0
        account.purchased_expires_at = end_date
        account.prize_expires_at = end_date
        account.bonus_expires_at = end_date

        if plan.bonus_token_amount and plan.bonus_token_amount > 0:
            self.token_service.credit_bonus(
                account, plan.bonus_token_amount, now=now, replace=not carry_over
            )
            self.token_service.record_transaction(
                account,
                TransactionType.BONUS,
                plan.bonus_token_amount,
                reason=f"plan_bonus:{plan.name}",
                balance_before=balance_before,
                now=now,
            )

        if discarded:
            total_discarded = sum(discarded.values())
            logger.warning(
                f"Renewal of account {account.id} discarded {total_discarded} unused tokens {discarded} "
                f"(policy={self.settings.RENEWAL_CARRYOVER_POLICY})"
            )
            self.token_service.record_transaction(
                account,
                TransactionType.EXPIRY,
                total_discarded,
                reason="renewal_reset",
                balance_before=balance_before,
                now=now,
            )

        self.referral_service.ensure_referral_code(account)
        # 플랜이 비활성이라 보류됐던 마일스톤 재확인
        self.referral_service.check_referral_milestones(account, now=now)

        logger.info(
            f"{'Renewed' if was_active else 'Activated'} plan {plan.name} for account {account.id} "
            f"until {end_date.isoformat()}"
        )
        return discarded

    def activate(self, account: Account, plan: Plan, now: Optional[datetime] = None) -> Dict[str, int]:
        return self.apply_plan(account, plan, now)

    def renew(self, account: Account, plan: Plan, now: Optional[datetime] = None) -> Dict[str, int]:
        """갱신 - 남은 기간을 이어붙이지 않고 지금부터 다시 시작"""
        return self.apply_plan(account, plan, now)

    def activate_by_admin(self, account_id: int, plan_id: int) -> SubscriptionView:
        """관리자 수동 활성화"""
        plan = self.plan_repo.get_by_id(plan_id)
        if plan is None:
            raise NotFoundError(f"Plan {plan_id} not found")

        def _activate(account: Account) -> SubscriptionView:
            discarded = self.apply_plan(account, plan)
            return self._to_view(account, discarded)

        view = self.token_service.mutate_account(
            account_id,
            _activate,
            action="admin activation",
            on_rollback=self.referral_service.discard_notifications,
        )
        notify_safely(
            self.notifier,
            account_id,
            "subscription_activated",
            "Subscription activated",
            f"Your {plan.name} plan is active until {view.end_date}.",
        )
        self.referral_service.flush_notifications()
        return view

    def list_plans(self) -> List[PlanView]:
        return [PlanView.model_validate(p) for p in self.plan_repo.list_active()]

    def get_subscription(self, account_id: int) -> SubscriptionView:
        account = self.account_repo.get_by_id(account_id)
        if account is None:
            raise NotFoundError(f"Account {account_id} not found")
        return self._to_view(account, {})

    def _to_view(self, account: Account, discarded: Dict[str, int]) -> SubscriptionView:
        return SubscriptionView(
            account_id=account.id,
            plan_id=account.plan_id,
            start_date=account.subscription_start_date,
            end_date=account.subscription_end_date,
            is_active=is_plan_active(account),
            daily_token_quota=account.daily_token_quota or 0,
            discarded_tokens=discarded,
        )

    def refresh_daily_tokens(self, now: Optional[datetime] = None) -> DailyRefreshResult:
        """활성 구독 계정의 일일 토큰 리필 (같은 날 재실행 시 변화 없음)"""
        now = now or utc_now()
        today = service_date(now)
        refreshed = 0
        skipped = 0
        try:
            for account in self.account_repo.list_due_for_daily_refresh(now):
                last = account.daily_last_refreshed_at
                if last is not None and service_date(last) == today:
                    skipped += 1
                    continue

                limit = account.daily_token_quota or account.daily_limit or self.settings.DEFAULT_DAILY_TOKEN_LIMIT
                account.daily_limit = limit
                account.daily_current = limit
                account.daily_used_today = 0
                account.daily_last_refreshed_at = now
                refreshed += 1

            self.db.flush()
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"Daily token refresh failed: {str(e)}")
            raise

        logger.info(f"Daily token refresh for {today}: refreshed={refreshed} skipped={skipped}")
        return DailyRefreshResult(refreshed=refreshed, skipped=skipped, run_at=now)

    def sweep_expired_subscriptions(self, now: Optional[datetime] = None) -> ExpirySweepResult:
        """종료일이 지난 계정의 모든 버킷을 0으로 (total/used 기록은 유지)"""
        now = now or utc_now()
        expired_accounts = 0
        tokens_expired = 0
        entries_expired = 0
        touched_referrers = set()
        try:
            for account in self.account_repo.list_expired_subscriptions(now):
                discarded = zero_buckets(account)
                account.subscription_is_active = False
                total = sum(discarded.values())
                if total > 0:
                    self.token_service.record_transaction(
                        account,
                        TransactionType.EXPIRY,
                        total,
                        reason="subscription_expired",
                        balance_before=total,
                        now=now,
                    )
                expired_accounts += 1
                tokens_expired += total

                for entry in self.referral_repo.list_entries_for_referred(account.id):
                    if entry.subscription_status == ReferralStatus.ACTIVE.value:
                        entry.is_active = False
                        entry.subscription_status = ReferralStatus.EXPIRED.value
                        entries_expired += 1
                        touched_referrers.add(entry.referrer_id)

            self.db.flush()
            for referrer_id in touched_referrers:
                referrer = self.account_repo.get_for_update(referrer_id)
                if referrer is not None:
                    self.referral_service.update_referral_stats(referrer)

            pruned = self.account_repo.prune_prize_history(
                now - timedelta(days=self.settings.PRIZE_HISTORY_RETENTION_DAYS)
            )
            self.db.flush()
            self.db.commit()
        except BaseAPIException:
            self.db.rollback()
            raise
        except Exception as e:
            self.db.rollback()
            logger.error(f"Expiry sweep failed: {str(e)}")
            raise

        logger.info(
            f"Expiry sweep: accounts={expired_accounts} tokens={tokens_expired} "
            f"referral_entries={entries_expired} prize_history_pruned={pruned}"
        )
        return ExpirySweepResult(
            expired_accounts=expired_accounts,
            tokens_expired=tokens_expired,
            referral_entries_expired=entries_expired,
            prize_history_pruned=pruned,
            run_at=now,
        )
