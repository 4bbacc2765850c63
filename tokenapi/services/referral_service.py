"""
추천 사이클 서비스

피추천인의 결제가 완료되면 추천인 목록의 항목을 active로 바꾸고 활성 추천 수를 다시 셉니다.
활성 추천 수가 마일스톤(기본 8/15/25)에 도달하면 오름차순으로 첫 번째 마일스톤 하나만 지급하고,
활성 추천 수를 0으로, active 항목들을 cycled로 돌려 다음 사이클을 시작합니다.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from tokenapi.config import Settings, settings as default_settings
from tokenapi.core.exceptions import NotFoundError, ValidationError
from tokenapi.models.account import Account
from tokenapi.models.referral import ReferralEntry, ReferralStatus
from tokenapi.providers.notifications import NotificationSender, notify_safely
from tokenapi.repositories.account_repository import AccountRepository
from tokenapi.repositories.referral_repository import ReferralRepository
from tokenapi.schemas.referral import (
    MilestoneProgress,
    MilestoneProgressResponse,
    MilestoneReward,
    ReferralActivationResult,
    ReferralCodeValidation,
    ReferralEntryView,
    ReferralListResponse,
    ReferralStatsResponse,
)
from tokenapi.services.token_service import TokenService
from tokenapi.utils.date_utils import utc_now
from tokenapi.utils.token_utils import generate_referral_code, is_plan_active

logger = logging.getLogger(__name__)

REFERRAL_CODE_ATTEMPTS = 5


def milestone_key(target: int) -> str:
    return f"referral_{target}"


class ReferralService:
    """추천 코드 / 추천 관계 / 마일스톤 보상"""

    def __init__(
        self,
        db: Session,
        settings: Settings = default_settings,
        token_service: Optional[TokenService] = None,
        notifier: Optional[NotificationSender] = None,
    ):
        self.db = db
        self.settings = settings
        self.notifier = notifier
        self.account_repo = AccountRepository(db)
        self.referral_repo = ReferralRepository(db)
        self.token_service = token_service or TokenService(db, settings, notifier)
        self._pending_notifications = []

    @property
    def milestones(self):
        """(target, reward) 오름차순"""
        return sorted(self.settings.REFERRAL_MILESTONES.items())

    # ------------------------------------------------------------------
    # 추천 코드
    # ------------------------------------------------------------------

    def generate_referral_code(self) -> str:
        for _ in range(REFERRAL_CODE_ATTEMPTS):
            code = generate_referral_code()
            if not self.account_repo.referral_code_exists(code):
                return code
        raise ValidationError("Could not generate a unique referral code")

    def ensure_referral_code(self, account: Account) -> str:
        if not account.referral_code:
            account.referral_code = self.generate_referral_code()
        return account.referral_code

    def validate_referral_code(self, code: Optional[str]) -> ReferralCodeValidation:
        """추천 코드 검증 - 추천인이 활성 구독 중이어야 유효"""
        if not code or not code.strip():
            return ReferralCodeValidation(valid=False, message="Referral code is required")

        referrer = self.account_repo.get_by_referral_code(code)
        if referrer is None:
            return ReferralCodeValidation(valid=False, message="Invalid referral code")
        if not is_plan_active(referrer):
            return ReferralCodeValidation(
                valid=False,
                referrer_id=referrer.id,
                message="Referrer does not have an active subscription",
            )
        return ReferralCodeValidation(
            valid=True,
            referrer_id=referrer.id,
            referrer_name=referrer.name,
            message="Valid referral code",
        )

    # ------------------------------------------------------------------
    # 추천 관계 (작업 단위 안에서 사용, 커밋하지 않음)
    # ------------------------------------------------------------------

    def register_referral(
        self, referrer: Account, referred: Account, now: Optional[datetime] = None
    ) -> ReferralEntry:
        """referred.referred_by = referrer, 추천인 목록에 pending 항목 추가"""
        if referrer.id == referred.id:
            raise ValidationError("An account cannot refer itself")

        entry = self.referral_repo.get_entry(referrer.id, referred.id)
        if entry is None:
            entry = ReferralEntry(
                referrer_id=referrer.id,
                referred_account_id=referred.id,
                joined_at=now or utc_now(),
                is_active=False,
                subscription_status=ReferralStatus.PENDING.value,
            )
            self.db.add(entry)
            self.db.flush()
        if referred.referred_by_id is None:
            referred.referred_by_id = referrer.id
        self.update_referral_stats(referrer)
        return entry

    def update_referral_stats(self, referrer: Account) -> None:
        referrer.referral_total = self.referral_repo.count_entries(referrer.id)
        referrer.referral_active = self.referral_repo.count_active_entries(referrer.id)

    def process_referral_activation(
        self,
        referred_account_id: int,
        referrer_account_id: int,
        commission: Decimal = Decimal("0"),
        now: Optional[datetime] = None,
    ) -> ReferralActivationResult:
        """피추천인 결제 완료 시 추천 항목 활성화 + 마일스톤 확인 (커밋하지 않음)"""
        now = now or utc_now()
        # populate_existing 잠금 조회 전에 보류 중인 변경 반영
        self.db.flush()
        referrer = self.account_repo.get_for_update(referrer_account_id)
        if referrer is None:
            raise NotFoundError(f"Referrer account {referrer_account_id} not found")

        entry = self.referral_repo.get_entry(referrer.id, referred_account_id)
        if entry is None:
            referred = self.account_repo.get_by_id(referred_account_id)
            if referred is None:
                raise NotFoundError(f"Account {referred_account_id} not found")
            entry = self.register_referral(referrer, referred, now)

        activated = False
        if not entry.is_active:
            entry.is_active = True
            entry.subscription_status = ReferralStatus.ACTIVE.value
            entry.activated_at = now
            referrer.referral_total_earnings = (referrer.referral_total_earnings or Decimal("0")) + (
                commission or Decimal("0")
            )
            activated = True
            self.db.flush()

        self.update_referral_stats(referrer)

        milestone = None
        deferred = False
        if is_plan_active(referrer, now):
            milestone = self.check_referral_milestones(referrer, now)
        else:
            deferred = True
            logger.info(
                f"Referrer {referrer.id} has no active plan; milestone check deferred "
                f"(active referrals={referrer.referral_active})"
            )

        logger.info(
            f"Referral activation {referred_account_id} -> {referrer.id}: activated={activated} "
            f"active={referrer.referral_active}"
        )
        return ReferralActivationResult(
            referrer_id=referrer.id,
            referred_account_id=referred_account_id,
            activated=activated,
            active_referrals=referrer.referral_active,
            milestone=milestone,
            milestone_deferred=deferred,
        )

    def check_referral_milestones(
        self, referrer: Account, now: Optional[datetime] = None
    ) -> Optional[MilestoneReward]:
        """오름차순으로 첫 번째 달성 마일스톤 하나만 처리. 더 높은 마일스톤은 이번 사이클에서 소멸"""
        now = now or utc_now()
        if not is_plan_active(referrer, now):
            return None

        active = referrer.referral_active or 0
        for target, reward in self.milestones:
            if active >= target:
                return self.grant_milestone_reward_and_reset(referrer, target, reward, now)
        return None

    def grant_milestone_reward_and_reset(
        self, referrer: Account, target: int, reward: int, now: Optional[datetime] = None
    ) -> MilestoneReward:
        now = now or utc_now()
        key = milestone_key(target)
        counter = self.referral_repo.get_or_create_counter(referrer.id, key)
        cycle_number = (counter.cycles_completed or 0) + 1

        self.token_service.credit_prize(
            referrer,
            reward,
            prize_type=f"{key}_cycle_{cycle_number}",
            granted_by="referral_milestone",
            now=now,
        )

        counter.cycles_completed = cycle_number
        counter.tokens_earned = (counter.tokens_earned or 0) + reward
        counter.last_reset_at = now
        referrer.milestone_total_tokens_earned = (referrer.milestone_total_tokens_earned or 0) + reward

        for entry in self.referral_repo.list_active_entries(referrer.id):
            entry.is_active = False
            entry.subscription_status = ReferralStatus.CYCLED.value
        referrer.referral_active = 0
        self.db.flush()

        logger.info(
            f"Referral milestone {target} reached by account {referrer.id}: "
            f"granted {reward} prize tokens (cycle {cycle_number})"
        )
        self._pending_notifications.append(
            (
                referrer.id,
                "referral_milestone",
                "Referral milestone reached",
                f"You reached {target} active referrals and earned {reward} tokens (cycle {cycle_number}).",
                {"target": target, "reward": reward, "cycle": cycle_number},
            )
        )
        return MilestoneReward(
            milestone_key=key, target=target, reward=reward, cycle_number=cycle_number
        )

    def flush_notifications(self) -> None:
        """커밋 후 호출 - 대기 중인 마일스톤 알림 발송"""
        pending, self._pending_notifications = self._pending_notifications, []
        for account_id, kind, title, message, data in pending:
            notify_safely(self.notifier, account_id, kind, title, message, data)

    def discard_notifications(self) -> None:
        self._pending_notifications = []

    # ------------------------------------------------------------------
    # 조회
    # ------------------------------------------------------------------

    def get_milestone_progress(self, account_id: int) -> MilestoneProgressResponse:
        account = self._get_account(account_id)

        counters = {c.milestone_key: c for c in self.referral_repo.list_counters(account.id)}
        active = account.referral_active or 0
        milestones = []
        for target, reward in self.milestones:
            key = milestone_key(target)
            counter = counters.get(key)
            cycles = counter.cycles_completed if counter else 0
            milestones.append(
                MilestoneProgress(
                    type=key,
                    target=target,
                    reward=reward,
                    current=active,
                    progress=round(min(active / target * 100, 100), 2),
                    cycles_completed=cycles,
                    tokens_earned_from_this=counter.tokens_earned if counter else 0,
                    last_reset=counter.last_reset_at if counter else None,
                    is_eligible=active >= target,
                    next_cycle_number=cycles + 1,
                )
            )

        return MilestoneProgressResponse(
            account_id=account.id,
            referral_code=account.referral_code,
            total_referrals=account.referral_total or 0,
            active_referrals=active,
            milestones=milestones,
            total_cycles=sum(m.cycles_completed for m in milestones),
            total_tokens_earned=account.milestone_total_tokens_earned or 0,
        )

    def _get_account(self, account_id: int) -> Account:
        account = self.account_repo.get_by_id(account_id)
        if account is None:
            raise NotFoundError(f"Account {account_id} not found")
        return account

    def list_referrals(self, account_id: int) -> ReferralListResponse:
        """내가 추천한 계정 목록 (가입 순, 상태 포함)"""
        account = self._get_account(account_id)
        entries = self.referral_repo.list_entries(account.id)
        referrals = [
            ReferralEntryView(
                referred_account_id=entry.referred_account_id,
                referred_name=entry.referred_account.name if entry.referred_account else None,
                referred_email=entry.referred_account.email if entry.referred_account else None,
                joined_at=entry.joined_at,
                activated_at=entry.activated_at,
                is_active=entry.is_active,
                subscription_status=entry.subscription_status,
            )
            for entry in entries
        ]
        return ReferralListResponse(
            account_id=account.id,
            referral_code=account.referral_code,
            total=len(referrals),
            referrals=referrals,
        )

    def get_referral_stats(self, account_id: int) -> ReferralStatsResponse:
        account = self._get_account(account_id)
        counters = self.referral_repo.list_counters(account.id)
        return ReferralStatsResponse(
            account_id=account.id,
            referral_code=account.referral_code,
            total_referrals=account.referral_total or 0,
            active_referrals=account.referral_active or 0,
            status_counts=self.referral_repo.count_entries_by_status(account.id),
            total_earnings=account.referral_total_earnings or Decimal("0"),
            total_cycles=sum(c.cycles_completed for c in counters),
            milestone_tokens_earned=account.milestone_total_tokens_earned or 0,
        )
