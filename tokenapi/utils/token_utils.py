"""
토큰 버킷 계산 유틸리티

계정 객체(Account 모델 또는 같은 속성을 가진 객체)만 받아 계산하는 순수 함수 모음.
DB 접근이나 커밋은 하지 않습니다.
"""

import secrets
import time
from datetime import datetime
from typing import Dict, Optional

from tokenapi.config import settings
from tokenapi.schemas.tokens import (
    BonusBucketView,
    DailyBucketView,
    DeductionBreakdown,
    PlanExpiryView,
    PrizeBucketView,
    PrizeGrantView,
    PurchasedBucketView,
    TokenBreakdown,
)
from tokenapi.utils.date_utils import days_between, ensure_utc, utc_now

# 차감 우선순위
BUCKET_ORDER = ("daily", "purchased", "bonus", "prize")


def _value(account, attr: str) -> int:
    return getattr(account, attr, None) or 0


def is_plan_active(account, now: Optional[datetime] = None) -> bool:
    """구독 종료일이 현재보다 미래이면 활성"""
    end_date = ensure_utc(getattr(account, "subscription_end_date", None))
    if end_date is None:
        return False
    return end_date > ensure_utc(now or utc_now())


def calculate_total_tokens(account, now: Optional[datetime] = None) -> int:
    """사용 가능한 총 토큰. 플랜이 없거나 만료되었으면 항상 0"""
    if not is_plan_active(account, now):
        return 0
    return sum(_value(account, f"{bucket}_current") for bucket in BUCKET_ORDER)


def get_token_breakdown(account, now: Optional[datetime] = None) -> TokenBreakdown:
    now = ensure_utc(now or utc_now())
    plan_active = is_plan_active(account, now)
    end_date = ensure_utc(getattr(account, "subscription_end_date", None))

    def current(bucket: str) -> int:
        return _value(account, f"{bucket}_current") if plan_active else 0

    history = [
        PrizeGrantView.model_validate(grant)
        for grant in (getattr(account, "prize_history", None) or [])
    ]

    return TokenBreakdown(
        daily=DailyBucketView(
            current=current("daily"),
            limit=getattr(account, "daily_limit", None) or settings.DEFAULT_DAILY_TOKEN_LIMIT,
            used_today=_value(account, "daily_used_today"),
            last_refreshed_at=getattr(account, "daily_last_refreshed_at", None),
        ),
        purchased=PurchasedBucketView(
            current=current("purchased"),
            total=_value(account, "purchased_total"),
            used=_value(account, "purchased_used"),
            last_purchased_at=getattr(account, "purchased_last_purchased_at", None),
        ),
        bonus=BonusBucketView(
            current=current("bonus"),
            initial=_value(account, "bonus_initial"),
            used=_value(account, "bonus_used"),
            granted_at=getattr(account, "bonus_granted_at", None),
        ),
        prize=PrizeBucketView(
            current=current("prize"),
            used=_value(account, "prize_used"),
            granted_by=getattr(account, "prize_granted_by", None),
            prize_type=getattr(account, "prize_type", None),
            history=history,
        ),
        total=calculate_total_tokens(account, now),
        plan_expiry=PlanExpiryView(
            is_active=plan_active,
            end_date=end_date,
            days_remaining=days_between(end_date, now) if plan_active else 0,
        ),
    )


def plan_deduction(account, amount: int) -> DeductionBreakdown:
    """daily → purchased → bonus → prize 순서로 버킷별 차감량 계산 (객체 변경 없음)"""
    remaining = amount
    taken: Dict[str, int] = {}
    for bucket in BUCKET_ORDER:
        available = _value(account, f"{bucket}_current")
        take = min(remaining, available) if remaining > 0 else 0
        taken[bucket] = take
        remaining -= take
    return DeductionBreakdown(**taken)


def apply_deduction(account, amount: int) -> DeductionBreakdown:
    """계정 버킷에서 amount만큼 차감하고 사용 통계를 갱신합니다.

    호출 전에 플랜 활성 여부와 잔액 충분 여부를 확인해야 합니다.
    """
    breakdown = plan_deduction(account, amount)

    if breakdown.daily:
        account.daily_current = _value(account, "daily_current") - breakdown.daily
        account.daily_used_today = _value(account, "daily_used_today") + breakdown.daily
        account.stats_daily_used = _value(account, "stats_daily_used") + breakdown.daily
    if breakdown.purchased:
        account.purchased_current = _value(account, "purchased_current") - breakdown.purchased
        account.purchased_used = _value(account, "purchased_used") + breakdown.purchased
        account.stats_purchased_used = _value(account, "stats_purchased_used") + breakdown.purchased
    if breakdown.bonus:
        account.bonus_current = _value(account, "bonus_current") - breakdown.bonus
        account.bonus_used = _value(account, "bonus_used") + breakdown.bonus
        account.stats_bonus_used = _value(account, "stats_bonus_used") + breakdown.bonus
    if breakdown.prize:
        account.prize_current = _value(account, "prize_current") - breakdown.prize
        account.prize_used = _value(account, "prize_used") + breakdown.prize
        account.stats_prize_used = _value(account, "stats_prize_used") + breakdown.prize

    account.stats_total_used = _value(account, "stats_total_used") + breakdown.total
    account.stats_plan_period_used = _value(account, "stats_plan_period_used") + breakdown.total
    return breakdown


def zero_buckets(account) -> Dict[str, int]:
    """모든 버킷의 current를 0으로 만들고, 버려진 수량을 버킷별로 반환합니다."""
    discarded = {}
    for bucket in BUCKET_ORDER:
        discarded[bucket] = _value(account, f"{bucket}_current")
        setattr(account, f"{bucket}_current", 0)
    return discarded


def generate_reference(prefix: str) -> str:
    """내부 참조 ID - {PREFIX}_{epoch ms}_{HEX8}"""
    return f"{prefix}_{int(time.time() * 1000)}_{secrets.token_hex(4).upper()}"


def generate_referral_code() -> str:
    """12자리 대문자 16진수 추천 코드"""
    return secrets.token_hex(6).upper()
