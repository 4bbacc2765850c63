from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class MilestoneProgress(BaseModel):
    """마일스톤별 진행 상황"""

    type: str = Field(..., description="마일스톤 키 (예: referral_8)")
    target: int
    reward: int
    current: int = Field(..., description="현재 활성 추천 수")
    progress: float = Field(..., description="진행률 (0-100)")
    cycles_completed: int
    tokens_earned_from_this: int
    last_reset: Optional[datetime] = None
    is_eligible: bool
    next_cycle_number: int


class MilestoneProgressResponse(BaseModel):
    account_id: int
    referral_code: Optional[str] = None
    total_referrals: int
    active_referrals: int
    milestones: List[MilestoneProgress]
    total_cycles: int
    total_tokens_earned: int


class MilestoneReward(BaseModel):
    """마일스톤 달성 지급 결과"""

    milestone_key: str
    target: int
    reward: int
    cycle_number: int


class ReferralActivationResult(BaseModel):
    referrer_id: int
    referred_account_id: int
    activated: bool = Field(..., description="이번 호출에서 항목이 active로 전환되었는지")
    active_referrals: int
    milestone: Optional[MilestoneReward] = None
    milestone_deferred: bool = Field(False, description="추천인 플랜이 비활성이라 보류됨")


class ReferralCodeValidation(BaseModel):
    valid: bool
    referrer_id: Optional[int] = None
    referrer_name: Optional[str] = None
    message: str = ""


class ReferralEntryView(BaseModel):
    referred_account_id: int
    referred_name: Optional[str] = None
    referred_email: Optional[str] = None
    joined_at: datetime
    activated_at: Optional[datetime] = None
    is_active: bool
    subscription_status: str = Field(..., description="pending | active | expired | cycled")


class ReferralListResponse(BaseModel):
    account_id: int
    referral_code: Optional[str] = None
    total: int
    referrals: List[ReferralEntryView]


class ReferralStatsResponse(BaseModel):
    """추천 통계"""

    account_id: int
    referral_code: Optional[str] = None
    total_referrals: int
    active_referrals: int
    status_counts: Dict[str, int] = Field(default_factory=dict, description="항목 상태별 개수")
    total_earnings: Decimal = Field(..., description="누적 추천 수수료")
    total_cycles: int
    milestone_tokens_earned: int
