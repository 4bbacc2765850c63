from datetime import datetime
from typing import Dict, Optional

from pydantic import BaseModel, Field


class PlanView(BaseModel):
    """요금제"""

    id: int
    name: str
    description: Optional[str] = None
    price: float
    duration_days: int
    daily_token_quota: int
    bonus_token_amount: int

    class Config:
        from_attributes = True


class SubscriptionView(BaseModel):
    account_id: int
    plan_id: Optional[int] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    is_active: bool
    daily_token_quota: int = 0
    discarded_tokens: Dict[str, int] = Field(default_factory=dict, description="갱신 시 소멸된 버킷별 토큰")


class AdminActivationRequest(BaseModel):
    account_id: int = Field(..., description="계정 ID")
    plan_id: int = Field(..., description="요금제 ID")


class DailyRefreshResult(BaseModel):
    """일일 토큰 리필 결과"""

    refreshed: int = Field(..., description="리필된 계정 수")
    skipped: int = Field(..., description="오늘 이미 리필된 계정 수")
    run_at: datetime


class ExpirySweepResult(BaseModel):
    """만료 처리 결과"""

    expired_accounts: int = Field(..., description="만료 처리된 계정 수")
    tokens_expired: int = Field(..., description="소멸된 총 토큰 수")
    referral_entries_expired: int = 0
    prize_history_pruned: int = 0
    run_at: datetime
