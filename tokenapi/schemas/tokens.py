from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class DailyBucketView(BaseModel):
    """일일 토큰 버킷"""

    current: int = Field(..., description="사용 가능 토큰 (플랜 만료 시 0)")
    limit: int = Field(..., description="일일 할당량")
    used_today: int = Field(..., description="오늘 사용량")
    last_refreshed_at: Optional[datetime] = Field(None, description="마지막 리필 시각")


class PurchasedBucketView(BaseModel):
    """구매 토큰 버킷"""

    current: int = Field(..., description="사용 가능 토큰 (플랜 만료 시 0)")
    total: int = Field(..., description="누적 구매량")
    used: int = Field(..., description="누적 사용량")
    last_purchased_at: Optional[datetime] = Field(None, description="마지막 구매 시각")


class BonusBucketView(BaseModel):
    """보너스 토큰 버킷"""

    current: int = Field(..., description="사용 가능 토큰 (플랜 만료 시 0)")
    initial: int = Field(..., description="지급량")
    used: int = Field(..., description="누적 사용량")
    granted_at: Optional[datetime] = Field(None, description="지급 시각")


class PrizeGrantView(BaseModel):
    amount: int
    granted_at: datetime
    granted_by: str
    prize_type: str

    class Config:
        from_attributes = True


class PrizeBucketView(BaseModel):
    """상금 토큰 버킷"""

    current: int = Field(..., description="사용 가능 토큰 (플랜 만료 시 0)")
    used: int = Field(..., description="누적 사용량")
    granted_by: Optional[str] = Field(None, description="마지막 지급 주체")
    prize_type: Optional[str] = Field(None, description="마지막 지급 유형")
    history: List[PrizeGrantView] = Field(default_factory=list, description="지급 이력")


class PlanExpiryView(BaseModel):
    is_active: bool = Field(..., description="플랜 활성 여부 (end_date > now)")
    end_date: Optional[datetime] = Field(None, description="플랜 종료 시각")
    days_remaining: int = Field(..., description="남은 일수 (올림)")


class LegacyBalanceView(BaseModel):
    """단일 잔액만 읽는 구형 클라이언트용 호환 응답"""

    total: int
    regular: int = Field(..., description="일일 토큰")
    extra: int = Field(..., description="구매 + 보너스 + 상금")
    used: int = Field(..., description="오늘 사용한 일일 토큰")
    daily_limit: int
    has_extra_tokens: bool


class TokenBreakdown(BaseModel):
    """버킷별 토큰 잔액"""

    daily: DailyBucketView
    purchased: PurchasedBucketView
    bonus: BonusBucketView
    prize: PrizeBucketView
    total: int = Field(..., description="사용 가능 총 토큰")
    plan_expiry: PlanExpiryView

    @property
    def plan_active(self) -> bool:
        return self.plan_expiry.is_active

    @property
    def days_remaining(self) -> int:
        return self.plan_expiry.days_remaining

    def legacy(self) -> LegacyBalanceView:
        extra = self.purchased.current + self.bonus.current + self.prize.current
        return LegacyBalanceView(
            total=self.total,
            regular=self.daily.current,
            extra=extra,
            used=self.daily.used_today,
            daily_limit=self.daily.limit,
            has_extra_tokens=extra > 0,
        )


class DeductionBreakdown(BaseModel):
    """차감된 버킷별 수량"""

    daily: int = 0
    purchased: int = 0
    bonus: int = 0
    prize: int = 0

    @property
    def total(self) -> int:
        return self.daily + self.purchased + self.bonus + self.prize


class SubscriptionSummary(BaseModel):
    plan_id: Optional[int] = None
    plan_name: str = "No Plan"
    is_active: bool
    end_date: Optional[datetime] = None
    days_remaining: int = 0


class TokenBalanceResponse(BaseModel):
    """토큰 잔액 조회 응답"""

    success: bool = True
    breakdown: TokenBreakdown
    balance: LegacyBalanceView
    subscription: SubscriptionSummary


class TokenDeductionRequest(BaseModel):
    amount: int = Field(..., gt=0, description="차감할 토큰 수")
    reason: str = Field("resource_access", min_length=1, max_length=255, description="차감 사유")


class TokenDeductionResponse(BaseModel):
    """토큰 차감 응답"""

    success: bool = True
    tokens_deducted: int
    breakdown: DeductionBreakdown
    remaining_balance: int
    reason: str
    balance: TokenBreakdown


class PrizeGrantRequest(BaseModel):
    account_id: int = Field(..., description="지급 대상 계정 ID")
    amount: int = Field(..., gt=0, description="지급 토큰 수")
    prize_type: str = Field(..., min_length=1, max_length=100, description="상금 유형")
    granted_by: str = Field("admin", max_length=100, description="지급 주체")


class TokenCreditResponse(BaseModel):
    success: bool = True
    tokens_added: int
    bucket: str
    balance: TokenBreakdown


class TokenTransactionEntry(BaseModel):
    """토큰 거래 기록 항목"""

    id: int
    reference: str
    type: str
    token_amount: int
    monetary_amount: float
    status: str
    gateway: Optional[str] = None
    package_id: Optional[int] = None
    balance_before: Optional[int] = None
    balance_after: Optional[int] = None
    expires_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class TokenHistoryResponse(BaseModel):
    transactions: List[TokenTransactionEntry]
    total_count: int
    page: int
    page_size: int
    has_next: bool


class TokenPackageView(BaseModel):
    id: int
    name: str
    tokens: int
    price: float
    description: Optional[str] = None
    category: str
    is_popular: bool
    max_purchase_per_day: int

    class Config:
        from_attributes = True
