"""
계정 / 토큰 버킷 데이터 모델

토큰 잔액은 네 개의 버킷으로 나뉘어 계정 행에 함께 저장됩니다.
- daily: 요금제 일일 할당량, 매일 리필
- purchased: 토큰 패키지 구매분
- bonus: 요금제 가입/갱신 시 1회 지급
- prize: 추천 마일스톤/관리자 지급분 (지급 이력은 prize_grants)

모든 버킷은 subscription_end_date가 지나면 사용할 수 없습니다.
동시 차감은 행 잠금 + version_id 낙관적 잠금으로 보호됩니다.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Union

from sqlalchemy import (
    Boolean,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from tokenapi.models.base import BaseModel, UTCDateTime
from tokenapi.utils.token_utils import calculate_total_tokens


class AccountRole(str, Enum):
    """계정 역할"""

    USER = "user"
    ADMIN = "admin"

    @classmethod
    def is_admin(cls, role: Union[str, "AccountRole"]) -> bool:
        if isinstance(role, cls):
            role = role.value
        return role == cls.ADMIN.value


class Account(BaseModel):
    __tablename__ = "accounts"
    __table_args__ = (
        Index("idx_accounts_subscription_end", "subscription_is_active", "subscription_end_date"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    password_hash: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    role: Mapped[str] = mapped_column(String(20), nullable=False, default=AccountRole.USER.value)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_login_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    # 게스트 결제로 생성된 계정의 비밀번호 설정 링크
    reset_token_hash: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    reset_token_expires_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    # Subscription
    plan_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("plans.id"), nullable=True)
    subscription_start_date: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    subscription_end_date: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    subscription_is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    daily_token_quota: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Daily bucket
    daily_current: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    daily_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=100)
    daily_used_today: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    daily_last_refreshed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    # Purchased bucket
    purchased_current: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    purchased_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    purchased_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    purchased_last_purchased_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    purchased_expires_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    # Bonus bucket
    bonus_current: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    bonus_initial: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    bonus_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    bonus_granted_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    bonus_expires_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    # Prize bucket
    prize_current: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    prize_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    prize_granted_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    prize_expires_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    prize_granted_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    prize_type: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Usage statistics
    stats_total_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    stats_daily_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    stats_purchased_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    stats_bonus_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    stats_prize_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    stats_plan_period_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Referral
    referral_code: Mapped[Optional[str]] = mapped_column(String(20), unique=True, nullable=True, index=True)
    referred_by_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("accounts.id"), nullable=True
    )
    referral_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    referral_active: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    referral_total_earnings: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0")
    )
    milestone_total_tokens_earned: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    version_id: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version_id}

    plan = relationship("Plan")
    prize_history: Mapped[List["PrizeGrant"]] = relationship(
        "PrizeGrant",
        back_populates="account",
        cascade="all, delete-orphan",
        order_by="PrizeGrant.granted_at",
    )
    referral_entries: Mapped[List["ReferralEntry"]] = relationship(  # noqa: F821
        "ReferralEntry",
        foreign_keys="ReferralEntry.referrer_id",
        back_populates="referrer",
        cascade="all, delete-orphan",
    )
    milestone_counters: Mapped[List["MilestoneCounter"]] = relationship(  # noqa: F821
        "MilestoneCounter",
        back_populates="account",
        cascade="all, delete-orphan",
    )

    @property
    def tokens(self) -> int:
        """레거시 소비자용 단일 잔액 (버킷에서 계산되는 읽기 전용 값)"""
        return calculate_total_tokens(self)

    @property
    def is_admin(self) -> bool:
        return AccountRole.is_admin(self.role)


class PrizeGrant(BaseModel):
    """상금 토큰 지급 이력"""

    __tablename__ = "prize_grants"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    granted_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    granted_by: Mapped[str] = mapped_column(String(100), nullable=False, default="system")
    prize_type: Mapped[str] = mapped_column(String(100), nullable=False)

    account = relationship("Account", back_populates="prize_history")
