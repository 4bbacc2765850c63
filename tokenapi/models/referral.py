"""
추천(referral) 데이터 모델

- ReferralEntry: 추천인의 피추천인 목록 항목 (pending → active → cycled/expired)
- MilestoneCounter: 마일스톤별 사이클 완료 횟수
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import Boolean, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.schema import UniqueConstraint

from tokenapi.models.base import BaseModel, UTCDateTime


class ReferralStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    EXPIRED = "expired"
    CYCLED = "cycled"


class ReferralEntry(BaseModel):
    __tablename__ = "referral_entries"
    __table_args__ = (
        UniqueConstraint("referrer_id", "referred_account_id", name="uq_referral_pair"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    referrer_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    referred_account_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    joined_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    subscription_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ReferralStatus.PENDING.value
    )
    activated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    referrer = relationship(
        "Account", foreign_keys=[referrer_id], back_populates="referral_entries"
    )
    referred_account = relationship("Account", foreign_keys=[referred_account_id])


class MilestoneCounter(BaseModel):
    __tablename__ = "milestone_counters"
    __table_args__ = (
        UniqueConstraint("account_id", "milestone_key", name="uq_milestone_counter"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    # e.g. "referral_8"
    milestone_key: Mapped[str] = mapped_column(String(50), nullable=False)
    cycles_completed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tokens_earned: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_reset_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    account = relationship("Account", back_populates="milestone_counters")
