"""
요금제 / 토큰 패키지 카탈로그 모델

두 테이블 모두 서비스 입장에서는 읽기 전용 조회 대상이며 scripts/seed_data.py로 채워집니다.
"""

from decimal import Decimal
from typing import Optional

from sqlalchemy import Boolean, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from tokenapi.models.base import BaseModel


class Plan(BaseModel):
    """구독 요금제"""

    __tablename__ = "plans"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    duration_days: Mapped[int] = mapped_column(Integer, nullable=False)
    daily_token_quota: Mapped[int] = mapped_column(Integer, nullable=False, default=100)
    bonus_token_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # 추천인이 이 요금제 결제를 유도했을 때 적립되는 수수료 (INR)
    referral_commission: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False, default=Decimal("0")
    )
    provider_plan_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class TokenPackage(BaseModel):
    """추가 토큰 패키지 (활성 구독자만 구매 가능)"""

    __tablename__ = "token_packages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    tokens: Mapped[int] = mapped_column(Integer, nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    category: Mapped[str] = mapped_column(String(30), nullable=False, default="standard")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_popular: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_purchase_per_day: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
