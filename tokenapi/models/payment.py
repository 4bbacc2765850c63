"""
결제 감사(audit) 레코드 모델

Order(구독 결제)와 TokenTransaction(토큰 구매/보너스/만료 기록)은 삭제되지 않는 감사 기록입니다.
단, 게이트웨이 호출이 실패한 pending 레코드는 같은 요청 안에서 제거됩니다.

멱등성: completed/failed 상태는 최종 상태이며, 같은 이벤트가 다시 들어오면 아무 것도 바꾸지 않습니다.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from tokenapi.models.base import BaseModel, UTCDateTime


class OrderStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class OrderType(str, Enum):
    SUBSCRIPTION = "subscription"
    TOKEN = "token"


class TransactionType(str, Enum):
    PURCHASE = "purchase"
    BONUS = "bonus"
    REFUND = "refund"
    EXPIRY = "expiry"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


TERMINAL_ORDER_STATES = (
    OrderStatus.COMPLETED.value,
    OrderStatus.FAILED.value,
    OrderStatus.CANCELLED.value,
)
TERMINAL_TRANSACTION_STATES = (
    TransactionStatus.COMPLETED.value,
    TransactionStatus.FAILED.value,
    TransactionStatus.REFUNDED.value,
)


class Order(BaseModel):
    """구독 결제 주문"""

    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    client_order_id: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    # 게이트웨이 호출 전에는 "pending_{client_order_id}"
    provider_order_id: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    merchant_order_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    gateway: Mapped[str] = mapped_column(String(20), nullable=False)

    account_email: Mapped[str] = mapped_column(String(255), nullable=False)
    account_name: Mapped[str] = mapped_column(String(100), nullable=False)
    account_phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    account_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("accounts.id"), nullable=True, index=True
    )
    plan_id: Mapped[int] = mapped_column(Integer, ForeignKey("plans.id"), nullable=False)

    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="INR")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=OrderStatus.PENDING.value)
    type: Mapped[str] = mapped_column(String(20), nullable=False, default=OrderType.SUBSCRIPTION.value)
    referral_code: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    provider_transaction_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    payment_mode: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    plan = relationship("Plan")
    account = relationship("Account")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ORDER_STATES


class TokenTransaction(BaseModel):
    """토큰 거래 기록 (구매, 보너스, 환불, 만료)"""

    __tablename__ = "token_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # 내부 참조 ID (TKN_{ms}_{hex8})
    reference: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    account_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("accounts.id"), nullable=False, index=True
    )
    package_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("token_packages.id"), nullable=True
    )
    type: Mapped[str] = mapped_column(String(20), nullable=False, default=TransactionType.PURCHASE.value)
    token_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    monetary_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="INR")
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=TransactionStatus.PENDING.value
    )

    gateway: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    provider_order_id: Mapped[Optional[str]] = mapped_column(String(100), unique=True, nullable=True)
    merchant_order_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    provider_transaction_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    payment_mode: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    balance_before: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    balance_after: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    package = relationship("TokenPackage")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TRANSACTION_STATES
