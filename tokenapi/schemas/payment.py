"""
결제 스키마

게이트웨이마다 다른 웹훅/상태 응답은 각 게이트웨이의 parse_* 에서 PaymentEvent 하나로 통일되고,
PaymentService.handle_event 는 이 정규화된 이벤트만 다룹니다.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, EmailStr, Field


class GatewayName(str, Enum):
    PHONEPE = "phonepe"
    RAZORPAY = "razorpay"


class PaymentState(str, Enum):
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    PENDING = "PENDING"


class PaymentType(str, Enum):
    SUBSCRIPTION = "subscription"
    TOKEN_PURCHASE = "token_purchase"


class ReconciliationStatus(str, Enum):
    PROCESSED = "processed"
    ALREADY_PROCESSED = "already_processed"
    PENDING = "pending"
    IGNORED = "ignored"


class PaymentEvent(BaseModel):
    """게이트웨이 독립적인 결제 결과 이벤트"""

    provider: GatewayName
    merchant_order_id: Optional[str] = Field(None, description="우리가 생성한 주문 ID")
    provider_order_id: Optional[str] = Field(None, description="게이트웨이 주문 ID")
    state: PaymentState
    amount: Optional[int] = Field(None, description="금액 (paisa)")
    transaction_id: Optional[str] = None
    payment_mode: Optional[str] = None
    internal_ref_id: Optional[str] = Field(None, description="Order.client_order_id 또는 TokenTransaction.reference")
    payment_type: Optional[PaymentType] = None
    failure_reason: Optional[str] = None
    event_name: Optional[str] = None
    occurred_at: Optional[datetime] = None
    raw: Dict[str, Any] = Field(default_factory=dict, exclude=True)


class GatewayOrder(BaseModel):
    """게이트웨이 주문 생성 결과"""

    provider: GatewayName
    provider_order_id: str
    merchant_order_id: str
    amount: int = Field(..., description="금액 (paisa)")
    currency: str = "INR"
    redirect_url: Optional[str] = None
    expires_at: Optional[datetime] = None
    raw: Dict[str, Any] = Field(default_factory=dict, exclude=True)


class GatewayStatus(BaseModel):
    """게이트웨이 주문 상태 조회 결과"""

    provider: GatewayName
    merchant_order_id: str
    state: PaymentState
    event: Optional[PaymentEvent] = None


class ReconciliationResult(BaseModel):
    status: ReconciliationStatus
    record_type: Optional[PaymentType] = None
    record_id: Optional[str] = None
    account_id: Optional[int] = None
    message: str = ""


class SubscriptionCheckoutRequest(BaseModel):
    """구독 결제 생성 요청 (비회원 결제 허용)"""

    plan_id: int = Field(..., description="요금제 ID")
    email: EmailStr = Field(..., description="결제자 이메일")
    name: str = Field(..., min_length=1, max_length=100, description="결제자 이름")
    phone: Optional[str] = Field(None, max_length=20, description="결제자 전화번호")
    referral_code: Optional[str] = Field(None, max_length=20, description="추천 코드")
    gateway: GatewayName = Field(GatewayName.PHONEPE, description="결제 게이트웨이")


class TokenCheckoutRequest(BaseModel):
    package_id: int = Field(..., description="토큰 패키지 ID")
    gateway: GatewayName = Field(GatewayName.PHONEPE, description="결제 게이트웨이")


class CheckoutResponse(BaseModel):
    success: bool = True
    gateway: GatewayName
    internal_ref_id: str
    merchant_order_id: str
    provider_order_id: str
    amount: int = Field(..., description="금액 (paisa)")
    currency: str = "INR"
    redirect_url: Optional[str] = None
    key_id: Optional[str] = Field(None, description="Razorpay 체크아웃 키")


class RazorpayVerificationRequest(BaseModel):
    """Razorpay 체크아웃 완료 후 클라이언트가 전달하는 서명 정보"""

    razorpay_order_id: str
    razorpay_payment_id: str
    razorpay_signature: str


class WebhookAck(BaseModel):
    success: bool
    message: str = ""
