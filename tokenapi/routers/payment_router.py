"""
결제 API 라우터

- POST /payments/subscriptions/checkout: 구독 결제 생성 (비회원 가능)
- POST /payments/tokens/checkout: 토큰 패키지 결제 생성 (인증 필요)
- POST /payments/webhooks/phonepe, /payments/webhooks/razorpay: 게이트웨이 웹훅
- POST /payments/razorpay/verify: Razorpay 체크아웃 서명 검증
- GET /payments/status/{merchant_order_id}: 게이트웨이 상태 조회 후 정산

웹훅은 서명/형식이 잘못돼도 200으로 응답합니다 (게이트웨이 재전송 폭주 방지).
정산은 응답 후 백그라운드에서 처리됩니다.
"""

import json
import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, Request

from tokenapi.config import settings
from tokenapi.containers import Container
from tokenapi.core.auth_middleware import get_current_account
from tokenapi.core.exceptions import ValidationError
from tokenapi.deps import get_container, get_payment_service
from tokenapi.schemas.account import AccountView
from tokenapi.schemas.payment import (
    CheckoutResponse,
    GatewayName,
    RazorpayVerificationRequest,
    ReconciliationResult,
    SubscriptionCheckoutRequest,
    TokenCheckoutRequest,
    WebhookAck,
)
from tokenapi.services.payment_service import PaymentService, process_event_in_background

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/subscriptions/checkout", response_model=CheckoutResponse)
async def create_subscription_checkout(
    request: SubscriptionCheckoutRequest,
    payment_service: PaymentService = Depends(get_payment_service),
) -> CheckoutResponse:
    """
    구독 결제 생성

    계정이 없어도 결제할 수 있으며, 결제 완료 시 이메일로 계정을 찾거나 새로 만듭니다.

    HTTP Status:
        200: 결제 생성
        422: 요금제/추천 코드 오류
        502: 게이트웨이 오류
    """
    return await payment_service.create_subscription_checkout(request)


@router.post("/tokens/checkout", response_model=CheckoutResponse)
async def create_token_checkout(
    request: TokenCheckoutRequest,
    current_account: AccountView = Depends(get_current_account),
    payment_service: PaymentService = Depends(get_payment_service),
) -> CheckoutResponse:
    """토큰 패키지 결제 생성 - 활성 구독 필요, 패키지별 일일 구매 한도 적용"""
    return await payment_service.create_token_checkout(current_account.id, request)


async def _accept_webhook(
    gateway_name: GatewayName,
    request: Request,
    signature: Optional[str],
    background_tasks: BackgroundTasks,
    container: Container,
) -> WebhookAck:
    gateways = container.gateways.all()
    gateway = gateways[gateway_name]
    raw_body = await request.body()

    if not gateway.verify_signature(raw_body, signature):
        logger.warning(f"Rejected {gateway_name.value} webhook with invalid signature")
        return WebhookAck(success=False, message="Invalid signature")

    try:
        event = gateway.parse_webhook(json.loads(raw_body))
    except (ValueError, TypeError, AttributeError, ValidationError) as e:
        logger.error(f"Malformed {gateway_name.value} webhook: {str(e)}")
        return WebhookAck(success=False, message="Invalid payload")

    logger.info(
        f"Accepted {gateway_name.value} webhook {event.event_name} for {event.merchant_order_id} "
        f"state={event.state.value}"
    )
    background_tasks.add_task(
        process_event_in_background,
        event,
        gateways,
        settings,
        container.notifications.sender(),
    )
    return WebhookAck(success=True, message="Webhook received")


@router.post("/webhooks/phonepe", response_model=WebhookAck)
async def phonepe_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    authorization: Optional[str] = Header(None),
    container: Container = Depends(get_container),
) -> WebhookAck:
    """PhonePe 웹훅 - Authorization: SHA256 <base64(sha256(username:password))>"""
    return await _accept_webhook(
        GatewayName.PHONEPE, request, authorization, background_tasks, container
    )


@router.post("/webhooks/razorpay", response_model=WebhookAck)
async def razorpay_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    x_razorpay_signature: Optional[str] = Header(None),
    container: Container = Depends(get_container),
) -> WebhookAck:
    """Razorpay 웹훅 - X-Razorpay-Signature: HMAC-SHA256(raw body, webhook secret)"""
    return await _accept_webhook(
        GatewayName.RAZORPAY, request, x_razorpay_signature, background_tasks, container
    )


@router.post("/razorpay/verify", response_model=ReconciliationResult)
def verify_razorpay_payment(
    request: RazorpayVerificationRequest,
    payment_service: PaymentService = Depends(get_payment_service),
) -> ReconciliationResult:
    """Razorpay 체크아웃 완료 후 서명 검증 및 즉시 정산"""
    return payment_service.verify_razorpay_payment(request)


@router.get("/status/{merchant_order_id}", response_model=ReconciliationResult)
async def get_payment_status(
    merchant_order_id: str,
    payment_service: PaymentService = Depends(get_payment_service),
) -> ReconciliationResult:
    """게이트웨이 상태 조회 후 정산 (웹훅 누락 대비 폴링)"""
    return await payment_service.reconcile_status(merchant_order_id)
