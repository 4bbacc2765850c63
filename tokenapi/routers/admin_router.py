"""
관리자 API 라우터

- POST /admin/tokens/prize: 상금 토큰 지급
- POST /admin/subscriptions/activate: 구독 수동 활성화 (결제 없이)
- GET /admin/accounts/{account_id}/tokens: 계정 잔액 조회
"""

import logging

from fastapi import APIRouter, Depends

from tokenapi.core.auth_middleware import require_admin
from tokenapi.deps import get_subscription_service, get_token_service
from tokenapi.schemas.account import AccountView
from tokenapi.schemas.subscription import AdminActivationRequest, SubscriptionView
from tokenapi.schemas.tokens import PrizeGrantRequest, TokenBalanceResponse, TokenCreditResponse
from tokenapi.services.subscription_service import SubscriptionService
from tokenapi.services.token_service import TokenService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/tokens/prize", response_model=TokenCreditResponse)
def grant_prize_tokens(
    request: PrizeGrantRequest,
    admin: AccountView = Depends(require_admin),
    token_service: TokenService = Depends(get_token_service),
) -> TokenCreditResponse:
    """상금 토큰 지급 - 대상 계정에 활성 구독이 있어야 합니다."""
    logger.info(f"Admin {admin.id} granting {request.amount} prize tokens to {request.account_id}")
    return token_service.grant_prize_tokens(
        request.account_id,
        request.amount,
        prize_type=request.prize_type,
        granted_by=request.granted_by or f"admin:{admin.id}",
    )


@router.post("/subscriptions/activate", response_model=SubscriptionView)
def activate_subscription(
    request: AdminActivationRequest,
    admin: AccountView = Depends(require_admin),
    subscription_service: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionView:
    logger.info(f"Admin {admin.id} activating plan {request.plan_id} for {request.account_id}")
    return subscription_service.activate_by_admin(request.account_id, request.plan_id)


@router.get("/accounts/{account_id}/tokens", response_model=TokenBalanceResponse)
def get_account_tokens(
    account_id: int,
    admin: AccountView = Depends(require_admin),
    token_service: TokenService = Depends(get_token_service),
) -> TokenBalanceResponse:
    return token_service.get_balance(account_id)
