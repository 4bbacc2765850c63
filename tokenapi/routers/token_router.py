"""
토큰 API 라우터

- GET /tokens/balance: 버킷별 잔액 + 레거시 단일 잔액
- POST /tokens/deduct: 토큰 차감 (daily → purchased → bonus → prize)
- GET /tokens/history: 토큰 거래 기록
- GET /tokens/packages: 구매 가능한 토큰 패키지
"""

from typing import List

from fastapi import APIRouter, Depends, Query

from tokenapi.core.auth_middleware import get_current_account
from tokenapi.deps import get_token_service
from tokenapi.schemas.account import AccountView
from tokenapi.schemas.tokens import (
    TokenBalanceResponse,
    TokenDeductionRequest,
    TokenDeductionResponse,
    TokenHistoryResponse,
    TokenPackageView,
)
from tokenapi.services.token_service import TokenService

router = APIRouter(prefix="/tokens", tags=["tokens"])


@router.get("/balance", response_model=TokenBalanceResponse)
def get_balance(
    current_account: AccountView = Depends(get_current_account),
    token_service: TokenService = Depends(get_token_service),
) -> TokenBalanceResponse:
    """내 토큰 잔액 - 플랜이 만료되면 모든 버킷이 0으로 보입니다."""
    return token_service.get_balance(current_account.id)


@router.post("/deduct", response_model=TokenDeductionResponse)
def deduct_tokens(
    request: TokenDeductionRequest,
    current_account: AccountView = Depends(get_current_account),
    token_service: TokenService = Depends(get_token_service),
) -> TokenDeductionResponse:
    """
    토큰 차감

    HTTP Status:
        200: 차감 성공
        400: 토큰 부족
        403: 구독 만료
        409: 동시 수정 재시도 초과
    """
    return token_service.deduct(current_account.id, request.amount, request.reason)


@router.get("/history", response_model=TokenHistoryResponse)
def get_history(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_account: AccountView = Depends(get_current_account),
    token_service: TokenService = Depends(get_token_service),
) -> TokenHistoryResponse:
    return token_service.get_history(current_account.id, page=page, page_size=page_size)


@router.get("/packages", response_model=List[TokenPackageView])
def list_packages(token_service: TokenService = Depends(get_token_service)) -> List[TokenPackageView]:
    return token_service.list_packages()
