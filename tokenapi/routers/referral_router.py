"""
추천 API 라우터

- GET /referrals/my-referrals: 내가 추천한 계정 목록
- GET /referrals/stats: 추천 통계 (총/활성 추천 수, 수수료, 사이클)
- GET /referrals/milestones: 내 마일스톤 진행 상황
- GET /referrals/validate/{code}: 추천 코드 검증 (결제 전 확인용)
"""

from fastapi import APIRouter, Depends

from tokenapi.core.auth_middleware import get_current_account
from tokenapi.deps import get_referral_service
from tokenapi.schemas.account import AccountView
from tokenapi.schemas.referral import (
    MilestoneProgressResponse,
    ReferralCodeValidation,
    ReferralListResponse,
    ReferralStatsResponse,
)
from tokenapi.services.referral_service import ReferralService

router = APIRouter(prefix="/referrals", tags=["referrals"])


@router.get("/my-referrals", response_model=ReferralListResponse)
def get_my_referrals(
    current_account: AccountView = Depends(get_current_account),
    referral_service: ReferralService = Depends(get_referral_service),
) -> ReferralListResponse:
    return referral_service.list_referrals(current_account.id)


@router.get("/stats", response_model=ReferralStatsResponse)
def get_referral_stats(
    current_account: AccountView = Depends(get_current_account),
    referral_service: ReferralService = Depends(get_referral_service),
) -> ReferralStatsResponse:
    return referral_service.get_referral_stats(current_account.id)


@router.get("/milestones", response_model=MilestoneProgressResponse)
def get_milestones(
    current_account: AccountView = Depends(get_current_account),
    referral_service: ReferralService = Depends(get_referral_service),
) -> MilestoneProgressResponse:
    return referral_service.get_milestone_progress(current_account.id)


@router.get("/validate/{code}", response_model=ReferralCodeValidation)
def validate_referral_code(
    code: str,
    referral_service: ReferralService = Depends(get_referral_service),
) -> ReferralCodeValidation:
    return referral_service.validate_referral_code(code)
