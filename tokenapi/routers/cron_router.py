"""
스케줄러 전용 엔드포인트 (Authorization: Bearer <CRON_SECRET>)

- POST /cron/token-refresh: 일일 토큰 리필 (서비스 타임존 하루 한 번, 재실행해도 변화 없음)
- POST /cron/subscription-check: 만료 구독 정리
"""

import logging

from fastapi import APIRouter, Depends

from tokenapi.core.auth_middleware import verify_cron_secret
from tokenapi.deps import get_subscription_service
from tokenapi.schemas.subscription import DailyRefreshResult, ExpirySweepResult
from tokenapi.services.subscription_service import SubscriptionService

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/cron",
    tags=["cron"],
    dependencies=[Depends(verify_cron_secret)],
)


@router.post("/token-refresh", response_model=DailyRefreshResult)
def refresh_daily_tokens(
    subscription_service: SubscriptionService = Depends(get_subscription_service),
) -> DailyRefreshResult:
    logger.info("Cron: daily token refresh triggered")
    return subscription_service.refresh_daily_tokens()


@router.post("/subscription-check", response_model=ExpirySweepResult)
def sweep_expired_subscriptions(
    subscription_service: SubscriptionService = Depends(get_subscription_service),
) -> ExpirySweepResult:
    logger.info("Cron: subscription expiry sweep triggered")
    return subscription_service.sweep_expired_subscriptions()
