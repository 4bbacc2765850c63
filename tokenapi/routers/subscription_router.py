from typing import List

from fastapi import APIRouter, Depends

from tokenapi.core.auth_middleware import get_current_account
from tokenapi.deps import get_subscription_service
from tokenapi.schemas.account import AccountView
from tokenapi.schemas.subscription import PlanView, SubscriptionView
from tokenapi.services.subscription_service import SubscriptionService

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


@router.get("/plans", response_model=List[PlanView])
def list_plans(
    subscription_service: SubscriptionService = Depends(get_subscription_service),
) -> List[PlanView]:
    """판매 중인 요금제 (가격순)"""
    return subscription_service.list_plans()


@router.get("/me", response_model=SubscriptionView)
def get_my_subscription(
    current_account: AccountView = Depends(get_current_account),
    subscription_service: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionView:
    return subscription_service.get_subscription(current_account.id)
