from typing import Dict

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from tokenapi.config import settings
from tokenapi.containers import Container
from tokenapi.database.session import get_db
from tokenapi.providers.notifications import NotificationSender
from tokenapi.providers.payments.base import PaymentGateway
from tokenapi.schemas.payment import GatewayName

# Services
from tokenapi.services.payment_service import PaymentService
from tokenapi.services.referral_service import ReferralService
from tokenapi.services.subscription_service import SubscriptionService
from tokenapi.services.token_service import TokenService


def get_container(request: Request) -> Container:
    return request.app.container


def get_gateways(container: Container = Depends(get_container)) -> Dict[GatewayName, PaymentGateway]:
    return container.gateways.all()


def get_notifier(container: Container = Depends(get_container)) -> NotificationSender:
    return container.notifications.sender()


def get_token_service(
    db: Session = Depends(get_db), notifier: NotificationSender = Depends(get_notifier)
) -> TokenService:
    return TokenService(db=db, settings=settings, notifier=notifier)


def get_referral_service(
    db: Session = Depends(get_db), notifier: NotificationSender = Depends(get_notifier)
) -> ReferralService:
    return ReferralService(db=db, settings=settings, notifier=notifier)


def get_subscription_service(
    db: Session = Depends(get_db), notifier: NotificationSender = Depends(get_notifier)
) -> SubscriptionService:
    return SubscriptionService(db=db, settings=settings, notifier=notifier)


def get_payment_service(
    db: Session = Depends(get_db),
    gateways: Dict[GatewayName, PaymentGateway] = Depends(get_gateways),
    notifier: NotificationSender = Depends(get_notifier),
) -> PaymentService:
    return PaymentService(db=db, gateways=gateways, settings=settings, notifier=notifier)
