# Repository layer - Data access; services own the unit of work

from .base import BaseRepository
from .account_repository import AccountRepository
from .catalog_repository import PlanRepository, TokenPackageRepository
from .payment_repository import OrderRepository, TokenTransactionRepository
from .referral_repository import ReferralRepository

__all__ = [
    "BaseRepository",
    "AccountRepository",
    "PlanRepository",
    "TokenPackageRepository",
    "OrderRepository",
    "TokenTransactionRepository",
    "ReferralRepository",
]
