# Model layer - importing this package registers every mapped table on Base.metadata

from .base import Base, BaseModel
from .plan import Plan, TokenPackage
from .account import Account, AccountRole, PrizeGrant
from .referral import MilestoneCounter, ReferralEntry, ReferralStatus
from .payment import (
    Order,
    OrderStatus,
    OrderType,
    TokenTransaction,
    TransactionStatus,
    TransactionType,
)

__all__ = [
    "Base",
    "BaseModel",
    "Plan",
    "TokenPackage",
    "Account",
    "AccountRole",
    "PrizeGrant",
    "MilestoneCounter",
    "ReferralEntry",
    "ReferralStatus",
    "Order",
    "OrderStatus",
    "OrderType",
    "TokenTransaction",
    "TransactionStatus",
    "TransactionType",
]
