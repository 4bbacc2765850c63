"""
결제 기록 리포지토리

웹훅 처리 시 대상 레코드는 항상 잠금 조회(for_update=True)로 가져와,
같은 주문에 대한 동시 웹훅/폴링이 최종 상태 전이를 두 번 적용하지 못하게 합니다.
"""

from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import desc, func
from sqlalchemy.orm import Query, Session

from tokenapi.models.payment import (
    Order,
    TokenTransaction,
    TransactionStatus,
    TransactionType,
)
from tokenapi.repositories.base import BaseRepository


def _maybe_lock(query: Query, for_update: bool) -> Query:
    if for_update:
        return query.populate_existing().with_for_update()
    return query


class OrderRepository(BaseRepository[Order]):
    def __init__(self, db: Session):
        super().__init__(Order, db)

    def get_by_client_order_id(self, client_order_id: str, for_update: bool = False) -> Optional[Order]:
        query = self.db.query(Order).filter(Order.client_order_id == client_order_id)
        return _maybe_lock(query, for_update).first()

    def get_by_merchant_order_id(self, merchant_order_id: str, for_update: bool = False) -> Optional[Order]:
        query = self.db.query(Order).filter(Order.merchant_order_id == merchant_order_id)
        return _maybe_lock(query, for_update).first()

    def get_by_provider_order_id(self, provider_order_id: str, for_update: bool = False) -> Optional[Order]:
        query = self.db.query(Order).filter(Order.provider_order_id == provider_order_id)
        return _maybe_lock(query, for_update).first()


class TokenTransactionRepository(BaseRepository[TokenTransaction]):
    def __init__(self, db: Session):
        super().__init__(TokenTransaction, db)

    def get_by_reference(self, reference: str, for_update: bool = False) -> Optional[TokenTransaction]:
        query = self.db.query(TokenTransaction).filter(TokenTransaction.reference == reference)
        return _maybe_lock(query, for_update).first()

    def get_by_merchant_order_id(self, merchant_order_id: str, for_update: bool = False) -> Optional[TokenTransaction]:
        query = self.db.query(TokenTransaction).filter(
            TokenTransaction.merchant_order_id == merchant_order_id
        )
        return _maybe_lock(query, for_update).first()

    def get_by_provider_order_id(self, provider_order_id: str, for_update: bool = False) -> Optional[TokenTransaction]:
        query = self.db.query(TokenTransaction).filter(
            TokenTransaction.provider_order_id == provider_order_id
        )
        return _maybe_lock(query, for_update).first()

    def count_completed_purchases_since(self, account_id: int, package_id: int, since: datetime) -> int:
        """since 이후 완료된 패키지 구매 횟수 (일일 구매 한도 검사용)"""
        return (
            self.db.query(func.count(TokenTransaction.id))
            .filter(
                TokenTransaction.account_id == account_id,
                TokenTransaction.package_id == package_id,
                TokenTransaction.type == TransactionType.PURCHASE.value,
                TokenTransaction.status == TransactionStatus.COMPLETED.value,
                TokenTransaction.completed_at >= since,
            )
            .scalar()
            or 0
        )

    def list_for_account(
        self, account_id: int, limit: int, offset: int
    ) -> Tuple[List[TokenTransaction], int]:
        """계정의 토큰 거래 기록 (최신순) 과 전체 건수"""
        query = self.db.query(TokenTransaction).filter(TokenTransaction.account_id == account_id)
        total = query.count()
        items = (
            query.order_by(desc(TokenTransaction.created_at), desc(TokenTransaction.id))
            .offset(offset)
            .limit(limit)
            .all()
        )
        return items, total
