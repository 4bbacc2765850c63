"""
계정 리포지토리

토큰 잔액을 바꾸는 모든 경로는 get_for_update로 계정 행을 잠근 뒤 진행합니다.
version_id 컬럼 덕분에 잠금을 지원하지 않는 DB에서도 동시 수정은 StaleDataError로 드러납니다.
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from tokenapi.models.account import Account, PrizeGrant
from tokenapi.repositories.base import BaseRepository


class AccountRepository(BaseRepository[Account]):
    def __init__(self, db: Session):
        super().__init__(Account, db)

    def get_by_email(self, email: str) -> Optional[Account]:
        return (
            self.db.query(Account)
            .filter(Account.email == email.strip().lower())
            .first()
        )

    def get_by_referral_code(self, referral_code: str) -> Optional[Account]:
        return (
            self.db.query(Account)
            .filter(Account.referral_code == referral_code.strip().upper())
            .first()
        )

    def referral_code_exists(self, referral_code: str) -> bool:
        return (
            self.db.query(Account.id)
            .filter(Account.referral_code == referral_code)
            .first()
            is not None
        )

    def list_due_for_daily_refresh(self, now: datetime) -> List[Account]:
        """구독이 아직 유효한 계정 (오늘 리필 여부는 서비스에서 판단), 행 잠금"""
        return (
            self.db.query(Account)
            .filter(
                Account.subscription_is_active.is_(True),
                Account.subscription_end_date > now,
            )
            .order_by(Account.id)
            .with_for_update()
            .all()
        )

    def list_expired_subscriptions(self, now: datetime) -> List[Account]:
        """종료일이 지났는데 아직 활성 표시이거나 버킷에 잔량이 남은 계정, 행 잠금"""
        has_tokens = or_(
            Account.daily_current > 0,
            Account.purchased_current > 0,
            Account.bonus_current > 0,
            Account.prize_current > 0,
        )
        return (
            self.db.query(Account)
            .filter(
                Account.subscription_end_date.isnot(None),
                Account.subscription_end_date <= now,
                or_(Account.subscription_is_active.is_(True), has_tokens),
            )
            .order_by(Account.id)
            .with_for_update()
            .all()
        )

    def add_prize_grant(
        self, account: Account, amount: int, prize_type: str, granted_by: str, granted_at: datetime
    ) -> PrizeGrant:
        grant = PrizeGrant(
            amount=amount,
            prize_type=prize_type,
            granted_by=granted_by,
            granted_at=granted_at,
        )
        account.prize_history.append(grant)
        return grant

    def prune_prize_history(self, before: datetime) -> int:
        """보존 기간이 지난 상금 지급 이력 삭제"""
        return (
            self.db.query(PrizeGrant)
            .filter(PrizeGrant.granted_at < before)
            .delete(synchronize_session="fetch")
        )
