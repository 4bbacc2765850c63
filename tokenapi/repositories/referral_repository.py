from typing import Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session, joinedload

from tokenapi.models.referral import MilestoneCounter, ReferralEntry, ReferralStatus
from tokenapi.repositories.base import BaseRepository


class ReferralRepository(BaseRepository[ReferralEntry]):
    """추천 항목 / 마일스톤 카운터"""

    def __init__(self, db: Session):
        super().__init__(ReferralEntry, db)

    def get_entry(self, referrer_id: int, referred_account_id: int) -> Optional[ReferralEntry]:
        return (
            self.db.query(ReferralEntry)
            .filter(
                ReferralEntry.referrer_id == referrer_id,
                ReferralEntry.referred_account_id == referred_account_id,
            )
            .first()
        )

    def list_entries_for_referred(self, referred_account_id: int) -> List[ReferralEntry]:
        """피추천인이 속한 (추천인 쪽) 항목들"""
        return (
            self.db.query(ReferralEntry)
            .filter(ReferralEntry.referred_account_id == referred_account_id)
            .all()
        )

    def list_active_entries(self, referrer_id: int) -> List[ReferralEntry]:
        return (
            self.db.query(ReferralEntry)
            .filter(
                ReferralEntry.referrer_id == referrer_id,
                ReferralEntry.is_active.is_(True),
            )
            .all()
        )

    def count_entries(self, referrer_id: int) -> int:
        return (
            self.db.query(ReferralEntry)
            .filter(ReferralEntry.referrer_id == referrer_id)
            .count()
        )

    def count_active_entries(self, referrer_id: int) -> int:
        return (
            self.db.query(ReferralEntry)
            .filter(
                ReferralEntry.referrer_id == referrer_id,
                ReferralEntry.is_active.is_(True),
                ReferralEntry.subscription_status == ReferralStatus.ACTIVE.value,
            )
            .count()
        )

    def get_counter(self, account_id: int, milestone_key: str) -> Optional[MilestoneCounter]:
        return (
            self.db.query(MilestoneCounter)
            .filter(
                MilestoneCounter.account_id == account_id,
                MilestoneCounter.milestone_key == milestone_key,
            )
            .first()
        )

    def get_or_create_counter(self, account_id: int, milestone_key: str) -> MilestoneCounter:
        counter = self.get_counter(account_id, milestone_key)
        if counter is None:
            counter = MilestoneCounter(
                account_id=account_id,
                milestone_key=milestone_key,
                cycles_completed=0,
                tokens_earned=0,
            )
            self.db.add(counter)
            self.db.flush()
        return counter

    def list_counters(self, account_id: int) -> List[MilestoneCounter]:
        return (
            self.db.query(MilestoneCounter)
            .filter(MilestoneCounter.account_id == account_id)
            .all()
        )

    def list_entries(self, referrer_id: int) -> List[ReferralEntry]:
        """추천인의 추천 목록 (가입 순)"""
        return (
            self.db.query(ReferralEntry)
            .options(joinedload(ReferralEntry.referred_account))
            .filter(ReferralEntry.referrer_id == referrer_id)
            .order_by(ReferralEntry.joined_at.asc(), ReferralEntry.id.asc())
            .all()
        )

    def count_entries_by_status(self, referrer_id: int) -> Dict[str, int]:
        rows = (
            self.db.query(ReferralEntry.subscription_status, func.count(ReferralEntry.id))
            .filter(ReferralEntry.referrer_id == referrer_id)
            .group_by(ReferralEntry.subscription_status)
            .all()
        )
        return {status: count for status, count in rows}
