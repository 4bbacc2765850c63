from typing import List, Optional

from sqlalchemy.orm import Session

from tokenapi.models.plan import Plan, TokenPackage
from tokenapi.repositories.base import BaseRepository


class PlanRepository(BaseRepository[Plan]):
    """요금제 조회 (읽기 전용)"""

    def __init__(self, db: Session):
        super().__init__(Plan, db)

    def get_active(self, plan_id: int) -> Optional[Plan]:
        return (
            self.db.query(Plan)
            .filter(Plan.id == plan_id, Plan.is_active.is_(True))
            .first()
        )

    def list_active(self) -> List[Plan]:
        return (
            self.db.query(Plan)
            .filter(Plan.is_active.is_(True))
            .order_by(Plan.price)
            .all()
        )


class TokenPackageRepository(BaseRepository[TokenPackage]):
    """토큰 패키지 조회 (읽기 전용)"""

    def __init__(self, db: Session):
        super().__init__(TokenPackage, db)

    def get_active(self, package_id: int) -> Optional[TokenPackage]:
        return (
            self.db.query(TokenPackage)
            .filter(TokenPackage.id == package_id, TokenPackage.is_active.is_(True))
            .first()
        )

    def list_active(self) -> List[TokenPackage]:
        return (
            self.db.query(TokenPackage)
            .filter(TokenPackage.is_active.is_(True))
            .order_by(TokenPackage.sort_order, TokenPackage.price)
            .all()
        )
