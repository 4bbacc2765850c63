from typing import Any, Generic, Optional, Type, TypeVar

from sqlalchemy.orm import Session

ModelType = TypeVar("ModelType")


class BaseRepository(Generic[ModelType]):
    """리포지토리 공통 조회/생성

    리포지토리는 flush까지만 하고 커밋은 서비스가 작업 단위 끝에서 합니다.
    잠금 조회는 populate_existing으로 세션에 캐시된 값을 DB 값으로 덮어씁니다.
    잠금 전에 세션의 보류 중인 변경은 호출자가 flush해 두어야 합니다.
    """

    def __init__(self, model_class: Type[ModelType], db: Session):
        self.model_class = model_class
        self.db = db

    def get_by_id(self, id: Any) -> Optional[ModelType]:
        return self.db.get(self.model_class, id)

    def get_for_update(self, id: Any) -> Optional[ModelType]:
        """SELECT ... FOR UPDATE"""
        return (
            self.db.query(self.model_class)
            .filter(self.model_class.id == id)  # type: ignore[attr-defined]
            .populate_existing()
            .with_for_update()
            .first()
        )

    def create(self, **fields) -> ModelType:
        instance = self.model_class(**fields)
        self.db.add(instance)
        self.db.flush()
        return instance
