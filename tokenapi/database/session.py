from contextlib import contextmanager
from typing import Iterator

from sqlalchemy.orm import Session

from tokenapi.database.connection import SessionLocal


@contextmanager
def session_scope(commit_on_exit: bool = True) -> Iterator[Session]:
    """세션 하나의 수명. 예외가 나면 열린 트랜잭션을 롤백하고 다시 던집니다."""
    db = SessionLocal()
    try:
        yield db
        if commit_on_exit:
            db.commit()
    except Exception:
        if db.in_transaction():
            db.rollback()
        raise
    finally:
        db.close()


def get_db() -> Iterator[Session]:
    """요청 단위 세션 (FastAPI 의존성). 커밋은 서비스가 직접 합니다."""
    with session_scope(commit_on_exit=False) as db:
        yield db


def get_db_context():
    """요청 밖(웹훅 백그라운드 정산, 스크립트)에서 쓰는 세션 - 정상 종료 시 커밋"""
    return session_scope(commit_on_exit=True)
