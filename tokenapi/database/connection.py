from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from tokenapi.config import settings


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}, "echo": settings.DEBUG}
    return {
        "pool_size": settings.DB_POOL_SIZE,
        "max_overflow": settings.DB_MAX_OVERFLOW,
        "pool_pre_ping": True,  # 연결 유효성 검사
        "pool_recycle": 3600,  # 1시간마다 연결 재생성
        "echo": settings.DEBUG,  # 디버그 모드에서 SQL 로깅
    }


engine = create_engine(settings.database_url, **_engine_kwargs(settings.database_url))

# expire_on_commit=False keeps loaded accounts readable after the unit commits.
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
    expire_on_commit=False,
)
