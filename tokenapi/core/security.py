import hmac
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt
from pydantic import ValidationError as PydanticValidationError

from tokenapi.config import Settings, settings as default_settings
from tokenapi.core.exceptions import AuthenticationError
from tokenapi.schemas.account import TokenPayload


def create_access_token(
    data: dict,
    expires_delta: Optional[timedelta] = None,
    settings: Settings = default_settings,
) -> str:
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(
            minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES
        )
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_access_token(token: str, settings: Settings = default_settings) -> TokenPayload:
    """JWT 토큰을 검증하고 페이로드를 반환합니다."""
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
        return TokenPayload.model_validate(payload)
    except (JWTError, PydanticValidationError):
        raise AuthenticationError("Invalid authentication credentials")


def is_valid_cron_secret(token: Optional[str], settings: Settings = default_settings) -> bool:
    """크론 호출용 공유 비밀 비교. CRON_SECRET이 비어 있으면 항상 거부"""
    if not settings.CRON_SECRET or not token:
        return False
    return hmac.compare_digest(token.encode("utf-8"), settings.CRON_SECRET.encode("utf-8"))
