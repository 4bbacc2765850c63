from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from tokenapi.config import settings
from tokenapi.core.exceptions import AuthenticationError, AuthorizationError
from tokenapi.core.security import decode_access_token, is_valid_cron_secret
from tokenapi.database.session import get_db
from tokenapi.repositories.account_repository import AccountRepository
from tokenapi.schemas.account import AccountView

# JWT Bearer 토큰 스킴
security = HTTPBearer(auto_error=False)


def get_current_account(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db),
) -> AccountView:
    """필수 인증 - 유효한 토큰이 필요함"""
    if not credentials:
        raise AuthenticationError("Authentication required")

    payload = decode_access_token(credentials.credentials, settings)
    account = AccountRepository(db).get_by_id(payload.account_id)
    if account is None:
        raise AuthenticationError("Account not found")

    view = AccountView.model_validate(account)
    if not view.is_active:
        raise AuthorizationError("Inactive account")
    return view


def require_admin(current_account: AccountView = Depends(get_current_account)) -> AccountView:
    """관리자 권한이 필요한 엔드포인트용 의존성"""
    if not current_account.is_admin:
        raise AuthorizationError("Admin access required")
    return current_account


def verify_cron_secret(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> None:
    """스케줄러 전용 엔드포인트 - Authorization: Bearer <CRON_SECRET>"""
    token = credentials.credentials if credentials else None
    if not is_valid_cron_secret(token, settings):
        client = request.client.host if request.client else "-"
        raise AuthenticationError("Invalid cron secret", details={"client": client})
