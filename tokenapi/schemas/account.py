from datetime import datetime
from typing import Optional

from pydantic import BaseModel, EmailStr, Field


class AccountView(BaseModel):
    """인증된 계정 정보"""

    id: int = Field(..., description="계정 ID")
    email: EmailStr = Field(..., description="이메일")
    name: str = Field(..., description="이름")
    role: str = Field("user", description="역할")
    is_active: bool = Field(True, description="활성 여부")
    plan_id: Optional[int] = Field(None, description="현재 요금제")
    subscription_end_date: Optional[datetime] = Field(None, description="구독 종료 시각")
    referral_code: Optional[str] = Field(None, description="추천 코드")
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


class TokenPayload(BaseModel):
    """JWT 페이로드"""

    account_id: int
    sub: EmailStr
