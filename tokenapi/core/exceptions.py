from typing import Any, ClassVar, Dict, Optional

from fastapi import HTTPException, status


class BaseAPIException(HTTPException):
    """API 에러 베이스

    응답 본문은 ``{"success": false, "error": {"code", "message", "details"}}`` 형태로 통일됩니다.
    서브클래스는 상태 코드 / 에러 코드 / 기본 메시지만 선언합니다.
    """

    http_status: ClassVar[int] = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: ClassVar[str] = "INTERNAL_001"
    default_message: ClassVar[str] = "Internal server error"

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.error_code = self.code
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(
            status_code=self.http_status,
            detail={
                "success": False,
                "error": {"code": self.code, "message": self.message, "details": self.details},
            },
        )

    def __str__(self) -> str:
        return self.message


class AuthenticationError(BaseAPIException):
    http_status = status.HTTP_401_UNAUTHORIZED
    code = "AUTH_001"
    default_message = "Authentication failed"


class AuthorizationError(BaseAPIException):
    http_status = status.HTTP_403_FORBIDDEN
    code = "AUTH_002"
    default_message = "Access forbidden"


class ValidationError(BaseAPIException):
    http_status = status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "VALIDATION_001"
    default_message = "Validation failed"


class NotFoundError(BaseAPIException):
    http_status = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND_001"
    default_message = "Resource not found"


class ConflictError(BaseAPIException):
    """동시 수정 재시도 초과"""

    http_status = status.HTTP_409_CONFLICT
    code = "CONFLICT_001"
    default_message = "Resource conflict"


class InternalServerError(BaseAPIException):
    pass


class InternalInconsistencyError(BaseAPIException):
    """저장된 레코드가 더 이상 존재하지 않는 대상을 가리킴"""

    code = "INTERNAL_002"
    default_message = "Internal data inconsistency"


# 토큰 / 구독


class InsufficientTokensError(BaseAPIException):
    http_status = status.HTTP_400_BAD_REQUEST
    code = "TOKENS_001"

    def __init__(self, required: int, available: int):
        super().__init__(
            f"Insufficient tokens. Required: {required}, Available: {available}",
            details={"required": required, "available": available},
        )


class SubscriptionExpiredError(BaseAPIException):
    """플랜 종료 후에는 모든 버킷 사용 불가"""

    http_status = status.HTTP_403_FORBIDDEN
    code = "SUBSCRIPTION_001"
    default_message = "Subscription expired. Please renew to access resources."


class NoActiveSubscriptionError(BaseAPIException):
    http_status = status.HTTP_403_FORBIDDEN
    code = "SUBSCRIPTION_002"
    default_message = "Active subscription required"


# 결제


class InvalidSignatureError(BaseAPIException):
    http_status = status.HTTP_401_UNAUTHORIZED
    code = "PAYMENT_001"
    default_message = "Invalid signature"


class PaymentProviderError(BaseAPIException):
    """게이트웨이 통신 실패 또는 오류 응답"""

    http_status = status.HTTP_502_BAD_GATEWAY
    code = "PAYMENT_002"
    default_message = "Payment provider error"
