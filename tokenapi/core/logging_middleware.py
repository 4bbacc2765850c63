import logging
import time
import uuid

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

logger = logging.getLogger("tokenapi")

REQUEST_ID_HEADER = "X-Request-ID"


class LoggingMiddleware(BaseHTTPMiddleware):
    """요청/응답 한 줄 로그 + 요청 ID 전파

    쿼리 문자열에는 결제 상태 조회용 토큰이 실릴 수 있어 경로만 남깁니다.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex[:16]
        request.state.request_id = request_id
        label = f"{request.method} {request.url.path} [{request_id}]"

        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            logger.exception(f"[Unhandled Error] {label}")
            raise

        elapsed_ms = (time.perf_counter() - started) * 1000
        response.headers[REQUEST_ID_HEADER] = request_id

        if request.url.path == "/health" and response.status_code < 400:
            return response
        level = logging.INFO
        if response.status_code >= 500:
            level = logging.ERROR
        elif response.status_code >= 400:
            level = logging.WARNING
        logger.log(level, f"[Response] {label} -> {response.status_code} in {elapsed_ms:.1f}ms")
        return response
