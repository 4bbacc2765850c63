import json
import logging
import logging.config
import re
import sys
from typing import Any, Dict

# 게이트웨이 토큰, 웹훅 서명, 비밀번호 재설정 토큰
_SECRET_PATTERNS = [
    (re.compile(r"(O-Bearer|Bearer|SHA256)\s+[A-Za-z0-9._~+/=-]+"), r"\1 ***"),
    (re.compile(r"(token=)[A-Za-z0-9_-]+"), r"\1***"),
    (re.compile(r'("(?:access_token|client_secret|razorpay_signature)"\s*:\s*")[^"]+'), r"\1***"),
]


class RedactSecretsFilter(logging.Filter):
    """로그 메시지에서 인증 정보를 가립니다."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = message
        for pattern, replacement in _SECRET_PATTERNS:
            redacted = pattern.sub(replacement, redacted)
        if redacted != message:
            record.msg = redacted
            record.args = ()
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": self.formatTime(record, datefmt="%Y-%m-%d %H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def build_logging_config(log_level: str = "INFO", json_logs: bool = False) -> Dict[str, Any]:
    """dictConfig 설정 생성

    - 로컬: 사람이 읽는 한 줄 포맷, 운영(Lambda/CloudWatch): JSON 한 줄
    - WARNING 이상은 stderr에도 위치 정보와 함께 출력
    - 결제 게이트웨이 로거는 레벨과 상관없이 INFO까지 남김 (정산 추적용)
    """
    level = log_level.upper()
    handler_names = ["console", "error_console"]

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {"redact": {"()": RedactSecretsFilter}},
        "formatters": {
            "line": {"format": "%(asctime)s | %(levelname)-8s | %(name)-28s | %(message)s"},
            "located": {
                "format": "%(asctime)s | %(levelname)-8s | %(name)s | %(pathname)s:%(lineno)d\n%(message)s"
            },
            "json": {"()": JsonFormatter},
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "stream": sys.stdout,
                "formatter": "json" if json_logs else "line",
                "filters": ["redact"],
            },
            "error_console": {
                "class": "logging.StreamHandler",
                "stream": sys.stderr,
                "formatter": "json" if json_logs else "located",
                "filters": ["redact"],
                "level": "WARNING",
            },
        },
        "loggers": {
            "": {"handlers": ["console"], "level": level},
            "uvicorn.error": {"handlers": handler_names, "level": level, "propagate": False},
            "uvicorn.access": {"handlers": ["console"], "level": level, "propagate": False},
            "tokenapi": {"handlers": handler_names, "level": level, "propagate": False},
            "tokenapi.providers.payments": {
                "handlers": handler_names,
                "level": "INFO" if level not in ("DEBUG", "INFO") else level,
                "propagate": False,
            },
        },
    }


def setup_logging(log_level: str = "INFO", json_logs: bool = False) -> None:
    logging.config.dictConfig(build_logging_config(log_level, json_logs))
