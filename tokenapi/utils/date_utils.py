"""
시간 유틸리티

저장은 모두 UTC, 일일 토큰 리프레시 경계만 서비스 타임존(기본 IST, UTC+5:30) 기준.
"""

import math
from datetime import date, datetime, timedelta, timezone
from typing import Optional

import pytz

from tokenapi.config import settings

SECONDS_PER_DAY = 24 * 60 * 60


def service_timezone():
    """서비스 타임존 (SERVICE_TIMEZONE)"""
    return pytz.timezone(settings.SERVICE_TIMEZONE)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """naive datetime은 UTC로 간주하여 tz-aware UTC로 변환합니다."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def service_date(dt: Optional[datetime] = None) -> date:
    """주어진 시각(기본: 현재)의 서비스 타임존 날짜"""
    moment = ensure_utc(dt) or utc_now()
    return moment.astimezone(service_timezone()).date()


def service_day_start(dt: Optional[datetime] = None) -> datetime:
    """서비스 타임존 기준 오늘 00:00 (UTC로 반환)"""
    day = service_date(dt)
    local_midnight = service_timezone().localize(datetime(day.year, day.month, day.day))
    return local_midnight.astimezone(timezone.utc)


def days_between(end: datetime, now: datetime) -> int:
    """end까지 남은 일수 (올림). 이미 지났으면 0"""
    delta = (ensure_utc(end) - ensure_utc(now)).total_seconds()
    if delta <= 0:
        return 0
    return math.ceil(delta / SECONDS_PER_DAY)


def add_days(start: datetime, days: int) -> datetime:
    return ensure_utc(start) + timedelta(days=days)
