import logging
import time
from typing import Awaitable, Callable, Optional, Tuple

logger = logging.getLogger(__name__)


class GatewayTokenCache:
    """In-process cache for a gateway OAuth token.

    A token is served while more than ``refresh_buffer_seconds`` remain before
    its expiry; otherwise the next caller fetches a fresh one. Any fetch error
    clears the cache so the following request starts clean.
    """

    def __init__(
        self,
        refresh_buffer_seconds: int = 300,
        clock: Callable[[], float] = time.time,
    ):
        self.refresh_buffer_seconds = refresh_buffer_seconds
        self._clock = clock
        self._token: Optional[str] = None
        self._expires_at: Optional[float] = None

    def get(self) -> Optional[str]:
        if not self._token or self._expires_at is None:
            return None
        if self._expires_at - self._clock() > self.refresh_buffer_seconds:
            return self._token
        return None

    def set(self, token: str, expires_at: float) -> None:
        self._token = token
        self._expires_at = float(expires_at)

    def clear(self) -> None:
        self._token = None
        self._expires_at = None

    async def get_or_fetch(self, fetch: Callable[[], Awaitable[Tuple[str, float]]]) -> str:
        cached = self.get()
        if cached:
            return cached

        try:
            token, expires_at = await fetch()
        except Exception:
            self.clear()
            raise

        self.set(token, expires_at)
        logger.info(f"Gateway token refreshed, expires at {int(expires_at)}")
        return token
