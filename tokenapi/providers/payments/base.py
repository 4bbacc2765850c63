"""Payment gateway contract shared by PhonePe and Razorpay clients."""

import logging
import secrets
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from decimal import ROUND_FLOOR, Decimal
from typing import Any, Dict, Optional, Union

import httpx

from tokenapi.config import Settings
from tokenapi.core.exceptions import PaymentProviderError
from tokenapi.schemas.payment import (
    GatewayName,
    GatewayOrder,
    GatewayStatus,
    PaymentEvent,
    PaymentType,
)

logger = logging.getLogger(__name__)


def rupees_to_paisa(rupees: Union[Decimal, float, int, str]) -> int:
    """Convert rupees to paisa, truncating fractions of a paisa."""
    value = Decimal(str(rupees)) * 100
    return int(value.to_integral_value(rounding=ROUND_FLOOR))


def generate_merchant_order_id(prefix: str = "ORDER") -> str:
    """{PREFIX}_{epoch ms}_{HEX8}"""
    return f"{prefix}_{int(time.time() * 1000)}_{secrets.token_hex(4).upper()}"


def from_epoch_ms(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
    except (TypeError, ValueError):
        return None


def parse_payment_type(value: Any) -> Optional[PaymentType]:
    if not value:
        return None
    try:
        return PaymentType(str(value))
    except ValueError:
        logger.warning(f"Unknown payment type in gateway metadata: {value}")
        return None


class PaymentGateway(ABC):
    """Outbound client for one payment provider.

    ``create_order`` and ``check_status`` talk to the provider over HTTP;
    ``verify_signature`` and ``parse_webhook`` are pure and never hit the
    network. Provider JSON never leaves this layer: callers only see
    :class:`PaymentEvent`, :class:`GatewayOrder` and :class:`GatewayStatus`.
    """

    name: GatewayName

    def __init__(
        self,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings
        self._transport = transport

    def _client(self, **kwargs) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=30.0, transport=self._transport, **kwargs)

    def _provider_error(self, action: str, response: Optional[httpx.Response] = None, exc: Optional[Exception] = None) -> PaymentProviderError:
        details: Dict[str, Any] = {"provider": self.name.value, "action": action}
        if response is not None:
            details["status_code"] = response.status_code
            logger.error(f"{self.name.value} {action} failed ({response.status_code}): {response.text}")
        elif exc is not None:
            logger.error(f"{self.name.value} {action} error: {str(exc)}")
        return PaymentProviderError(f"Failed to {action} with {self.name.value}", details=details)

    @abstractmethod
    async def create_order(
        self,
        amount_minor: int,
        merchant_order_id: str,
        metadata: Dict[str, str],
    ) -> GatewayOrder:
        """Create a provider order. ``metadata`` carries internal_ref_id / payment_type / extra."""

    @abstractmethod
    def verify_signature(self, raw_payload: bytes, header: Optional[str]) -> bool:
        """Verify a webhook's authenticity."""

    @abstractmethod
    async def check_status(
        self, merchant_order_id: str, provider_order_id: Optional[str] = None
    ) -> GatewayStatus:
        """Poll the provider for the current state of an order."""

    @abstractmethod
    def parse_webhook(self, payload: Dict[str, Any]) -> PaymentEvent:
        """Normalize a webhook body into a PaymentEvent."""

    def missing_configuration(self) -> list:
        return []
