import base64
import hashlib
import hmac
import logging
from typing import Any, Dict, Optional, Tuple

import httpx

from tokenapi.config import Settings
from tokenapi.core.exceptions import ValidationError
from tokenapi.providers.payments.base import (
    PaymentGateway,
    from_epoch_ms,
    parse_payment_type,
)
from tokenapi.providers.payments.token_cache import GatewayTokenCache
from tokenapi.schemas.payment import (
    GatewayName,
    GatewayOrder,
    GatewayStatus,
    PaymentEvent,
    PaymentState,
)

logger = logging.getLogger(__name__)

MIN_AMOUNT_PAISA = 100
MIN_EXPIRE_AFTER = 300
MAX_EXPIRE_AFTER = 3600


def _normalize_state(value: Any) -> PaymentState:
    try:
        return PaymentState(str(value).upper())
    except ValueError:
        return PaymentState.PENDING


class PhonePeGateway(PaymentGateway):
    """PhonePe Standard Checkout (v2) client"""

    name = GatewayName.PHONEPE

    def __init__(
        self,
        settings: Settings,
        token_cache: Optional[GatewayTokenCache] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(settings, transport=transport)
        self.token_cache = token_cache or GatewayTokenCache(
            refresh_buffer_seconds=settings.PHONEPE_TOKEN_REFRESH_BUFFER_SECONDS
        )
        if settings.phonepe_is_production:
            self.base_url = "https://api.phonepe.com/apis/pg"
            self.auth_url = "https://api.phonepe.com/apis/identity-manager/v1/oauth/token"
        else:
            self.base_url = "https://api-preprod.phonepe.com/apis/pg-sandbox"
            self.auth_url = "https://api-preprod.phonepe.com/apis/pg-sandbox/v1/oauth/token"

    def missing_configuration(self) -> list:
        required = {
            "PHONEPE_CLIENT_ID": self.settings.PHONEPE_CLIENT_ID,
            "PHONEPE_CLIENT_SECRET": self.settings.PHONEPE_CLIENT_SECRET,
            "PHONEPE_WEBHOOK_USERNAME": self.settings.PHONEPE_WEBHOOK_USERNAME,
            "PHONEPE_WEBHOOK_PASSWORD": self.settings.PHONEPE_WEBHOOK_PASSWORD,
        }
        return [key for key, value in required.items() if not value]

    async def _fetch_token(self) -> Tuple[str, float]:
        try:
            async with self._client() as client:
                response = await client.post(
                    self.auth_url,
                    data={
                        "client_id": self.settings.PHONEPE_CLIENT_ID,
                        "client_version": self.settings.PHONEPE_CLIENT_VERSION,
                        "client_secret": self.settings.PHONEPE_CLIENT_SECRET,
                        "grant_type": "client_credentials",
                    },
                    headers={"Content-Type": "application/x-www-form-urlencoded"},
                )
        except httpx.HTTPError as e:
            raise self._provider_error("generate auth token", exc=e)

        if response.status_code != 200:
            raise self._provider_error("generate auth token", response=response)

        data = response.json()
        if "access_token" not in data or "expires_at" not in data:
            logger.error(f"PhonePe token response missing fields: {data}")
            raise self._provider_error("generate auth token")
        return data["access_token"], float(data["expires_at"])

    async def _auth_headers(self) -> Dict[str, str]:
        token = await self.token_cache.get_or_fetch(self._fetch_token)
        return {
            "Content-Type": "application/json",
            "Authorization": f"O-Bearer {token}",
        }

    async def create_order(
        self,
        amount_minor: int,
        merchant_order_id: str,
        metadata: Dict[str, str],
    ) -> GatewayOrder:
        if amount_minor < MIN_AMOUNT_PAISA:
            raise ValidationError("amount must be at least 100 paisa (₹1)")

        expire_after = min(
            max(self.settings.PAYMENT_EXPIRE_AFTER_SECONDS, MIN_EXPIRE_AFTER),
            MAX_EXPIRE_AFTER,
        )
        redirect_url = metadata.get("redirect_url") or (
            f"{self.settings.FRONTEND_URL}/payment/status?merchantOrderId={merchant_order_id}"
        )
        payload = {
            "merchantOrderId": merchant_order_id,
            "amount": int(amount_minor),
            "expireAfter": expire_after,
            "metaInfo": {
                "udf1": metadata.get("internal_ref_id", ""),
                "udf2": metadata.get("payment_type", ""),
                "udf3": metadata.get("extra", ""),
            },
            "paymentFlow": {
                "type": "PG_CHECKOUT",
                "merchantUrls": {"redirectUrl": redirect_url},
            },
        }

        headers = await self._auth_headers()
        logger.info(
            f"Creating PhonePe payment {merchant_order_id} for {amount_minor} paisa ({self.settings.PHONEPE_ENV})"
        )
        try:
            async with self._client() as client:
                response = await client.post(
                    f"{self.base_url}/checkout/v2/pay", json=payload, headers=headers
                )
        except httpx.HTTPError as e:
            raise self._provider_error("create payment", exc=e)

        if response.status_code == 401:
            self.token_cache.clear()
        if response.status_code != 200:
            raise self._provider_error("create payment", response=response)

        data = response.json()
        return GatewayOrder(
            provider=self.name,
            provider_order_id=data["orderId"],
            merchant_order_id=merchant_order_id,
            amount=int(amount_minor),
            redirect_url=data.get("redirectUrl"),
            expires_at=from_epoch_ms(data.get("expireAt")),
            raw=data,
        )

    def verify_signature(self, raw_payload: bytes, header: Optional[str]) -> bool:
        """PhonePe sends ``Authorization: SHA256 <base64(sha256(username:password))>``."""
        if not header or not header.startswith("SHA256 "):
            logger.warning("Invalid PhonePe webhook authorization header format")
            return False

        received = header[len("SHA256 "):].strip()
        credentials = (
            f"{self.settings.PHONEPE_WEBHOOK_USERNAME}:{self.settings.PHONEPE_WEBHOOK_PASSWORD}"
        )
        expected = base64.b64encode(hashlib.sha256(credentials.encode("utf-8")).digest()).decode("ascii")
        is_valid = hmac.compare_digest(received, expected)
        if not is_valid:
            logger.warning("PhonePe webhook signature verification failed")
        return is_valid

    def _event_from_order(self, order: Dict[str, Any], event_name: Optional[str]) -> PaymentEvent:
        details = (order.get("paymentDetails") or [{}])[0] or {}
        meta = order.get("metaInfo") or {}
        state = _normalize_state(order.get("state"))

        failure_reason = None
        error_info = order.get("errorInfo") or order.get("errorContext") or {}
        if error_info:
            failure_reason = error_info.get("message") or error_info.get("description") or error_info.get("errorCode")
        if state == PaymentState.FAILED and not failure_reason:
            failure_reason = details.get("errorCode") or "Payment failed"

        return PaymentEvent(
            provider=self.name,
            merchant_order_id=order.get("merchantOrderId"),
            provider_order_id=order.get("orderId"),
            state=state,
            amount=order.get("amount"),
            transaction_id=details.get("transactionId"),
            payment_mode=details.get("paymentMode"),
            internal_ref_id=meta.get("udf1") or None,
            payment_type=parse_payment_type(meta.get("udf2")),
            failure_reason=failure_reason,
            event_name=event_name,
            occurred_at=from_epoch_ms(details.get("timestamp")),
            raw=order,
        )

    def parse_webhook(self, payload: Dict[str, Any]) -> PaymentEvent:
        if not isinstance(payload, dict):
            raise ValidationError("PhonePe webhook body must be a JSON object")
        event_name = payload.get("event")
        order = payload.get("payload")
        if not event_name or not isinstance(order, dict):
            raise ValidationError("Invalid PhonePe webhook payload structure")
        return self._event_from_order(order, event_name)

    async def check_status(
        self, merchant_order_id: str, provider_order_id: Optional[str] = None
    ) -> GatewayStatus:
        if not merchant_order_id:
            raise ValidationError("merchant_order_id is required")

        headers = await self._auth_headers()
        try:
            async with self._client() as client:
                response = await client.get(
                    f"{self.base_url}/checkout/v2/order/{merchant_order_id}/status",
                    params={"details": "true", "errorContext": "true"},
                    headers=headers,
                )
        except httpx.HTTPError as e:
            raise self._provider_error("check order status", exc=e)

        if response.status_code == 404:
            logger.info(f"PhonePe order {merchant_order_id} not found yet, treating as pending")
            return GatewayStatus(
                provider=self.name,
                merchant_order_id=merchant_order_id,
                state=PaymentState.PENDING,
            )
        if response.status_code == 401:
            self.token_cache.clear()
        if response.status_code != 200:
            raise self._provider_error("check order status", response=response)

        data = response.json()
        data.setdefault("merchantOrderId", merchant_order_id)
        event = self._event_from_order(data, "status_check")
        return GatewayStatus(
            provider=self.name,
            merchant_order_id=merchant_order_id,
            state=event.state,
            event=event,
        )
