import hashlib
import hmac
import logging
from typing import Any, Dict, List, Optional

import httpx

from tokenapi.config import Settings
from tokenapi.core.exceptions import ValidationError
from tokenapi.providers.payments.base import PaymentGateway, parse_payment_type
from tokenapi.schemas.payment import (
    GatewayName,
    GatewayOrder,
    GatewayStatus,
    PaymentEvent,
    PaymentState,
)

logger = logging.getLogger(__name__)

COMPLETED_EVENTS = {"payment.captured", "order.paid"}
FAILED_EVENTS = {"payment.failed"}


def _hmac_sha256_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def _entity(body: Dict[str, Any], key: str) -> Dict[str, Any]:
    wrapper = body.get(key)
    entity = wrapper.get("entity") if isinstance(wrapper, dict) else None
    return entity if isinstance(entity, dict) else {}


class RazorpayGateway(PaymentGateway):
    """Razorpay Orders API client (basic auth with key id / key secret)"""

    name = GatewayName.RAZORPAY

    def __init__(
        self,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        base_url: str = "https://api.razorpay.com/v1",
    ):
        super().__init__(settings, transport=transport)
        self.base_url = base_url

    def _client(self, **kwargs) -> httpx.AsyncClient:
        return super()._client(
            auth=(self.settings.RAZORPAY_KEY_ID, self.settings.RAZORPAY_KEY_SECRET), **kwargs
        )

    def missing_configuration(self) -> list:
        required = {
            "RAZORPAY_KEY_ID": self.settings.RAZORPAY_KEY_ID,
            "RAZORPAY_KEY_SECRET": self.settings.RAZORPAY_KEY_SECRET,
            "RAZORPAY_WEBHOOK_SECRET": self.settings.RAZORPAY_WEBHOOK_SECRET,
        }
        return [key for key, value in required.items() if not value]

    async def create_order(
        self,
        amount_minor: int,
        merchant_order_id: str,
        metadata: Dict[str, str],
    ) -> GatewayOrder:
        if amount_minor <= 0:
            raise ValidationError("amount must be positive")

        payload = {
            "amount": int(amount_minor),
            "currency": self.settings.PAYMENT_CURRENCY,
            "receipt": merchant_order_id,
            "notes": {
                "internal_ref_id": metadata.get("internal_ref_id", ""),
                "payment_type": metadata.get("payment_type", ""),
                "extra": metadata.get("extra", ""),
            },
        }
        logger.info(f"Creating Razorpay order {merchant_order_id} for {amount_minor} paisa")
        try:
            async with self._client() as client:
                response = await client.post(f"{self.base_url}/orders", json=payload)
        except httpx.HTTPError as e:
            raise self._provider_error("create order", exc=e)

        if response.status_code not in (200, 201):
            raise self._provider_error("create order", response=response)

        data = response.json()
        return GatewayOrder(
            provider=self.name,
            provider_order_id=data["id"],
            merchant_order_id=merchant_order_id,
            amount=int(data.get("amount", amount_minor)),
            currency=data.get("currency", self.settings.PAYMENT_CURRENCY),
            raw=data,
        )

    def verify_signature(self, raw_payload: bytes, header: Optional[str]) -> bool:
        """X-Razorpay-Signature = hex(HMAC-SHA256(raw body, webhook secret))"""
        if not header or not self.settings.RAZORPAY_WEBHOOK_SECRET:
            logger.warning("Missing Razorpay webhook signature or secret")
            return False
        expected = _hmac_sha256_hex(self.settings.RAZORPAY_WEBHOOK_SECRET, raw_payload)
        is_valid = hmac.compare_digest(expected, header.strip())
        if not is_valid:
            logger.warning("Razorpay webhook signature verification failed")
        return is_valid

    def verify_payment_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        """Checkout callback: HMAC-SHA256("{order_id}|{payment_id}", key secret)"""
        if not signature:
            return False
        expected = _hmac_sha256_hex(
            self.settings.RAZORPAY_KEY_SECRET, f"{order_id}|{payment_id}".encode("utf-8")
        )
        return hmac.compare_digest(expected, signature)

    def _event_from_entities(
        self,
        payment: Dict[str, Any],
        order: Dict[str, Any],
        state: PaymentState,
        event_name: Optional[str],
    ) -> PaymentEvent:
        notes = {}
        for source in (order.get("notes"), payment.get("notes")):
            if isinstance(source, dict):
                notes.update({k: v for k, v in source.items() if v})

        failure_reason = None
        if state == PaymentState.FAILED:
            failure_reason = (
                payment.get("error_description") or payment.get("error_reason") or "Payment failed"
            )

        return PaymentEvent(
            provider=self.name,
            merchant_order_id=order.get("receipt"),
            provider_order_id=payment.get("order_id") or order.get("id"),
            state=state,
            amount=payment.get("amount") or order.get("amount"),
            transaction_id=payment.get("id"),
            payment_mode=payment.get("method"),
            internal_ref_id=notes.get("internal_ref_id"),
            payment_type=parse_payment_type(notes.get("payment_type")),
            failure_reason=failure_reason,
            event_name=event_name,
            raw={"payment": payment, "order": order},
        )

    def parse_webhook(self, payload: Dict[str, Any]) -> PaymentEvent:
        if not isinstance(payload, dict):
            raise ValidationError("Razorpay webhook body must be a JSON object")
        event_name = payload.get("event")
        body = payload.get("payload")
        if not event_name or not isinstance(body, dict):
            raise ValidationError("Invalid Razorpay webhook payload structure")

        payment = _entity(body, "payment")
        order = _entity(body, "order")
        if not payment and not order:
            raise ValidationError("Razorpay webhook carries no payment or order entity")

        if event_name in COMPLETED_EVENTS:
            state = PaymentState.COMPLETED
        elif event_name in FAILED_EVENTS:
            state = PaymentState.FAILED
        else:
            state = PaymentState.PENDING
        return self._event_from_entities(payment, order, state, event_name)

    def event_from_checkout(self, order_id: str, payment_id: str) -> PaymentEvent:
        """Client-side checkout completion (signature already verified)"""
        return PaymentEvent(
            provider=self.name,
            provider_order_id=order_id,
            state=PaymentState.COMPLETED,
            transaction_id=payment_id,
            event_name="checkout.verified",
        )

    async def check_status(
        self, merchant_order_id: str, provider_order_id: Optional[str] = None
    ) -> GatewayStatus:
        if not provider_order_id:
            raise ValidationError("Razorpay status check requires the provider order id")

        try:
            async with self._client() as client:
                order_response = await client.get(f"{self.base_url}/orders/{provider_order_id}")
                payments_response = await client.get(
                    f"{self.base_url}/orders/{provider_order_id}/payments"
                )
        except httpx.HTTPError as e:
            raise self._provider_error("check order status", exc=e)

        if order_response.status_code == 404:
            return GatewayStatus(
                provider=self.name, merchant_order_id=merchant_order_id, state=PaymentState.PENDING
            )
        if order_response.status_code != 200:
            raise self._provider_error("check order status", response=order_response)
        if payments_response.status_code != 200:
            raise self._provider_error("list order payments", response=payments_response)

        order = order_response.json()
        order.setdefault("receipt", merchant_order_id)
        payments: List[Dict[str, Any]] = payments_response.json().get("items", [])

        captured = [p for p in payments if p.get("status") == "captured"]
        if captured or order.get("status") == "paid":
            payment = captured[0] if captured else {}
            state = PaymentState.COMPLETED
        elif payments and all(p.get("status") == "failed" for p in payments):
            payment = payments[-1]
            state = PaymentState.FAILED
        else:
            payment = payments[-1] if payments else {}
            state = PaymentState.PENDING

        event = self._event_from_entities(payment, order, state, "status_check")
        return GatewayStatus(
            provider=self.name,
            merchant_order_id=merchant_order_id,
            state=state,
            event=event,
        )
