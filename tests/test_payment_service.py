import asyncio
import hashlib
import hmac
from contextlib import contextmanager
from datetime import timedelta
from decimal import Decimal
from unittest.mock import Mock

import httpx
import pytest

from tokenapi.core.exceptions import (
    InternalInconsistencyError,
    InvalidSignatureError,
    NoActiveSubscriptionError,
    NotFoundError,
    PaymentProviderError,
    ValidationError,
)
from tokenapi.models.account import Account
from tokenapi.models.payment import Order, TokenTransaction, TransactionStatus, TransactionType
from tokenapi.models.referral import ReferralEntry, ReferralStatus
from tokenapi.providers.payments import PaymentGateway, RazorpayGateway
from tokenapi.schemas.payment import (
    GatewayName,
    GatewayOrder,
    GatewayStatus,
    PaymentEvent,
    PaymentState,
    PaymentType,
    RazorpayVerificationRequest,
    ReconciliationStatus,
    SubscriptionCheckoutRequest,
    TokenCheckoutRequest,
)
from tokenapi.services.payment_service import PaymentService, process_event_in_background
from tokenapi.services.token_service import TokenService
from tokenapi.utils.date_utils import utc_now


class FakeGateway(PaymentGateway):
    """네트워크 없이 주문을 만들어 주는 게이트웨이"""

    name = GatewayName.PHONEPE

    def __init__(self, settings, error=None):
        super().__init__(settings)
        self.error = error
        self.status = None
        self.created = []

    async def create_order(self, amount_minor, merchant_order_id, metadata):
        if self.error is not None:
            raise self.error
        self.created.append((amount_minor, merchant_order_id, metadata))
        return GatewayOrder(
            provider=self.name,
            provider_order_id=f"OMO_{len(self.created)}",
            merchant_order_id=merchant_order_id,
            amount=amount_minor,
            redirect_url="https://pay.example.com/r",
        )

    def verify_signature(self, raw_payload, header):
        return True

    async def check_status(self, merchant_order_id, provider_order_id=None):
        if self.status is not None:
            return self.status
        return GatewayStatus(provider=self.name, merchant_order_id=merchant_order_id, state=PaymentState.PENDING)

    def parse_webhook(self, payload):
        raise ValidationError("not supported")


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def notifier():
    return Mock()


@pytest.fixture
def gateway(test_settings):
    return FakeGateway(test_settings)


@pytest.fixture
def payment_service(db, gateway, test_settings, notifier):
    return PaymentService(db, {GatewayName.PHONEPE: gateway}, test_settings, notifier)


@pytest.fixture
def plan(plan_factory):
    return plan_factory()


@pytest.fixture
def package(package_factory):
    return package_factory()


def completed_event(checkout, payment_type, **overrides):
    fields = dict(
        provider=checkout.gateway,
        merchant_order_id=checkout.merchant_order_id,
        provider_order_id=checkout.provider_order_id,
        state=PaymentState.COMPLETED,
        internal_ref_id=checkout.internal_ref_id,
        payment_type=payment_type,
        transaction_id="TX_1",
        payment_mode="UPI_QR",
    )
    fields.update(overrides)
    return PaymentEvent(**fields)


def sent_kinds(notifier):
    return [c.args[1] for c in notifier.send.call_args_list]


class TestSubscriptionCheckout:
    """구독 결제 생성"""

    def test_creates_pending_order_before_redirect(self, payment_service, gateway, plan, db):
        # When
        response = run(
            payment_service.create_subscription_checkout(
                SubscriptionCheckoutRequest(plan_id=plan.id, email="Guest@Example.com", name="Guest")
            )
        )

        # Then
        assert response.provider_order_id == "OMO_1"
        assert response.amount == 249900
        assert response.redirect_url == "https://pay.example.com/r"
        assert response.internal_ref_id.startswith("SUB_")
        order = db.query(Order).one()
        assert order.status == "pending"
        assert order.account_email == "guest@example.com"
        assert order.account_id is None
        assert order.provider_order_id == "OMO_1"
        amount, merchant_order_id, metadata = gateway.created[0]
        assert merchant_order_id == response.merchant_order_id
        assert metadata["payment_type"] == "subscription"

    def test_gateway_failure_removes_pending_order(self, db, test_settings, plan):
        gateway = FakeGateway(test_settings, error=PaymentProviderError("down"))
        service = PaymentService(db, {GatewayName.PHONEPE: gateway}, test_settings)

        with pytest.raises(PaymentProviderError):
            run(service.create_subscription_checkout(SubscriptionCheckoutRequest(plan_id=plan.id, email="a@example.com", name="A")))

        assert db.query(Order).count() == 0

    def test_unexpected_gateway_error_is_wrapped(self, db, test_settings, plan):
        gateway = FakeGateway(test_settings, error=RuntimeError("socket closed"))
        service = PaymentService(db, {GatewayName.PHONEPE: gateway}, test_settings)

        with pytest.raises(PaymentProviderError):
            run(service.create_subscription_checkout(SubscriptionCheckoutRequest(plan_id=plan.id, email="a@example.com", name="A")))

        assert db.query(Order).count() == 0

    def test_inactive_plan_rejected(self, payment_service, plan_factory):
        retired = plan_factory(name="Legacy", is_active=False)

        with pytest.raises(ValidationError):
            run(payment_service.create_subscription_checkout(SubscriptionCheckoutRequest(plan_id=retired.id, email="a@example.com", name="A")))

    def test_invalid_referral_code_rejected(self, payment_service, plan, db):
        request = SubscriptionCheckoutRequest(plan_id=plan.id, email="a@example.com", name="A", referral_code="NOPE")

        with pytest.raises(ValidationError):
            run(payment_service.create_subscription_checkout(request))
        assert db.query(Order).count() == 0

    def test_unsupported_gateway(self, payment_service, plan):
        request = SubscriptionCheckoutRequest(plan_id=plan.id, email="a@example.com", name="A", gateway=GatewayName.RAZORPAY)

        with pytest.raises(ValidationError):
            run(payment_service.create_subscription_checkout(request))


class TestTokenCheckout:
    """토큰 패키지 결제 생성"""

    def test_creates_pending_purchase(self, payment_service, account_factory, plan, package, db):
        account = account_factory(plan=plan, daily_current=100)

        response = run(payment_service.create_token_checkout(account.id, TokenCheckoutRequest(package_id=package.id)))

        assert response.internal_ref_id.startswith("TKN_")
        assert response.amount == 39900
        transaction = db.query(TokenTransaction).filter_by(reference=response.internal_ref_id).one()
        assert transaction.status == TransactionStatus.PENDING.value
        assert transaction.token_amount == 300
        assert transaction.balance_before == 100
        assert transaction.balance_after == 400

    def test_requires_active_plan(self, payment_service, account_factory, package):
        account = account_factory()

        with pytest.raises(NoActiveSubscriptionError):
            run(payment_service.create_token_checkout(account.id, TokenCheckoutRequest(package_id=package.id)))

    def test_unknown_package(self, payment_service, account_factory, plan):
        account = account_factory(plan=plan)

        with pytest.raises(NotFoundError):
            run(payment_service.create_token_checkout(account.id, TokenCheckoutRequest(package_id=999)))

    def test_daily_purchase_limit(self, payment_service, account_factory, plan, package_factory, db):
        # Given
        package = package_factory(name="Emergency Boost", tokens=100, price="149", max_per_day=1)
        account = account_factory(plan=plan)
        db.add(
            TokenTransaction(
                reference="TKN_EARLIER",
                account_id=account.id,
                package_id=package.id,
                type=TransactionType.PURCHASE.value,
                token_amount=100,
                status=TransactionStatus.COMPLETED.value,
                completed_at=utc_now(),
            )
        )
        db.commit()

        # When / Then
        with pytest.raises(ValidationError):
            run(payment_service.create_token_checkout(account.id, TokenCheckoutRequest(package_id=package.id)))


class TestHandleSubscriptionEvent:
    """구독 결제 정산"""

    @pytest.fixture
    def checkout(self, payment_service, plan):
        return run(
            payment_service.create_subscription_checkout(
                SubscriptionCheckoutRequest(plan_id=plan.id, email="guest@example.com", name="Guest")
            )
        )

    def test_completed_payment_creates_account_and_applies_plan(self, payment_service, checkout, plan, db, notifier, now):
        # When
        result = payment_service.handle_event(completed_event(checkout, PaymentType.SUBSCRIPTION), now)

        # Then
        assert result.status == ReconciliationStatus.PROCESSED
        account = db.query(Account).filter_by(email="guest@example.com").one()
        assert result.account_id == account.id
        assert account.plan_id == plan.id
        assert account.subscription_end_date == now + timedelta(days=95)
        assert account.bonus_current == 500
        assert account.reset_token_hash is not None
        assert account.referral_code is not None
        order = db.query(Order).one()
        assert order.status == "completed"
        assert order.account_id == account.id
        assert order.provider_transaction_id == "TX_1"
        assert sent_kinds(notifier) == ["account_created", "subscription_activated"]
        assert "reset-password?token=" in notifier.send.call_args_list[0].args[4]["reset_url"]

    def test_duplicate_event_is_applied_once(self, payment_service, checkout, db, now):
        event = completed_event(checkout, PaymentType.SUBSCRIPTION)
        payment_service.handle_event(event, now)

        result = payment_service.handle_event(event, now)

        assert result.status == ReconciliationStatus.ALREADY_PROCESSED
        assert db.query(Account).count() == 1
        bonus = db.query(TokenTransaction).filter_by(type=TransactionType.BONUS.value).all()
        assert len(bonus) == 1

    def test_existing_account_is_linked_by_email(self, payment_service, checkout, account_factory, db, now):
        existing = account_factory(email="guest@example.com")

        result = payment_service.handle_event(completed_event(checkout, PaymentType.SUBSCRIPTION), now)

        assert result.account_id == existing.id
        assert db.query(Account).count() == 1

    def test_concurrently_created_account_is_linked(self, payment_service, checkout, account_factory, db, notifier, now):
        """이메일 조회 직후 다른 요청이 같은 계정을 만든 경우 → 고유 제약 위반 후 재조회하여 연결"""
        # Given
        existing = account_factory(email="guest@example.com")
        lookup = payment_service.account_repo.get_by_email
        calls = {"count": 0}

        def miss_first_lookup(email):
            calls["count"] += 1
            if calls["count"] == 1:
                return None
            return lookup(email)

        payment_service.account_repo.get_by_email = miss_first_lookup

        # When
        result = payment_service.handle_event(completed_event(checkout, PaymentType.SUBSCRIPTION), now)

        # Then
        assert result.status == ReconciliationStatus.PROCESSED
        assert result.account_id == existing.id
        assert db.query(Account).count() == 1
        assert db.query(Order).one().account_id == existing.id
        assert "account_created" not in sent_kinds(notifier)

    def test_failed_event_records_reason(self, payment_service, checkout, db, notifier):
        event = completed_event(checkout, PaymentType.SUBSCRIPTION, state=PaymentState.FAILED, failure_reason="Card declined")

        result = payment_service.handle_event(event)

        assert result.status == ReconciliationStatus.PROCESSED
        order = db.query(Order).one()
        assert order.status == "failed"
        assert order.failure_reason == "Card declined"
        assert db.query(Account).count() == 0
        notifier.send.assert_not_called()

    def test_late_success_after_failure_is_ignored(self, payment_service, checkout, db):
        payment_service.handle_event(completed_event(checkout, PaymentType.SUBSCRIPTION, state=PaymentState.FAILED))

        result = payment_service.handle_event(completed_event(checkout, PaymentType.SUBSCRIPTION))

        assert result.status == ReconciliationStatus.ALREADY_PROCESSED
        assert db.query(Order).one().status == "failed"

    def test_cancelled_order_is_not_completed_later(self, payment_service, checkout, db):
        db.query(Order).one().status = "cancelled"
        db.commit()

        result = payment_service.handle_event(completed_event(checkout, PaymentType.SUBSCRIPTION))

        assert result.status == ReconciliationStatus.ALREADY_PROCESSED
        assert db.query(Order).one().status == "cancelled"
        assert db.query(Account).count() == 0

    def test_event_located_by_merchant_order_id_only(self, payment_service, checkout, db):
        event = completed_event(checkout, None, internal_ref_id=None, provider_order_id=None)

        result = payment_service.handle_event(event)

        assert result.status == ReconciliationStatus.PROCESSED
        assert db.query(Order).one().status == "completed"

    def test_merchant_order_mismatch_is_ignored(self, payment_service, checkout, db):
        event = completed_event(checkout, PaymentType.SUBSCRIPTION, merchant_order_id="ORD_OTHER")

        result = payment_service.handle_event(event)

        assert result.status == ReconciliationStatus.IGNORED
        assert db.query(Order).one().status == "pending"

    def test_unknown_record_is_ignored(self, payment_service):
        event = PaymentEvent(provider=GatewayName.PHONEPE, merchant_order_id="ORD_UNKNOWN", state=PaymentState.COMPLETED)

        assert payment_service.handle_event(event).status == ReconciliationStatus.IGNORED

    def test_missing_plan_is_inconsistency(self, payment_service, checkout, db):
        order = db.query(Order).one()
        order.plan_id = 9999
        db.commit()

        with pytest.raises(InternalInconsistencyError):
            payment_service.handle_event(completed_event(checkout, PaymentType.SUBSCRIPTION))

        assert db.query(Order).one().status == "pending"
        assert db.query(Account).count() == 0

    def test_pending_event_changes_nothing(self, payment_service, checkout, db):
        result = payment_service.handle_event(completed_event(checkout, PaymentType.SUBSCRIPTION, state=PaymentState.PENDING))

        assert result.status == ReconciliationStatus.PENDING
        assert db.query(Order).one().status == "pending"


def test_end_to_end_subscribe_then_spend(payment_service, plan_factory, db, test_settings):
    """신규 결제 → 100/500 지급 → 150 차감 시 daily 100 + bonus 50"""
    # Given
    plan = plan_factory(name="Basic", price="999", duration_days=30, daily=100, bonus=500)
    checkout = run(
        payment_service.create_subscription_checkout(
            SubscriptionCheckoutRequest(plan_id=plan.id, email="e2e@example.com", name="E2E")
        )
    )

    # When
    payment_service.handle_event(completed_event(checkout, PaymentType.SUBSCRIPTION))
    account = db.query(Account).filter_by(email="e2e@example.com").one()
    balance = TokenService(db, test_settings).get_breakdown(account.id)
    deduction = TokenService(db, test_settings).deduct(account.id, 150)

    # Then
    assert balance.plan_expiry.is_active is True
    assert (balance.daily.current, balance.bonus.current, balance.total) == (100, 500, 600)
    assert deduction.breakdown.model_dump() == {"daily": 100, "purchased": 0, "bonus": 50, "prize": 0}
    assert deduction.remaining_balance == 450


class TestReferralThroughPayment:
    def test_order_referral_code_activates_referrer_entry(self, payment_service, account_factory, plan, db, now):
        # Given
        referrer = account_factory(email="referrer@example.com", plan=plan, referral_code="REFCODE00001")
        checkout = run(
            payment_service.create_subscription_checkout(
                SubscriptionCheckoutRequest(plan_id=plan.id, email="friend@example.com", name="Friend", referral_code="refcode00001")
            )
        )

        # When
        payment_service.handle_event(completed_event(checkout, PaymentType.SUBSCRIPTION), now)

        # Then
        db.expire_all()
        friend = db.query(Account).filter_by(email="friend@example.com").one()
        assert friend.referred_by_id == referrer.id
        entry = db.query(ReferralEntry).one()
        assert entry.subscription_status == ReferralStatus.ACTIVE.value
        stored = db.get(Account, referrer.id)
        assert stored.referral_active == 1
        assert stored.referral_total_earnings == Decimal("250")


class TestHandleTokenEvent:
    """토큰 구매 정산"""

    @pytest.fixture
    def account(self, account_factory, plan):
        return account_factory(plan=plan, daily_current=100)

    @pytest.fixture
    def checkout(self, payment_service, account, package):
        return run(payment_service.create_token_checkout(account.id, TokenCheckoutRequest(package_id=package.id)))

    def test_completed_purchase_credits_purchased_bucket(self, payment_service, checkout, account, db, notifier, now):
        result = payment_service.handle_event(completed_event(checkout, PaymentType.TOKEN_PURCHASE), now)

        assert result.status == ReconciliationStatus.PROCESSED
        db.expire_all()
        stored = db.get(Account, account.id)
        assert stored.purchased_current == 300
        assert stored.purchased_total == 300
        transaction = db.query(TokenTransaction).filter_by(reference=checkout.internal_ref_id).one()
        assert transaction.status == TransactionStatus.COMPLETED.value
        assert transaction.balance_after == 400
        assert transaction.provider_transaction_id == "TX_1"
        assert sent_kinds(notifier) == ["tokens_purchased"]

    def test_duplicate_webhook_credits_once(self, payment_service, checkout, account, db, now):
        event = completed_event(checkout, PaymentType.TOKEN_PURCHASE)
        payment_service.handle_event(event, now)
        payment_service.handle_event(event, now)

        db.expire_all()
        assert db.get(Account, account.id).purchased_current == 300

    def test_payment_after_plan_expiry_needs_refund(self, payment_service, checkout, account, db, now):
        """플랜 만료 후 결제 완료 → 적립하지 않고 환불 대상으로 표시"""
        later = now + timedelta(days=31)

        result = payment_service.handle_event(completed_event(checkout, PaymentType.TOKEN_PURCHASE), later)

        assert result.status == ReconciliationStatus.PROCESSED
        transaction = db.query(TokenTransaction).filter_by(reference=checkout.internal_ref_id).one()
        assert transaction.status == TransactionStatus.FAILED.value
        assert "refund required" in transaction.failure_reason
        db.expire_all()
        assert db.get(Account, account.id).purchased_current == 0


class TestRazorpayVerification:
    @pytest.fixture
    def razorpay(self, test_settings):
        def handler(request):
            return httpx.Response(200, json={"id": "order_RZP1", "amount": 249900, "currency": "INR"})

        return RazorpayGateway(test_settings, transport=httpx.MockTransport(handler))

    @pytest.fixture
    def service(self, db, razorpay, test_settings):
        return PaymentService(db, {GatewayName.RAZORPAY: razorpay}, test_settings)

    def sign(self, message):
        return hmac.new(b"rzp-key-secret", message.encode(), hashlib.sha256).hexdigest()

    def test_valid_checkout_signature_completes_order(self, service, plan, db):
        checkout = run(
            service.create_subscription_checkout(
                SubscriptionCheckoutRequest(plan_id=plan.id, email="rzp@example.com", name="R", gateway=GatewayName.RAZORPAY)
            )
        )
        assert checkout.key_id == "rzp_test_key"

        result = service.verify_razorpay_payment(
            RazorpayVerificationRequest(
                razorpay_order_id="order_RZP1",
                razorpay_payment_id="pay_1",
                razorpay_signature=self.sign("order_RZP1|pay_1"),
            )
        )

        assert result.status == ReconciliationStatus.PROCESSED
        assert db.query(Order).one().provider_transaction_id == "pay_1"

    def test_bad_signature_rejected(self, service):
        request = RazorpayVerificationRequest(razorpay_order_id="order_RZP1", razorpay_payment_id="pay_1", razorpay_signature="bad")

        with pytest.raises(InvalidSignatureError):
            service.verify_razorpay_payment(request)


class TestReconcileStatus:
    """웹훅 누락 시 상태 조회로 정산"""

    @pytest.fixture
    def checkout(self, payment_service, plan):
        return run(
            payment_service.create_subscription_checkout(
                SubscriptionCheckoutRequest(plan_id=plan.id, email="poll@example.com", name="Poll")
            )
        )

    def test_pending_at_gateway(self, payment_service, checkout):
        result = run(payment_service.reconcile_status(checkout.merchant_order_id))

        assert result.status == ReconciliationStatus.PENDING

    def test_completed_at_gateway_applies_event(self, payment_service, gateway, checkout, db):
        gateway.status = GatewayStatus(
            provider=GatewayName.PHONEPE,
            merchant_order_id=checkout.merchant_order_id,
            state=PaymentState.COMPLETED,
            event=completed_event(checkout, PaymentType.SUBSCRIPTION),
        )

        result = run(payment_service.reconcile_status(checkout.merchant_order_id))

        assert result.status == ReconciliationStatus.PROCESSED
        again = run(payment_service.reconcile_status(checkout.merchant_order_id))
        assert again.status == ReconciliationStatus.ALREADY_PROCESSED

    def test_unknown_order(self, payment_service):
        with pytest.raises(NotFoundError):
            run(payment_service.reconcile_status("ORD_MISSING"))


class TestBackgroundProcessing:
    def test_event_processed_in_own_session(self, payment_service, gateway, plan, session_factory, test_settings, db):
        checkout = run(
            payment_service.create_subscription_checkout(
                SubscriptionCheckoutRequest(plan_id=plan.id, email="bg@example.com", name="Bg")
            )
        )

        @contextmanager
        def session_scope():
            session = session_factory()
            try:
                yield session
                session.commit()
            finally:
                session.close()

        process_event_in_background(
            completed_event(checkout, PaymentType.SUBSCRIPTION),
            {GatewayName.PHONEPE: gateway},
            test_settings,
            session_scope=session_scope,
        )

        db.expire_all()
        assert db.query(Order).one().status == "completed"

    def test_errors_are_logged_not_raised(self, gateway, test_settings):
        @contextmanager
        def broken_scope():
            raise RuntimeError("database unavailable")
            yield

        event = PaymentEvent(provider=GatewayName.PHONEPE, merchant_order_id="ORD_X", state=PaymentState.COMPLETED)

        process_event_in_background(event, {GatewayName.PHONEPE: gateway}, test_settings, session_scope=broken_scope)
