"""
결제 서비스

체크아웃 생성 → 게이트웨이 이벤트(웹훅 / 상태 조회 / Razorpay 체크아웃 검증) 정산.

- 게이트웨이 호출 전에 pending 레코드를 먼저 만들고, 호출이 실패하면 같은 요청 안에서 지웁니다.
- handle_event 는 레코드를 잠금 조회한 뒤 최종 상태(completed/failed)면 아무것도 바꾸지 않습니다.
  같은 이벤트가 몇 번 들어와도 결과는 한 번 적용한 것과 같습니다.
- 계정 생성/구독 적용/토큰 적립/추천 처리/레코드 상태 변경은 한 트랜잭션으로 커밋됩니다.
"""

import hashlib
import logging
import secrets
from datetime import datetime, timedelta
from typing import Callable, ContextManager, Dict, List, Optional, Tuple, Union

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from tokenapi.config import Settings, settings as default_settings
from tokenapi.core.exceptions import (
    BaseAPIException,
    ConflictError,
    InternalInconsistencyError,
    InvalidSignatureError,
    NoActiveSubscriptionError,
    NotFoundError,
    PaymentProviderError,
    ValidationError,
)
from tokenapi.database.session import get_db_context
from tokenapi.models.account import Account, AccountRole
from tokenapi.models.payment import (
    Order,
    OrderStatus,
    OrderType,
    TokenTransaction,
    TransactionStatus,
    TransactionType,
)
from tokenapi.providers.notifications import NotificationSender, notify_safely
from tokenapi.providers.payments.base import (
    PaymentGateway,
    generate_merchant_order_id,
    rupees_to_paisa,
)
from tokenapi.providers.payments.razorpay import RazorpayGateway
from tokenapi.repositories.account_repository import AccountRepository
from tokenapi.repositories.catalog_repository import PlanRepository, TokenPackageRepository
from tokenapi.repositories.payment_repository import OrderRepository, TokenTransactionRepository
from tokenapi.schemas.payment import (
    CheckoutResponse,
    GatewayName,
    PaymentEvent,
    PaymentState,
    PaymentType,
    RazorpayVerificationRequest,
    ReconciliationResult,
    ReconciliationStatus,
    SubscriptionCheckoutRequest,
    TokenCheckoutRequest,
)
from tokenapi.services.referral_service import ReferralService
from tokenapi.services.subscription_service import SubscriptionService
from tokenapi.services.token_service import TokenService
from tokenapi.utils.date_utils import service_day_start, utc_now
from tokenapi.utils.token_utils import calculate_total_tokens, generate_reference, is_plan_active

logger = logging.getLogger(__name__)

PaymentRecord = Union[Order, TokenTransaction]

PENDING_PROVIDER_PREFIX = "pending_"
DEFAULT_FAILURE_REASON = "Payment failed"


def hash_reset_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class PaymentService:
    """결제 생성 및 게이트웨이 이벤트 정산"""

    def __init__(
        self,
        db: Session,
        gateways: Dict[GatewayName, PaymentGateway],
        settings: Settings = default_settings,
        notifier: Optional[NotificationSender] = None,
    ):
        self.db = db
        self.gateways = gateways
        self.settings = settings
        self.notifier = notifier
        self.account_repo = AccountRepository(db)
        self.plan_repo = PlanRepository(db)
        self.package_repo = TokenPackageRepository(db)
        self.order_repo = OrderRepository(db)
        self.transaction_repo = TokenTransactionRepository(db)
        self.token_service = TokenService(db, settings, notifier)
        self.referral_service = ReferralService(
            db, settings, token_service=self.token_service, notifier=notifier
        )
        self.subscription_service = SubscriptionService(
            db,
            settings,
            token_service=self.token_service,
            referral_service=self.referral_service,
            notifier=notifier,
        )
        self._post_commit: List[Tuple[int, str, str, str, Optional[dict]]] = []

    def get_gateway(self, name: Union[GatewayName, str]) -> PaymentGateway:
        try:
            return self.gateways[GatewayName(name)]
        except (KeyError, ValueError):
            raise ValidationError(f"Unsupported payment gateway: {name}")

    # ------------------------------------------------------------------
    # 체크아웃
    # ------------------------------------------------------------------

    async def create_subscription_checkout(
        self, request: SubscriptionCheckoutRequest
    ) -> CheckoutResponse:
        """구독 결제 생성 (비회원 가능). 완료 시 이메일로 계정을 찾거나 만듭니다."""
        gateway = self.get_gateway(request.gateway)
        plan = self.plan_repo.get_active(request.plan_id)
        if plan is None:
            raise ValidationError("Plan not found or inactive", details={"plan_id": request.plan_id})

        referral_code = request.referral_code.strip().upper() if request.referral_code else None
        if referral_code:
            validation = self.referral_service.validate_referral_code(referral_code)
            if not validation.valid:
                raise ValidationError(validation.message, details={"referral_code": referral_code})

        email = request.email.lower()
        account = self.account_repo.get_by_email(email)
        client_order_id = generate_reference("SUB")
        merchant_order_id = generate_merchant_order_id(self.settings.PHONEPE_ORDER_PREFIX)
        amount_minor = rupees_to_paisa(plan.price)

        try:
            order = self.order_repo.create(
                client_order_id=client_order_id,
                provider_order_id=f"{PENDING_PROVIDER_PREFIX}{client_order_id}",
                merchant_order_id=merchant_order_id,
                gateway=gateway.name.value,
                account_email=email,
                account_name=request.name,
                account_phone=request.phone,
                account_id=account.id if account else None,
                plan_id=plan.id,
                amount=plan.price,
                currency=self.settings.PAYMENT_CURRENCY,
                status=OrderStatus.PENDING.value,
                type=OrderType.SUBSCRIPTION.value,
                referral_code=referral_code,
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        gateway_order = await self._call_gateway(
            gateway,
            order,
            amount_minor,
            merchant_order_id,
            {
                "internal_ref_id": client_order_id,
                "payment_type": PaymentType.SUBSCRIPTION.value,
                "extra": referral_code or "",
            },
        )

        order.provider_order_id = gateway_order.provider_order_id
        self.db.commit()
        logger.info(
            f"Created subscription checkout {client_order_id} ({plan.name}) via {gateway.name.value}"
        )
        return self._checkout_response(gateway, client_order_id, gateway_order)

    async def create_token_checkout(
        self, account_id: int, request: TokenCheckoutRequest
    ) -> CheckoutResponse:
        """토큰 패키지 결제 생성 (활성 구독 + 일일 구매 한도)"""
        gateway = self.get_gateway(request.gateway)
        account = self.account_repo.get_by_id(account_id)
        if account is None:
            raise NotFoundError(f"Account {account_id} not found")

        now = utc_now()
        if not is_plan_active(account, now):
            raise NoActiveSubscriptionError("Active subscription required to purchase tokens")

        package = self.package_repo.get_active(request.package_id)
        if package is None:
            raise NotFoundError(f"Token package {request.package_id} not found")

        purchased_today = self.transaction_repo.count_completed_purchases_since(
            account.id, package.id, service_day_start(now)
        )
        if package.max_purchase_per_day and purchased_today >= package.max_purchase_per_day:
            raise ValidationError(
                "Daily purchase limit reached for this package",
                details={"package_id": package.id, "limit": package.max_purchase_per_day},
            )

        reference = generate_reference("TKN")
        merchant_order_id = generate_merchant_order_id(self.settings.PHONEPE_ORDER_PREFIX)
        amount_minor = rupees_to_paisa(package.price)
        balance = calculate_total_tokens(account, now)

        try:
            transaction = self.transaction_repo.create(
                reference=reference,
                account_id=account.id,
                package_id=package.id,
                type=TransactionType.PURCHASE.value,
                token_amount=package.tokens,
                monetary_amount=package.price,
                currency=self.settings.PAYMENT_CURRENCY,
                status=TransactionStatus.PENDING.value,
                gateway=gateway.name.value,
                merchant_order_id=merchant_order_id,
                reason=f"package:{package.name}",
                balance_before=balance,
                balance_after=balance + package.tokens,
                expires_at=account.subscription_end_date,
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        gateway_order = await self._call_gateway(
            gateway,
            transaction,
            amount_minor,
            merchant_order_id,
            {
                "internal_ref_id": reference,
                "payment_type": PaymentType.TOKEN_PURCHASE.value,
                "extra": str(package.id),
            },
        )

        transaction.provider_order_id = gateway_order.provider_order_id
        self.db.commit()
        logger.info(
            f"Created token checkout {reference} ({package.tokens} tokens) for account {account.id}"
        )
        return self._checkout_response(gateway, reference, gateway_order)

    async def _call_gateway(self, gateway, record, amount_minor, merchant_order_id, metadata):
        """게이트웨이 주문 생성. 실패하면 방금 만든 pending 레코드를 지우고 예외를 다시 던집니다."""
        try:
            return await gateway.create_order(amount_minor, merchant_order_id, metadata)
        except Exception as e:
            logger.error(
                f"{gateway.name.value} order creation failed for {merchant_order_id}: {str(e)}"
            )
            self.db.delete(record)
            self.db.commit()
            if isinstance(e, BaseAPIException):
                raise
            raise PaymentProviderError(
                "Failed to create payment order", details={"gateway": gateway.name.value}
            ) from e

    def _checkout_response(self, gateway, internal_ref_id, gateway_order) -> CheckoutResponse:
        return CheckoutResponse(
            gateway=gateway.name,
            internal_ref_id=internal_ref_id,
            merchant_order_id=gateway_order.merchant_order_id,
            provider_order_id=gateway_order.provider_order_id,
            amount=gateway_order.amount,
            currency=gateway_order.currency,
            redirect_url=gateway_order.redirect_url,
            key_id=self.settings.RAZORPAY_KEY_ID if gateway.name == GatewayName.RAZORPAY else None,
        )

    # ------------------------------------------------------------------
    # 정산
    # ------------------------------------------------------------------

    def handle_event(self, event: PaymentEvent, now: Optional[datetime] = None) -> ReconciliationResult:
        """정규화된 결제 이벤트를 로컬 레코드에 반영 (멱등)"""
        if event.state == PaymentState.PENDING:
            return ReconciliationResult(
                status=ReconciliationStatus.PENDING,
                record_type=event.payment_type,
                message="Payment is still pending",
            )

        now = now or utc_now()
        self._post_commit = []
        try:
            record_type, record = self._locate_record(event)
            if record is None:
                self.db.rollback()
                logger.warning(
                    f"No local record for {event.provider.value} event "
                    f"(merchant={event.merchant_order_id}, provider={event.provider_order_id}, "
                    f"ref={event.internal_ref_id})"
                )
                return ReconciliationResult(
                    status=ReconciliationStatus.IGNORED, message="No matching payment record"
                )

            if (
                event.merchant_order_id
                and record.merchant_order_id
                and event.merchant_order_id != record.merchant_order_id
            ):
                self.db.rollback()
                logger.error(
                    f"Event merchant order {event.merchant_order_id} does not match record "
                    f"{record.merchant_order_id}; ignoring"
                )
                return ReconciliationResult(
                    status=ReconciliationStatus.IGNORED,
                    record_type=record_type,
                    message="Merchant order id mismatch",
                )

            if record.is_terminal:
                self.db.rollback()
                logger.info(
                    f"{record_type.value} record {self._record_id(record)} already {record.status}; "
                    f"skipping {event.provider.value} event"
                )
                return ReconciliationResult(
                    status=ReconciliationStatus.ALREADY_PROCESSED,
                    record_type=record_type,
                    record_id=self._record_id(record),
                    account_id=record.account_id,
                    message=f"Already {record.status}",
                )

            if record_type == PaymentType.SUBSCRIPTION:
                result = self._apply_subscription_event(record, event, now)
            else:
                result = self._apply_token_event(record, event, now)

            self.db.flush()
            self.db.commit()
        except StaleDataError:
            self.db.rollback()
            self.referral_service.discard_notifications()
            logger.warning(f"Concurrent update while reconciling {event.merchant_order_id}")
            raise ConflictError("Payment record was modified concurrently, please retry")
        except BaseAPIException:
            self.db.rollback()
            self.referral_service.discard_notifications()
            raise
        except Exception as e:
            self.db.rollback()
            self.referral_service.discard_notifications()
            logger.error(f"Failed to reconcile {event.provider.value} event: {str(e)}")
            raise

        self._send_post_commit_notifications()
        logger.info(
            f"Reconciled {event.provider.value} event for {result.record_type.value} "
            f"{result.record_id}: {result.message}"
        )
        return result

    def _locate_record(self, event: PaymentEvent) -> Tuple[Optional[PaymentType], Optional[PaymentRecord]]:
        """internal_ref_id → merchant_order_id → provider_order_id 순서로 잠금 조회"""
        ref = event.internal_ref_id
        if ref:
            if event.payment_type in (None, PaymentType.SUBSCRIPTION):
                order = self.order_repo.get_by_client_order_id(ref, for_update=True)
                if order is not None:
                    return PaymentType.SUBSCRIPTION, order
            if event.payment_type in (None, PaymentType.TOKEN_PURCHASE):
                transaction = self.transaction_repo.get_by_reference(ref, for_update=True)
                if transaction is not None:
                    return PaymentType.TOKEN_PURCHASE, transaction

        if event.merchant_order_id:
            order = self.order_repo.get_by_merchant_order_id(event.merchant_order_id, for_update=True)
            if order is not None:
                return PaymentType.SUBSCRIPTION, order
            transaction = self.transaction_repo.get_by_merchant_order_id(
                event.merchant_order_id, for_update=True
            )
            if transaction is not None:
                return PaymentType.TOKEN_PURCHASE, transaction

        if event.provider_order_id:
            order = self.order_repo.get_by_provider_order_id(event.provider_order_id, for_update=True)
            if order is not None:
                return PaymentType.SUBSCRIPTION, order
            transaction = self.transaction_repo.get_by_provider_order_id(
                event.provider_order_id, for_update=True
            )
            if transaction is not None:
                return PaymentType.TOKEN_PURCHASE, transaction

        return None, None

    @staticmethod
    def _record_id(record: PaymentRecord) -> str:
        if isinstance(record, Order):
            return record.client_order_id
        return record.reference

    def _mark_gateway_details(self, record: PaymentRecord, event: PaymentEvent) -> None:
        if event.transaction_id:
            record.provider_transaction_id = event.transaction_id
        if event.payment_mode:
            record.payment_mode = event.payment_mode
        if event.provider_order_id and (
            not record.provider_order_id
            or record.provider_order_id.startswith(PENDING_PROVIDER_PREFIX)
        ):
            record.provider_order_id = event.provider_order_id

    def _fail(self, record: PaymentRecord, record_type: PaymentType, event: PaymentEvent, reason: Optional[str] = None) -> ReconciliationResult:
        record.status = OrderStatus.FAILED.value if isinstance(record, Order) else TransactionStatus.FAILED.value
        record.failure_reason = reason or event.failure_reason or DEFAULT_FAILURE_REASON
        self._mark_gateway_details(record, event)
        logger.warning(
            f"{record_type.value} record {self._record_id(record)} failed: {record.failure_reason}"
        )
        return ReconciliationResult(
            status=ReconciliationStatus.PROCESSED,
            record_type=record_type,
            record_id=self._record_id(record),
            account_id=record.account_id,
            message=f"Marked failed: {record.failure_reason}",
        )

    def _apply_subscription_event(self, order: Order, event: PaymentEvent, now: datetime) -> ReconciliationResult:
        if event.state == PaymentState.FAILED:
            return self._fail(order, PaymentType.SUBSCRIPTION, event)

        plan = self.plan_repo.get_by_id(order.plan_id)
        if plan is None:
            raise InternalInconsistencyError(
                f"Plan {order.plan_id} referenced by order {order.client_order_id} no longer exists"
            )

        account = self._resolve_order_account(order, now)
        self._register_order_referral(order, account, now)
        self.subscription_service.apply_plan(account, plan, now)

        order.account_id = account.id
        order.status = OrderStatus.COMPLETED.value
        order.completed_at = now
        self._mark_gateway_details(order, event)

        if account.referred_by_id:
            self.referral_service.process_referral_activation(
                account.id, account.referred_by_id, commission=plan.referral_commission, now=now
            )

        self._post_commit.append(
            (
                account.id,
                "subscription_activated",
                "Subscription activated",
                f"Your {plan.name} plan is active until {account.subscription_end_date.isoformat()}.",
                {"plan_id": plan.id, "order": order.client_order_id},
            )
        )
        return ReconciliationResult(
            status=ReconciliationStatus.PROCESSED,
            record_type=PaymentType.SUBSCRIPTION,
            record_id=order.client_order_id,
            account_id=account.id,
            message=f"Plan {plan.name} applied",
        )

    def _resolve_order_account(self, order: Order, now: datetime) -> Account:
        """주문 계정 잠금 조회. 없으면 결제자 이메일로 찾고, 그래도 없으면 새로 만듭니다."""
        if order.account_id:
            account = self.account_repo.get_for_update(order.account_id)
            if account is not None:
                return account

        existing = self.account_repo.get_by_email(order.account_email)
        if existing is not None:
            return self.account_repo.get_for_update(existing.id)

        reset_token = secrets.token_urlsafe(32)
        try:
            with self.db.begin_nested():
                account = Account(
                    email=order.account_email.lower(),
                    name=order.account_name,
                    phone=order.account_phone,
                    role=AccountRole.USER.value,
                    is_active=True,
                    referral_code=self.referral_service.generate_referral_code(),
                    reset_token_hash=hash_reset_token(reset_token),
                    reset_token_expires_at=now
                    + timedelta(hours=self.settings.PASSWORD_RESET_EXPIRE_HOURS),
                    daily_limit=self.settings.DEFAULT_DAILY_TOKEN_LIMIT,
                )
                self.db.add(account)
                self.db.flush()
        except IntegrityError:
            logger.warning(
                f"Account for {order.account_email} was created concurrently; linking existing account"
            )
            existing = self.account_repo.get_by_email(order.account_email)
            if existing is None:
                raise InternalInconsistencyError(
                    f"Account creation for order {order.client_order_id} conflicted but no account exists"
                )
            return self.account_repo.get_for_update(existing.id)

        logger.info(f"Created account {account.id} from guest order {order.client_order_id}")
        self._post_commit.append(
            (
                account.id,
                "account_created",
                "Set your password",
                "Your account was created with your payment. Use the link to set a password.",
                {
                    "reset_url": f"{self.settings.FRONTEND_URL}/reset-password?token={reset_token}",
                },
            )
        )
        return account

    def _register_order_referral(self, order: Order, account: Account, now: datetime) -> None:
        """주문에 담긴 추천 코드로 추천 관계 등록 (이미 추천인이 있으면 유지)"""
        if not order.referral_code or account.referred_by_id:
            return
        referrer = self.account_repo.get_by_referral_code(order.referral_code)
        if referrer is None or referrer.id == account.id:
            logger.warning(
                f"Ignoring referral code {order.referral_code} on order {order.client_order_id}"
            )
            return
        self.referral_service.register_referral(referrer, account, now)

    def _apply_token_event(
        self, transaction: TokenTransaction, event: PaymentEvent, now: datetime
    ) -> ReconciliationResult:
        if event.state == PaymentState.FAILED:
            return self._fail(transaction, PaymentType.TOKEN_PURCHASE, event)

        account = self.account_repo.get_for_update(transaction.account_id)
        if account is None:
            raise InternalInconsistencyError(
                f"Account {transaction.account_id} for transaction {transaction.reference} not found"
            )

        if not is_plan_active(account, now):
            # 결제는 됐지만 적립할 수 없음 - 환불 대상으로 남김
            logger.error(
                f"Token purchase {transaction.reference} completed after plan expiry for account "
                f"{account.id}; refund required"
            )
            return self._fail(
                transaction,
                PaymentType.TOKEN_PURCHASE,
                event,
                reason="Subscription inactive when payment completed; refund required",
            )

        balance_before = calculate_total_tokens(account, now)
        self.token_service.credit_purchased(account, transaction.token_amount, now)

        transaction.status = TransactionStatus.COMPLETED.value
        transaction.completed_at = now
        transaction.balance_before = balance_before
        transaction.balance_after = calculate_total_tokens(account, now)
        transaction.expires_at = account.subscription_end_date
        self._mark_gateway_details(transaction, event)

        if account.referred_by_id:
            self.referral_service.process_referral_activation(
                account.id, account.referred_by_id, now=now
            )

        self._post_commit.append(
            (
                account.id,
                "tokens_purchased",
                "Tokens added",
                f"{transaction.token_amount} tokens were added to your balance.",
                {"reference": transaction.reference, "tokens": transaction.token_amount},
            )
        )
        return ReconciliationResult(
            status=ReconciliationStatus.PROCESSED,
            record_type=PaymentType.TOKEN_PURCHASE,
            record_id=transaction.reference,
            account_id=account.id,
            message=f"Credited {transaction.token_amount} purchased tokens",
        )

    def _send_post_commit_notifications(self) -> None:
        pending, self._post_commit = self._post_commit, []
        for account_id, kind, title, message, data in pending:
            notify_safely(self.notifier, account_id, kind, title, message, data)
        self.referral_service.flush_notifications()

    # ------------------------------------------------------------------
    # 클라이언트 검증 / 상태 조회
    # ------------------------------------------------------------------

    def verify_razorpay_payment(self, request: RazorpayVerificationRequest) -> ReconciliationResult:
        """Razorpay 체크아웃 완료 콜백 - 서명 검증 후 정산"""
        gateway = self.get_gateway(GatewayName.RAZORPAY)
        if not isinstance(gateway, RazorpayGateway):
            raise ValidationError("Razorpay gateway is not configured")
        if not gateway.verify_payment_signature(
            request.razorpay_order_id, request.razorpay_payment_id, request.razorpay_signature
        ):
            logger.warning(f"Invalid Razorpay checkout signature for {request.razorpay_order_id}")
            raise InvalidSignatureError("Invalid Razorpay payment signature")

        event = gateway.event_from_checkout(request.razorpay_order_id, request.razorpay_payment_id)
        return self.handle_event(event)

    async def reconcile_status(self, merchant_order_id: str) -> ReconciliationResult:
        """게이트웨이에 주문 상태를 직접 조회해 정산 (웹훅 누락 대비 폴링)"""
        record: Optional[PaymentRecord] = self.order_repo.get_by_merchant_order_id(merchant_order_id)
        if record is None:
            record = self.transaction_repo.get_by_merchant_order_id(merchant_order_id)
        if record is None:
            raise NotFoundError(f"Payment {merchant_order_id} not found")

        if record.is_terminal:
            return ReconciliationResult(
                status=ReconciliationStatus.ALREADY_PROCESSED,
                record_id=self._record_id(record),
                account_id=record.account_id,
                message=f"Already {record.status}",
            )

        gateway = self.get_gateway(record.gateway)
        provider_order_id = record.provider_order_id
        if provider_order_id and provider_order_id.startswith(PENDING_PROVIDER_PREFIX):
            provider_order_id = None

        status = await gateway.check_status(merchant_order_id, provider_order_id)
        if status.event is None or status.state == PaymentState.PENDING:
            return ReconciliationResult(
                status=ReconciliationStatus.PENDING,
                record_id=self._record_id(record),
                account_id=record.account_id,
                message="Payment is still pending",
            )
        return self.handle_event(status.event)


def process_event_in_background(
    event: PaymentEvent,
    gateways: Dict[GatewayName, PaymentGateway],
    settings: Settings = default_settings,
    notifier: Optional[NotificationSender] = None,
    session_scope: Callable[[], ContextManager[Session]] = get_db_context,
) -> None:
    """웹훅 응답 후 실행되는 정산 작업. 실패는 로그로만 남기고 게이트웨이 재전송/상태 조회에 맡깁니다."""
    try:
        with session_scope() as db:
            result = PaymentService(db, gateways, settings, notifier).handle_event(event)
        logger.info(
            f"Background {event.provider.value} event {event.event_name} for "
            f"{event.merchant_order_id}: {result.status.value}"
        )
    except Exception:
        logger.exception(
            f"Background processing failed for {event.provider.value} order {event.merchant_order_id}"
        )
