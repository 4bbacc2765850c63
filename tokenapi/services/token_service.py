"""
토큰 서비스 - 잔액 조회 / 차감 / 적립

모든 잔액 변경은 mutate_account 한 곳을 거칩니다:
계정 행 잠금 → 변경 → 커밋, 동시 수정(StaleDataError) 시 롤백 후 재시도.
결제 처리처럼 더 큰 작업 단위 안에서 쓰는 credit_* 메서드는 커밋하지 않습니다.
"""

import logging
from datetime import datetime
from typing import Callable, List, Optional, TypeVar

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from tokenapi.config import Settings, settings as default_settings
from tokenapi.core.exceptions import (
    BaseAPIException,
    ConflictError,
    InsufficientTokensError,
    NoActiveSubscriptionError,
    NotFoundError,
    SubscriptionExpiredError,
    ValidationError,
)
from tokenapi.models.account import Account
from tokenapi.models.payment import TransactionStatus, TransactionType
from tokenapi.providers.notifications import NotificationSender, notify_safely
from tokenapi.repositories.account_repository import AccountRepository
from tokenapi.repositories.catalog_repository import TokenPackageRepository
from tokenapi.repositories.payment_repository import TokenTransactionRepository
from tokenapi.schemas.tokens import (
    SubscriptionSummary,
    TokenBalanceResponse,
    TokenBreakdown,
    TokenCreditResponse,
    TokenDeductionResponse,
    TokenHistoryResponse,
    TokenPackageView,
    TokenTransactionEntry,
)
from tokenapi.utils.date_utils import utc_now
from tokenapi.utils.token_utils import (
    apply_deduction,
    calculate_total_tokens,
    generate_reference,
    get_token_breakdown,
    is_plan_active,
)

logger = logging.getLogger(__name__)

R = TypeVar("R")


class TokenService:
    """토큰 버킷 관련 비즈니스 로직을 담당하는 서비스"""

    def __init__(
        self,
        db: Session,
        settings: Settings = default_settings,
        notifier: Optional[NotificationSender] = None,
    ):
        self.db = db
        self.settings = settings
        self.notifier = notifier
        self.account_repo = AccountRepository(db)
        self.transaction_repo = TokenTransactionRepository(db)
        self.package_repo = TokenPackageRepository(db)

    # ------------------------------------------------------------------
    # 작업 단위
    # ------------------------------------------------------------------

    def lock_account(self, account_id: int) -> Account:
        account = self.account_repo.get_for_update(account_id)
        if account is None:
            raise NotFoundError(f"Account {account_id} not found")
        return account

    def mutate_account(
        self,
        account_id: int,
        mutation: Callable[[Account], R],
        action: str = "token mutation",
        on_rollback: Optional[Callable[[], None]] = None,
    ) -> R:
        """계정 행을 잠그고 mutation을 적용한 뒤 커밋합니다.

        동시 수정으로 version_id가 어긋나면 롤백 후 TOKEN_MUTATION_MAX_RETRIES까지 재시도하고,
        그래도 실패하면 ConflictError를 던집니다. 실패 시 어떤 버킷도 바뀌지 않습니다.
        on_rollback은 롤백할 때마다 호출됩니다 (mutation이 쌓아 둔 후속 작업 폐기용).
        """
        attempts = max(1, self.settings.TOKEN_MUTATION_MAX_RETRIES)
        for attempt in range(1, attempts + 1):
            try:
                account = self.lock_account(account_id)
                result = mutation(account)
                self.db.flush()
                self.db.commit()
                return result
            except StaleDataError:
                self.db.rollback()
                self._rolled_back(on_rollback)
                logger.warning(
                    f"Concurrent update on account {account_id} during {action} (attempt {attempt}/{attempts})"
                )
            except BaseAPIException:
                self.db.rollback()
                self._rolled_back(on_rollback)
                raise
            except Exception as e:
                self.db.rollback()
                self._rolled_back(on_rollback)
                logger.error(f"Failed {action} for account {account_id}: {str(e)}")
                raise

        raise ConflictError(
            f"Account {account_id} is being modified concurrently, please retry",
            details={"account_id": account_id, "attempts": attempts},
        )

    @staticmethod
    def _rolled_back(on_rollback: Optional[Callable[[], None]]) -> None:
        if on_rollback is not None:
            on_rollback()

    # ------------------------------------------------------------------
    # 조회
    # ------------------------------------------------------------------

    def _get_account(self, account_id: int) -> Account:
        account = self.account_repo.get_by_id(account_id)
        if account is None:
            raise NotFoundError(f"Account {account_id} not found")
        return account

    def get_breakdown(self, account_id: int, now: Optional[datetime] = None) -> TokenBreakdown:
        """버킷별 잔액 (부작용 없음)"""
        account = self._get_account(account_id)
        return get_token_breakdown(account, now)

    def get_balance(self, account_id: int) -> TokenBalanceResponse:
        """잔액 + 레거시 단일 잔액 + 구독 요약"""
        account = self._get_account(account_id)
        breakdown = get_token_breakdown(account)
        plan = account.plan
        return TokenBalanceResponse(
            breakdown=breakdown,
            balance=breakdown.legacy(),
            subscription=SubscriptionSummary(
                plan_id=account.plan_id,
                plan_name=plan.name if plan else "No Plan",
                is_active=breakdown.plan_expiry.is_active,
                end_date=breakdown.plan_expiry.end_date,
                days_remaining=breakdown.plan_expiry.days_remaining,
            ),
        )

    def get_history(self, account_id: int, page: int = 1, page_size: Optional[int] = None) -> TokenHistoryResponse:
        """토큰 거래 기록 (최신순)"""
        page = max(page, 1)
        page_size = min(page_size or self.settings.TOKEN_HISTORY_PAGE_SIZE, 100)
        items, total = self.transaction_repo.list_for_account(
            account_id, limit=page_size, offset=(page - 1) * page_size
        )
        return TokenHistoryResponse(
            transactions=[TokenTransactionEntry.model_validate(item) for item in items],
            total_count=total,
            page=page,
            page_size=page_size,
            has_next=page * page_size < total,
        )

    def list_packages(self) -> List[TokenPackageView]:
        return [TokenPackageView.model_validate(p) for p in self.package_repo.list_active()]

    # ------------------------------------------------------------------
    # 차감
    # ------------------------------------------------------------------

    def deduct(self, account_id: int, amount: int, reason: str = "resource_access") -> TokenDeductionResponse:
        """daily → purchased → bonus → prize 순서로 토큰 차감

        Raises:
            SubscriptionExpiredError: 플랜이 없거나 만료됨
            InsufficientTokensError: 사용 가능 총량 < amount
        """
        if amount <= 0:
            raise ValidationError("Deduction amount must be positive", details={"amount": amount})

        def _deduct(account: Account) -> TokenDeductionResponse:
            now = utc_now()
            if not is_plan_active(account, now):
                raise SubscriptionExpiredError()

            available = calculate_total_tokens(account, now)
            if available < amount:
                raise InsufficientTokensError(required=amount, available=available)

            breakdown = apply_deduction(account, amount)
            balance = get_token_breakdown(account, now)
            return TokenDeductionResponse(
                tokens_deducted=breakdown.total,
                breakdown=breakdown,
                remaining_balance=balance.total,
                reason=reason,
                balance=balance,
            )

        result = self.mutate_account(account_id, _deduct, action="deduction")
        logger.info(
            f"Deducted {amount} tokens from account {account_id} for {reason}: "
            f"{result.breakdown.model_dump()} remaining={result.remaining_balance}"
        )
        return result

    # ------------------------------------------------------------------
    # 적립 (작업 단위 안에서 사용, 커밋하지 않음)
    # ------------------------------------------------------------------

    def _require_active_plan(self, account: Account, now: datetime) -> None:
        if not is_plan_active(account, now):
            raise NoActiveSubscriptionError(
                "Active subscription required to receive tokens",
                details={"account_id": account.id},
            )

    def credit_purchased(self, account: Account, amount: int, now: Optional[datetime] = None) -> None:
        now = now or utc_now()
        self._require_active_plan(account, now)
        account.purchased_current = (account.purchased_current or 0) + amount
        account.purchased_total = (account.purchased_total or 0) + amount
        account.purchased_last_purchased_at = now
        account.purchased_expires_at = account.subscription_end_date

    def credit_bonus(
        self, account: Account, amount: int, now: Optional[datetime] = None, replace: bool = True
    ) -> None:
        """보너스 지급. replace=True면 기존 보너스를 대체 (가입/갱신 기본 동작)"""
        now = now or utc_now()
        self._require_active_plan(account, now)
        if replace:
            account.bonus_current = amount
            account.bonus_initial = amount
            account.bonus_used = 0
        else:
            account.bonus_current = (account.bonus_current or 0) + amount
            account.bonus_initial = (account.bonus_initial or 0) + amount
        account.bonus_granted_at = now
        account.bonus_expires_at = account.subscription_end_date

    def credit_prize(
        self,
        account: Account,
        amount: int,
        prize_type: str,
        granted_by: str = "system",
        now: Optional[datetime] = None,
    ) -> None:
        now = now or utc_now()
        self._require_active_plan(account, now)
        account.prize_current = (account.prize_current or 0) + amount
        account.prize_granted_at = now
        account.prize_granted_by = granted_by
        account.prize_type = prize_type
        account.prize_expires_at = account.subscription_end_date
        self.account_repo.add_prize_grant(account, amount, prize_type, granted_by, now)

    def record_transaction(
        self,
        account: Account,
        type: TransactionType,
        token_amount: int,
        reason: str,
        balance_before: Optional[int] = None,
        now: Optional[datetime] = None,
    ):
        """결제와 무관한 토큰 변동 (보너스 지급, 만료 소멸) 감사 기록"""
        now = now or utc_now()
        return self.transaction_repo.create(
            reference=generate_reference("TKN"),
            account_id=account.id,
            type=type.value,
            token_amount=token_amount,
            status=TransactionStatus.COMPLETED.value,
            reason=reason,
            balance_before=balance_before,
            balance_after=calculate_total_tokens(account, now),
            expires_at=account.subscription_end_date,
            completed_at=now,
        )

    # ------------------------------------------------------------------
    # 적립 (단독 호출, 커밋 포함)
    # ------------------------------------------------------------------

    def _positive(self, amount: int) -> None:
        if amount <= 0:
            raise ValidationError("Token amount must be positive", details={"amount": amount})

    def add_purchased_tokens(self, account_id: int, amount: int, transaction_ref: str) -> TokenCreditResponse:
        """구매 토큰 적립 (활성 구독 필요)"""
        self._positive(amount)

        def _credit(account: Account) -> TokenCreditResponse:
            self.credit_purchased(account, amount)
            return TokenCreditResponse(
                tokens_added=amount, bucket="purchased", balance=get_token_breakdown(account)
            )

        result = self.mutate_account(account_id, _credit, action="purchased credit")
        logger.info(f"Added {amount} purchased tokens to account {account_id} (ref {transaction_ref})")
        return result

    def grant_bonus_tokens(self, account_id: int, amount: int) -> TokenCreditResponse:
        """보너스 토큰 지급 (활성 구독 필요, 기존 보너스 대체)"""
        self._positive(amount)

        def _credit(account: Account) -> TokenCreditResponse:
            self.credit_bonus(account, amount)
            return TokenCreditResponse(
                tokens_added=amount, bucket="bonus", balance=get_token_breakdown(account)
            )

        result = self.mutate_account(account_id, _credit, action="bonus grant")
        logger.info(f"Granted {amount} bonus tokens to account {account_id}")
        return result

    def grant_prize_tokens(
        self, account_id: int, amount: int, prize_type: str, granted_by: str = "system"
    ) -> TokenCreditResponse:
        """상금 토큰 지급 (활성 구독 필요, 지급 이력 추가)"""
        self._positive(amount)

        def _credit(account: Account) -> TokenCreditResponse:
            self.credit_prize(account, amount, prize_type, granted_by)
            return TokenCreditResponse(
                tokens_added=amount, bucket="prize", balance=get_token_breakdown(account)
            )

        result = self.mutate_account(account_id, _credit, action="prize grant")
        logger.info(f"Granted {amount} prize tokens ({prize_type}) to account {account_id} by {granted_by}")
        notify_safely(
            self.notifier,
            account_id,
            "prize_tokens",
            "Prize tokens granted",
            f"You received {amount} prize tokens.",
            {"amount": amount, "prize_type": prize_type},
        )
        return result
