import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class NotificationSender(ABC):
    """Outbound notification channel (email, in-app, ...)"""

    @abstractmethod
    def send(
        self,
        account_id: int,
        kind: str,
        title: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        ...


class LoggingNotificationSender(NotificationSender):
    """Default sender: writes the notification to the application log."""

    def send(
        self,
        account_id: int,
        kind: str,
        title: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        # data may carry one-time links; only its keys are logged
        logger.info(
            f"[notification:{kind}] account={account_id} {title} - {message} keys={sorted((data or {}).keys())}"
        )


def notify_safely(
    sender: Optional[NotificationSender],
    account_id: int,
    kind: str,
    title: str,
    message: str,
    data: Optional[Dict[str, Any]] = None,
) -> None:
    """Deliver after commit; a failing channel never undoes the ledger change."""
    if sender is None:
        return
    try:
        sender.send(account_id, kind, title, message, data)
    except Exception:
        logger.exception(f"Failed to send {kind} notification to account {account_id}")
