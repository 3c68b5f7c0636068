"""
Notification events emitted after fulfillment.

Rendering and delivery belong to a chat-bot collaborator behind the
`Notifier` protocol. Dispatch is best-effort: a delivery failure is logged
and never undoes the fulfillment that produced the event.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Protocol

from facilitator.core.logging import log_event
from facilitator.features.users.service import get_user_by_wallet

logger = logging.getLogger("facilitator")


class EventType(str, Enum):
    PAYMENT_CONFIRMATION = "payment_confirmation"
    # Reserved for free unlocks; no flow emits it yet
    GATED_UNLOCK = "gated_unlock"
    SALE_CONFIRMATION = "sale_confirmation"
    PURCHASE_CONFIRMATION = "purchase_confirmation"


@dataclass(frozen=True)
class NotificationEvent:
    type: EventType
    tx: Optional[str] = None
    amount: Optional[str] = None
    tier: Optional[str] = None
    item: Optional[str] = None
    access_until: Optional[int] = None
    receipt_ref: Optional[str] = None
    buyer: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"type": self.type.value}
        for key, value in (
            ("tier", self.tier),
            ("item", self.item),
            ("amount", self.amount),
            ("tx", self.tx),
            ("accessUntil", self.access_until),
            ("receiptRef", self.receipt_ref),
            ("buyer", self.buyer),
        ):
            if value is not None:
                payload[key] = value
        return payload


class Notifier(Protocol):
    """Delivers an event to one linked external account."""

    def notify(self, telegram_id: str, event: NotificationEvent) -> None:
        ...


class LoggingNotifier:
    """Default notifier: records the event in the structured log."""

    def notify(self, telegram_id: str, event: NotificationEvent) -> None:
        log_event(
            "info",
            "notification.sent",
            tx=event.tx,
            event_type=event.type.value,
            extra={"telegram_id": telegram_id, "event": event.to_dict()},
        )


def payment_confirmation(tier: str, amount: str, tx: str, access_until: int) -> NotificationEvent:
    return NotificationEvent(
        type=EventType.PAYMENT_CONFIRMATION, tier=tier, amount=amount, tx=tx, access_until=access_until
    )


def sale_confirmation(item: str, amount: str, tx: str, buyer: str) -> NotificationEvent:
    return NotificationEvent(type=EventType.SALE_CONFIRMATION, item=item, amount=amount, tx=tx, buyer=buyer)


def purchase_confirmation(item: str, amount: str, tx: str, receipt_ref: Optional[str] = None) -> NotificationEvent:
    return NotificationEvent(
        type=EventType.PURCHASE_CONFIRMATION, item=item, amount=amount, tx=tx, receipt_ref=receipt_ref
    )


def dispatch(notifier: Notifier, wallet: Optional[str], event: NotificationEvent) -> bool:
    """Send `event` to the Telegram account linked to `wallet`, if any."""
    if not wallet:
        return False
    try:
        user = get_user_by_wallet(wallet)
        if not user or not user.get("telegramId"):
            return False
        notifier.notify(user["telegramId"], event)
        return True
    except Exception as exc:
        logger.warning(
            "notification.failed",
            extra={"wallet": wallet, "event_type": event.type.value, "tx": event.tx, "reason": str(exc)},
        )
        return False
