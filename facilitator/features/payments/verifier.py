"""
Bounded polling around chain adapter reads.

A broadcast transaction can take several polling intervals before the RPC
node reports it. The verifier retries only while the transaction is not yet
visible (or the node could not be reached); once a record is visible the
adapter's decision is returned as-is.
"""
from __future__ import annotations

import logging
import threading
import time
from typing import TYPE_CHECKING, Callable, Iterable, Optional

from facilitator.core.errors import AppError
from facilitator.features.payments.rpc import ChainRPCError
from facilitator.features.payments.types import (
    ExpectedTransfer,
    FetchOutcome,
    VerificationReason,
    VerificationResult,
)

if TYPE_CHECKING:
    from facilitator.features.payments.adapter import ChainAdapter


logger = logging.getLogger("facilitator")

DEFAULT_ATTEMPTS = 5


class VerificationCancelled(AppError):
    """Raised when the caller abandons a verification while it is waiting."""
    code = "client_closed_request"
    status_code = 499


class PaymentVerifier:
    """Retry loop with an injectable sleep and an optional cancel event."""

    def __init__(
        self,
        adapter: "ChainAdapter",
        *,
        attempts: int = DEFAULT_ATTEMPTS,
        delay: Optional[float] = None,
        sleep: Optional[Callable[[float], None]] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        if attempts < 1:
            raise ValueError("attempts must be >= 1")
        self.adapter = adapter
        self.attempts = attempts
        self.delay = adapter.retry_delay if delay is None else delay
        self._sleep = sleep
        self.cancel_event = cancel_event

    def _raise_if_cancelled(self) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise VerificationCancelled("verification cancelled by caller")

    def _wait(self) -> None:
        if self.delay > 0:
            if self._sleep is not None:
                self._sleep(self.delay)
            elif self.cancel_event is not None:
                self.cancel_event.wait(self.delay)
            else:
                time.sleep(self.delay)
        self._raise_if_cancelled()

    def fetch(self, tx_reference: str) -> FetchOutcome:
        errors = []
        for attempt in range(1, self.attempts + 1):
            self._raise_if_cancelled()
            try:
                record = self.adapter.fetch_transaction(tx_reference)
            except ChainRPCError as exc:
                logger.warning(
                    f"verify attempt {attempt}/{self.attempts} failed: {exc}",
                    extra={"network": self.adapter.name, "tx": tx_reference, "attempt": attempt},
                )
                errors.append(str(exc))
                record = None

            if record is not None:
                return FetchOutcome(record=record, attempts=attempt, errors=errors)

            if attempt < self.attempts:
                self._wait()

        return FetchOutcome(record=None, attempts=self.attempts, errors=errors)

    def verify(self, tx_reference: str, expected: Iterable[ExpectedTransfer]) -> VerificationResult:
        expected = list(expected)
        outcome = self.fetch(tx_reference)
        if outcome.record is None:
            last_error = outcome.errors[-1] if outcome.errors else None
            logger.warning(
                "transaction not visible after retries",
                extra={
                    "network": self.adapter.name,
                    "tx": tx_reference,
                    "attempt": outcome.attempts,
                    "reason": last_error,
                },
            )
            return VerificationResult.failure(tx_reference, VerificationReason.TX_NOT_FOUND, error=last_error)

        result = self.adapter.check_transfers(tx_reference, outcome.record, expected)
        level = logging.INFO if result.ok else logging.WARNING
        logger.log(
            level,
            "payment verified" if result.ok else "payment rejected",
            extra={
                "network": self.adapter.name,
                "tx": tx_reference,
                "reason": result.reason.value if result.reason else None,
                "attempt": outcome.attempts,
            },
        )
        return result
