"""
Payment verification value types.

These are shared by every chain adapter so the two verification algorithms
produce the same pass/fail contract.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class VerificationReason(str, Enum):
    """Closed set of terminal verification failures."""
    TX_NOT_FOUND = "tx-not-found"
    TX_FAILED = "tx-failed"
    AMOUNT_MISMATCH = "amount-mismatch"
    TRANSFER_NOT_FOUND = "transfer-not-found"


@dataclass(frozen=True)
class ExpectedTransfer:
    """One credit the referenced transaction must contain."""
    recipient: str
    amount_base: int


@dataclass(frozen=True)
class PaymentIntent:
    """Terms of a single challenge; never persisted."""
    network: str
    recipient: str
    amount_base: int
    asset: str
    extra_transfers: tuple = ()

    def expected_transfers(self) -> list:
        return [ExpectedTransfer(self.recipient, self.amount_base), *self.extra_transfers]

    @property
    def total_base(self) -> int:
        return self.amount_base + sum(t.amount_base for t in self.extra_transfers)


@dataclass(frozen=True)
class VerificationResult:
    ok: bool
    tx_reference: Optional[str] = None
    reason: Optional[VerificationReason] = None
    expected: Optional[str] = None
    got: Optional[str] = None
    payer: Optional[str] = None
    error: Optional[Any] = None

    @classmethod
    def success(cls, tx_reference: str, payer: Optional[str] = None) -> "VerificationResult":
        return cls(ok=True, tx_reference=tx_reference, payer=payer)

    @classmethod
    def failure(cls, tx_reference: str, reason: VerificationReason, **details: Any) -> "VerificationResult":
        return cls(ok=False, tx_reference=tx_reference, reason=reason, **details)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"ok": self.ok, "txReference": self.tx_reference}
        if self.reason is not None:
            payload["reason"] = self.reason.value
        for key, value in (("expected", self.expected), ("got", self.got), ("payer", self.payer), ("error", self.error)):
            if value is not None:
                payload[key] = value
        return payload


@dataclass
class FetchOutcome:
    """Result of polling a network for a transaction record."""
    record: Optional[Dict[str, Any]]
    attempts: int
    errors: List[str] = field(default_factory=list)
