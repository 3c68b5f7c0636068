"""
Chain adapter capability interface.

One concrete adapter exists per supported network. They are selected by
network key through the registry, never by inspecting their type.
"""
from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterable, Optional

from facilitator.features.payments.amounts import USDC_DECIMALS, AmountLike, format_amount, parse_amount
from facilitator.features.payments.rpc import RPCClient
from facilitator.features.payments.types import ExpectedTransfer, VerificationResult
from facilitator.features.payments.verifier import DEFAULT_ATTEMPTS, PaymentVerifier


class ChainAdapter(ABC):
    name: str = ""
    network: str = ""
    chain_id: Optional[int] = None

    def __init__(
        self,
        rpc: RPCClient,
        *,
        asset: str,
        retry_delay: float,
        attempts: int = DEFAULT_ATTEMPTS,
        decimals: int = USDC_DECIMALS,
    ):
        self.rpc = rpc
        self.asset = asset
        self.retry_delay = retry_delay
        self.attempts = attempts
        self.decimals = decimals

    def parse_amount(self, amount: AmountLike) -> int:
        return parse_amount(amount, self.decimals)

    def format_amount(self, base_units: int) -> str:
        return format_amount(base_units, self.decimals)

    def is_valid_reference(self, tx_reference: str) -> bool:
        return bool(tx_reference)

    def same_address(self, left: str, right: str) -> bool:
        return left == right

    @abstractmethod
    def fetch_transaction(self, tx_reference: str) -> Optional[Dict[str, Any]]:
        """Single read; returns None while the transaction is not visible."""

    @abstractmethod
    def check_transfers(
        self,
        tx_reference: str,
        record: Dict[str, Any],
        expected: Iterable[ExpectedTransfer],
    ) -> VerificationResult:
        """Decide whether a visible transaction satisfies every expected transfer."""

    def verify_payment(
        self,
        tx_reference: str,
        expected: Iterable[ExpectedTransfer],
        *,
        sleep: Optional[Callable[[float], None]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> VerificationResult:
        verifier = PaymentVerifier(
            self,
            attempts=self.attempts,
            sleep=sleep,
            cancel_event=cancel_event,
        )
        return verifier.verify(tx_reference, expected)

    def describe(self) -> Dict[str, Any]:
        info = {
            "name": self.name,
            "network": self.network,
            "asset": self.asset,
            "decimals": self.decimals,
        }
        if self.chain_id is not None:
            info["chainId"] = self.chain_id
        return info
