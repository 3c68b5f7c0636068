"""Base (EVM) USDC verification from ERC-20 Transfer logs."""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from facilitator.features.payments.adapter import ChainAdapter
from facilitator.features.payments.rpc import RPCClient
from facilitator.features.payments.types import (
    ExpectedTransfer,
    VerificationReason,
    VerificationResult,
)
from facilitator.features.payments.verifier import DEFAULT_ATTEMPTS

# keccak256("Transfer(address,address,uint256)")
TRANSFER_EVENT_SIG = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"

TX_HASH_PATTERN = re.compile(r"^0x[0-9a-fA-F]{64}$")

_SUCCESS_STATUSES = {"0x1", "1", 1, "success"}


@dataclass(frozen=True)
class DecodedTransfer:
    to: str
    value: int


class BaseAdapter(ChainAdapter):
    name = "base"
    network = "base-mainnet"

    def __init__(
        self,
        rpc: RPCClient,
        *,
        asset: str,
        retry_delay: float,
        chain_id: int = 8453,
        attempts: int = DEFAULT_ATTEMPTS,
    ):
        super().__init__(rpc, asset=asset, retry_delay=retry_delay, attempts=attempts)
        self.chain_id = chain_id

    def is_valid_reference(self, tx_reference: str) -> bool:
        return bool(TX_HASH_PATTERN.match(tx_reference or ""))

    def same_address(self, left: str, right: str) -> bool:
        # hex addresses compare without their EIP-55 checksum casing
        return left.lower() == right.lower()

    def fetch_transaction(self, tx_reference: str) -> Optional[Dict[str, Any]]:
        receipt = self.rpc.call("eth_getTransactionReceipt", [tx_reference])
        return receipt or None

    def decode_transfers(self, receipt: Dict[str, Any]) -> List[DecodedTransfer]:
        contract = self.asset.lower()
        transfers = []
        for log in receipt.get("logs") or []:
            if (log.get("address") or "").lower() != contract:
                continue
            topics = log.get("topics") or []
            if len(topics) < 3 or topics[0].lower() != TRANSFER_EVENT_SIG:
                continue
            to = "0x" + topics[2][-40:]
            value = int(log.get("data") or "0x0", 16)
            transfers.append(DecodedTransfer(to=to, value=value))
        return transfers

    def check_transfers(
        self,
        tx_reference: str,
        record: Dict[str, Any],
        expected: Iterable[ExpectedTransfer],
    ) -> VerificationResult:
        if record.get("status") not in _SUCCESS_STATUSES:
            return VerificationResult.failure(
                tx_reference, VerificationReason.TX_FAILED, error=record.get("status")
            )

        transfers = self.decode_transfers(record)
        for transfer in expected:
            recipient = transfer.recipient.lower()
            to_recipient = [t.value for t in transfers if t.to.lower() == recipient]
            if transfer.amount_base not in to_recipient:
                return VerificationResult.failure(
                    tx_reference,
                    VerificationReason.TRANSFER_NOT_FOUND,
                    expected=str(transfer.amount_base),
                    got=",".join(str(v) for v in to_recipient) or "0",
                )

        return VerificationResult.success(tx_reference, payer=record.get("from"))
