"""
Solana USDC verification.

The finalized transaction's token balance snapshots are compared before and
after execution. Deltas are summed per owning wallet, so a transaction that
touches the same owner through several instructions or token accounts is
judged on the net credit.
"""
from __future__ import annotations

import re
from collections import defaultdict
from typing import Any, Dict, Iterable, Optional

from facilitator.features.payments.adapter import ChainAdapter
from facilitator.features.payments.types import (
    ExpectedTransfer,
    VerificationReason,
    VerificationResult,
)

SIGNATURE_PATTERN = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,90}$")


def _raw_amount(balance: Optional[Dict[str, Any]]) -> int:
    if not balance:
        return 0
    ui = balance.get("uiTokenAmount") or {}
    return int(ui.get("amount") or 0)


class SolanaAdapter(ChainAdapter):
    name = "solana"
    network = "solana-mainnet"

    def is_valid_reference(self, tx_reference: str) -> bool:
        return bool(SIGNATURE_PATTERN.match(tx_reference or ""))

    def fetch_transaction(self, tx_reference: str) -> Optional[Dict[str, Any]]:
        record = self.rpc.call(
            "getTransaction",
            [
                tx_reference,
                {
                    "encoding": "jsonParsed",
                    "commitment": "confirmed",
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        )
        if not record or record.get("meta") is None:
            return None
        return record

    def credited_by_owner(self, meta: Dict[str, Any]) -> Dict[str, int]:
        """Net change of the configured mint per owner wallet."""
        pre = {
            b["accountIndex"]: b
            for b in meta.get("preTokenBalances") or []
            if b.get("mint") == self.asset
        }
        post = {
            b["accountIndex"]: b
            for b in meta.get("postTokenBalances") or []
            if b.get("mint") == self.asset
        }

        credited: Dict[str, int] = defaultdict(int)
        for index in set(pre) | set(post):
            entry = post.get(index) or pre.get(index)
            owner = entry.get("owner")
            if not owner:
                continue
            credited[owner] += _raw_amount(post.get(index)) - _raw_amount(pre.get(index))
        return dict(credited)

    @staticmethod
    def fee_payer(record: Dict[str, Any]) -> Optional[str]:
        message = (record.get("transaction") or {}).get("message") or {}
        keys = message.get("accountKeys") or []
        if not keys:
            return None
        first = keys[0]
        return first.get("pubkey") if isinstance(first, dict) else str(first)

    def check_transfers(
        self,
        tx_reference: str,
        record: Dict[str, Any],
        expected: Iterable[ExpectedTransfer],
    ) -> VerificationResult:
        meta = record.get("meta") or {}
        if meta.get("err") is not None:
            return VerificationResult.failure(
                tx_reference, VerificationReason.TX_FAILED, error=meta.get("err")
            )

        credited = self.credited_by_owner(meta)
        for transfer in expected:
            got = credited.get(transfer.recipient, 0)
            if got != transfer.amount_base:
                return VerificationResult.failure(
                    tx_reference,
                    VerificationReason.AMOUNT_MISMATCH,
                    expected=str(transfer.amount_base),
                    got=str(got),
                )

        return VerificationResult.success(tx_reference, payer=self.fee_payer(record))
