"""Fake chain RPC clients and transaction record builders."""
from typing import Any, Dict, List, Optional

from facilitator.features.payments.evm import BaseAdapter, TRANSFER_EVENT_SIG
from facilitator.features.payments.registry import ChainRegistry
from facilitator.features.payments.rpc import ChainRPCError
from facilitator.features.payments.solana import SolanaAdapter

USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
BASE_USDC = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"

FACILITATOR_WALLET = "Faci1itatorWa11et1111111111111111111111111"
PAYER_WALLET = "PayerWa11et22222222222222222222222222222222"
SELLER_WALLET = "Se11erWa11et333333333333333333333333333333"
ADMIN_WALLET = "AdminWa11et4444444444444444444444444444444"
LINK_KEY = "bot-link-key"

BASE_RECIPIENT = "0x1111111111111111111111111111111111111111"
BASE_PAYER = "0x2222222222222222222222222222222222222222"

# base58 characters only, 88 long like a real signature
SOLANA_SIG = "5" + "j" * 87
SOLANA_SIG_2 = "4" + "k" * 87
BASE_TX = "0x" + "ab" * 32


def solana_sig(n: int) -> str:
    """Distinct valid-looking signature per integer."""
    digits = "123456789ABCDEFGH"
    return "".join(digits[int(c)] for c in str(n)) + "z" * 64


class FakeRPC:
    """
    Scripted JSON-RPC client.

    `responses` is consumed one item per call; an Exception instance is
    raised instead of returned. The last item repeats once the script runs out.
    """

    def __init__(self, *responses: Any):
        self.responses: List[Any] = list(responses)
        self.calls: List[tuple] = []

    def call(self, method: str, params: List[Any]) -> Any:
        self.calls.append((method, params))
        if not self.responses:
            return None
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item
        return item


def token_balance(index: int, owner: str, amount: int, mint: str = USDC_MINT) -> Dict[str, Any]:
    return {
        "accountIndex": index,
        "mint": mint,
        "owner": owner,
        "uiTokenAmount": {"amount": str(amount), "decimals": 6},
    }


def solana_tx(
    credits: Dict[str, int],
    *,
    payer: str = PAYER_WALLET,
    err: Optional[Any] = None,
    mint: str = USDC_MINT,
) -> Dict[str, Any]:
    """A parsed transaction crediting each owner in `credits` (from zero balances)."""
    pre = [token_balance(0, payer, 100_000_000, mint)]
    post_payer = 100_000_000 - sum(credits.values())
    post = [token_balance(0, payer, post_payer, mint)]
    for i, (owner, amount) in enumerate(credits.items(), start=1):
        pre.append(token_balance(i, owner, 0, mint))
        post.append(token_balance(i, owner, amount, mint))
    return {
        "slot": 1,
        "transaction": {"message": {"accountKeys": [{"pubkey": payer, "signer": True}]}},
        "meta": {"err": err, "preTokenBalances": pre, "postTokenBalances": post},
    }


def _topic_address(address: str) -> str:
    return "0x" + "0" * 24 + address[2:].lower()


def transfer_log(to: str, value: int, *, contract: str = BASE_USDC, sender: str = BASE_PAYER) -> Dict[str, Any]:
    return {
        "address": contract,
        "topics": [TRANSFER_EVENT_SIG, _topic_address(sender), _topic_address(to)],
        "data": hex(value),
    }


def base_receipt(*logs: Dict[str, Any], status: str = "0x1", sender: str = BASE_PAYER) -> Dict[str, Any]:
    return {"transactionHash": BASE_TX, "status": status, "from": sender, "logs": list(logs)}


def make_solana(rpc: FakeRPC, attempts: int = 5) -> SolanaAdapter:
    return SolanaAdapter(rpc, asset=USDC_MINT, retry_delay=2.0, attempts=attempts)


def make_base(rpc: FakeRPC, attempts: int = 5) -> BaseAdapter:
    return BaseAdapter(rpc, asset=BASE_USDC, retry_delay=3.0, attempts=attempts)


def make_registry(
    solana_rpc: Optional[FakeRPC] = None,
    base_rpc: Optional[FakeRPC] = None,
    *,
    fee_bps: int = 0,
    admin_wallet: Optional[str] = None,
) -> ChainRegistry:
    adapters = {"solana": make_solana(solana_rpc or FakeRPC())}
    if base_rpc is not None:
        adapters["base"] = make_base(base_rpc)
    return ChainRegistry(
        adapters,
        static_recipients={"base": BASE_RECIPIENT},
        market_admin_wallets={"solana": admin_wallet},
        market_fee_bps=fee_bps,
    )


class StubSigner:
    def __init__(self, address: str = FACILITATOR_WALLET):
        self.address = address

    def public_key(self) -> str:
        return self.address


class RecordingNotifier:
    def __init__(self, fail: bool = False):
        self.sent: List[tuple] = []
        self.fail = fail

    def notify(self, telegram_id, event) -> None:
        if self.fail:
            raise RuntimeError("bot unreachable")
        self.sent.append((telegram_id, event))


def rpc_down() -> ChainRPCError:
    return ChainRPCError("connection refused")
