"""
Supported networks and the payment terms each one issues.

Adapters are looked up by network key ("solana", "base"; a "-mainnet" suffix
is accepted). Base is only registered when ENABLE_BASE is set.
"""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Callable, Dict, List, Optional

from facilitator.core.config import Settings, settings
from facilitator.core.errors import UnsupportedNetworkError
from facilitator.features.payments.adapter import ChainAdapter
from facilitator.features.payments.evm import BaseAdapter
from facilitator.features.payments.rpc import JsonRpcClient, RPCClient
from facilitator.features.payments.signer import ActiveSigner, SignerUnavailableError
from facilitator.features.payments.solana import SolanaAdapter
from facilitator.features.payments.types import PaymentIntent

logger = logging.getLogger("facilitator")

RpcFactory = Callable[[str, float], RPCClient]


def _default_rpc_factory(url: str, timeout: float) -> RPCClient:
    return JsonRpcClient(url, timeout=timeout)


def normalize_network(network: Optional[str]) -> str:
    return (network or "").strip().lower().replace("-mainnet", "")


class ChainRegistry:
    def __init__(
        self,
        adapters: Dict[str, ChainAdapter],
        *,
        static_recipients: Optional[Dict[str, Optional[str]]] = None,
        market_admin_wallets: Optional[Dict[str, Optional[str]]] = None,
        market_fee_bps: int = 0,
    ):
        self._adapters = dict(adapters)
        self._static_recipients = dict(static_recipients or {})
        self._market_admin_wallets = dict(market_admin_wallets or {})
        self.market_fee_bps = market_fee_bps

    @classmethod
    def from_settings(cls, cfg: Optional[Settings] = None, rpc_factory: Optional[RpcFactory] = None) -> "ChainRegistry":
        cfg = cfg or settings
        make_rpc = rpc_factory or _default_rpc_factory

        adapters: Dict[str, ChainAdapter] = {
            "solana": SolanaAdapter(
                make_rpc(cfg.SOLANA_RPC, cfg.RPC_TIMEOUT_SECONDS),
                asset=cfg.USDC_MINT,
                retry_delay=cfg.SOLANA_RETRY_DELAY_SECONDS,
                attempts=cfg.VERIFY_ATTEMPTS,
            ),
        }
        if cfg.ENABLE_BASE:
            adapters["base"] = BaseAdapter(
                make_rpc(cfg.BASE_RPC, cfg.RPC_TIMEOUT_SECONDS),
                asset=cfg.BASE_USDC_CONTRACT,
                retry_delay=cfg.BASE_RETRY_DELAY_SECONDS,
                chain_id=cfg.BASE_CHAIN_ID,
                attempts=cfg.VERIFY_ATTEMPTS,
            )
        else:
            logger.info("Base chain is disabled (ENABLE_BASE is not set)")

        return cls(
            adapters,
            static_recipients={"base": cfg.BASE_PAYMENT_WALLET},
            market_admin_wallets={
                "solana": cfg.MARKET_ADMIN_WALLET,
                "base": cfg.MARKET_ADMIN_WALLET_BASE,
            },
            market_fee_bps=cfg.MARKET_FEE_BPS,
        )

    def get(self, network: Optional[str]) -> ChainAdapter:
        key = normalize_network(network)
        adapter = self._adapters.get(key)
        if adapter is None:
            raise UnsupportedNetworkError(
                f"Unsupported network: {network}", details={"supported": sorted(self._adapters)}
            )
        return adapter

    def enabled(self) -> List[Dict]:
        return [adapter.describe() for adapter in self._adapters.values()]

    def pay_to(self, adapter: ChainAdapter, signer: ActiveSigner) -> str:
        """Facilitator recipient for paywall payments on a network."""
        if adapter.name == "solana":
            return signer.public_key()
        recipient = self._static_recipients.get(adapter.name)
        if not recipient:
            raise SignerUnavailableError(f"No payment wallet configured for {adapter.name}")
        return recipient

    def market_admin_wallet(self, adapter: ChainAdapter) -> Optional[str]:
        return self._market_admin_wallets.get(adapter.name)

    def paywall_intent(self, network: str, price_usd: Decimal, signer: ActiveSigner) -> PaymentIntent:
        adapter = self.get(network)
        return PaymentIntent(
            network=adapter.name,
            recipient=self.pay_to(adapter, signer),
            amount_base=adapter.parse_amount(price_usd),
            asset=adapter.asset,
        )
