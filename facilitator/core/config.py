import logging
from decimal import Decimal
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict
from pydantic_settings import BaseSettings, SettingsConfigDict


class TierConfig(BaseModel):
    """Price and access window for one paywall tier."""
    model_config = ConfigDict(frozen=True)

    price_usd: Decimal
    duration_seconds: int


def _default_tiers() -> Dict[str, TierConfig]:
    return {
        "day": TierConfig(price_usd=Decimal("1"), duration_seconds=86400),
        "week": TierConfig(price_usd=Decimal("5"), duration_seconds=7 * 86400),
        "month": TierConfig(price_usd=Decimal("15"), duration_seconds=30 * 86400),
    }


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = "sqlite:///./data/x402.db"
    TEST_DATABASE_URL: Optional[str] = None

    # Solana (account-based ledger network)
    SOLANA_RPC: str = "https://api.mainnet-beta.solana.com"
    USDC_MINT: str = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
    SOLANA_RETRY_DELAY_SECONDS: float = 2.0
    # Public key of the facilitator's active signing keypair (settlement account)
    FACILITATOR_SOLANA_ADDRESS: Optional[str] = None

    # Base (EVM network)
    ENABLE_BASE: bool = False
    BASE_RPC: str = "https://mainnet.base.org"
    BASE_USDC_CONTRACT: str = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
    BASE_PAYMENT_WALLET: Optional[str] = None
    BASE_CHAIN_ID: int = 8453
    BASE_RETRY_DELAY_SECONDS: float = 3.0

    # Verification
    VERIFY_ATTEMPTS: int = 5
    RPC_TIMEOUT_SECONDS: float = 10.0

    # Marketplace fees
    MARKET_ADMIN_WALLET: Optional[str] = None
    MARKET_ADMIN_WALLET_BASE: Optional[str] = None
    MARKET_FEE_BPS: int = 0  # basis points taken from each sale

    # Shared with the Telegram bot, which calls /api/link after confirming the chat user
    LINK_API_KEY: Optional[str] = None

    # Paywall tiers, JSON in env: {"day": {"price_usd": "1", "duration_seconds": 86400}}
    PAYWALL_TIERS: Dict[str, TierConfig] = _default_tiers()

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("facilitator")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "FACILITATOR_SOLANA_ADDRESS",
    ]
    if cfg.ENABLE_BASE:
        required_keys += ["BASE_PAYMENT_WALLET", "BASE_USDC_CONTRACT"]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    if cfg.MARKET_FEE_BPS < 0 or cfg.MARKET_FEE_BPS > 10000:
        message = f"MARKET_FEE_BPS must be within 0..10000, got {cfg.MARKET_FEE_BPS}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
