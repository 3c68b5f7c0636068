"""
Active signer lookup.

The Solana settlement account is the facilitator's active signing identity,
which may rotate. Challenge construction receives the signer explicitly
instead of reading a process-wide keypair.
"""
from typing import Optional, Protocol

from facilitator.core.config import Settings, settings
from facilitator.core.errors import ServiceUnavailableError


class ActiveSigner(Protocol):
    def public_key(self) -> str:
        """Base58 public key currently used to settle Solana payments."""
        ...


class SignerUnavailableError(ServiceUnavailableError):
    code = "signer_unavailable"


class StaticSigner:
    """Signer identity read from configuration (FACILITATOR_SOLANA_ADDRESS)."""

    def __init__(self, address: Optional[str]):
        self._address = address

    def public_key(self) -> str:
        if not self._address:
            raise SignerUnavailableError("No active Solana signer configured (FACILITATOR_SOLANA_ADDRESS)")
        return self._address


def signer_from_settings(cfg: Optional[Settings] = None) -> StaticSigner:
    cfg = cfg or settings
    return StaticSigner(cfg.FACILITATOR_SOLANA_ADDRESS)
