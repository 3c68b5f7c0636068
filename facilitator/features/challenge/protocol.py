"""
Two-round payment challenge (x402 "exact" scheme).

Round 1 answers a priced request with HTTP 402 and the payment terms.
Round 2 carries an `X-PAYMENT` header whose payload references the
transaction that paid those terms. The header is base64-encoded JSON:

    {"x402Version": 1, "scheme": "exact", "network": "solana",
     "payload": {"txReference": "<signature or hash>"}}

Nothing in this module touches persistent state; fulfillment is handed in
as a callback and only runs after verification has succeeded.
"""
from __future__ import annotations

import base64
import binascii
import json
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from facilitator.core.errors import InvalidProofError, PayerMismatchError, ValidationError
from facilitator.features.payments.adapter import ChainAdapter
from facilitator.features.payments.amounts import format_amount
from facilitator.features.payments.registry import normalize_network
from facilitator.features.payments.types import PaymentIntent, VerificationResult

X402_VERSION = 1
SCHEME_EXACT = "exact"
PAYMENT_HEADER = "X-PAYMENT"
PAYMENT_RESPONSE_HEADER = "X-PAYMENT-RESPONSE"
DEFAULT_TIMEOUT_SECONDS = 120

T = TypeVar("T")


class ChallengeError(Exception):
    """The 402 body carried no usable payment requirement."""


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PaymentRequirement(_CamelModel):
    scheme: str = SCHEME_EXACT
    network: str
    asset: str
    # x402 fields; a plain x402 server sends only these two
    pay_to: Optional[str] = None
    max_amount_required: Optional[str] = None
    # same terms in this service's own names
    recipient: Optional[str] = None
    amount_base: Optional[int] = None
    resource: Optional[str] = None
    description: Optional[str] = None
    mime_type: str = "application/json"
    max_timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS
    extra: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _fill_terms(self) -> "PaymentRequirement":
        self.recipient = self.recipient or self.pay_to
        self.pay_to = self.pay_to or self.recipient
        if self.amount_base is None and self.max_amount_required is not None:
            self.amount_base = int(self.max_amount_required)
        if self.max_amount_required is None and self.amount_base is not None:
            self.max_amount_required = str(self.amount_base)
        if not self.recipient or self.amount_base is None:
            raise ValueError("requirement needs payTo and maxAmountRequired")
        return self


class Challenge(_CamelModel):
    x402_version: int = Field(default=X402_VERSION, alias="x402Version")
    error: str = "payment required"
    accepts: List[PaymentRequirement]
    verification: Optional[Dict[str, Any]] = None


class ProofPayload(BaseModel):
    tx_reference: str = Field(
        validation_alias=AliasChoices("txReference", "txSignature", "txHash", "tx_reference"),
        min_length=1,
    )


class PaymentProof(BaseModel):
    x402_version: Optional[int] = Field(default=None, validation_alias=AliasChoices("x402Version", "x402_version"))
    scheme: str
    network: str
    payload: ProofPayload

    @property
    def tx_reference(self) -> str:
        return self.payload.tx_reference.strip()


@dataclass
class Settlement(Generic[T]):
    verification: VerificationResult
    outcome: Optional[T] = None

    @property
    def ok(self) -> bool:
        return self.verification.ok


def build_requirement(
    intent: PaymentIntent,
    *,
    resource: Optional[str] = None,
    description: Optional[str] = None,
) -> PaymentRequirement:
    extra: Dict[str, Any] = {"decimals": 6, "amount": format_amount(intent.total_base)}
    if intent.extra_transfers:
        extra["splits"] = [
            {"recipient": t.recipient, "amountBase": t.amount_base}
            for t in intent.expected_transfers()
        ]
    return PaymentRequirement(
        network=intent.network,
        recipient=intent.recipient,
        amount_base=intent.amount_base,
        asset=intent.asset,
        pay_to=intent.recipient,
        max_amount_required=str(intent.amount_base),
        resource=resource,
        description=description,
        extra=extra,
    )


def build_challenge(
    intent: PaymentIntent,
    *,
    resource: Optional[str] = None,
    description: Optional[str] = None,
    error: str = "payment required",
    verification: Optional[VerificationResult] = None,
) -> Dict[str, Any]:
    """Round 1: the 402 response body for a priced resource."""
    challenge = Challenge(
        error=error,
        accepts=[build_requirement(intent, resource=resource, description=description)],
        verification=verification.to_dict() if verification is not None else None,
    )
    return challenge.model_dump(by_alias=True, exclude_none=True)


def select_requirement(challenge: Dict[str, Any], network: Optional[str] = None) -> PaymentRequirement:
    """Payer side: pick the requirement to pay from a 402 body."""
    accepts = challenge.get("accepts") if isinstance(challenge, dict) else None
    if not accepts:
        raise ChallengeError("Bad 402 challenge: no accepted payment requirements")
    wanted = normalize_network(network) if network else None
    for raw in accepts:
        try:
            requirement = PaymentRequirement.model_validate(raw)
        except PydanticValidationError:
            continue
        if requirement.scheme != SCHEME_EXACT:
            continue
        if wanted is None or normalize_network(requirement.network) == wanted:
            return requirement
    raise ChallengeError(f"Bad 402 challenge: no acceptable requirement for network {network!r}")


def encode_proof(network: str, tx_reference: str) -> str:
    """Build the X-PAYMENT header value for a transaction reference."""
    body = {
        "x402Version": X402_VERSION,
        "scheme": SCHEME_EXACT,
        "network": network,
        "payload": {"txReference": tx_reference},
    }
    return base64.b64encode(json.dumps(body).encode()).decode()


def decode_proof(header_value: Optional[str]) -> PaymentProof:
    """Round 2: parse an X-PAYMENT header (base64 JSON, raw JSON tolerated)."""
    if not header_value or not header_value.strip():
        raise InvalidProofError("Missing X-PAYMENT proof")
    raw = header_value.strip()
    try:
        if not raw.startswith("{"):
            raw = base64.b64decode(raw, validate=True).decode("utf-8")
        data = json.loads(raw)
        proof = PaymentProof.model_validate(data)
    except (binascii.Error, UnicodeDecodeError, ValueError, PydanticValidationError) as exc:
        raise InvalidProofError("Malformed X-PAYMENT proof") from exc

    if proof.scheme != SCHEME_EXACT:
        raise InvalidProofError(f"Unsupported payment scheme: {proof.scheme}")
    return proof


def encode_settlement(verification: VerificationResult, network: str) -> str:
    """X-PAYMENT-RESPONSE header value describing a settled payment."""
    body = {
        "success": verification.ok,
        "transaction": verification.tx_reference,
        "network": network,
        "payer": verification.payer,
    }
    return base64.b64encode(json.dumps(body).encode()).decode()


def settle(
    adapter: ChainAdapter,
    intent: PaymentIntent,
    proof: PaymentProof,
    fulfill: Callable[[VerificationResult], T],
    *,
    sleep: Optional[Callable[[float], None]] = None,
    cancel_event: Optional[threading.Event] = None,
) -> Settlement[T]:
    """
    Verify a proof against the challenge's terms, then fulfill.

    Verification failures are returned unchanged; fulfillment runs only
    after a successful verification and may raise its own conflict errors.
    """
    if normalize_network(proof.network) != intent.network:
        raise InvalidProofError(
            f"Proof network {proof.network!r} does not match challenge network {intent.network!r}",
            details={"expected": intent.network},
        )
    tx_reference = proof.tx_reference
    if not adapter.is_valid_reference(tx_reference):
        raise InvalidProofError(f"Malformed transaction reference for {adapter.name}")

    verification = adapter.verify_payment(
        tx_reference,
        intent.expected_transfers(),
        sleep=sleep,
        cancel_event=cancel_event,
    )
    if not verification.ok:
        return Settlement(verification=verification)
    return Settlement(verification=verification, outcome=fulfill(verification))


def resolve_payer(adapter: ChainAdapter, verification: VerificationResult, claimed: Optional[str] = None) -> str:
    """
    Wallet credited for a verified payment.

    Transaction references are public once on chain, so the signer recorded
    on chain is the only wallet that can be credited. A caller-named wallet
    is accepted only when it is that signer.
    """
    payer = verification.payer
    if not payer:
        raise ValidationError("Could not determine the paying wallet from the transaction")
    if claimed and not adapter.same_address(claimed.strip(), payer):
        raise PayerMismatchError("Named wallet did not sign this payment")
    return payer
