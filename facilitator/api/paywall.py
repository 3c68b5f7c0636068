"""
Paywall API routes.

- GET /paywall/{tier}: 402 challenge, or unlock with an X-PAYMENT proof
- GET /api/status/{wallet}: latest entitlement of a wallet
- GET /api/tiers: configured tiers and prices
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request
from fastapi.responses import JSONResponse

from facilitator.api.deps import get_active_signer, get_notifier, get_registry, get_verification_options
from facilitator.core.config import settings
from facilitator.core.errors import NotFoundError
from facilitator.features.challenge.protocol import (
    PAYMENT_RESPONSE_HEADER,
    build_challenge,
    decode_proof,
    encode_settlement,
    resolve_payer,
    settle,
)
from facilitator.features.entitlements.service import get_status, record_paid_unlock
from facilitator.features.notifications.events import Notifier, dispatch, payment_confirmation
from facilitator.features.payments.amounts import format_amount, parse_amount
from facilitator.features.payments.registry import ChainRegistry
from facilitator.features.payments.signer import ActiveSigner
from facilitator.features.payments.types import VerificationResult

logger = logging.getLogger("facilitator")

router = APIRouter(tags=["paywall"])


@router.get("/paywall/{tier}")
def paywall(
    tier: str,
    request: Request,
    network: str = Query("solana"),
    wallet: Optional[str] = Query(None),
    x_payment: Optional[str] = Header(None, alias="X-PAYMENT"),
    registry: ChainRegistry = Depends(get_registry),
    signer: ActiveSigner = Depends(get_active_signer),
    notifier: Notifier = Depends(get_notifier),
    verify_options: dict = Depends(get_verification_options),
):
    """
    Two-round paywall.

    Without a proof the caller receives HTTP 402 and the payment terms. With a
    proof the payment is verified, logged and the tier granted or extended
    for the wallet that signed it. `wallet`, when given, must be that signer.
    Holding an active tier is not proof of ownership, so a request without a
    proof is always challenged.
    """
    tier_config = settings.PAYWALL_TIERS.get(tier)
    if tier_config is None:
        raise NotFoundError(f"Unknown tier: {tier}")
    adapter = registry.get(network)
    intent = registry.paywall_intent(network, tier_config.price_usd, signer)
    resource = str(request.url)
    description = f"{tier} access"

    if not x_payment:
        return JSONResponse(status_code=402, content=build_challenge(intent, resource=resource, description=description))

    proof = decode_proof(x_payment)

    def unlock(verification: VerificationResult) -> dict:
        return record_paid_unlock(
            resolve_payer(adapter, verification, wallet),
            tier,
            adapter.name,
            intent.total_base,
            verification.tx_reference,
            tier_config.duration_seconds,
        )

    settlement = settle(adapter, intent, proof, unlock, **verify_options)
    if not settlement.ok:
        logger.info(
            "paywall.verification_failed",
            extra={"tx": proof.tx_reference, "network": adapter.name, "reason": settlement.verification.reason.value},
        )
        return JSONResponse(
            status_code=402,
            content=build_challenge(
                intent,
                resource=resource,
                description=description,
                error="payment verification failed",
                verification=settlement.verification,
            ),
        )

    result = settlement.outcome
    if not result["replayed"]:
        dispatch(
            notifier,
            result["wallet"],
            payment_confirmation(tier, format_amount(intent.total_base), result["tx"], result["expiresAt"]),
        )

    response = JSONResponse(content={"ok": True, **result})
    response.headers[PAYMENT_RESPONSE_HEADER] = encode_settlement(settlement.verification, adapter.network)
    return response


@router.get("/api/status/{wallet}")
def status(wallet: str):
    return get_status(wallet)


@router.get("/api/tiers")
def tiers():
    return {
        "ok": True,
        "tiers": [
            {
                "tier": name,
                "price": format_amount(parse_amount(config.price_usd)),
                "priceBase": parse_amount(config.price_usd),
                "durationSeconds": config.duration_seconds,
            }
            for name, config in settings.PAYWALL_TIERS.items()
        ],
    }
