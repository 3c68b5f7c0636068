"""
Marketplace API routes.

- POST /api/listings, GET /api/listings, GET /api/listings/{listing_id}
- POST /api/buy/{listing_id}: 402 challenge, or purchase with an X-PAYMENT proof
- GET  /api/inventory/{wallet}
"""
import logging
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from facilitator.api.deps import get_notifier, get_registry, get_verification_options
from facilitator.core.errors import ConflictError, NotFoundError, PayerMismatchError, SoldOutError
from facilitator.features.challenge.protocol import (
    PAYMENT_RESPONSE_HEADER,
    build_challenge,
    decode_proof,
    encode_settlement,
    resolve_payer,
    settle,
)
from facilitator.features.marketplace.service import (
    complete_purchase,
    create_listing,
    find_purchase_by_tx,
    get_bought,
    get_listed,
    get_listing,
    list_active_listings,
    purchase_intent,
    record_unfulfilled_payment,
)
from facilitator.features.notifications.events import (
    Notifier,
    dispatch,
    purchase_confirmation,
    sale_confirmation,
)
from facilitator.features.payments.registry import ChainRegistry
from facilitator.features.payments.types import VerificationResult

logger = logging.getLogger("facilitator")

router = APIRouter(prefix="/api", tags=["market"])


class CreateListingRequest(BaseModel):
    """New listing; price is in USDC."""
    seller: str
    title: str
    price: Decimal
    supply: int = Field(gt=0)
    kind: str = "digital"
    network: str = "solana"
    description: Optional[str] = None
    image_url: Optional[str] = None
    mint: Optional[str] = None


@router.post("/listings", status_code=201)
def create(body: CreateListingRequest, registry: ChainRegistry = Depends(get_registry)):
    adapter = registry.get(body.network)
    listing = create_listing(
        body.seller,
        body.title,
        body.price,
        body.supply,
        kind=body.kind,
        network=adapter.name,
        description=body.description,
        image_url=body.image_url,
        mint=body.mint,
    )
    return {"ok": True, "listing": listing}


@router.get("/listings")
def listings():
    return {"ok": True, "listings": list_active_listings()}


@router.get("/listings/{listing_id}")
def listing_detail(listing_id: str):
    listing = get_listing(listing_id)
    if listing is None:
        raise NotFoundError(f"Listing {listing_id} not found")
    return {"ok": True, "listing": listing}


@router.post("/buy/{listing_id}")
def buy(
    listing_id: str,
    request: Request,
    buyer: Optional[str] = Query(None),
    x_payment: Optional[str] = Header(None, alias="X-PAYMENT"),
    registry: ChainRegistry = Depends(get_registry),
    notifier: Notifier = Depends(get_notifier),
    verify_options: dict = Depends(get_verification_options),
):
    """
    Two-round purchase of one unit.

    Sold out before payment is a 409 without a challenge. Sold out after a
    verified payment is also a 409, and the payment is recorded for refund.
    The unit goes to the wallet that signed the payment; `buyer`, when
    given, must be that wallet.
    """
    listing = get_listing(listing_id)
    if listing is None:
        raise NotFoundError(f"Listing {listing_id} not found")
    adapter = registry.get(listing["network"])
    intent = purchase_intent(
        listing,
        asset=adapter.asset,
        fee_bps=registry.market_fee_bps,
        admin_wallet=registry.market_admin_wallet(adapter),
    )
    resource = str(request.url)

    if not x_payment:
        if listing["remaining"] <= 0:
            raise SoldOutError("Sold out", details={"listingId": listing_id})
        return JSONResponse(
            status_code=402,
            content=build_challenge(intent, resource=resource, description=listing["title"]),
        )

    proof = decode_proof(x_payment)
    existing = find_purchase_by_tx(proof.tx_reference)
    if existing is not None:
        if existing["listingId"] != listing_id:
            raise ConflictError("Transaction was already used for a different purchase")
        if buyer and not adapter.same_address(buyer.strip(), existing["buyer"]):
            raise PayerMismatchError("Named buyer did not sign this payment")
        return {"ok": True, "purchase": {**existing, "replayed": True}, "listing": listing}

    def fulfill(verification: VerificationResult) -> dict:
        purchaser = resolve_payer(adapter, verification, buyer)
        try:
            return complete_purchase(listing_id, purchaser, verification.tx_reference)
        except SoldOutError:
            record_unfulfilled_payment(
                verification.tx_reference,
                adapter.name,
                intent.total_base,
                "sold_out",
                listing_id=listing_id,
                buyer=purchaser,
            )
            raise

    settlement = settle(adapter, intent, proof, fulfill, **verify_options)
    if not settlement.ok:
        logger.info(
            "purchase.verification_failed",
            extra={
                "tx": proof.tx_reference,
                "listing_id": listing_id,
                "reason": settlement.verification.reason.value,
            },
        )
        return JSONResponse(
            status_code=402,
            content=build_challenge(
                intent,
                resource=resource,
                description=listing["title"],
                error="payment verification failed",
                verification=settlement.verification,
            ),
        )

    purchase = settlement.outcome
    if not purchase["replayed"]:
        amount = listing["price"]
        dispatch(notifier, listing["seller"], sale_confirmation(listing["title"], amount, purchase["txReference"], purchase["buyer"]))
        dispatch(
            notifier,
            purchase["buyer"],
            purchase_confirmation(listing["title"], amount, purchase["txReference"], purchase["receiptRef"]),
        )

    response = JSONResponse(content={"ok": True, "purchase": purchase, "listing": get_listing(listing_id)})
    response.headers[PAYMENT_RESPONSE_HEADER] = encode_settlement(settlement.verification, adapter.network)
    return response


@router.get("/inventory/{wallet}")
def inventory(wallet: str):
    return {"ok": True, "listed": get_listed(wallet), "bought": get_bought(wallet)}
