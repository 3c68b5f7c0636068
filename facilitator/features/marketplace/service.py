"""
Marketplace fulfillment.

Listings carry a finite supply. A purchase is a single compare-and-decrement
(`remaining = remaining - 1 WHERE remaining > 0`) followed by the purchase
insert, in one transaction. `purchases.tx_reference` is unique, so a payment
can fulfil at most one purchase; resubmitting it returns the original.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union
from uuid import uuid4

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError

from facilitator.core.database import get_db_session, listings, purchases, unfulfilled_payments
from facilitator.core.errors import ConflictError, NotFoundError, SoldOutError, ValidationError
from facilitator.core.logging import log_event
from facilitator.features.payments.amounts import format_amount, parse_amount
from facilitator.features.payments.types import ExpectedTransfer, PaymentIntent

logger = logging.getLogger("facilitator")

LISTING_KINDS = {"digital", "physical", "service", "crypto", "virtual"}
MAX_FEE_BPS = 10000


def _listing_to_dict(row) -> Dict[str, Any]:
    return {
        "id": row.id,
        "seller": row.seller,
        "network": row.network,
        "title": row.title,
        "description": row.description,
        "imageUrl": row.image_url,
        "kind": row.kind,
        "supply": row.supply,
        "remaining": row.remaining,
        "priceBase": int(row.price_base),
        "price": format_amount(int(row.price_base)),
        "mint": row.mint,
        "createdAt": row.created_at.isoformat() if row.created_at else None,
    }


def _purchase_to_dict(row) -> Dict[str, Any]:
    return {
        "id": row.id,
        "listingId": row.listing_id,
        "buyer": row.buyer,
        "quantity": row.quantity,
        "txReference": row.tx_reference,
        "receiptRef": row.receipt_ref,
        "createdAt": row.created_at.isoformat() if row.created_at else None,
    }


def create_listing(
    seller: str,
    title: str,
    price: Union[Decimal, int, float, str],
    supply: int,
    *,
    kind: str = "digital",
    network: str = "solana",
    description: Optional[str] = None,
    image_url: Optional[str] = None,
    mint: Optional[str] = None,
    listing_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Create a listing with `remaining = supply`. `price` is in USDC."""
    if not seller:
        raise ValidationError("seller is required")
    if not title or not title.strip():
        raise ValidationError("title is required")
    if kind not in LISTING_KINDS:
        raise ValidationError(f"kind must be one of {', '.join(sorted(LISTING_KINDS))}")
    if supply is None or int(supply) <= 0:
        raise ValidationError("supply must be a positive integer")
    price_base = parse_amount(price)
    if price_base <= 0:
        raise ValidationError("price must be positive")

    listing_id = listing_id or uuid4().hex
    try:
        with get_db_session() as session:
            session.execute(
                insert(listings).values(
                    id=listing_id,
                    seller=seller,
                    network=network,
                    title=title.strip(),
                    description=description,
                    image_url=image_url,
                    kind=kind,
                    supply=int(supply),
                    remaining=int(supply),
                    price_base=price_base,
                    mint=mint,
                )
            )
            row = session.execute(select(listings).where(listings.c.id == listing_id)).first()
            result = _listing_to_dict(row)
    except IntegrityError as exc:
        raise ConflictError(f"Listing {listing_id} already exists") from exc

    log_event("info", "listing.created", wallet=seller, network=network, extra={"listing_id": listing_id})
    return result


def get_listing(listing_id: str) -> Optional[Dict[str, Any]]:
    with get_db_session() as session:
        row = session.execute(select(listings).where(listings.c.id == listing_id)).first()
        return _listing_to_dict(row) if row else None


def list_active_listings() -> List[Dict[str, Any]]:
    with get_db_session() as session:
        rows = session.execute(
            select(listings).where(listings.c.remaining > 0).order_by(listings.c.created_at.desc())
        ).all()
        return [_listing_to_dict(row) for row in rows]


def get_listed(seller: str) -> List[Dict[str, Any]]:
    with get_db_session() as session:
        rows = session.execute(
            select(listings).where(listings.c.seller == seller).order_by(listings.c.created_at.desc())
        ).all()
        return [_listing_to_dict(row) for row in rows]


def get_bought(buyer: str) -> List[Dict[str, Any]]:
    """Purchases of a buyer, each with the listing it bought."""
    with get_db_session() as session:
        rows = session.execute(
            select(
                purchases,
                listings.c.title,
                listings.c.kind,
                listings.c.network,
                listings.c.price_base,
                listings.c.image_url,
            )
            .join(listings, purchases.c.listing_id == listings.c.id)
            .where(purchases.c.buyer == buyer)
            .order_by(purchases.c.created_at.desc(), purchases.c.id.desc())
        ).all()
        bought = []
        for row in rows:
            item = _purchase_to_dict(row)
            item["listing"] = {
                "id": row.listing_id,
                "title": row.title,
                "kind": row.kind,
                "network": row.network,
                "priceBase": int(row.price_base),
                "imageUrl": row.image_url,
            }
            bought.append(item)
        return bought


def find_purchase_by_tx(tx_reference: str) -> Optional[Dict[str, Any]]:
    with get_db_session() as session:
        row = session.execute(select(purchases).where(purchases.c.tx_reference == tx_reference)).first()
        return _purchase_to_dict(row) if row else None


def purchase_intent(
    listing: Dict[str, Any],
    *,
    asset: str,
    fee_bps: int = 0,
    admin_wallet: Optional[str] = None,
) -> PaymentIntent:
    """
    Payment terms for one unit of a listing.

    With a fee and an admin wallet the seller is owed `price - fee` and the
    admin wallet `fee`; both transfers must appear in the same transaction.
    """
    price_base = int(listing["priceBase"])
    seller = listing["seller"]
    fee = price_base * max(0, min(int(fee_bps), MAX_FEE_BPS)) // MAX_FEE_BPS

    if fee <= 0 or not admin_wallet or admin_wallet == seller:
        return PaymentIntent(network=listing["network"], recipient=seller, amount_base=price_base, asset=asset)
    return PaymentIntent(
        network=listing["network"],
        recipient=seller,
        amount_base=price_base - fee,
        asset=asset,
        extra_transfers=(ExpectedTransfer(admin_wallet, fee),),
    )


def _replay_or_raise(listing_id: str, tx_reference: str, exc: Exception) -> Dict[str, Any]:
    existing = find_purchase_by_tx(tx_reference)
    if existing is None:
        raise exc
    if existing["listingId"] != listing_id:
        raise ConflictError("Transaction was already used for a different purchase") from exc
    log_event("warning", "purchase.replayed", wallet=existing["buyer"], tx=tx_reference, extra={"listing_id": listing_id})
    return {**existing, "replayed": True}


def complete_purchase(
    listing_id: str,
    buyer: str,
    tx_reference: str,
    receipt_ref: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Atomically take one unit of a listing and record the purchase.

    Raises SoldOutError (no side effects) when nothing remains and
    NotFoundError for an unknown listing. A tx_reference that already paid
    for this listing returns the original purchase with `replayed=True`.
    """
    if not buyer:
        raise ValidationError("buyer is required")
    if not tx_reference:
        raise ValidationError("tx_reference is required")

    try:
        with get_db_session() as session:
            decremented = session.execute(
                update(listings)
                .where(listings.c.id == listing_id, listings.c.remaining > 0)
                .values(remaining=listings.c.remaining - 1)
            )
            if decremented.rowcount == 0:
                exists = session.execute(select(listings.c.id).where(listings.c.id == listing_id)).first()
                if exists is None:
                    raise NotFoundError(f"Listing {listing_id} not found")
                raise SoldOutError("Sold out", details={"listingId": listing_id})

            inserted = session.execute(
                insert(purchases).values(
                    listing_id=listing_id,
                    buyer=buyer,
                    quantity=1,
                    tx_reference=tx_reference,
                    receipt_ref=receipt_ref,
                )
            )
            purchase_id = inserted.inserted_primary_key[0]
            row = session.execute(select(purchases).where(purchases.c.id == purchase_id)).first()
            purchase = _purchase_to_dict(row)
    except IntegrityError:
        # The decrement is rolled back with the failed insert
        return _replay_or_raise(listing_id, tx_reference, ConflictError("Purchase could not be recorded"))
    except SoldOutError as exc:
        return _replay_or_raise(listing_id, tx_reference, exc)

    log_event(
        "info",
        "purchase.completed",
        wallet=buyer,
        tx=tx_reference,
        event_type="purchase_confirmation",
        extra={"listing_id": listing_id},
    )
    return {**purchase, "replayed": False}


def record_unfulfilled_payment(
    tx_reference: str,
    network: str,
    amount_base: int,
    reason: str,
    *,
    listing_id: Optional[str] = None,
    buyer: Optional[str] = None,
) -> Dict[str, Any]:
    """Record a verified payment that could not be fulfilled, for manual refund."""
    record = {
        "txReference": tx_reference,
        "network": network,
        "listingId": listing_id,
        "buyer": buyer,
        "amountBase": int(amount_base),
        "reason": reason,
    }
    try:
        with get_db_session() as session:
            session.execute(
                insert(unfulfilled_payments).values(
                    tx_reference=tx_reference,
                    network=network,
                    listing_id=listing_id,
                    buyer=buyer,
                    amount_base=int(amount_base),
                    reason=reason,
                )
            )
    except IntegrityError:
        logger.info("unfulfilled.already_recorded", extra={"tx": tx_reference})
        return record

    log_event(
        "warning",
        "payment.unfulfilled",
        wallet=buyer,
        network=network,
        tx=tx_reference,
        error_code=reason,
        extra={"listing_id": listing_id},
    )
    return record


def list_unfulfilled_payments() -> List[Dict[str, Any]]:
    with get_db_session() as session:
        rows = session.execute(select(unfulfilled_payments).order_by(unfulfilled_payments.c.id)).all()
        return [
            {
                "txReference": row.tx_reference,
                "network": row.network,
                "listingId": row.listing_id,
                "buyer": row.buyer,
                "amountBase": int(row.amount_base),
                "reason": row.reason,
            }
            for row in rows
        ]
