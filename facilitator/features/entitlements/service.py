"""
Entitlement ledger.

Entitlement rows are append-only. The active entitlement of a subject is the
row with the greatest `expires_at` (epoch seconds) that is still in the
future. A grant appends `max(now, current tier expiry) + duration`, so
consecutive grants stack instead of overlapping.

Grants for one subject are serialized: the subject row is upserted first
(SQLite takes its write lock there) and locked FOR UPDATE on Postgres before
the new expiry is computed.
"""

import logging
import time
from typing import Any, Dict, Optional

from sqlalchemy import BigInteger, case, func, insert, literal, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from facilitator.core.database import dialect_name, entitlements, get_db_session, payments, users
from facilitator.core.errors import ConflictError, ValidationError
from facilitator.core.logging import log_event
from facilitator.features.users.service import ensure_user

logger = logging.getLogger("facilitator")


def _now(now: Optional[int]) -> int:
    return int(now) if now is not None else int(time.time())


def _lock_subject(session: Session, wallet: str) -> None:
    ensure_user(session, wallet)
    stmt = select(users.c.id).where(users.c.wallet == wallet)
    if dialect_name(session) == "postgresql":
        stmt = stmt.with_for_update()
    session.execute(stmt)


def _tier_expiry(session: Session, wallet: str, tier: str) -> Optional[int]:
    return session.execute(
        select(func.max(entitlements.c.expires_at)).where(
            entitlements.c.wallet == wallet,
            entitlements.c.tier == tier,
        )
    ).scalar()


def _grant(session: Session, wallet: str, tier: str, duration_seconds: int, now: int) -> int:
    _lock_subject(session, wallet)

    current = (
        select(func.max(entitlements.c.expires_at))
        .where(entitlements.c.wallet == wallet, entitlements.c.tier == tier)
        .scalar_subquery()
    )
    now_value = literal(now, BigInteger)
    new_expiry = case((current > now_value, current), else_=now_value) + literal(duration_seconds, BigInteger)

    session.execute(
        insert(entitlements).from_select(
            ["wallet", "tier", "expires_at"],
            select(literal(wallet), literal(tier), new_expiry),
        )
    )
    # The appended row is the tier maximum while the subject lock is held
    return int(_tier_expiry(session, wallet, tier))


def _validate_grant(wallet: str, tier: str, duration_seconds: int) -> None:
    if not wallet:
        raise ValidationError("wallet is required")
    if not tier:
        raise ValidationError("tier is required")
    if duration_seconds is None or int(duration_seconds) <= 0:
        raise ValidationError("duration_seconds must be positive")


def grant_or_extend(wallet: str, tier: str, duration_seconds: int, *, now: Optional[int] = None) -> int:
    """Append an entitlement and return its expiry (epoch seconds)."""
    _validate_grant(wallet, tier, duration_seconds)
    with get_db_session() as session:
        expires_at = _grant(session, wallet, tier, int(duration_seconds), _now(now))
    logger.info("entitlement.granted", extra={"wallet": wallet, "tier": tier})
    return expires_at


def _status_payload(wallet: str, tier: Optional[str], expires_at: Optional[int], now: int) -> Dict[str, Any]:
    if expires_at is None:
        return {"active": False, "wallet": wallet, "tier": None, "expiresAt": None, "secondsLeft": 0}
    left = max(0, int(expires_at) - now)
    return {
        "active": left > 0,
        "wallet": wallet,
        "tier": tier,
        "expiresAt": int(expires_at),
        "secondsLeft": left,
    }


def get_status(wallet: str, *, now: Optional[int] = None) -> Dict[str, Any]:
    """Latest entitlement across all tiers."""
    with get_db_session() as session:
        row = session.execute(
            select(entitlements.c.tier, entitlements.c.expires_at)
            .where(entitlements.c.wallet == wallet)
            .order_by(entitlements.c.expires_at.desc(), entitlements.c.id.desc())
            .limit(1)
        ).first()
    if row is None:
        return _status_payload(wallet, None, None, _now(now))
    return _status_payload(wallet, row.tier, row.expires_at, _now(now))


def get_tier_status(wallet: str, tier: str, *, now: Optional[int] = None) -> Dict[str, Any]:
    with get_db_session() as session:
        expires_at = _tier_expiry(session, wallet, tier)
    return _status_payload(wallet, tier, expires_at, _now(now))


def record_paid_unlock(
    wallet: str,
    tier: str,
    network: str,
    amount_base: int,
    tx_reference: str,
    duration_seconds: int,
    *,
    now: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Log a verified paywall payment and grant the tier in one transaction.

    A transaction reference unlocks at most once. Replays return the current
    expiry for the tier with `replayed=True` and grant nothing.
    """
    _validate_grant(wallet, tier, duration_seconds)
    if not tx_reference:
        raise ValidationError("tx_reference is required")
    current_time = _now(now)

    try:
        with get_db_session() as session:
            _lock_subject(session, wallet)
            session.execute(
                insert(payments).values(
                    wallet=wallet,
                    tier=tier,
                    network=network,
                    amount_base=int(amount_base),
                    tx_reference=tx_reference,
                )
            )
            expires_at = _grant(session, wallet, tier, int(duration_seconds), current_time)
    except IntegrityError:
        return _replayed_unlock(wallet, tier, tx_reference, current_time)

    log_event(
        "info",
        "paywall.unlocked",
        wallet=wallet,
        network=network,
        tx=tx_reference,
        event_type="payment_confirmation",
        extra={"tier": tier},
    )
    result = _status_payload(wallet, tier, expires_at, current_time)
    result.update({"tx": tx_reference, "replayed": False})
    return result


def _replayed_unlock(wallet: str, tier: str, tx_reference: str, now: int) -> Dict[str, Any]:
    with get_db_session() as session:
        existing = session.execute(
            select(payments.c.wallet, payments.c.tier).where(payments.c.tx_reference == tx_reference)
        ).first()
        if existing is None:
            raise ConflictError("Payment could not be recorded")
        if existing.tier != tier:
            raise ConflictError("Transaction was already used to unlock a different tier")
        expires_at = _tier_expiry(session, existing.wallet, tier)

    log_event("warning", "paywall.replayed", wallet=existing.wallet, tx=tx_reference, extra={"tier": tier})
    result = _status_payload(existing.wallet, tier, expires_at, now)
    result.update({"tx": tx_reference, "replayed": True})
    return result
