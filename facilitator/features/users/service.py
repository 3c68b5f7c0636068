"""
Subject identity service.
- ensure_user(session, wallet)
- link_wallet_telegram(wallet, telegram_id)
- get_user_by_wallet(wallet) / get_user_by_telegram(telegram_id)

A subject is a wallet address. At most one Telegram account is linked to a
wallet and a Telegram account is linked to at most one wallet.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy import insert, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from facilitator.core.database import dialect_name, get_db_session, users
from facilitator.core.errors import ConflictError, ValidationError

logger = logging.getLogger("facilitator")


def _row_to_dict(row) -> Dict[str, Any]:
    return {
        "id": row.id,
        "wallet": row.wallet,
        "telegramId": row.telegram_id,
        "createdAt": row.created_at.isoformat() if row.created_at else None,
    }


def ensure_user(session: Session, wallet: str) -> None:
    """Insert the subject row if missing. Runs inside the caller's transaction."""
    if not wallet:
        raise ValidationError("wallet is required")

    dialect = dialect_name(session)
    if dialect == "sqlite":
        stmt = sqlite_insert(users).values(wallet=wallet).on_conflict_do_nothing(index_elements=["wallet"])
        session.execute(stmt)
    elif dialect == "postgresql":
        stmt = pg_insert(users).values(wallet=wallet).on_conflict_do_nothing(index_elements=["wallet"])
        session.execute(stmt)
    else:
        try:
            with session.begin_nested():
                session.execute(insert(users).values(wallet=wallet))
        except IntegrityError:
            pass


def get_user_by_wallet(wallet: str) -> Optional[Dict[str, Any]]:
    with get_db_session() as session:
        row = session.execute(select(users).where(users.c.wallet == wallet)).first()
        return _row_to_dict(row) if row else None


def get_user_by_telegram(telegram_id) -> Optional[Dict[str, Any]]:
    with get_db_session() as session:
        row = session.execute(select(users).where(users.c.telegram_id == str(telegram_id))).first()
        return _row_to_dict(row) if row else None


def link_wallet_telegram(wallet: str, telegram_id) -> Dict[str, Any]:
    """
    Link a wallet to a Telegram account.

    Relinking the same pair is a no-op. Raises ConflictError when either side
    is already linked to someone else.
    """
    if not wallet or telegram_id is None or str(telegram_id).strip() == "":
        raise ValidationError("wallet and telegram_id are required")
    telegram_id = str(telegram_id).strip()

    try:
        with get_db_session() as session:
            ensure_user(session, wallet)

            holder = session.execute(
                select(users.c.wallet).where(users.c.telegram_id == telegram_id)
            ).first()
            if holder and holder.wallet != wallet:
                raise ConflictError("Telegram account is already linked to another wallet")

            current = session.execute(
                select(users).where(users.c.wallet == wallet)
            ).first()
            if current.telegram_id and current.telegram_id != telegram_id:
                raise ConflictError("Wallet is already linked to a different Telegram account")

            if current.telegram_id != telegram_id:
                session.execute(
                    update(users).where(users.c.wallet == wallet).values(telegram_id=telegram_id)
                )
            row = session.execute(select(users).where(users.c.wallet == wallet)).first()
            result = _row_to_dict(row)
    except IntegrityError as exc:
        # Lost a race with a concurrent link of the same Telegram account
        raise ConflictError("Telegram account is already linked to another wallet") from exc

    logger.info("user.linked", extra={"wallet": wallet, "event_type": "link"})
    return result
