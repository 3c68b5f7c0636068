"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- SQLite pragmas (WAL, foreign keys, busy timeout) for local deployments
- Table definitions for subjects, payments, entitlements and the marketplace
"""
import logging
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    text,
)
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.sql import func

from facilitator.core.config import settings


# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

# Seconds a SQLite writer waits for the database lock
SQLITE_BUSY_TIMEOUT = 30

# Global engine and session factory
_engine = None
_SessionLocal = None


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL") or settings.TEST_DATABASE_URL
    if test_url:
        return test_url

    return os.getenv("DATABASE_URL") or settings.DATABASE_URL


def _set_sqlite_pragmas(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def init_engine(database_url: Optional[str] = None):
    """
    Initialize the SQLAlchemy engine.

    Args:
        database_url: Optional override for DATABASE_URL
    """
    global _engine, _SessionLocal

    url = database_url or get_database_url()

    if not url:
        raise ValueError(
            "DATABASE_URL is not configured. "
            "Set DATABASE_URL in environment or .env file."
        )

    if _engine is not None:
        _engine.dispose()

    parsed = make_url(url)
    if parsed.get_backend_name() == "sqlite":
        if parsed.database and parsed.database != ":memory:":
            Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)
        _engine = create_engine(
            url,
            connect_args={"timeout": SQLITE_BUSY_TIMEOUT, "check_same_thread": False},
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            pool_timeout=POOL_TIMEOUT,
            echo=False,
        )
        event.listen(_engine, "connect", _set_sqlite_pragmas)
    else:
        _engine = create_engine(
            url,
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            pool_timeout=POOL_TIMEOUT,
            pool_recycle=POOL_RECYCLE,
            pool_pre_ping=True,
            echo=False,  # Set to True for SQL query logging
        )

    # Create session factory
    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    return _engine


def get_engine():
    """Get the current SQLAlchemy engine."""
    global _engine
    if _engine is None:
        init_engine()
    return _engine


def get_session_factory():
    """Get the session factory."""
    global _SessionLocal
    if _SessionLocal is None:
        init_engine()
    return _SessionLocal


@contextmanager
def get_db_session():
    """
    Context manager for database sessions.

    Usage:
        with get_db_session() as session:
            session.execute(...)

    Commits on success, rolls back on any exception.
    """
    SessionLocal = get_session_factory()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def dialect_name(session: Session) -> str:
    return session.get_bind().dialect.name


def create_all_tables():
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    engine = get_engine()
    metadata.create_all(bind=engine)


def check_connection() -> bool:
    """
    Check if database connection is available.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logging.getLogger("facilitator").warning(f"Database connection check failed: {e}")
        return False


# Subjects: one row per wallet, optionally linked to a Telegram account
users = Table(
    'users',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('wallet', String(128), nullable=True),
    Column('telegram_id', String(64), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('wallet', name='uq_users_wallet'),
    UniqueConstraint('telegram_id', name='uq_users_telegram_id'),
)

# Paywall payments log; one row per proof, so a tx can unlock only once
payments = Table(
    'payments',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('wallet', String(128), nullable=False),
    Column('tier', String(64), nullable=False),
    Column('network', String(32), nullable=False),
    Column('amount_base', BigInteger, nullable=False),
    Column('tx_reference', String(128), nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    CheckConstraint('amount_base >= 0', name='ck_payments_amount_non_negative'),
    UniqueConstraint('tx_reference', name='uq_payments_tx_reference'),
    Index('idx_payments_wallet_created', 'wallet', 'created_at'),
)

# Entitlements are append-only; expires_at is epoch seconds
entitlements = Table(
    'entitlements',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('wallet', String(128), nullable=False),
    Column('tier', String(64), nullable=False),
    Column('expires_at', BigInteger, nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_entitlements_wallet_expires', 'wallet', 'expires_at'),
    Index('idx_entitlements_wallet_tier_expires', 'wallet', 'tier', 'expires_at'),
)

listings = Table(
    'listings',
    metadata,
    Column('id', String(64), primary_key=True),
    Column('seller', String(128), nullable=False),
    Column('network', String(32), nullable=False, server_default='solana'),
    Column('title', Text, nullable=False),
    Column('description', Text, nullable=True),
    Column('image_url', Text, nullable=True),
    Column('kind', String(32), nullable=False),  # digital | physical | service | crypto | virtual
    Column('supply', Integer, nullable=False),
    Column('remaining', Integer, nullable=False),
    Column('price_base', BigInteger, nullable=False),
    Column('mint', String(128), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    CheckConstraint('supply >= 0', name='ck_listings_supply_non_negative'),
    CheckConstraint('remaining >= 0', name='ck_listings_remaining_non_negative'),
    CheckConstraint('remaining <= supply', name='ck_listings_remaining_le_supply'),
    CheckConstraint('price_base >= 0', name='ck_listings_price_non_negative'),
    Index('idx_listings_remaining_created', 'remaining', 'created_at'),
    Index('idx_listings_seller_created', 'seller', 'created_at'),
)

# Purchases are append-only and written in the same transaction as the decrement
purchases = Table(
    'purchases',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('listing_id', String(64), ForeignKey('listings.id'), nullable=False),
    Column('buyer', String(128), nullable=False),
    Column('quantity', Integer, nullable=False, server_default='1'),
    Column('tx_reference', String(128), nullable=False),
    Column('receipt_ref', String(128), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    CheckConstraint('quantity > 0', name='ck_purchases_quantity_positive'),
    UniqueConstraint('tx_reference', name='uq_purchases_tx_reference'),
    Index('idx_purchases_buyer_created', 'buyer', 'created_at'),
    Index('idx_purchases_listing', 'listing_id'),
)

# Verified payments that could not be fulfilled; worked off by the refund process
unfulfilled_payments = Table(
    'unfulfilled_payments',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('tx_reference', String(128), nullable=False),
    Column('network', String(32), nullable=False),
    Column('listing_id', String(64), nullable=True),
    Column('buyer', String(128), nullable=True),
    Column('amount_base', BigInteger, nullable=False),
    Column('reason', String(64), nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('tx_reference', name='uq_unfulfilled_payments_tx_reference'),
)
