"""Wallet to Telegram account linking."""
import pytest

from facilitator.core.database import get_db_session
from facilitator.core.errors import ConflictError, ValidationError
from facilitator.features.users.service import (
    ensure_user,
    get_user_by_telegram,
    get_user_by_wallet,
    link_wallet_telegram,
)

WALLET_A = "WaLLetAAAA1111111111111111111111111111111"
WALLET_B = "WaLLetBBBB2222222222222222222222222222222"


def test_ensure_user_is_idempotent():
    with get_db_session() as session:
        ensure_user(session, WALLET_A)
        ensure_user(session, WALLET_A)
    user = get_user_by_wallet(WALLET_A)
    assert user["wallet"] == WALLET_A
    assert user["telegramId"] is None


def test_link_creates_subject_and_is_queryable_both_ways():
    user = link_wallet_telegram(WALLET_A, 12345)
    assert user["telegramId"] == "12345"
    assert get_user_by_telegram(12345)["wallet"] == WALLET_A
    assert get_user_by_wallet(WALLET_A)["telegramId"] == "12345"


def test_relinking_same_pair_is_noop():
    first = link_wallet_telegram(WALLET_A, "777")
    again = link_wallet_telegram(WALLET_A, "777")
    assert first["id"] == again["id"]


def test_telegram_account_cannot_link_two_wallets():
    link_wallet_telegram(WALLET_A, "777")
    with pytest.raises(ConflictError):
        link_wallet_telegram(WALLET_B, "777")
    assert get_user_by_telegram("777")["wallet"] == WALLET_A


def test_wallet_cannot_link_two_telegram_accounts():
    link_wallet_telegram(WALLET_A, "777")
    with pytest.raises(ConflictError):
        link_wallet_telegram(WALLET_A, "888")
    assert get_user_by_telegram("888") is None


def test_missing_fields_rejected():
    with pytest.raises(ValidationError):
        link_wallet_telegram("", "1")
    with pytest.raises(ValidationError):
        link_wallet_telegram(WALLET_A, " ")


def test_unknown_lookups_return_none():
    assert get_user_by_wallet("nobody") is None
    assert get_user_by_telegram("0") is None
