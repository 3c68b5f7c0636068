"""Entitlement ledger: stacking grants, status and paid unlocks."""
import threading

import pytest
from sqlalchemy import func, select

from facilitator.core.database import entitlements, get_db_session, payments
from facilitator.core.errors import ConflictError, ValidationError
from facilitator.features.entitlements.service import (
    get_status,
    get_tier_status,
    grant_or_extend,
    record_paid_unlock,
)
from facilitator.tests.mocks import SOLANA_SIG, SOLANA_SIG_2, solana_sig

WALLET = "WaLLetAAAA1111111111111111111111111111111"
NOW = 1_700_000_000
DAY = 86_400


def test_status_before_any_grant():
    assert get_status(WALLET, now=NOW) == {
        "active": False,
        "wallet": WALLET,
        "tier": None,
        "expiresAt": None,
        "secondsLeft": 0,
    }


def test_first_grant_starts_now():
    assert grant_or_extend(WALLET, "day", DAY, now=NOW) == NOW + DAY
    status = get_status(WALLET, now=NOW)
    assert status["active"] is True
    assert status["tier"] == "day"
    assert status["expiresAt"] == NOW + DAY
    assert status["secondsLeft"] == DAY


def test_consecutive_grants_stack():
    first = grant_or_extend(WALLET, "week", 7 * DAY, now=NOW)
    second = grant_or_extend(WALLET, "week", 7 * DAY, now=NOW + 10)
    assert first == NOW + 7 * DAY
    assert second == NOW + 14 * DAY


def test_grant_after_expiry_restarts_from_now():
    grant_or_extend(WALLET, "day", DAY, now=NOW)
    later = NOW + 3 * DAY
    assert grant_or_extend(WALLET, "day", DAY, now=later) == later + DAY


def test_tiers_extend_independently():
    grant_or_extend(WALLET, "month", 30 * DAY, now=NOW)
    assert grant_or_extend(WALLET, "day", DAY, now=NOW) == NOW + DAY
    # status reports the entitlement that lasts longest
    assert get_status(WALLET, now=NOW)["tier"] == "month"
    assert get_tier_status(WALLET, "day", now=NOW)["expiresAt"] == NOW + DAY


def test_expired_entitlement_reports_inactive():
    grant_or_extend(WALLET, "day", DAY, now=NOW)
    status = get_status(WALLET, now=NOW + DAY + 1)
    assert status["active"] is False
    assert status["secondsLeft"] == 0
    assert status["expiresAt"] == NOW + DAY


def test_grants_are_append_only():
    grant_or_extend(WALLET, "day", DAY, now=NOW)
    grant_or_extend(WALLET, "day", DAY, now=NOW)
    with get_db_session() as session:
        count = session.execute(select(func.count()).select_from(entitlements)).scalar()
    assert count == 2


@pytest.mark.parametrize("duration", [0, -5])
def test_non_positive_duration_rejected(duration):
    with pytest.raises(ValidationError):
        grant_or_extend(WALLET, "day", duration, now=NOW)


def test_concurrent_grants_all_stack():
    workers = 8
    errors = []

    def grant():
        try:
            grant_or_extend(WALLET, "day", DAY, now=NOW)
        except Exception as exc:  # surfaced below
            errors.append(exc)

    threads = [threading.Thread(target=grant) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert get_tier_status(WALLET, "day", now=NOW)["expiresAt"] == NOW + workers * DAY


def test_paid_unlock_logs_payment_and_grants():
    result = record_paid_unlock(WALLET, "week", "solana", 5_000_000, SOLANA_SIG, 7 * DAY, now=NOW)
    assert result["replayed"] is False
    assert result["expiresAt"] == NOW + 7 * DAY
    assert result["tx"] == SOLANA_SIG
    with get_db_session() as session:
        row = session.execute(select(payments)).one()
    assert row.wallet == WALLET
    assert row.amount_base == 5_000_000
    assert row.tx_reference == SOLANA_SIG


def test_replayed_proof_does_not_extend_again():
    record_paid_unlock(WALLET, "week", "solana", 5_000_000, SOLANA_SIG, 7 * DAY, now=NOW)
    replay = record_paid_unlock(WALLET, "week", "solana", 5_000_000, SOLANA_SIG, 7 * DAY, now=NOW + 5)
    assert replay["replayed"] is True
    assert replay["expiresAt"] == NOW + 7 * DAY
    fresh = record_paid_unlock(WALLET, "week", "solana", 5_000_000, SOLANA_SIG_2, 7 * DAY, now=NOW + 5)
    assert fresh["expiresAt"] == NOW + 14 * DAY


def test_proof_reused_for_other_tier_conflicts():
    record_paid_unlock(WALLET, "week", "solana", 5_000_000, SOLANA_SIG, 7 * DAY, now=NOW)
    with pytest.raises(ConflictError):
        record_paid_unlock(WALLET, "day", "solana", 1_000_000, SOLANA_SIG, DAY, now=NOW)


def test_concurrent_replays_grant_once():
    results = []

    def unlock():
        results.append(record_paid_unlock(WALLET, "day", "solana", 1_000_000, solana_sig(7), DAY, now=NOW))

    threads = [threading.Thread(target=unlock) for _ in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(results) == 6
    assert sum(1 for r in results if not r["replayed"]) == 1
    assert all(r["expiresAt"] == NOW + DAY for r in results)
