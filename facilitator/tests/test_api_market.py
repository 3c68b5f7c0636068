"""Marketplace HTTP flow: listings, purchase, sold out, inventory."""
import pytest

from facilitator.api.deps import get_registry
from facilitator.core.config import settings
from facilitator.features.challenge.protocol import encode_proof
from facilitator.features.marketplace.service import list_unfulfilled_payments
from facilitator.features.notifications.events import EventType
from facilitator.features.users.service import get_user_by_wallet
from facilitator.main import app
from facilitator.tests.mocks import (
    ADMIN_WALLET,
    PAYER_WALLET,
    SELLER_WALLET,
    make_registry,
    solana_sig,
    solana_tx,
)


def _create(client, supply=2, price="5", **extra):
    resp = client.post(
        "/api/listings",
        json={"seller": SELLER_WALLET, "title": "Sticker pack", "price": price, "supply": supply, **extra},
    )
    assert resp.status_code == 201
    return resp.json()["listing"]


def _buy(client, listing_id, sig=None, params=None):
    headers = {"X-PAYMENT": encode_proof("solana", sig)} if sig else {}
    return client.post(f"/api/buy/{listing_id}", params=params or {}, headers=headers)


def test_create_and_read_listings(client):
    listing = _create(client, supply=3, description="holo")
    assert listing["remaining"] == 3
    assert client.get(f"/api/listings/{listing['id']}").json()["listing"]["description"] == "holo"
    ids = [item["id"] for item in client.get("/api/listings").json()["listings"]]
    assert listing["id"] in ids


def test_missing_listing_is_404(client):
    resp = client.get("/api/listings/nope")
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "not_found"
    assert _buy(client, "nope").status_code == 404


def test_listing_network_must_be_enabled(client):
    assert _create(client, network="base-mainnet")["network"] == "base"
    resp = client.post(
        "/api/listings",
        json={"seller": SELLER_WALLET, "title": "x", "price": "1", "supply": 1, "network": "tron"},
    )
    assert resp.status_code == 400


def test_invalid_listing_body_is_422(client):
    resp = client.post("/api/listings", json={"seller": SELLER_WALLET, "title": "x", "price": "1", "supply": 0})
    assert resp.status_code == 422
    error = resp.json()["error"]
    assert error["code"] == "request_invalid"
    assert "body.supply" in error["details"]["fields"]


def test_round_one_challenge_pays_seller(client):
    listing = _create(client)
    resp = _buy(client, listing["id"])
    assert resp.status_code == 402
    req = resp.json()["accepts"][0]
    assert req["payTo"] == SELLER_WALLET
    assert req["amountBase"] == 5_000_000
    assert req["description"] == "Sticker pack"


def test_paid_purchase_decrements_and_shows_in_inventory(client, solana_rpc):
    listing = _create(client, supply=2)
    solana_rpc.responses = [solana_tx({SELLER_WALLET: 5_000_000})]
    resp = _buy(client, listing["id"], sig=solana_sig(1))
    assert resp.status_code == 200
    body = resp.json()
    assert body["purchase"]["buyer"] == PAYER_WALLET
    assert body["purchase"]["replayed"] is False
    assert body["listing"]["remaining"] == 1
    assert "X-PAYMENT-RESPONSE" in resp.headers

    inventory = client.get(f"/api/inventory/{PAYER_WALLET}").json()
    assert [p["listingId"] for p in inventory["bought"]] == [listing["id"]]
    seller_inventory = client.get(f"/api/inventory/{SELLER_WALLET}").json()
    assert [l["id"] for l in seller_inventory["listed"]] == [listing["id"]]


def test_replayed_proof_returns_original_without_rpc(client, solana_rpc):
    listing = _create(client, supply=2)
    solana_rpc.responses = [solana_tx({SELLER_WALLET: 5_000_000})]
    first = _buy(client, listing["id"], sig=solana_sig(1)).json()
    calls = len(solana_rpc.calls)

    replay = _buy(client, listing["id"], sig=solana_sig(1))
    assert replay.status_code == 200
    assert replay.json()["purchase"]["replayed"] is True
    assert replay.json()["purchase"]["id"] == first["purchase"]["id"]
    assert len(solana_rpc.calls) == calls
    assert client.get(f"/api/listings/{listing['id']}").json()["listing"]["remaining"] == 1


def test_proof_reused_on_other_listing_conflicts(client, solana_rpc):
    a = _create(client)
    b = _create(client)
    solana_rpc.responses = [solana_tx({SELLER_WALLET: 5_000_000})]
    _buy(client, a["id"], sig=solana_sig(1))
    resp = _buy(client, b["id"], sig=solana_sig(1))
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "conflict"


def test_underpayment_reissues_challenge(client, solana_rpc):
    listing = _create(client)
    solana_rpc.responses = [solana_tx({SELLER_WALLET: 4_000_000})]
    resp = _buy(client, listing["id"], sig=solana_sig(1))
    assert resp.status_code == 402
    assert resp.json()["verification"]["reason"] == "amount-mismatch"
    assert client.get(f"/api/listings/{listing['id']}").json()["listing"]["remaining"] == 2


def test_sold_out_before_payment_is_409(client, solana_rpc):
    listing = _create(client, supply=1)
    solana_rpc.responses = [solana_tx({SELLER_WALLET: 5_000_000})]
    _buy(client, listing["id"], sig=solana_sig(1))
    resp = _buy(client, listing["id"])
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "sold_out"
    assert resp.json()["error"]["details"] == {"listingId": listing["id"]}


def test_buyer_other_than_payer_is_rejected(client, solana_rpc):
    listing = _create(client, supply=1)
    solana_rpc.responses = [solana_tx({SELLER_WALLET: 5_000_000})]
    resp = _buy(client, listing["id"], sig=solana_sig(1), params={"buyer": "Squatter"})
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "payer_mismatch"
    assert client.get(f"/api/listings/{listing['id']}").json()["listing"]["remaining"] == 1

    own = _buy(client, listing["id"], sig=solana_sig(1), params={"buyer": PAYER_WALLET})
    assert own.status_code == 200
    assert own.json()["purchase"]["buyer"] == PAYER_WALLET
    assert own.json()["purchase"]["replayed"] is False

    replay = _buy(client, listing["id"], sig=solana_sig(1), params={"buyer": "Squatter"})
    assert replay.status_code == 403


def test_sold_out_after_payment_records_refund_candidate(client, solana_rpc):
    listing = _create(client, supply=1)
    solana_rpc.responses = [solana_tx({SELLER_WALLET: 5_000_000})]
    assert _buy(client, listing["id"], sig=solana_sig(1)).status_code == 200

    late = _buy(client, listing["id"], sig=solana_sig(2))
    assert late.status_code == 409
    assert late.json()["error"]["code"] == "sold_out"
    [unfulfilled] = list_unfulfilled_payments()
    assert unfulfilled["txReference"] == solana_sig(2)
    assert unfulfilled["buyer"] == PAYER_WALLET
    assert unfulfilled["listingId"] == listing["id"]
    assert unfulfilled["amountBase"] == 5_000_000


@pytest.fixture
def fee_registry(solana_rpc):
    registry = make_registry(solana_rpc, fee_bps=250, admin_wallet=ADMIN_WALLET)
    app.dependency_overrides[get_registry] = lambda: registry
    return registry


def test_fee_split_requires_both_transfers(client, fee_registry, solana_rpc):
    listing = _create(client)
    challenge = _buy(client, listing["id"]).json()["accepts"][0]
    assert challenge["amountBase"] == 4_875_000
    assert challenge["extra"]["splits"][1] == {"recipient": ADMIN_WALLET, "amountBase": 125_000}

    solana_rpc.responses = [solana_tx({SELLER_WALLET: 5_000_000})]
    assert _buy(client, listing["id"], sig=solana_sig(1)).status_code == 402

    solana_rpc.responses = [solana_tx({SELLER_WALLET: 4_875_000, ADMIN_WALLET: 125_000})]
    assert _buy(client, listing["id"], sig=solana_sig(2)).status_code == 200


def test_sale_and_purchase_notifications(client, solana_rpc, notifier):
    client.post("/api/link", json={"wallet": SELLER_WALLET, "telegram_id": "100"})
    client.post("/api/link", json={"wallet": PAYER_WALLET, "telegram_id": "200"})
    listing = _create(client)
    solana_rpc.responses = [solana_tx({SELLER_WALLET: 5_000_000})]
    _buy(client, listing["id"], sig=solana_sig(1))

    sent = {telegram_id: event for telegram_id, event in notifier.sent}
    assert sent["100"].type == EventType.SALE_CONFIRMATION
    assert sent["100"].buyer == PAYER_WALLET
    assert sent["200"].type == EventType.PURCHASE_CONFIRMATION
    assert sent["200"].item == "Sticker pack"


def test_link_conflict_is_409(client):
    assert client.post("/api/link", json={"wallet": "w1", "telegram_id": 9}).status_code == 200
    resp = client.post("/api/link", json={"wallet": "w2", "telegram_id": 9})
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "conflict"


def test_link_requires_bot_key(client):
    resp = client.post("/api/link", json={"wallet": "w1", "telegram_id": 9}, headers={"X-Link-Key": "guess"})
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "forbidden"
    assert get_user_by_wallet("w1") is None


def test_link_closed_when_no_key_configured(client, monkeypatch):
    monkeypatch.setattr(settings, "LINK_API_KEY", None)
    resp = client.post("/api/link", json={"wallet": "w1", "telegram_id": 9})
    assert resp.status_code == 403
