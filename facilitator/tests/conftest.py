"""HTTP test client with chain access, signer and notifier replaced."""
import pytest
from fastapi.testclient import TestClient

from facilitator.api.deps import get_active_signer, get_notifier, get_registry, get_verification_options
from facilitator.core.config import settings
from facilitator.main import app
from facilitator.tests.mocks import LINK_KEY, FakeRPC, RecordingNotifier, StubSigner, make_registry


@pytest.fixture
def solana_rpc():
    return FakeRPC(None)


@pytest.fixture
def base_rpc():
    return FakeRPC(None)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def registry(solana_rpc, base_rpc):
    return make_registry(solana_rpc, base_rpc)


@pytest.fixture
def client(registry, notifier, monkeypatch):
    monkeypatch.setattr(settings, "LINK_API_KEY", LINK_KEY)
    app.dependency_overrides[get_registry] = lambda: registry
    app.dependency_overrides[get_active_signer] = lambda: StubSigner()
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_verification_options] = lambda: {"sleep": lambda _: None}
    yield TestClient(app, headers={"X-Link-Key": LINK_KEY})
    app.dependency_overrides.clear()
