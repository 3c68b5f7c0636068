"""Shared FastAPI dependencies; tests replace them via `app.dependency_overrides`."""
import asyncio
import hmac
import logging
import threading
from functools import lru_cache
from typing import Optional

from fastapi import Header, Request

from facilitator.core.config import settings
from facilitator.core.errors import ForbiddenError
from facilitator.features.notifications.events import LoggingNotifier, Notifier
from facilitator.features.payments.registry import ChainRegistry
from facilitator.features.payments.signer import ActiveSigner, signer_from_settings

logger = logging.getLogger("facilitator")

DISCONNECT_POLL_SECONDS = 0.5


@lru_cache(maxsize=1)
def _registry() -> ChainRegistry:
    return ChainRegistry.from_settings(settings)


def get_registry() -> ChainRegistry:
    return _registry()


def get_active_signer() -> ActiveSigner:
    # Resolved per request so a rotated signer is picked up
    return signer_from_settings(settings)


def get_notifier() -> Notifier:
    return LoggingNotifier()


async def watch_disconnect(request: Request, cancel_event: threading.Event, interval: float = DISCONNECT_POLL_SECONDS):
    """Set `cancel_event` once the client goes away."""
    while not cancel_event.is_set():
        if await request.is_disconnected():
            logger.info("verification.client_disconnected", extra={"path": request.url.path})
            cancel_event.set()
            return
        await asyncio.sleep(interval)


async def get_verification_options(request: Request):
    """
    Keyword arguments for adapter.verify_payment.

    Verification runs in a worker thread while this watcher polls the
    connection on the event loop; a client that hangs up mid-retry aborts
    the wait before anything is fulfilled.
    """
    cancel_event = threading.Event()
    watcher = asyncio.create_task(watch_disconnect(request, cancel_event))
    try:
        yield {"cancel_event": cancel_event}
    finally:
        watcher.cancel()


def require_link_key(x_link_key: Optional[str] = Header(None, alias="X-Link-Key")) -> None:
    """Only the bot, which has confirmed the chat user, may write wallet links."""
    expected = settings.LINK_API_KEY
    if not expected or not x_link_key or not hmac.compare_digest(x_link_key.encode(), expected.encode()):
        logger.warning("link.rejected", extra={"reason": "missing" if not x_link_key else "mismatch"})
        raise ForbiddenError("Invalid or missing X-Link-Key header")
