"""Pytest configuration and shared helpers.

Async tests are marked with ``@pytest.mark.asyncio``. When ``pytest-asyncio``
is not installed, the hook below runs them on a fresh event loop instead.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import inspect
import time
from collections.abc import Callable
from typing import Any

import pytest

WEBHOOK_SECRET = "whsec_test_secret"


def pytest_configure(config: pytest.Config) -> None:
    """Register local markers used in the suite."""
    config.addinivalue_line("markers", "asyncio: mark test as asyncio-compatible")


def pytest_pyfunc_call(pyfuncitem: pytest.Function) -> bool | None:
    """Run ``@pytest.mark.asyncio`` tests without external plugins."""
    if pyfuncitem.get_closest_marker("asyncio") is None:
        return None

    test_func = pyfuncitem.obj
    if not inspect.iscoroutinefunction(test_func):
        return None

    kwargs: dict[str, Any] = {
        arg: pyfuncitem.funcargs[arg]
        for arg in pyfuncitem._fixtureinfo.argnames
    }
    loop = asyncio.new_event_loop()
    try:
        asyncio.set_event_loop(loop)
        loop.run_until_complete(test_func(**kwargs))
    finally:
        loop.close()
        asyncio.set_event_loop(asyncio.new_event_loop())
    return True


def sign_payload(
    payload: bytes,
    secret: str = WEBHOOK_SECRET,
    timestamp: int | None = None,
) -> str:
    """Build a ``Stripe-Signature`` header value the way the gateway does."""
    ts = timestamp if timestamp is not None else int(time.time())
    signed = f"{ts}.{payload.decode('utf-8')}".encode()
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


@pytest.fixture()
def webhook_secret() -> str:
    return WEBHOOK_SECRET


@pytest.fixture()
def sign() -> Callable[..., str]:
    """Signer for webhook payloads, bound to the shared test secret."""
    return sign_payload
