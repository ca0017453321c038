"""
Pytest Configuration and Fixtures

Provides common fixtures and test utilities for callback receiver tests.
"""

import logging
import os
import time
from typing import Any, Callable, Dict
from unittest.mock import AsyncMock, MagicMock

# Settings are read at import time
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("PNM_SECRET", "test_pnm_secret")
os.environ.setdefault("LEDGER_BACKEND", "memory")
os.environ.setdefault("PAYMENT_RECORDER", "log")
os.environ.setdefault("AWS_DEFAULT_REGION", "us-east-1")

import pytest
from fastapi.testclient import TestClient

from pnm_callbacks.dependencies import get_authorize_handler, get_confirm_handler
from pnm_callbacks.handlers.authorize_handler import AuthorizeHandler
from pnm_callbacks.handlers.confirm_handler import ConfirmHandler
from pnm_callbacks.main import app
from pnm_callbacks.models.callbacks import AuthorizeCallback, ConfirmCallback
from pnm_callbacks.services.authorization_policy import OrderPrefixPolicy
from pnm_callbacks.services.idempotency_ledger import InMemoryIdempotencyLedger
from pnm_callbacks.services.interceptors import NoOpInterceptor
from pnm_callbacks.services.signature_service import build_authenticator, md5_signature


@pytest.fixture
def pnm_secret():
    """Shared callback secret for testing"""
    return os.environ["PNM_SECRET"]


@pytest.fixture
def make_callback_params(pnm_secret) -> Callable[..., Dict[str, str]]:
    """
    Factory for signed callback query parameters.

    Keyword overrides replace defaults; an override of None drops the
    parameter. Pass ``signature=...`` to force a specific signature.
    """

    def _params(**overrides: Any) -> Dict[str, str]:
        forced_signature = overrides.pop("signature", None)
        params = {
            "pnm_order_identifier": "PNM-1001",
            "site_order_identifier": "TEST123",
            "version": "2.0",
            "timestamp": str(int(time.time())),
        }
        for key, value in overrides.items():
            if value is None:
                params.pop(key, None)
            else:
                params[key] = str(value)
        params["signature"] = forced_signature or md5_signature(params, pnm_secret)
        return params

    return _params


@pytest.fixture
def make_authorize_callback(make_callback_params):
    """Factory for validated /authorize requests"""

    def _callback(**overrides: Any) -> AuthorizeCallback:
        return AuthorizeCallback.from_params(make_callback_params(**overrides))

    return _callback


@pytest.fixture
def make_confirm_callback(make_callback_params):
    """Factory for validated /confirm requests"""

    def _callback(**overrides: Any) -> ConfirmCallback:
        return ConfirmCallback.from_params(make_callback_params(**overrides))

    return _callback


@pytest.fixture
def authenticator(pnm_secret):
    """Authenticator with default skew window"""
    return build_authenticator(pnm_secret)


@pytest.fixture
def mock_logger():
    """Logger double for asserting on emitted log lines"""
    return MagicMock(spec=logging.Logger)


@pytest.fixture
def ledger():
    """Fresh in-memory idempotency ledger"""
    return InMemoryIdempotencyLedger(timeout_seconds=1.0)


@pytest.fixture
def mock_payment_recorder():
    """Mock payment recorder"""
    mock = AsyncMock()
    mock.record_payment.return_value = None
    return mock


@pytest.fixture
def authorize_handler(authenticator, mock_logger):
    """Authorize handler with the default prefix policy"""
    return AuthorizeHandler(
        authenticator=authenticator,
        policy=OrderPrefixPolicy(prefix="TEST"),
        interceptor=NoOpInterceptor(),
        logger=mock_logger,
    )


@pytest.fixture
def confirm_handler(authenticator, ledger, mock_payment_recorder, mock_logger):
    """Confirm handler with in-memory ledger and mock recorder"""
    return ConfirmHandler(
        authenticator=authenticator,
        ledger=ledger,
        recorder=mock_payment_recorder,
        interceptor=NoOpInterceptor(),
        logger=mock_logger,
        settle_timeout_seconds=0.2,
        poll_interval_seconds=0.01,
    )


@pytest.fixture
def test_client(authorize_handler, confirm_handler):
    """FastAPI test client wired to the test handlers"""
    app.dependency_overrides[get_authorize_handler] = lambda: authorize_handler
    app.dependency_overrides[get_confirm_handler] = lambda: confirm_handler
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
