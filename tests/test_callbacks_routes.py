"""
Test Callback Endpoints

Tests the HTTP surface: XML acknowledgments, suppressed responses, error
mapping and health checks.
"""

from unittest.mock import AsyncMock
from xml.etree import ElementTree as ET

from fastapi.testclient import TestClient

from pnm_callbacks.dependencies import get_confirm_handler, get_idempotency_ledger
from pnm_callbacks.handlers.confirm_handler import ConfirmHandler
from pnm_callbacks.main import app
from pnm_callbacks.services.interceptors import MaintenanceModeInterceptor
from pnm_callbacks.services.xml_response import DEFAULT_NAMESPACE
from pnm_callbacks.utils.exceptions import TransientStorageException

NS = {"t": DEFAULT_NAMESPACE}


def test_authorize_returns_xml(test_client, make_callback_params):
    response = test_client.get("/authorize", params=make_callback_params())

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/xml")
    root = ET.fromstring(response.content)
    assert root.findtext("t:authorization/t:accept_payment", namespaces=NS) == "yes"
    assert root.findtext("t:authorization/t:receipt", namespaces=NS) == "Thank you for your order"


def test_authorize_declines_unknown_order(test_client, make_callback_params):
    response = test_client.get(
        "/authorize", params=make_callback_params(site_order_identifier="ORD999")
    )

    root = ET.fromstring(response.content)
    assert root.findtext("t:authorization/t:accept_payment", namespaces=NS) == "no"
    assert root.findtext("t:authorization/t:memo", namespaces=NS) == "Invalid Payment: ORD999"


def test_confirm_twice_acknowledged_and_recorded_once(
    test_client, make_callback_params, mock_payment_recorder
):
    params = make_callback_params(pnm_payment_identifier="PAY-1")

    first = test_client.get("/confirm", params=params)
    second = test_client.get("/confirm", params=params)

    assert first.status_code == second.status_code == 200
    assert first.content == second.content
    root = ET.fromstring(second.content)
    assert root.tag == f"{{{DEFAULT_NAMESPACE}}}payment_confirmation_response"
    assert root.findtext("t:confirmation/t:pnm_order_identifier", namespaces=NS) == "PNM-1001"
    assert mock_payment_recorder.record_payment.await_count == 1


def test_invalid_signature_gets_empty_body(test_client, make_callback_params):
    for endpoint in ("/authorize", "/confirm"):
        response = test_client.get(endpoint, params=make_callback_params(signature="0" * 32))

        assert response.status_code == 200
        assert response.content == b""


def test_missing_parameter_is_validation_error(test_client, make_callback_params):
    response = test_client.get("/confirm", params=make_callback_params(pnm_order_identifier=None))

    assert response.status_code == 400
    body = response.json()
    assert body["error"] == "VALIDATION_ERROR"
    assert body["details"]["errors"][0]["field"] == "pnm_order_identifier"


def test_oversized_timestamp_is_validation_error(test_client, make_callback_params):
    for endpoint in ("/authorize", "/confirm"):
        response = test_client.get(endpoint, params=make_callback_params(timestamp="9" * 400))

        assert response.status_code == 400
        assert response.json()["details"]["errors"][0]["field"] == "timestamp"


def test_control_character_in_identifier_is_validation_error(
    test_client, make_callback_params, mock_payment_recorder
):
    response = test_client.get(
        "/confirm", params=make_callback_params(pnm_order_identifier="PNM\r1")
    )

    assert response.status_code == 400
    assert response.json()["error"] == "VALIDATION_ERROR"
    mock_payment_recorder.record_payment.assert_not_awaited()


def test_ledger_outage_is_service_unavailable(
    test_client, authenticator, mock_payment_recorder, make_callback_params
):
    ledger = AsyncMock()
    ledger.check_and_record.side_effect = TransientStorageException("ledger down")
    handler = ConfirmHandler(authenticator, ledger, mock_payment_recorder)
    app.dependency_overrides[get_confirm_handler] = lambda: handler

    response = test_client.get("/confirm", params=make_callback_params())

    assert response.status_code == 503
    assert response.json()["error"] == "LEDGER_UNAVAILABLE"
    mock_payment_recorder.record_payment.assert_not_awaited()


def test_maintenance_mode_overrides_response(
    test_client, authenticator, ledger, mock_payment_recorder, make_callback_params
):
    handler = ConfirmHandler(
        authenticator,
        ledger,
        mock_payment_recorder,
        interceptor=MaintenanceModeInterceptor(enabled=True, retry_after_seconds=120),
    )
    app.dependency_overrides[get_confirm_handler] = lambda: handler

    response = test_client.get("/confirm", params=make_callback_params())

    assert response.status_code == 503
    assert response.headers["retry-after"] == "120"
    assert response.content == b""
    mock_payment_recorder.record_payment.assert_not_awaited()


def test_correlation_and_timing_headers(test_client, make_callback_params):
    response = test_client.get(
        "/authorize",
        params=make_callback_params(),
        headers={"X-Correlation-ID": "corr-123"},
    )

    assert response.headers["X-Correlation-ID"] == "corr-123"
    assert float(response.headers["X-Response-Time-Ms"]) >= 0


def test_health(test_client):
    response = test_client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_readiness_reports_ledger(test_client):
    response = test_client.get("/health/ready")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ready"
    assert body["dependencies"]["idempotency_ledger"]["backend"] == "memory"


def test_readiness_fails_when_ledger_unavailable():
    ledger = AsyncMock()
    ledger.backend_name = "dynamodb"
    ledger.get_state.side_effect = TransientStorageException("timed out")
    app.dependency_overrides[get_idempotency_ledger] = lambda: ledger
    try:
        response = TestClient(app).get("/health/ready")
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 503
    assert response.json()["status"] == "not_ready"
