from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

import httpx
import pytest

from app.api.errors import GatewayError
from app.enums import CardNetwork, PaymentMethod, PaymentStatus
from app.integrations import payment_gateway
from app.integrations.payment_gateway import (
    CardDetails,
    GatewayPaymentRequest,
    GatewayPreferenceRequest,
    Payer,
    PaymentGatewayClient,
    PreferenceItem,
    document_identification,
    normalize_status,
)


class FakeResp:
    def __init__(self, data, status_code: int = 200):  # type: ignore[no-untyped-def]
        self._data = data
        self.status_code = status_code

    def raise_for_status(self):  # type: ignore[no-untyped-def]
        if self.status_code >= 400:
            request = httpx.Request("POST", "https://gateway.test")
            response = httpx.Response(self.status_code, request=request)
            raise httpx.HTTPStatusError("error", request=request, response=response)

    def json(self):  # type: ignore[no-untyped-def]
        if isinstance(self._data, Exception):
            raise self._data
        return self._data


def _install_fake_httpx(monkeypatch, queue: list) -> list[dict]:  # type: ignore[type-arg]
    calls: list[dict] = []

    class FakeHttpxClient:
        def __init__(self, *args, **kwargs):  # type: ignore[no-untyped-def]
            _ = args, kwargs

        def __enter__(self):  # type: ignore[no-untyped-def]
            return self

        def __exit__(self, exc_type, exc, tb):  # type: ignore[no-untyped-def]
            return False

        def _next(self):  # type: ignore[no-untyped-def]
            item = queue.pop(0)
            if isinstance(item, Exception):
                raise item
            return item

        def post(self, url, json=None, headers=None):  # type: ignore[no-untyped-def]
            calls.append({"method": "POST", "url": url, "json": json, "headers": headers})
            return self._next()

        def get(self, url, headers=None):  # type: ignore[no-untyped-def]
            calls.append({"method": "GET", "url": url, "headers": headers})
            return self._next()

    monkeypatch.setattr(httpx, "Client", FakeHttpxClient)
    return calls


def _live_client() -> PaymentGatewayClient:
    client = PaymentGatewayClient()
    client._mock = False  # type: ignore[attr-defined]
    client._access_token = "test-token"  # type: ignore[attr-defined]
    client._retry_wait = 0  # type: ignore[attr-defined]
    client._max_attempts = 3  # type: ignore[attr-defined]
    return client


def _request(method: PaymentMethod = PaymentMethod.instant_transfer, **kwargs) -> GatewayPaymentRequest:  # type: ignore[no-untyped-def]
    defaults = dict(
        idempotency_key="order_abc_123",
        amount=Decimal("126.00"),
        description="Course",
        method=method,
        payer=Payer(email="ana@example.com", name="Ana Maria Souza", document="123.456.789-09"),
    )
    defaults.update(kwargs)
    return GatewayPaymentRequest(**defaults)


def test_status_normalization_table():
    assert normalize_status("approved") == PaymentStatus.approved
    for raw in ("pending", "in_process", "in_mediation", "authorized"):
        assert normalize_status(raw) == PaymentStatus.pending
    assert normalize_status("rejected") == PaymentStatus.failed
    assert normalize_status("cancelled") == PaymentStatus.cancelled
    assert normalize_status("charged_back") == PaymentStatus.pending
    assert normalize_status(None) == PaymentStatus.pending
    assert normalize_status(" APPROVED ") == PaymentStatus.approved


def test_document_type_by_length():
    assert document_identification("123.456.789-09") == {"type": "CPF", "number": "12345678909"}
    assert document_identification("12.345.678/0001-95") == {"type": "CNPJ", "number": "12345678000195"}


def test_wire_shapes_per_method():
    pix = _request().to_wire()
    assert pix["payment_method_id"] == "pix"
    assert pix["external_reference"] == "order_abc_123"
    assert pix["transaction_amount"] == 126.0
    assert pix["payer"]["first_name"] == "Ana"
    assert pix["payer"]["last_name"] == "Maria Souza"
    assert pix["payer"]["identification"]["type"] == "CPF"
    assert "card" not in pix

    card = _request(
        PaymentMethod.card,
        network=CardNetwork.master,
        installments=3,
        card=CardDetails(number="5555444433331111", holder_name="ANA SOUZA", expiry_month=12, expiry_year=2030, cvv="123"),
    ).to_wire()
    assert card["payment_method_id"] == "master"
    assert card["installments"] == 3
    assert card["card"]["number"] == "5555444433331111"
    assert card["card"]["cardholder"]["identification"]["number"] == "12345678909"

    due = datetime(2026, 1, 4, 12, 0, tzinfo=timezone.utc)
    voucher = _request(PaymentMethod.deferred_voucher, due_date=due).to_wire()
    assert voucher["payment_method_id"] == "bolbradesco"
    assert voucher["date_of_expiration"] == "2026-01-04T12:00:00.000+00:00"

    due = datetime(2026, 1, 4, 12, 0, 0, 123456, tzinfo=timezone.utc)
    voucher = _request(PaymentMethod.deferred_voucher, due_date=due).to_wire()
    assert voucher["date_of_expiration"] == "2026-01-04T12:00:00.123+00:00"


def test_card_request_without_network_is_rejected():
    with pytest.raises(ValueError):
        _request(PaymentMethod.card).to_wire()


def test_submit_sends_idempotency_key_and_parses_instant_transfer(monkeypatch):
    calls = _install_fake_httpx(
        monkeypatch,
        [
            FakeResp(
                {
                    "id": 987,
                    "status": "pending",
                    "status_detail": "pending_waiting_transfer",
                    "point_of_interaction": {
                        "transaction_data": {"qr_code": "000201", "qr_code_base64": "aW1n", "ticket_url": "https://t"}
                    },
                }
            )
        ],
    )
    result = _live_client().submit(_request())
    assert result.gateway_reference == "987"
    assert result.status == PaymentStatus.pending
    assert result.method_payload == {"qr_code": "000201", "qr_code_base64": "aW1n", "ticket_url": "https://t"}
    assert calls[0]["headers"]["X-Idempotency-Key"] == "order_abc_123"
    assert calls[0]["headers"]["Authorization"] == "Bearer test-token"
    assert calls[0]["url"].endswith("/v1/payments")


def test_submit_parses_voucher_payload(monkeypatch):
    _install_fake_httpx(
        monkeypatch,
        [
            FakeResp(
                {
                    "id": "v1",
                    "status": "pending",
                    "transaction_details": {"external_resource_url": "https://boleto.pdf"},
                    "barcode": {"content": "2379"},
                }
            )
        ],
    )
    result = _live_client().submit(_request(PaymentMethod.deferred_voucher))
    assert result.method_payload == {"pdf_url": "https://boleto.pdf", "barcode": "2379"}


def test_submit_retries_transient_failures_with_same_key(monkeypatch):
    calls = _install_fake_httpx(
        monkeypatch,
        [
            httpx.ConnectError("boom"),
            FakeResp({}, status_code=503),
            FakeResp({"id": "ok", "status": "approved"}),
        ],
    )
    result = _live_client().submit(_request())
    assert result.status == PaymentStatus.approved
    assert len(calls) == 3
    assert {c["headers"]["X-Idempotency-Key"] for c in calls} == {"order_abc_123"}


def test_submit_does_not_retry_client_errors(monkeypatch):
    calls = _install_fake_httpx(monkeypatch, [FakeResp({}, status_code=400)])
    with pytest.raises(GatewayError) as exc_info:
        _live_client().submit(_request())
    assert exc_info.value.code == 502401
    assert exc_info.value.timed_out is False
    assert len(calls) == 1


def test_submit_timeout_marks_error(monkeypatch):
    calls = _install_fake_httpx(monkeypatch, [httpx.ReadTimeout("slow")] * 3)
    with pytest.raises(GatewayError) as exc_info:
        _live_client().submit(_request())
    assert exc_info.value.timed_out is True
    assert exc_info.value.status_code == 502
    assert len(calls) == 3


def test_submit_malformed_response(monkeypatch):
    _install_fake_httpx(monkeypatch, [FakeResp({"status": "approved"})])
    with pytest.raises(GatewayError) as exc_info:
        _live_client().submit(_request())
    assert exc_info.value.code == 502402

    _install_fake_httpx(monkeypatch, [FakeResp(ValueError("not json"))])
    with pytest.raises(GatewayError) as exc_info:
        _live_client().submit(_request())
    assert exc_info.value.code == 502402


def test_get_payment(monkeypatch):
    calls = _install_fake_httpx(
        monkeypatch,
        [FakeResp({"id": 55, "status": "rejected", "status_detail": "cc_rejected", "external_reference": "order_1"})],
    )
    payment = _live_client().get_payment("55")
    assert payment.status == PaymentStatus.failed
    assert payment.external_reference == "order_1"
    assert calls[0]["url"].endswith("/v1/payments/55")
    assert "X-Idempotency-Key" not in calls[0]["headers"]


def test_get_payment_errors(monkeypatch):
    _install_fake_httpx(monkeypatch, [FakeResp({}, status_code=404)])
    with pytest.raises(GatewayError) as exc_info:
        _live_client().get_payment("missing")
    assert exc_info.value.code == 502403

    _install_fake_httpx(monkeypatch, [FakeResp(["not", "a", "dict"])])
    with pytest.raises(GatewayError) as exc_info:
        _live_client().get_payment("x")
    assert exc_info.value.code == 502404


def test_missing_access_token_is_a_gateway_error(monkeypatch):
    calls = _install_fake_httpx(monkeypatch, [])
    client = _live_client()
    client._access_token = None  # type: ignore[attr-defined]
    with pytest.raises(GatewayError) as exc_info:
        client.submit(_request())
    assert exc_info.value.code == 502400
    assert exc_info.value.timed_out is False
    with pytest.raises(GatewayError):
        client.get_payment("55")
    assert calls == []


def test_mock_mode_is_deterministic():
    client = PaymentGatewayClient()
    client._mock = True  # type: ignore[attr-defined]

    first = client.submit(_request())
    again = client.submit(_request())
    assert first.gateway_reference == again.gateway_reference == "mock_order_abc_123"
    assert first.status == PaymentStatus.pending
    assert first.method_payload["qr_code"]

    looked_up = client.get_payment(first.gateway_reference)
    assert looked_up.status == PaymentStatus.approved
    assert looked_up.external_reference == "order_abc_123"

    card = client.submit(
        _request(
            PaymentMethod.card,
            idempotency_key="order_card_1",
            network=CardNetwork.visa,
            card=CardDetails(number="4111111111111111", holder_name="A", expiry_month=1, expiry_year=2030, cvv="123"),
        )
    )
    assert card.status == PaymentStatus.approved

    with pytest.raises(GatewayError):
        client.get_payment("unknown")


def test_module_singleton_exists():
    assert isinstance(payment_gateway.payment_gateway_client, PaymentGatewayClient)


def test_mock_mode_keeps_a_bounded_payment_history(monkeypatch):
    monkeypatch.setattr(payment_gateway, "_MOCK_MAX_PAYMENTS", 2)
    client = PaymentGatewayClient()
    client._mock = True  # type: ignore[attr-defined]

    for key in ("order_mock_1", "order_mock_2", "order_mock_3"):
        client.submit(_request(idempotency_key=key))

    assert len(client._mock_payments) == 2  # type: ignore[attr-defined]
    with pytest.raises(GatewayError):
        client.get_payment("mock_order_mock_1")
    assert client.get_payment("mock_order_mock_3").external_reference == "order_mock_3"


def _preference_request(**kwargs) -> GatewayPreferenceRequest:  # type: ignore[no-untyped-def]
    defaults = dict(
        idempotency_key="order_abc_123",
        items=(
            PreferenceItem(id="prod_1", title="Course", unit_price=Decimal("100.00")),
            PreferenceItem(id="prod_2", title="Workbook", unit_price=Decimal("40.00")),
        ),
        payer=Payer(email="ana@example.com", name="Ana Souza", document="123.456.789-09"),
        currency_id="BRL",
        success_url="https://shop.test/payment-success?order=order_abc_123",
        failure_url="https://shop.test/payment-failure?order=order_abc_123",
        pending_url="https://shop.test/payment-success?order=order_abc_123",
        expires_at=datetime(2026, 1, 2, 12, 0, tzinfo=timezone.utc),
        notification_url="https://api.shop.test/api/v1/webhooks/gateway",
    )
    defaults.update(kwargs)
    return GatewayPreferenceRequest(**defaults)


def test_preference_wire_shape():
    wire = _preference_request().to_wire()
    assert [item["unit_price"] for item in wire["items"]] == [100.0, 40.0]
    assert {item["currency_id"] for item in wire["items"]} == {"BRL"}
    assert wire["external_reference"] == "order_abc_123"
    assert wire["back_urls"]["failure"].endswith("/payment-failure?order=order_abc_123")
    assert wire["auto_return"] == "approved"
    assert wire["payer"]["identification"] == {"type": "CPF", "number": "12345678909"}
    assert wire["expiration_date_to"] == "2026-01-02T12:00:00.000+00:00"
    assert wire["notification_url"].endswith("/webhooks/gateway")


def test_create_preference_returns_checkout_url(monkeypatch):
    calls = _install_fake_httpx(
        monkeypatch,
        [FakeResp({"id": "123-pref", "init_point": "https://gateway.test/checkout?pref_id=123-pref"})],
    )
    result = _live_client().create_preference(_preference_request())
    assert result.preference_id == "123-pref"
    assert result.checkout_url == "https://gateway.test/checkout?pref_id=123-pref"
    assert calls[0]["url"].endswith("/checkout/preferences")
    assert calls[0]["headers"]["X-Idempotency-Key"] == "order_abc_123"


def test_create_preference_errors(monkeypatch):
    _install_fake_httpx(monkeypatch, [FakeResp({"id": "123-pref"})])
    with pytest.raises(GatewayError) as exc_info:
        _live_client().create_preference(_preference_request())
    assert exc_info.value.code == 502406

    _install_fake_httpx(monkeypatch, [httpx.ReadTimeout("slow")] * 3)
    with pytest.raises(GatewayError) as exc_info:
        _live_client().create_preference(_preference_request())
    assert exc_info.value.timed_out is True


def test_mock_preference():
    client = PaymentGatewayClient()
    client._mock = True  # type: ignore[attr-defined]
    result = client.create_preference(_preference_request())
    assert result.preference_id == "pref_mock_order_abc_123"
    assert result.checkout_url.endswith(result.preference_id)
