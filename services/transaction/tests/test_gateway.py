import hashlib
import json

import httpx
import pytest

from checkout.config import GatewaySettings
from checkout.errors import PaymentGatewayError
from checkout.gateway import PaymentGatewayClient, integrity_signature
from checkout.models import CardDetails, ChargeRequest, GatewayStatus

BASE_URL = "https://sandbox.test.com"

SETTINGS = GatewaySettings(
    base_url=BASE_URL,
    public_key="pub_test_key",
    integrity_secret="test_secret",
    currency="COP",
    timeout_seconds=1.0,
    max_retries=2,
    backoff_seconds=0.0,
)


def make_client(handler) -> PaymentGatewayClient:
    http = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(handler))
    return PaymentGatewayClient(SETTINGS, client=http)


def charge_request() -> ChargeRequest:
    return ChargeRequest(
        transaction_id="uuid-123",
        total=200000,
        customer_email="client@example.com",
        card_token="tok_test_123",
        acceptance_token="accept_token_123",
        installments=1,
    )


def test_integrity_signature():
    expected = hashlib.sha256(b"uuid-123200000COPtest_secret").hexdigest()
    assert integrity_signature("uuid-123", 200000, "COP", "test_secret") == expected


def test_signature_binds_amount():
    assert integrity_signature("uuid-123", 200000, "COP", "s") != integrity_signature(
        "uuid-123", 200001, "COP", "s"
    )


async def test_fetch_acceptance_token():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={"data": {"presigned_acceptance": {"acceptance_token": "eyJhbGc..."}}},
        )

    client = make_client(handler)
    assert await client.fetch_acceptance_token() == "eyJhbGc..."
    assert seen[0].method == "GET"
    assert seen[0].url.path == "/merchants/pub_test_key"


async def test_tokenize_card():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            201,
            json={"status": "CREATED", "data": {"id": "tok_test_123", "brand": "VISA", "last_four": "1111"}},
        )

    client = make_client(handler)
    token = await client.tokenize_card(
        CardDetails(number="4111111111111111", cvc="123", exp_month="12", exp_year="30", card_holder="JOHN DOE")
    )

    assert token.token == "tok_test_123"
    assert token.last_four == "1111"
    assert seen[0].url.path == "/tokens/cards"
    assert seen[0].headers["Authorization"] == "Bearer pub_test_key"


async def test_create_charge_sends_signed_payload():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(201, json={"data": {"id": "payment-123", "status": "PENDING"}})

    client = make_client(handler)
    result = await client.create_charge(charge_request())

    assert result.payment_id == "payment-123"
    assert result.status == GatewayStatus.PENDING

    body = seen[0]
    assert body["amount_in_cents"] == 200000
    assert body["currency"] == "COP"
    assert body["reference"] == "uuid-123"
    assert body["customer_email"] == "client@example.com"
    assert body["acceptance_token"] == "accept_token_123"
    assert body["payment_method"] == {"type": "CARD", "token": "tok_test_123", "installments": 1}
    assert body["signature"] == integrity_signature("uuid-123", 200000, "COP", "test_secret")


async def test_create_charge_is_not_retried():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(500, json={"error": "boom"})

    client = make_client(handler)
    with pytest.raises(PaymentGatewayError) as exc:
        await client.create_charge(charge_request())

    assert exc.value.retryable is True
    assert exc.value.status_code == 500
    assert len(calls) == 1


async def test_query_status_retries_server_errors():
    responses = [
        httpx.Response(503),
        httpx.Response(502),
        httpx.Response(200, json={"data": {"id": "payment-123", "status": "APPROVED"}}),
    ]

    def handler(request: httpx.Request) -> httpx.Response:
        return responses.pop(0)

    client = make_client(handler)
    assert await client.query_status("payment-123") == GatewayStatus.APPROVED
    assert responses == []


async def test_query_status_gives_up_after_max_retries():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(503)

    client = make_client(handler)
    with pytest.raises(PaymentGatewayError) as exc:
        await client.query_status("payment-123")

    assert exc.value.retryable is True
    assert len(calls) == SETTINGS.max_retries + 1


async def test_client_errors_are_not_retryable():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(422, json={"error": {"type": "INPUT_VALIDATION_ERROR"}})

    client = make_client(handler)
    with pytest.raises(PaymentGatewayError) as exc:
        await client.query_status("payment-123")

    assert exc.value.retryable is False
    assert exc.value.status_code == 422
    assert len(calls) == 1


async def test_timeout_is_retryable():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    client = make_client(handler)
    with pytest.raises(PaymentGatewayError) as exc:
        await client.create_charge(charge_request())

    assert exc.value.retryable is True
    assert isinstance(exc.value.cause, httpx.ReadTimeout)


async def test_unknown_status_is_rejected():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"data": {"id": "payment-123", "status": "SOMETHING"}})

    client = make_client(handler)
    with pytest.raises(PaymentGatewayError) as exc:
        await client.query_status("payment-123")
    assert exc.value.retryable is False


async def test_find_charge_by_reference():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.params["reference"] == "uuid-123":
            return httpx.Response(
                200,
                json={"data": [{"id": "payment-123", "reference": "uuid-123", "status": "APPROVED"}]},
            )
        return httpx.Response(200, json={"data": []})

    client = make_client(handler)
    found = await client.find_charge_by_reference("uuid-123")

    assert found.payment_id == "payment-123"
    assert found.status == GatewayStatus.APPROVED
    assert await client.find_charge_by_reference("unknown") is None


async def test_find_charge_by_reference_ignores_charges_without_reference():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"data": [{"id": "pay-other", "status": "APPROVED"}]})

    client = make_client(handler)

    assert await client.find_charge_by_reference("uuid-123") is None


async def test_find_charge_by_reference_skips_other_references():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "data": [
                    {"id": "pay-other", "reference": "uuid-999", "status": "APPROVED"},
                    {"id": "payment-123", "reference": "uuid-123", "status": "DECLINED"},
                ]
            },
        )

    client = make_client(handler)
    found = await client.find_charge_by_reference("uuid-123")

    assert found.payment_id == "payment-123"
    assert found.status == GatewayStatus.DECLINED
