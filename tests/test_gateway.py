import hashlib
import hmac
import json

import httpx
import pytest

from shared.retry import backoff_delay

from marketplace.gateway import PaymentGateway, PaymentGatewayError, flatten_metadata


def make_gateway(handler, **kwargs):
    return PaymentGateway(
        secret_key="sk_test",
        webhook_secret=kwargs.pop("webhook_secret", "whsec_test"),
        base_url="https://gateway.test",
        base_delay=0,
        max_delay=0,
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def ok(resource_id="pi_1"):
    return httpx.Response(200, json={"data": {"id": resource_id, "attributes": {"status": "awaiting_payment_method"}}})


def test_flatten_metadata_nests_lists_and_drops_empty():
    flat = flatten_metadata({
        "user id": "u-1",
        "address": {"city": "Iloilo", "zip-code": 5000, "empty": ""},
        "tags": ["rice", "bulk"],
        "note": "",
        "missing": None,
        "long": "x" * 600,
    })

    assert flat["user_id"] == "u-1"
    assert flat["address_city"] == "Iloilo"
    assert flat["address_zip_code"] == "5000"
    assert flat["tags"] == "rice,bulk"
    assert len(flat["long"]) == 500
    assert "note" not in flat
    assert "missing" not in flat
    assert "address_empty" not in flat
    assert all(isinstance(v, str) for v in flat.values())


def test_flatten_metadata_limits_keys_and_key_length():
    flat = flatten_metadata({f"key_{i}": i for i in range(80)})
    assert len(flat) == 50

    flat = flatten_metadata({"k" * 80: "v"})
    assert list(flat) == ["k" * 50]


def test_backoff_delay_is_exponential_and_capped():
    assert backoff_delay(0, 1.0, 10.0) == 1.0
    assert backoff_delay(1, 1.0, 10.0) == 2.0
    assert backoff_delay(3, 1.0, 10.0) == 8.0
    assert backoff_delay(5, 1.0, 10.0) == 10.0


async def test_retries_server_errors_then_succeeds():
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) < 3:
            return httpx.Response(502, json={"errors": [{"detail": "upstream"}]})
        return ok()

    intent = await make_gateway(handler).create_intent(1000, "Order", {"user_id": "u-1"})

    assert intent["id"] == "pi_1"
    assert len(calls) == 3


async def test_exhausted_retries_raise_service_unavailable():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(500, json={"errors": [{"detail": "boom"}]})

    with pytest.raises(PaymentGatewayError) as exc_info:
        await make_gateway(handler).retrieve("pi_1")

    assert len(calls) == 3
    assert exc_info.value.status_code == 503
    assert exc_info.value.retryable


async def test_client_errors_are_not_retried():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(400, json={"errors": [{"code": "parameter_invalid", "detail": "amount is invalid"}]})

    with pytest.raises(PaymentGatewayError) as exc_info:
        await make_gateway(handler).refund("pay_1", 100)

    assert len(calls) == 1
    assert exc_info.value.status_code == 502
    assert not exc_info.value.retryable
    assert "amount is invalid" in exc_info.value.detail


async def test_network_errors_are_retried_then_wrapped():
    calls = []

    def handler(request):
        calls.append(request)
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(PaymentGatewayError) as exc_info:
        await make_gateway(handler).retrieve("pi_1")

    assert len(calls) == 3
    assert exc_info.value.status_code == 503


async def test_requests_use_basic_auth_and_json_api_envelope():
    seen = {}

    def handler(request):
        seen["auth"] = request.headers["authorization"]
        seen["body"] = request.content
        return ok()

    await make_gateway(handler).create_intent(2500, "Order", {"nested": {"a": 1}})

    assert seen["auth"].startswith("Basic ")
    attributes = json.loads(seen["body"])["data"]["attributes"]
    assert attributes["amount"] == 2500
    assert attributes["metadata"] == {"nested_a": "1"}


async def test_non_positive_amount_is_rejected_locally():
    calls = []

    def handler(request):
        calls.append(request)
        return ok()

    with pytest.raises(PaymentGatewayError):
        await make_gateway(handler).create_intent(0, "Order")
    assert calls == []


def test_webhook_signature_verification():
    gateway = make_gateway(lambda request: ok())
    body = b'{"data": {"attributes": {"type": "payment.paid"}}}'
    signature = hmac.new(b"whsec_test", body, hashlib.sha256).hexdigest()

    assert gateway.verify_webhook_signature(body, signature)
    assert not gateway.verify_webhook_signature(body + b" ", signature)
    assert not gateway.verify_webhook_signature(body, None)


def test_webhook_without_secret_fails_closed():
    gateway = make_gateway(lambda request: ok(), webhook_secret="")
    body = b"{}"
    signature = hmac.new(b"", body, hashlib.sha256).hexdigest()

    assert not gateway.verify_webhook_signature(body, signature)
