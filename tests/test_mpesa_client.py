"""
Unit tests for the M-Pesa client.
Tests password derivation, credential caching and provider error mapping.
"""
import base64
import threading
import time
from decimal import Decimal

import httpx
import pytest

from app.core.errors import ProviderError
from app.services.mpesa_client import (
    AccessTokenCache,
    MpesaClient,
    generate_password,
    to_provider_amount,
)


def test_generate_password():
    password = generate_password("174379", "passkey", "20250116103000")
    assert base64.b64decode(password).decode() == "174379passkey20250116103000"


def test_to_provider_amount_rounds_half_up():
    assert to_provider_amount(Decimal("1200")) == 1200
    assert to_provider_amount(Decimal("99.50")) == 100
    assert to_provider_amount(Decimal("99.49")) == 99


def test_stk_push_payload(provider, fake_daraja):
    result = provider.stk_push(
        amount=Decimal("1200"),
        phone_number="254712345678",
        account_reference="ELIMUFITI-abc",
        description="Elimufiti premium subscription",
    )

    assert result.checkout_request_id == "ws_CO_191220191020363925_1"
    assert result.merchant_request_id == "29115-34620561-1"

    body = fake_daraja.push_requests[0]
    assert body["BusinessShortCode"] == "174379"
    assert body["PartyA"] == body["PhoneNumber"] == "254712345678"
    assert body["PartyB"] == "174379"
    assert body["Amount"] == 1200
    assert body["TransactionType"] == "CustomerPayBillOnline"
    assert body["AccountReference"] == "ELIMUFITI-abc"
    assert body["CallBackURL"] == "https://api.example.com/api/payments/mpesa/callback"
    assert len(body["Timestamp"]) == 14
    decoded = base64.b64decode(body["Password"]).decode()
    assert decoded == f"174379test-passkey{body['Timestamp']}"


def test_token_is_cached_between_pushes(provider, fake_daraja):
    for _ in range(3):
        provider.stk_push(Decimal("500"), "254712345678", "ref", "desc")
    assert fake_daraja.token_calls == 1


def test_token_refreshed_after_expiry():
    now = [1000.0]
    cache = AccessTokenCache(expiry_margin_seconds=60, clock=lambda: now[0])
    fetches = []

    def fetch():
        fetches.append(1)
        return f"token-{len(fetches)}", 3599

    assert cache.get(fetch) == "token-1"
    now[0] += 3000
    assert cache.get(fetch) == "token-1"
    now[0] += 600  # past expires_in minus margin
    assert cache.get(fetch) == "token-2"
    assert len(fetches) == 2


def test_token_refresh_is_single_flight():
    cache = AccessTokenCache()
    fetches = []
    lock = threading.Lock()

    def slow_fetch():
        with lock:
            fetches.append(1)
        time.sleep(0.05)
        return "token", 3599

    threads = [threading.Thread(target=cache.get, args=(slow_fetch,)) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(fetches) == 1


def test_expired_token_rejected_is_refreshed_once(provider, fake_daraja):
    provider.get_access_token()
    fake_daraja.reject_tokens.add("token-1")

    result = provider.stk_push(Decimal("500"), "254712345678", "ref", "desc")

    assert result.checkout_request_id
    assert fake_daraja.token_calls == 2


def test_persistent_auth_failure_raises(provider, fake_daraja):
    fake_daraja.reject_tokens.update({"token-1", "token-2"})

    with pytest.raises(ProviderError) as exc_info:
        provider.stk_push(Decimal("500"), "254712345678", "ref", "desc")
    assert "Invalid Access Token" in exc_info.value.message
    assert fake_daraja.token_calls == 2


def test_timeout_raises_provider_error(provider, fake_daraja):
    fake_daraja.push_timeout = True
    with pytest.raises(ProviderError) as exc_info:
        provider.stk_push(Decimal("500"), "254712345678", "ref", "desc")
    assert "timed out" in exc_info.value.message


def test_rejected_push_raises_provider_error(provider, fake_daraja):
    fake_daraja.push_status = 400
    fake_daraja.push_body = {"requestId": "1", "errorCode": "400.002.02", "errorMessage": "Bad Request - Invalid PhoneNumber"}

    with pytest.raises(ProviderError) as exc_info:
        provider.stk_push(Decimal("500"), "254712345678", "ref", "desc")
    assert exc_info.value.message == "Bad Request - Invalid PhoneNumber"
    assert exc_info.value.detail["errorCode"] == "400.002.02"


def test_non_zero_response_code_raises(provider, fake_daraja):
    fake_daraja.push_body = {"ResponseCode": "1", "ResponseDescription": "System busy"}
    with pytest.raises(ProviderError) as exc_info:
        provider.stk_push(Decimal("500"), "254712345678", "ref", "desc")
    assert exc_info.value.message == "System busy"


def test_missing_checkout_request_id_is_malformed(provider, fake_daraja):
    fake_daraja.push_body = {"ResponseCode": "0", "ResponseDescription": "Success"}
    with pytest.raises(ProviderError) as exc_info:
        provider.stk_push(Decimal("500"), "254712345678", "ref", "desc")
    assert "CheckoutRequestID" in exc_info.value.message


def test_non_json_response_is_malformed(fake_daraja):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/oauth/v1/generate":
            return fake_daraja.handler(request)
        return httpx.Response(200, text="<html>gateway error</html>")

    client = MpesaClient(
        base_url="https://sandbox.safaricom.co.ke",
        consumer_key="k", consumer_secret="s", shortcode="174379", passkey="p",
        callback_url="https://api.example.com/cb",
        http_client=httpx.Client(transport=httpx.MockTransport(handler)),
        token_cache=AccessTokenCache(),
    )
    with pytest.raises(ProviderError) as exc_info:
        client.stk_push(Decimal("500"), "254712345678", "ref", "desc")
    assert "Malformed" in exc_info.value.message


def test_token_request_rejected(fake_daraja):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"errorMessage": "Invalid credentials"})

    client = MpesaClient(
        base_url="https://sandbox.safaricom.co.ke",
        consumer_key="k", consumer_secret="bad", shortcode="174379", passkey="p",
        callback_url="https://api.example.com/cb",
        http_client=httpx.Client(transport=httpx.MockTransport(handler)),
        token_cache=AccessTokenCache(),
    )
    with pytest.raises(ProviderError) as exc_info:
        client.get_access_token()
    assert "Invalid credentials" in exc_info.value.message


def test_missing_configuration_raises():
    client = MpesaClient(
        base_url="https://sandbox.safaricom.co.ke",
        consumer_key=None, consumer_secret=None, shortcode=None, passkey=None,
        callback_url=None,
        token_cache=AccessTokenCache(),
    )
    with pytest.raises(ProviderError) as exc_info:
        client.stk_push(Decimal("500"), "254712345678", "ref", "desc")
    assert exc_info.value.message == "M-Pesa is not configured"


def test_token_request_uses_basic_auth(fake_daraja, provider):
    seen = {}
    original = fake_daraja.handler

    def handler(request):
        if request.url.path == "/oauth/v1/generate":
            seen["auth"] = request.headers.get("Authorization")
        return original(request)

    fake_daraja.handler = handler
    provider._http = httpx.Client(transport=httpx.MockTransport(fake_daraja.handler))
    provider.get_access_token()

    expected = base64.b64encode(b"consumer-key:consumer-secret").decode()
    assert seen["auth"] == f"Basic {expected}"


def test_push_log_masks_phone_and_password(provider, fake_daraja, caplog):
    with caplog.at_level("INFO", logger="app.services.mpesa_client"):
        provider.stk_push(Decimal("500"), "254712345678", "ref", "desc")

    text = caplog.text
    assert "254712345678" not in text
    assert "2547****5678" in text
    assert fake_daraja.push_requests[0]["Password"] not in text


def test_rejected_token_is_replaced_once_for_concurrent_callers():
    cache = AccessTokenCache()
    cache.get(lambda: ("old", 3599))
    fetches = []

    def slow_fetch():
        fetches.append(1)
        time.sleep(0.05)
        return f"new-{len(fetches)}", 3599

    results = []
    threads = [
        threading.Thread(target=lambda: results.append(cache.get(slow_fetch, rejected="old")))
        for _ in range(8)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(fetches) == 1
    assert results == ["new-1"] * 8


def test_rejection_of_an_already_replaced_token_reuses_cache():
    cache = AccessTokenCache()
    cache.get(lambda: ("current", 3599))

    def fetch():
        raise AssertionError("should not refetch")

    assert cache.get(fetch, rejected="previous") == "current"


def test_concurrent_pushes_share_one_token_refresh(provider, fake_daraja):
    provider.get_access_token()
    fake_daraja.reject_tokens.add("token-1")

    threads = [
        threading.Thread(target=provider.stk_push, args=(Decimal("500"), "254712345678", "ref", "desc"))
        for _ in range(8)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert fake_daraja.token_calls == 2
    assert len(fake_daraja.push_requests) == 8
