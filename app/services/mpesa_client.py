"""
M-Pesa (Daraja) client for STK push payments.

Handles the OAuth credential exchange, password derivation and the push
request itself. Every provider failure is raised as ProviderError so the
caller can mark the intent failed and report synchronously.
"""
import base64
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Dict, Optional, Tuple

import httpx

from app.core import config
from app.core.errors import ProviderError
from app.core.logging_config import sanitize_log_data, mask_phone

logger = logging.getLogger(__name__)

TOKEN_PATH = "/oauth/v1/generate?grant_type=client_credentials"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"


class AccessTokenCache:
    """
    Process-wide cache for the provider bearer token.

    Lazily populated and valid until shortly before the provider expiry.
    Refreshes are single-flight: concurrent callers that find the token stale,
    or that all had the same token rejected, wait on one fetch instead of each
    requesting a new credential.
    """

    def __init__(self, expiry_margin_seconds: int = 60, clock: Callable[[], float] = time.monotonic):
        self._lock = threading.Lock()
        self._token: Optional[str] = None
        self._expires_at = 0.0
        self._margin = expiry_margin_seconds
        self._clock = clock

    def get(self, fetch: Callable[[], Tuple[str, int]], rejected: Optional[str] = None) -> str:
        """
        Return a valid token, calling ``fetch`` (-> (token, expires_in)) when needed.

        ``rejected`` is a token the provider refused; it is only replaced if it is
        still the cached one, so a refresh done by another caller is reused.
        """
        with self._lock:
            token = self._token
            if token is not None and token != rejected and self._clock() < self._expires_at:
                return token

            token, expires_in = fetch()
            self._token = token
            self._expires_at = self._clock() + max(0, expires_in - self._margin)
            logger.info(f"M-Pesa access token refreshed (expires_in={expires_in}s)")
            return token


_token_cache = AccessTokenCache(expiry_margin_seconds=config.MPESA_TOKEN_EXPIRY_MARGIN_SECONDS)


@dataclass
class StkPushResult:
    checkout_request_id: str
    merchant_request_id: Optional[str]
    response_description: Optional[str]
    customer_message: Optional[str]


def generate_timestamp(now: Optional[datetime] = None) -> str:
    return (now or datetime.now(timezone.utc)).strftime(TIMESTAMP_FORMAT)


def generate_password(shortcode: str, passkey: str, timestamp: str) -> str:
    """Daraja password: base64(shortcode + passkey + timestamp)."""
    raw = f"{shortcode}{passkey}{timestamp}".encode("utf-8")
    return base64.b64encode(raw).decode("ascii")


def to_provider_amount(amount: Decimal) -> int:
    """STK push accepts whole units only; round half up."""
    return int(Decimal(amount).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class MpesaClient:
    def __init__(
        self,
        base_url: str,
        consumer_key: Optional[str],
        consumer_secret: Optional[str],
        shortcode: Optional[str],
        passkey: Optional[str],
        callback_url: Optional[str],
        timeout: float = 30.0,
        http_client: Optional[httpx.Client] = None,
        token_cache: Optional[AccessTokenCache] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.consumer_key = consumer_key
        self.consumer_secret = consumer_secret
        self.shortcode = shortcode
        self.passkey = passkey
        self.callback_url = callback_url
        self.timeout = timeout
        self._http = http_client
        self._token_cache = token_cache if token_cache is not None else _token_cache

    @classmethod
    def from_config(cls, http_client: Optional[httpx.Client] = None) -> "MpesaClient":
        return cls(
            base_url=config.MPESA_BASE_URL,
            consumer_key=config.MPESA_CONSUMER_KEY,
            consumer_secret=config.MPESA_CONSUMER_SECRET,
            shortcode=config.MPESA_SHORTCODE,
            passkey=config.MPESA_PASSKEY,
            callback_url=config.MPESA_CALLBACK_URL,
            timeout=config.MPESA_TIMEOUT_SECONDS,
            http_client=http_client,
        )

    def _ensure_configured(self) -> None:
        missing = [
            name for name, value in (
                ("MPESA_CONSUMER_KEY", self.consumer_key),
                ("MPESA_CONSUMER_SECRET", self.consumer_secret),
                ("MPESA_SHORTCODE", self.shortcode),
                ("MPESA_PASSKEY", self.passkey),
                ("MPESA_CALLBACK_URL", self.callback_url),
            ) if not value
        ]
        if missing:
            logger.error(f"M-Pesa not configured, missing: {', '.join(missing)}")
            raise ProviderError("M-Pesa is not configured")

    def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        url = f"{self.base_url}{path}"
        try:
            if self._http is not None:
                return self._http.request(method, url, timeout=self.timeout, **kwargs)
            with httpx.Client(timeout=self.timeout) as client:
                return client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning(f"M-Pesa request timed out: {method} {path}")
            raise ProviderError("M-Pesa request timed out") from e
        except httpx.HTTPError as e:
            logger.warning(f"M-Pesa request failed: {method} {path}: {e}")
            raise ProviderError(f"M-Pesa request failed: {e}") from e

    @staticmethod
    def _json(response: httpx.Response) -> Dict:
        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError("Malformed response from M-Pesa", detail=response.text[:500]) from e
        if not isinstance(data, dict):
            raise ProviderError("Malformed response from M-Pesa", detail=data)
        return data

    @staticmethod
    def _error_text(response: httpx.Response) -> Tuple[str, Optional[Dict]]:
        try:
            data = response.json()
        except ValueError:
            return response.text[:500] or f"HTTP {response.status_code}", None
        if isinstance(data, dict):
            message = data.get("errorMessage") or data.get("ResponseDescription") or f"HTTP {response.status_code}"
            return message, data
        return f"HTTP {response.status_code}", None

    def _fetch_access_token(self) -> Tuple[str, int]:
        response = self._send("GET", TOKEN_PATH, auth=(self.consumer_key, self.consumer_secret))
        if response.status_code != 200:
            message, data = self._error_text(response)
            logger.error(f"M-Pesa token request rejected: status={response.status_code}, error={message}")
            raise ProviderError(f"Failed to get M-Pesa access token: {message}", detail=data)

        data = self._json(response)
        token = data.get("access_token")
        if not token:
            raise ProviderError("Malformed token response from M-Pesa")
        try:
            expires_in = int(data.get("expires_in", 3599))
        except (TypeError, ValueError):
            expires_in = 3599
        return token, expires_in

    def get_access_token(self, rejected: Optional[str] = None) -> str:
        self._ensure_configured()
        return self._token_cache.get(self._fetch_access_token, rejected=rejected)

    def build_stk_push_payload(
        self,
        amount: Decimal,
        phone_number: str,
        account_reference: str,
        description: str,
        timestamp: Optional[str] = None,
    ) -> Dict:
        timestamp = timestamp or generate_timestamp()
        return {
            "BusinessShortCode": self.shortcode,
            "Password": generate_password(self.shortcode, self.passkey, timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": to_provider_amount(amount),
            "PartyA": phone_number,
            "PartyB": self.shortcode,
            "PhoneNumber": phone_number,
            "CallBackURL": self.callback_url,
            "AccountReference": account_reference,
            "TransactionDesc": description,
        }

    def stk_push(
        self,
        amount: Decimal,
        phone_number: str,
        account_reference: str,
        description: str,
    ) -> StkPushResult:
        """
        Ask the provider to prompt the payer's handset for a PIN.

        A 401 replaces the rejected credential and retries once.

        Raises:
            ProviderError: on timeout, transport failure, rejection or a malformed response
        """
        self._ensure_configured()
        payload = self.build_stk_push_payload(amount, phone_number, account_reference, description)

        loggable = sanitize_log_data(payload)
        loggable["PartyA"] = loggable["PhoneNumber"] = mask_phone(phone_number)
        logger.info(f"Sending STK push: {loggable}")

        response = None
        rejected = None
        for _ in range(2):
            token = self.get_access_token(rejected=rejected)
            response = self._send(
                "POST",
                STK_PUSH_PATH,
                json=payload,
                headers={"Authorization": f"Bearer {token}"},
            )
            if response.status_code != 401:
                break
            logger.warning("M-Pesa rejected access token, refreshing")
            rejected = token

        if response.status_code >= 400:
            message, data = self._error_text(response)
            logger.error(f"STK push rejected: status={response.status_code}, error={message}")
            raise ProviderError(message, detail=data)

        data = self._json(response)
        response_code = str(data.get("ResponseCode", "0"))
        if response_code != "0":
            message = data.get("ResponseDescription") or data.get("errorMessage") or "STK push rejected"
            logger.error(f"STK push not accepted: code={response_code}, error={message}")
            raise ProviderError(message, detail=data)

        checkout_request_id = data.get("CheckoutRequestID")
        if not checkout_request_id:
            raise ProviderError("Malformed response from M-Pesa: missing CheckoutRequestID", detail=data)

        logger.info(f"STK push accepted: checkout_request_id={checkout_request_id}")
        return StkPushResult(
            checkout_request_id=checkout_request_id,
            merchant_request_id=data.get("MerchantRequestID"),
            response_description=data.get("ResponseDescription"),
            customer_message=data.get("CustomerMessage"),
        )
