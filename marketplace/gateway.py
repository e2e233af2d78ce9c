"""
PayMongo-style payment gateway adapter.

Every remote call goes through `PaymentGateway._request`, which retries 5xx
responses and network errors with exponential backoff and fails fast on 4xx.
"""
import hashlib
import hmac
import logging
import re
from typing import Any, Dict, List, Optional

import httpx
from fastapi import status

from shared.retry import retry_with_backoff
from shared.utils import ExternalServiceException, settings

logger = logging.getLogger(__name__)

ALLOWED_METHODS = ["card", "gcash", "grab_pay", "paymaya", "qrph"]

METADATA_MAX_KEYS = 50
METADATA_KEY_LENGTH = 50
METADATA_NESTED_KEY_LENGTH = 30
METADATA_VALUE_LENGTH = 500


class PaymentGatewayError(ExternalServiceException):
    error_type = "PAYMENT_GATEWAY_ERROR"

    def __init__(self, detail: str, status_code: int = status.HTTP_503_SERVICE_UNAVAILABLE, retryable: bool = True):
        super().__init__("PayMongo", detail, status_code=status_code)
        self.retryable = retryable


def _sanitize_key(key: Any, limit: int = METADATA_KEY_LENGTH) -> str:
    return re.sub(r"[^A-Za-z0-9_]", "_", str(key))[:limit]


def _stringify(value: Any) -> str:
    if isinstance(value, list):
        value = ",".join(str(v) for v in value if v is not None)
    elif isinstance(value, bool):
        value = "true" if value else "false"
    return str(value)[:METADATA_VALUE_LENGTH]


def flatten_metadata(metadata: Optional[Dict[str, Any]]) -> Dict[str, str]:
    """
    Flatten arbitrary metadata into the flat string map the gateway accepts.

    Nested dicts become `parent_child` keys, lists are comma-joined, empty values
    are dropped and at most 50 keys are kept.
    """
    flat: Dict[str, str] = {}
    if not metadata:
        return flat

    def put(key: str, value: Any):
        if len(flat) >= METADATA_MAX_KEYS or value is None:
            return
        text = _stringify(value)
        if text == "":
            return
        flat[key] = text

    for key, value in metadata.items():
        clean_key = _sanitize_key(key)
        if not clean_key:
            continue
        if isinstance(value, dict):
            for child_key, child_value in value.items():
                if isinstance(child_value, dict):
                    continue
                nested = _sanitize_key(child_key, METADATA_NESTED_KEY_LENGTH)
                put(_sanitize_key(f"{clean_key}_{nested}"), child_value)
        else:
            put(clean_key, value)
    return flat


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or "PayMongo API request failed"
    errors = body.get("errors") if isinstance(body, dict) else None
    if errors:
        return errors[0].get("detail") or errors[0].get("code") or "PayMongo API request failed"
    return body.get("message", "PayMongo API request failed") if isinstance(body, dict) else str(body)


class PaymentGateway:
    def __init__(
        self,
        secret_key: str = settings.GATEWAY_SECRET_KEY,
        webhook_secret: str = settings.GATEWAY_WEBHOOK_SECRET,
        base_url: str = settings.GATEWAY_BASE_URL,
        timeout: float = settings.GATEWAY_TIMEOUT_SECONDS,
        max_attempts: int = settings.GATEWAY_MAX_ATTEMPTS,
        base_delay: float = settings.GATEWAY_RETRY_BASE_DELAY,
        max_delay: float = settings.GATEWAY_RETRY_MAX_DELAY,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.webhook_secret = webhook_secret
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.client = httpx.AsyncClient(
            base_url=base_url,
            auth=(secret_key, ""),
            timeout=timeout,
            headers={"Content-Type": "application/json", "Accept": "application/json"},
            transport=transport,
        )

    async def close(self):
        await self.client.aclose()

    async def _request(self, method: str, path: str, attributes: Optional[dict] = None) -> dict:
        payload = {"data": {"attributes": attributes}} if attributes is not None else None

        async def send() -> dict:
            response = await self.client.request(method, path, json=payload)
            if response.status_code >= 500:
                raise PaymentGatewayError(f"{_error_detail(response)} (Status: {response.status_code})")
            if response.status_code >= 400:
                detail = _error_detail(response)
                logger.error(f"PayMongo rejected {method} {path}: {detail}", extra={"status_code": response.status_code})
                raise PaymentGatewayError(
                    f"{detail} (Status: {response.status_code})",
                    status_code=status.HTTP_502_BAD_GATEWAY,
                    retryable=False,
                )
            return response.json()["data"]

        def retryable(exc: Exception) -> bool:
            if isinstance(exc, PaymentGatewayError):
                return exc.retryable
            return isinstance(exc, httpx.RequestError)

        logger.info(f"PayMongo API Request: {method} {path}")
        try:
            return await retry_with_backoff(
                send,
                max_attempts=self.max_attempts,
                base_delay=self.base_delay,
                max_delay=self.max_delay,
                retry_if=retryable,
            )
        except httpx.RequestError as exc:
            logger.error(f"PayMongo network error on {method} {path}", extra={"error": str(exc)})
            raise PaymentGatewayError(f"Gateway unreachable: {exc}") from exc

    async def create_intent(self, amount: int, description: str, metadata: Optional[dict] = None) -> dict:
        if amount <= 0:
            raise PaymentGatewayError("Amount must be positive", status_code=status.HTTP_400_BAD_REQUEST, retryable=False)
        return await self._request("POST", "/payment_intents", {
            "amount": int(amount),
            "payment_method_allowed": ALLOWED_METHODS,
            "payment_method_options": {"card": {"request_three_d_secure": "automatic"}},
            "currency": settings.CURRENCY,
            "capture_type": "automatic",
            "description": description or "Payment",
            "metadata": flatten_metadata(metadata),
        })

    async def create_payment_method(self, method_type: str, details: Optional[dict] = None) -> dict:
        return await self._request("POST", "/payment_methods", {"type": method_type, **(details or {})})

    async def attach_method(self, intent_id: str, method_id: str, return_url: Optional[str] = None) -> dict:
        return await self._request("POST", f"/payment_intents/{intent_id}/attach", {
            "payment_method": method_id,
            "return_url": return_url or settings.PAYMENT_RETURN_URL,
        })

    async def retrieve(self, intent_id: str) -> dict:
        return await self._request("GET", f"/payment_intents/{intent_id}")

    async def refund(self, charge_id: str, amount: int, reason: str = "requested_by_customer",
                     metadata: Optional[dict] = None) -> dict:
        metadata = metadata or {}
        attributes = {
            "amount": int(amount),
            "payment_id": charge_id,
            "reason": reason or "requested_by_customer",
            "metadata": flatten_metadata(metadata),
        }
        if metadata.get("notes"):
            attributes["notes"] = str(metadata["notes"])[:METADATA_VALUE_LENGTH]
        return await self._request("POST", "/refunds", attributes)

    async def cancel_intent(self, intent_id: str, reason: str = "requested_by_customer") -> dict:
        return await self._request("POST", f"/payment_intents/{intent_id}/cancel", {"reason": reason})

    def verify_webhook_signature(self, raw_payload: bytes, signature: Optional[str]) -> bool:
        if not self.webhook_secret:
            logger.error("Webhook secret is not configured, rejecting webhook")
            return False
        if not signature:
            return False
        expected = hmac.new(self.webhook_secret.encode(), raw_payload, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, signature)


def intent_status(intent: dict) -> Optional[str]:
    return (intent.get("attributes") or {}).get("status")


def latest_charge(intent: dict) -> Optional[dict]:
    """Most recent payment resource embedded in an intent, if any."""
    payments: List[dict] = (intent.get("attributes") or {}).get("payments") or []
    return payments[-1] if payments else None
