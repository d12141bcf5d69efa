"""
Inbound webhook authentication.

The signing scheme is chosen from the headers on the request, never from a
provider name supplied by the caller:

* ``x-webhook-signature`` + ``x-webhook-timestamp`` (Cashfree):
  ``base64(HMAC-SHA256(secret, timestamp + raw_body))``
* ``x-verify`` (PhonePe): ``sha256_hex(base64_payload + salt_key) + "###" + salt_index``

Signatures are always computed over the raw request bytes. Re-serializing the
parsed JSON changes whitespace and key order and breaks verification.
"""
import base64
import binascii
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from paygate.config import Settings
from paygate.errors import (
    MalformedWebhook,
    ProviderConfigurationError,
    SignatureMismatch,
    UnrecognizedWebhook,
)
from paygate.security_log import WEBHOOK_SIGNATURE_INVALID, log_security_event
from paygate.services.base import PaymentProvider

logger = logging.getLogger(__name__)

CASHFREE_SIGNATURE_HEADER = "x-webhook-signature"
CASHFREE_TIMESTAMP_HEADER = "x-webhook-timestamp"
PHONEPE_VERIFY_HEADER = "x-verify"

PAYMENT_SUCCESS = "SUCCESS"
PAYMENT_FAILED = "FAILED"

_PHONEPE_FAILURE_CODES = {"PAYMENT_ERROR", "PAYMENT_DECLINED", "PAYMENT_FAILED", "TIMED_OUT"}


@dataclass
class WebhookEvent:
    provider: PaymentProvider
    order_id: str
    payment_status: str
    provider_payment_id: Optional[str] = None
    raw_payload: dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.payment_status == PAYMENT_SUCCESS


def compute_cashfree_signature(secret: str, timestamp: str, raw_body: bytes) -> str:
    signed_payload = timestamp.encode("utf-8") + raw_body
    digest = hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def compute_phonepe_checksum(base64_payload: str, salt_key: str, salt_index: str) -> str:
    digest = hashlib.sha256(f"{base64_payload}{salt_key}".encode("utf-8")).hexdigest()
    return f"{digest}###{salt_index}"


def _lower_headers(headers: Mapping[str, str]) -> dict[str, str]:
    return {str(key).lower(): str(value).strip() for key, value in headers.items()}


def detect_provider(headers: Mapping[str, str]) -> PaymentProvider:
    lowered = _lower_headers(headers)
    if lowered.get(CASHFREE_SIGNATURE_HEADER):
        return PaymentProvider.CASHFREE
    if lowered.get(PHONEPE_VERIFY_HEADER):
        return PaymentProvider.PHONEPE
    raise UnrecognizedWebhook()


def _reject(provider: PaymentProvider, expected: str, received: str, client_ip: Optional[str]) -> None:
    log_security_event(
        WEBHOOK_SIGNATURE_INVALID,
        client_ip=client_ip,
        provider=provider.value,
        expected_signature=expected,
        received_signature=received,
    )
    raise SignatureMismatch()


def _load_json(raw: bytes) -> dict[str, Any]:
    try:
        payload = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        raise MalformedWebhook()
    if not isinstance(payload, dict):
        raise MalformedWebhook()
    return payload


def _verify_cashfree(
    headers: dict[str, str],
    raw_body: bytes,
    settings: Settings,
    client_ip: Optional[str],
) -> WebhookEvent:
    secret = settings.cashfree.webhook_secret
    if not secret:
        logger.error("Cashfree webhook received but no webhook secret is configured")
        raise ProviderConfigurationError("Webhook verification is not configured.")

    timestamp = headers.get(CASHFREE_TIMESTAMP_HEADER, "")
    if not timestamp:
        raise MalformedWebhook("Missing webhook timestamp.")

    received = headers[CASHFREE_SIGNATURE_HEADER]
    expected = compute_cashfree_signature(secret, timestamp, raw_body)
    if not hmac.compare_digest(expected.encode("utf-8"), received.encode("utf-8")):
        _reject(PaymentProvider.CASHFREE, expected, received, client_ip)

    payload = _load_json(raw_body)
    data = payload.get("data") or {}
    order = data.get("order") or {}
    payment = data.get("payment") or {}
    order_id = str(order.get("order_id") or "").strip()
    if not order_id:
        raise MalformedWebhook("Webhook payload has no order id.")

    return WebhookEvent(
        provider=PaymentProvider.CASHFREE,
        order_id=order_id,
        payment_status=str(payment.get("payment_status") or "").strip().upper(),
        provider_payment_id=str(payment.get("cf_payment_id") or "") or None,
        raw_payload=payload,
    )


def _phonepe_status(code: str) -> str:
    if code == "PAYMENT_SUCCESS":
        return PAYMENT_SUCCESS
    if code in _PHONEPE_FAILURE_CODES:
        return PAYMENT_FAILED
    return code


def _verify_phonepe(
    headers: dict[str, str],
    raw_body: bytes,
    settings: Settings,
    client_ip: Optional[str],
) -> WebhookEvent:
    credentials = settings.phonepe
    if not credentials.salt_key or not credentials.salt_index:
        logger.error("PhonePe callback received but salt key is not configured")
        raise ProviderConfigurationError("Webhook verification is not configured.")

    envelope = _load_json(raw_body)
    base64_payload = envelope.get("response")
    if not isinstance(base64_payload, str) or not base64_payload:
        raise MalformedWebhook()

    received = headers[PHONEPE_VERIFY_HEADER]
    expected = compute_phonepe_checksum(base64_payload, credentials.salt_key, credentials.salt_index)
    if not hmac.compare_digest(expected.encode("utf-8"), received.encode("utf-8")):
        _reject(PaymentProvider.PHONEPE, expected, received, client_ip)

    try:
        decoded = base64.b64decode(base64_payload, validate=True)
    except (binascii.Error, ValueError):
        raise MalformedWebhook()
    payload = _load_json(decoded)

    data = payload.get("data") or {}
    order_id = str(data.get("merchantTransactionId") or "").strip()
    if not order_id:
        raise MalformedWebhook("Webhook payload has no order id.")

    return WebhookEvent(
        provider=PaymentProvider.PHONEPE,
        order_id=order_id,
        payment_status=_phonepe_status(str(payload.get("code") or "").strip().upper()),
        provider_payment_id=str(data.get("transactionId") or "") or None,
        raw_payload=payload,
    )


def verify_webhook(
    headers: Mapping[str, str],
    raw_body: bytes,
    settings: Settings,
    client_ip: Optional[str] = None,
) -> WebhookEvent:
    """Authenticate a provider callback and return its trusted fields."""
    provider = detect_provider(headers)
    lowered = _lower_headers(headers)
    if provider == PaymentProvider.CASHFREE:
        return _verify_cashfree(lowered, raw_body, settings, client_ip)
    return _verify_phonepe(lowered, raw_body, settings, client_ip)
