from __future__ import annotations

import hashlib
import hmac
import json
import time

import requests

from plankmarket.integrations.common import ProviderError, WebhookSignatureError
from plankmarket.integrations.payments.base import (
    PaymentIntentResult,
    PaymentsProvider,
    ProcessorRefund,
    TransferResult,
)

STRIPE_API_BASE = "https://api.stripe.com/v1"


def _form_metadata(metadata: dict | None) -> dict:
    return {f"metadata[{k}]": str(v) for k, v in (metadata or {}).items()}


def verify_stripe_signature(payload: bytes, signature_header: str | None, secret: str, *, tolerance: int = 300) -> dict:
    """Check a ``Stripe-Signature`` header and return the decoded event.

    The header carries ``t=<unix ts>`` and one or more ``v1=<hex>`` entries;
    each v1 is HMAC-SHA256 over ``"<t>.<raw body>"`` with the endpoint secret.
    """
    if not secret:
        raise WebhookSignatureError("webhook_secret_missing")
    header = (signature_header or "").strip()
    if not header:
        raise WebhookSignatureError("signature_missing")

    timestamp = None
    signatures = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)
    if not timestamp or not signatures:
        raise WebhookSignatureError("signature_malformed")
    try:
        ts = int(timestamp)
    except ValueError:
        raise WebhookSignatureError("signature_malformed")
    if tolerance and abs(int(time.time()) - ts) > int(tolerance):
        raise WebhookSignatureError("signature_timestamp_out_of_tolerance")

    signed = f"{timestamp}.".encode("utf-8") + (payload or b"")
    expected = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        raise WebhookSignatureError("signature_mismatch")

    try:
        event = json.loads((payload or b"{}").decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise WebhookSignatureError("payload_not_json")
    if not isinstance(event, dict):
        raise WebhookSignatureError("payload_not_object")
    return event


class StripePaymentsProvider(PaymentsProvider):
    name = "stripe"

    def __init__(self, secret_key: str, *, webhook_secret: str = "", webhook_tolerance: int = 300, timeout: int = 25):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.webhook_tolerance = webhook_tolerance
        self.timeout = timeout

    def _post(self, path: str, data: dict, *, failure_code: str, idempotency_key: str | None = None) -> dict:
        headers = {"Authorization": f"Bearer {self.secret_key}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        try:
            r = requests.post(f"{STRIPE_API_BASE}{path}", headers=headers, data=data, timeout=self.timeout)
        except requests.RequestException as e:
            raise ProviderError(failure_code, str(e))
        try:
            j = r.json() if r.content else {}
        except ValueError:
            j = {}
        if r.status_code < 200 or r.status_code >= 300:
            err = j.get("error") if isinstance(j, dict) else None
            msg = ((err or {}).get("message") or f"HTTP {r.status_code}").strip()
            raise ProviderError(failure_code, msg, status=r.status_code)
        return j if isinstance(j, dict) else {"payload": j}

    def create_payment_intent(self, *, amount_cents, currency="usd", metadata=None, idempotency_key=None):
        data = {
            "amount": int(amount_cents),
            "currency": currency,
            "automatic_payment_methods[enabled]": "true",
        }
        data.update(_form_metadata(metadata))
        j = self._post("/payment_intents", data, failure_code="STRIPE_PAYMENT_INTENT_FAILED", idempotency_key=idempotency_key)
        return PaymentIntentResult(
            payment_intent_id=(j.get("id") or "").strip(),
            client_secret=(j.get("client_secret") or "").strip(),
            status=(j.get("status") or "").strip(),
            provider=self.name,
            raw=j,
        )

    def create_refund(self, *, payment_intent_id, amount_cents, reverse_transfer=False, metadata=None, idempotency_key=None):
        data = {"payment_intent": payment_intent_id, "amount": int(amount_cents)}
        if reverse_transfer:
            data["reverse_transfer"] = "true"
        data.update(_form_metadata(metadata))
        j = self._post("/refunds", data, failure_code="STRIPE_REFUND_FAILED", idempotency_key=idempotency_key)
        reversal = j.get("transfer_reversal")
        if isinstance(reversal, dict):
            reversal = reversal.get("id")
        return ProcessorRefund(
            refund_id=(j.get("id") or "").strip(),
            amount_cents=int(j.get("amount") or amount_cents),
            transfer_reversal_id=(reversal or None),
            raw=j,
        )

    def create_transfer(self, *, amount_cents, destination, currency="usd", transfer_group=None, metadata=None, idempotency_key=None):
        data = {"amount": int(amount_cents), "currency": currency, "destination": destination}
        if transfer_group:
            data["transfer_group"] = transfer_group
        data.update(_form_metadata(metadata))
        j = self._post("/transfers", data, failure_code="STRIPE_TRANSFER_FAILED", idempotency_key=idempotency_key)
        return TransferResult(
            transfer_id=(j.get("id") or "").strip(),
            amount_cents=int(j.get("amount") or amount_cents),
            destination=destination,
            raw=j,
        )

    def verify_webhook(self, payload, signature_header):
        return verify_stripe_signature(payload, signature_header, self.webhook_secret, tolerance=self.webhook_tolerance)
