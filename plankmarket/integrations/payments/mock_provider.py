from __future__ import annotations

import itertools
import json

from plankmarket.integrations.common import ProviderError, WebhookSignatureError
from plankmarket.integrations.payments.base import (
    PaymentIntentResult,
    PaymentsProvider,
    ProcessorRefund,
    TransferResult,
)
from plankmarket.integrations.payments.stripe_provider import verify_stripe_signature


class MockPaymentsProvider(PaymentsProvider):
    """In-process processor for dev and tests.

    Honours idempotency keys like the real processor (same key, same object),
    records every call in ``calls``, and can be told to fail an operation.
    """

    name = "mock"

    def __init__(self, *, webhook_secret: str = ""):
        self.webhook_secret = webhook_secret
        self.calls = []
        self._failures = {}
        self._replays = {}
        self._seq = itertools.count(1)

    def fail(self, operation: str, message: str = "mock_failure") -> None:
        self._failures[operation] = message

    def heal(self, operation: str | None = None) -> None:
        if operation is None:
            self._failures.clear()
        else:
            self._failures.pop(operation, None)

    def _run(self, operation: str, idempotency_key: str | None, build, **params):
        self.calls.append({"operation": operation, "idempotency_key": idempotency_key, **params})
        if operation in self._failures:
            raise ProviderError(f"MOCK_{operation.upper()}_FAILED", self._failures[operation])
        if idempotency_key and (operation, idempotency_key) in self._replays:
            return self._replays[(operation, idempotency_key)]
        result = build(next(self._seq))
        if idempotency_key:
            self._replays[(operation, idempotency_key)] = result
        return result

    def calls_for(self, operation: str) -> list:
        return [c for c in self.calls if c["operation"] == operation]

    def create_payment_intent(self, *, amount_cents, currency="usd", metadata=None, idempotency_key=None):
        return self._run(
            "payment_intent",
            idempotency_key,
            lambda n: PaymentIntentResult(
                payment_intent_id=f"pi_mock_{n}",
                client_secret=f"pi_mock_{n}_secret",
                status="requires_payment_method",
                provider=self.name,
                raw={"amount": int(amount_cents), "currency": currency, "metadata": metadata or {}},
            ),
            amount_cents=int(amount_cents),
            metadata=metadata or {},
        )

    def create_refund(self, *, payment_intent_id, amount_cents, reverse_transfer=False, metadata=None, idempotency_key=None):
        return self._run(
            "refund",
            idempotency_key,
            lambda n: ProcessorRefund(
                refund_id=f"re_mock_{n}",
                amount_cents=int(amount_cents),
                transfer_reversal_id=f"trr_mock_{n}" if reverse_transfer else None,
                raw={"payment_intent": payment_intent_id},
            ),
            payment_intent_id=payment_intent_id,
            amount_cents=int(amount_cents),
            reverse_transfer=bool(reverse_transfer),
        )

    def create_transfer(self, *, amount_cents, destination, currency="usd", transfer_group=None, metadata=None, idempotency_key=None):
        return self._run(
            "transfer",
            idempotency_key,
            lambda n: TransferResult(
                transfer_id=f"tr_mock_{n}",
                amount_cents=int(amount_cents),
                destination=destination,
                raw={"transfer_group": transfer_group},
            ),
            amount_cents=int(amount_cents),
            destination=destination,
        )

    def verify_webhook(self, payload, signature_header):
        if self.webhook_secret:
            return verify_stripe_signature(payload, signature_header, self.webhook_secret)
        try:
            event = json.loads((payload or b"{}").decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise WebhookSignatureError("payload_not_json")
        if not isinstance(event, dict):
            raise WebhookSignatureError("payload_not_object")
        return event
