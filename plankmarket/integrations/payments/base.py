from __future__ import annotations

from dataclasses import dataclass


@dataclass
class PaymentIntentResult:
    payment_intent_id: str
    client_secret: str
    status: str
    provider: str
    raw: dict | None = None


@dataclass
class ProcessorRefund:
    refund_id: str
    amount_cents: int
    transfer_reversal_id: str | None = None
    raw: dict | None = None


@dataclass
class TransferResult:
    transfer_id: str
    amount_cents: int
    destination: str
    raw: dict | None = None


class PaymentsProvider:
    """Money-movement primitives of the external processor.

    Amounts are integer cents. Implementations raise ``ProviderError`` on any
    failure and never return a partial result.
    """

    name = "unknown"

    def create_payment_intent(
        self,
        *,
        amount_cents: int,
        currency: str = "usd",
        metadata: dict | None = None,
        idempotency_key: str | None = None,
    ) -> PaymentIntentResult:
        raise NotImplementedError

    def create_refund(
        self,
        *,
        payment_intent_id: str,
        amount_cents: int,
        reverse_transfer: bool = False,
        metadata: dict | None = None,
        idempotency_key: str | None = None,
    ) -> ProcessorRefund:
        raise NotImplementedError

    def create_transfer(
        self,
        *,
        amount_cents: int,
        destination: str,
        currency: str = "usd",
        transfer_group: str | None = None,
        metadata: dict | None = None,
        idempotency_key: str | None = None,
    ) -> TransferResult:
        raise NotImplementedError

    def verify_webhook(self, payload: bytes, signature_header: str | None) -> dict:
        raise NotImplementedError
