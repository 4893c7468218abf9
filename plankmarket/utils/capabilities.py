from __future__ import annotations

# Capability names checked by the HTTP segments and services.
MAKE_OFFER = "offer.create"
NEGOTIATE = "offer.negotiate"
BUY = "order.create"
FULFIL_ORDER = "order.fulfil"
CONFIRM_PICKUP = "order.confirm_pickup"
REFUND_ORDER = "order.refund"
OPEN_DISPUTE = "dispute.open"
RESOLVE_DISPUTE = "dispute.resolve"
REVIEW_VIOLATIONS = "moderation.review"
RUN_RECONCILIATION = "ledger.reconcile"

_BUYER = frozenset({MAKE_OFFER, NEGOTIATE, BUY, OPEN_DISPUTE})
_SELLER = frozenset({NEGOTIATE, FULFIL_ORDER, OPEN_DISPUTE})
_ADMIN = frozenset(
    {
        FULFIL_ORDER,
        CONFIRM_PICKUP,
        REFUND_ORDER,
        RESOLVE_DISPUTE,
        REVIEW_VIOLATIONS,
        RUN_RECONCILIATION,
    }
)

_ROLE_CAPABILITIES = {
    "buyer": _BUYER,
    # Sellers buy from other sellers too.
    "seller": _BUYER | _SELLER,
    "admin": _ADMIN,
}


def capabilities_for(role: str | None) -> frozenset:
    return _ROLE_CAPABILITIES.get((role or "").strip().lower(), frozenset())


def can(user, capability: str) -> bool:
    if user is None:
        return False
    return capability in capabilities_for(getattr(user, "role", None))
