from plankmarket.models.user import User
from plankmarket.models.listing import Listing
from plankmarket.models.listing_promotion import ListingPromotion
from plankmarket.models.offer import Offer
from plankmarket.models.offer_event import OfferEvent
from plankmarket.models.order import Order
from plankmarket.models.escrow_transition import EscrowTransition
from plankmarket.models.dispute import Dispute
from plankmarket.models.content_violation import ContentViolation
from plankmarket.models.notification import Notification
from plankmarket.models.webhook_event import WebhookEvent
from plankmarket.models.idempotency_key import IdempotencyKey
from plankmarket.models.platform_event import PlatformEvent
from plankmarket.models.job_run import JobRun
from plankmarket.models.reconciliation_report import ReconciliationReport

__all__ = [
    "User",
    "Listing",
    "ListingPromotion",
    "Offer",
    "OfferEvent",
    "Order",
    "EscrowTransition",
    "Dispute",
    "ContentViolation",
    "Notification",
    "WebhookEvent",
    "IdempotencyKey",
    "PlatformEvent",
    "JobRun",
    "ReconciliationReport",
]
