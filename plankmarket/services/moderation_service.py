from __future__ import annotations

import json
from datetime import datetime, timedelta

import redis
from flask import current_app

from plankmarket.extensions import db
from plankmarket.models import ContentViolation, User
from plankmarket.services.errors import ContentBlockedError
from plankmarket.utils.content_moderation import (
    analyze_content,
    blocked_content_message,
    detect_self_reference,
)
from plankmarket.utils.events import log_event
from plankmarket.utils.rate_limit import check_limit
from plankmarket.utils.redis_client import get_client
from plankmarket.utils.unit_of_work import UnitOfWork, begin

VIOLATION_WINDOW = timedelta(days=30)

WARNING_THRESHOLD = 1
RATE_LIMIT_THRESHOLD = 3
SUSPEND_THRESHOLD = 5

RATE_LIMITED_ACTIONS = 10
RATE_LIMIT_WINDOW_SECONDS = 3600

CONTENT_TYPES = ("message", "listing", "offer", "review")


def _counter_key(user_id: int) -> str:
    return f"violation-count:{int(user_id)}"


def log_content_violation(*, user_id: int, content_type: str, content_body: str, detections: list) -> ContentViolation:
    """Store a violation and bump the user's rolling 30-day counter.

    The row is committed on its own; callers inside a transaction go through
    :func:`screen_text`, which defers the write until their unit completes.
    The Redis counter, when Redis is configured, is bumped only after the row
    is stored and keeps the TTL set by the first violation in the window.
    """
    if content_type not in CONTENT_TYPES:
        raise ValueError(f"unknown content_type {content_type}")
    row = ContentViolation(
        user_id=int(user_id),
        content_type=content_type,
        content_body=content_body or "",
        detections_json=json.dumps([d.to_dict() for d in detections]),
    )
    db.session.add(row)
    db.session.commit()

    client = get_client()
    if client is not None:
        key = _counter_key(user_id)
        try:
            client.incr(key)
            if client.ttl(key) < 0:
                client.expire(key, int(VIOLATION_WINDOW.total_seconds()))
        except redis.RedisError as e:
            current_app.logger.warning("violation_counter_incr_failed user_id=%s err=%s", user_id, e)
    return row


def get_violation_count(user_id: int, *, now: datetime | None = None) -> int:
    client = get_client()
    if client is not None:
        try:
            raw = client.get(_counter_key(user_id))
            return int(raw or 0)
        except (redis.RedisError, ValueError) as e:
            current_app.logger.warning("violation_counter_read_failed user_id=%s err=%s", user_id, e)
    since = (now or datetime.utcnow()) - VIOLATION_WINDOW
    return (
        ContentViolation.query.filter(
            ContentViolation.user_id == int(user_id),
            ContentViolation.created_at >= since,
            ContentViolation.false_positive.is_(False),
        ).count()
    )


def enforcement_for_count(count: int) -> dict:
    if count >= SUSPEND_THRESHOLD:
        return {"allowed": False, "action": "suspend", "violation_count": count}
    if count >= RATE_LIMIT_THRESHOLD:
        return {"allowed": True, "action": "rate_limit", "violation_count": count}
    if count >= WARNING_THRESHOLD:
        return {"allowed": True, "action": "warning", "violation_count": count}
    return {"allowed": True, "action": "none", "violation_count": count}


def check_violation_status(user_id: int) -> dict:
    return enforcement_for_count(get_violation_count(user_id))


def enforce_violation_status(user_id: int) -> dict:
    """Refuse suspended users and throttle rate-limited ones."""
    status = check_violation_status(user_id)
    if not status["allowed"]:
        raise ContentBlockedError(
            "Your account is suspended from messaging due to repeated policy violations.",
            action=status["action"],
        )
    if status["action"] == "rate_limit":
        ok, retry_after = check_limit(
            f"violations:{int(user_id)}",
            limit=RATE_LIMITED_ACTIONS,
            window_seconds=RATE_LIMIT_WINDOW_SECONDS,
        )
        if not ok:
            raise ContentBlockedError(
                f"Too many actions. Please retry in {retry_after} seconds.",
                action=status["action"],
                status=429,
            )
    return status


def _record_violation(*, user_id: int, content_type: str, body: str, detections: list, blocked: bool, action: str) -> None:
    try:
        row = log_content_violation(
            user_id=user_id,
            content_type=content_type,
            content_body=body,
            detections=detections,
        )
        log_event(
            "content_violation",
            actor_user_id=user_id,
            subject_type=content_type,
            subject_id=row.id,
            severity="WARN" if blocked else "INFO",
            metadata={"types": sorted({d.type for d in detections}), "enforcement": action},
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        current_app.logger.exception("content_violation_record_failed user_id=%s content_type=%s", user_id, content_type)


def screen_text(
    text: str | None,
    *,
    user: User,
    content_type: str,
    field_name: str,
    check_self_reference: bool = True,
    uow: UnitOfWork | None = None,
) -> list:
    """Moderate one free-text field before it is persisted.

    High-confidence detections raise ``ContentBlockedError``; medium ones are
    accepted. Either way the violation is recorded once the caller's unit has
    committed or rolled back, so a refused move still leaves its violation
    behind without touching the caller's transaction. Returns the detections.
    """
    body = (text or "").strip()
    if not body:
        return []
    result = analyze_content(body)
    detections = list(result.detections)
    if check_self_reference:
        detections.extend(detect_self_reference(body, name=user.name, business_name=user.business_name))
    if not detections:
        return []

    user_id = int(user.id)
    blocking = [d for d in detections if d.level == "high"]
    status = enforcement_for_count(get_violation_count(user_id) + 1)
    current_app.logger.info(
        "content_violation user_id=%s content_type=%s blocked=%s enforcement=%s count=%s",
        user_id,
        content_type,
        bool(blocking),
        status["action"],
        status["violation_count"],
    )
    with begin(uow) as tx:
        tx.after_completion(
            lambda: _record_violation(
                user_id=user_id,
                content_type=content_type,
                body=body,
                detections=detections,
                blocked=bool(blocking),
                action=status["action"],
            )
        )
        if blocking:
            raise ContentBlockedError(
                blocked_content_message(field_name, blocking),
                detections=blocking,
                action=status["action"],
            )
    return detections


def review_violation(violation_id: int, *, reviewer_id: int, false_positive: bool, notes: str = "") -> ContentViolation | None:
    row = db.session.get(ContentViolation, int(violation_id))
    if row is None:
        return None
    row.reviewed = True
    row.reviewed_by = int(reviewer_id)
    row.reviewed_at = datetime.utcnow()
    row.false_positive = bool(false_positive)
    row.admin_notes = (notes or "")[:2000] or None
    if false_positive:
        client = get_client()
        if client is not None:
            try:
                if int(client.get(_counter_key(row.user_id)) or 0) > 0:
                    client.decr(_counter_key(row.user_id))
            except (redis.RedisError, ValueError) as e:
                current_app.logger.warning("violation_counter_decr_failed user_id=%s err=%s", row.user_id, e)
    db.session.commit()
    return row
