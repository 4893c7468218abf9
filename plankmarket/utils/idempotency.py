from __future__ import annotations

import hashlib
import json
from typing import Any

from flask import has_request_context, request

from plankmarket.extensions import db
from plankmarket.models import IdempotencyKey


def get_idempotency_key() -> str | None:
    if not has_request_context():
        return None
    k = request.headers.get("Idempotency-Key") or request.headers.get("X-Idempotency-Key")
    if not k:
        return None
    return k.strip()[:128] or None


def _hash_request(scope: str, payload: Any) -> str:
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(f"{scope}|{canonical}".encode("utf-8")).hexdigest()


def lookup_response(user_id: int | None, scope: str, payload: Any, *, idempotency_key: str | None = None):
    """Resolve a client-supplied idempotency key for ``scope``.

    Returns None when no key was supplied, ``("hit", body, status)`` for a
    replay, ``("conflict", body, 409)`` when the key was reused with a
    different payload, or ``("miss", row, 0)`` for a fresh key; the caller
    stores its response on the row with :func:`store_response`.
    """
    k = (idempotency_key or get_idempotency_key() or "").strip()
    if not k:
        return None
    req_hash = _hash_request(scope, payload)
    row = IdempotencyKey.query.filter_by(scope=scope, key=k).first()
    if row is not None:
        if row.request_hash != req_hash:
            return (
                "conflict",
                {
                    "ok": False,
                    "error": "IDEMPOTENCY_KEY_REUSED",
                    "message": "Idempotency-Key was already used with a different request.",
                },
                409,
            )
        if row.response_body_json:
            return ("hit", json.loads(row.response_body_json), int(row.response_code or 200))
        return (
            "conflict",
            {"ok": False, "error": "IDEMPOTENCY_IN_PROGRESS", "message": "Request is still being processed."},
            409,
        )

    row = IdempotencyKey(
        key=k,
        scope=scope,
        user_id=int(user_id) if user_id is not None else None,
        request_hash=req_hash,
    )
    db.session.add(row)
    db.session.commit()
    return ("miss", row, 0)


def store_response(row: IdempotencyKey, body: Any, status_code: int) -> None:
    row.response_body_json = json.dumps(body, separators=(",", ":"), default=str)
    row.response_code = int(status_code or 200)
    db.session.add(row)
    db.session.commit()


def discard_key(row: IdempotencyKey) -> None:
    """Forget a key whose request failed before producing a stored response."""
    db.session.rollback()
    db.session.delete(db.session.merge(row))
    db.session.commit()
