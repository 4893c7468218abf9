from __future__ import annotations

import re
from dataclasses import dataclass, field

HIGH = "high"
MEDIUM = "medium"

PLATFORM_NAME = "PlankMarket"


@dataclass(frozen=True)
class Detection:
    level: str
    type: str
    match: str
    index: int

    def to_dict(self) -> dict:
        return {"level": self.level, "type": self.type, "match": self.match, "index": self.index}


@dataclass
class ContentFilterResult:
    allowed: bool
    detections: list = field(default_factory=list)
    high_confidence: list = field(default_factory=list)
    medium_confidence: list = field(default_factory=list)


# Flooring trade content that looks like contact details but is not:
# prices, square footage, dimensions, SKUs, order refs, ZIP codes, thickness.
_WHITELIST_RES = [
    re.compile(r"\$\d{1,3}(?:,\d{3})*(?:\.\d{2})?(?:\s*/\s*(?:sq\s*ft|sqft|square\s*foot))?", re.IGNORECASE),
    re.compile(r"\d{1,3}(?:,\d{3})*\s*(?:sq\s*ft|sqft|square\s*feet?)", re.IGNORECASE),
    re.compile(r'\d+(?:/\d+)?"\s*x\s*\d+(?:/\d+)?"', re.IGNORECASE),
    re.compile(r"\b\d+\s*x\s*\d+(?:\s*x\s*\d+)?\b", re.IGNORECASE),
    re.compile(r"\b(?:SKU|Model|Item|Part)\s*[:#]?\s*[\w-]+", re.IGNORECASE),
    re.compile(r"\b(?:PM|ORD|REF|INV)-[\w-]+\b", re.IGNORECASE),
    re.compile(r"\b#\d{4,}\b"),
    re.compile(r"(?<!\d{3}[-.\s])\b\d{5}\b(?![-.\s]\d{4})"),
    re.compile(r'\b\d+/\d+"\b'),
    re.compile(r'\b\d+\.\d+"\b'),
]

_HIGH_CONFIDENCE_RES = [
    ("phone", re.compile(r"\(\d{3}\)\s*\d{3}[-.\s]?\d{4}")),
    ("phone", re.compile(r"\b\d{3}[-.\s]\d{3}[-.\s]\d{4}\b")),
    ("phone", re.compile(r"\b\d{10}\b")),
    ("phone", re.compile(r"\+1[-.\s]?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}")),
    ("phone", re.compile(r"\b1[-.\s]?800[-.\s]?\d{3}[-.\s]?\d{4}\b")),
    ("email", re.compile(r"\b[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}\b")),
    ("url", re.compile(r"\b(?:https?://)?(?:www\.)?[a-zA-Z0-9-]+\.[a-zA-Z]{2,}(?:/\S*)?\b")),
    ("url", re.compile(r"\b[a-zA-Z0-9-]+\.(?:com|net|org|io|co|biz|info)\b", re.IGNORECASE)),
]

_MEDIUM_CONFIDENCE_RES = [
    ("social_handle", re.compile(r"(?<![a-zA-Z0-9])@[a-zA-Z0-9_]{3,}(?!\.[a-zA-Z]{2,})")),
    (
        "email_substitution",
        re.compile(r"\b[\w.-]+\s+(?:at|@)\s+[\w.-]+\s+(?:dot|\.)\s+(?:com|net|org|io|co)\b", re.IGNORECASE),
    ),
    ("intent_phrase", re.compile(r"\b(?:call|text|email|contact|reach)\s+(?:me|us)\s+(?:at|on|@)", re.IGNORECASE)),
    ("intent_phrase", re.compile(r"\bmy\s+(?:phone|number|email|cell)\s+(?:is|:)", re.IGNORECASE)),
    ("intent_phrase", re.compile(r"\breach\s+(?:me|us)\s+at\b", re.IGNORECASE)),
    ("intent_phrase", re.compile(r"\bget\s+in\s+touch\s+(?:at|via)\b", re.IGNORECASE)),
    ("intent_phrase", re.compile(r"\bmessage\s+me\s+(?:at|on)\b", re.IGNORECASE)),
]

_DETECTION_LABELS = {
    "phone": "phone number",
    "email": "email address",
    "url": "website URL",
    "social_handle": "social media handle",
    "email_substitution": "email address",
    "intent_phrase": "contact information request",
    "business_name": "business name",
    "full_name": "personal name",
}


def strip_whitelisted_content(text: str) -> str:
    cleaned = str(text or "")
    for pattern in _WHITELIST_RES:
        cleaned = pattern.sub(" ", cleaned)
    return cleaned


def _scan(text: str, patterns, level: str) -> list:
    found = []
    for kind, pattern in patterns:
        for m in pattern.finditer(text):
            found.append(Detection(level=level, type=kind, match=m.group(0), index=m.start()))
    return found


def analyze_content(text: str) -> ContentFilterResult:
    """Scan free text for off-platform contact details.

    High-confidence hits (phone, email, URL) block the content; medium ones
    (handles, "at/dot" spellings, contact-intent phrases) are reported only.
    """
    cleaned = strip_whitelisted_content(text)
    high = _scan(cleaned, _HIGH_CONFIDENCE_RES, HIGH)
    medium = _scan(cleaned, _MEDIUM_CONFIDENCE_RES, MEDIUM)
    return ContentFilterResult(
        allowed=not high,
        detections=high + medium,
        high_confidence=high,
        medium_confidence=medium,
    )


def scan(text: str) -> list:
    return analyze_content(text).detections


def detect_self_reference(text: str, *, name: str | None = None, business_name: str | None = None) -> list:
    detections = []
    haystack = str(text or "").lower()

    biz = (business_name or "").strip().lower()
    if len(biz) >= 4:
        idx = haystack.find(biz)
        if idx != -1:
            detections.append(Detection(level=HIGH, type="business_name", match=text[idx:idx + len(biz)], index=idx))

    # First names alone are too common to flag.
    full = (name or "").strip()
    if len(full.split()) >= 2:
        idx = haystack.find(full.lower())
        if idx != -1:
            detections.append(Detection(level=MEDIUM, type="full_name", match=text[idx:idx + len(full)], index=idx))

    return detections


def blocked_content_message(field_name: str, detections: list) -> str:
    suffix = f"For your security, all communication must stay on {PLATFORM_NAME}."
    labels = []
    for d in detections:
        label = _DETECTION_LABELS.get(d.type, "contact information")
        if label not in labels:
            labels.append(label)
    if not labels:
        return f"Your {field_name} appears to contain contact information. {suffix}"
    if len(labels) == 1:
        return f"Your {field_name} appears to contain a {labels[0]}. {suffix}"
    listed = ", ".join(labels[:-1]) + " or " + labels[-1]
    return f"Your {field_name} appears to contain {listed}. {suffix}"
