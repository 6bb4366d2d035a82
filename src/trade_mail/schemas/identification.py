"""
Email identification and fingerprints (CRITICAL).

This module defines THE deterministic fingerprints used for duplicate
detection. It is the ONLY place that hashes emails or candidates.

Fingerprints:
1. message_id: RFC 5322 Message-ID without angle brackets, lower-cased
2. content_hash: SHA256(subject|from|html|text)[:16] over normalized text
   - Stable across whitespace/markup-only differences
3. transaction_hash: SHA256(symbol|type|quantity|price|date)[:20]
   - Same trade details = same hash, independent of the email wrapper

Order ids and confirmation numbers are extracted here as well, since they
share the Level-2 key space with the fingerprints above.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal

from .trade_candidate import EmailCandidate, RawEmail, TransactionType

# ============================================================================
# SSOT Constants
# ============================================================================

CONTENT_HASH_LENGTH = 16
TRANSACTION_HASH_LENGTH = 20

ORDER_ID_PATTERNS = [
    # Labeled ids: "Order ID: WS123456789", "Reference # AB12345678"
    re.compile(
        r"(?:order(?:\s+(?:id|number|no\.?))?|reference)\s*[:#]?\s*"
        r"\b([A-Z]{2,3}-?\d{6,12}|\d{10,15})\b",
        re.IGNORECASE,
    ),
    # Wealthsimple ids anywhere in the body
    re.compile(r"\b(WS-?\d{6,12})\b", re.IGNORECASE),
]

CONFIRMATION_PATTERNS = [
    re.compile(
        r"(?:confirmation|conf)\s*(?:number|no\.?|#)?\s*[:#]\s*([A-Z0-9][A-Z0-9-]{5,19})\b",
        re.IGNORECASE,
    ),
    re.compile(
        r"(?:transaction|txn)\s*(?:id|number|#)\s*[:#]?\s*([A-Z0-9][A-Z0-9-]{5,19})\b",
        re.IGNORECASE,
    ),
]

MESSAGE_ID_PATTERNS = [
    re.compile(r"message-id:\s*<([^>]+)>", re.IGNORECASE),
    re.compile(r"^\s*<([^>\s]+@[^>\s]+)>\s*$"),
]

_TAG_RE = re.compile(r"<[^>]*>")
_WS_RE = re.compile(r"\s+")
_PUNCT_RE = re.compile(r"[^\w\s.@-]")


@dataclass
class EmailIdentification:
    """Identity of one processed email (Level-1/Level-2 key space)."""

    message_id: str | None
    content_hash: str
    transaction_hash: str | None
    from_email: str
    subject: str
    timestamp: str  # ISO timestamp of identification
    order_ids: set[str] = field(default_factory=set)
    confirmation_numbers: set[str] = field(default_factory=set)

    @property
    def linkage_ids(self) -> set[str]:
        """All broker ids usable for Level-2 matching."""
        return set(self.order_ids) | set(self.confirmation_numbers)

    def import_keys(self) -> list[str]:
        """Unique keys guarding transaction creation for this email.

        The content hash is always claimed, so the same email cannot be
        booked twice even when only one copy carries a message id.
        """
        keys = [f"hash:{self.content_hash}"]
        if self.message_id:
            keys.insert(0, f"mid:{self.message_id}")
        return keys

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "message_id": self.message_id,
            "content_hash": self.content_hash,
            "transaction_hash": self.transaction_hash,
            "from_email": self.from_email,
            "subject": self.subject,
            "timestamp": self.timestamp,
            "order_ids": sorted(self.order_ids),
            "confirmation_numbers": sorted(self.confirmation_numbers),
        }

    @classmethod
    def from_dict(cls, data: dict) -> EmailIdentification:
        """Create from dictionary."""
        return cls(
            message_id=data.get("message_id"),
            content_hash=data["content_hash"],
            transaction_hash=data.get("transaction_hash"),
            from_email=data.get("from_email", ""),
            subject=data.get("subject", ""),
            timestamp=data.get("timestamp", ""),
            order_ids=set(data.get("order_ids", [])),
            confirmation_numbers=set(data.get("confirmation_numbers", [])),
        )


def strip_html(html: str | None) -> str:
    """Remove tags and collapse whitespace, keeping line structure loosely."""
    if not html:
        return ""
    text = re.sub(r"(?i)<\s*(br|/p|/div|/tr|/h\d|/li)\s*/?>", "\n", html)
    text = re.sub(r"(?i)</t[dh]>", " ", text)
    text = _TAG_RE.sub(" ", text)
    text = (
        text.replace("&nbsp;", " ")
        .replace("&amp;", "&")
        .replace("&lt;", "<")
        .replace("&gt;", ">")
        .replace("&#36;", "$")
    )
    lines = [_WS_RE.sub(" ", line).strip() for line in text.splitlines()]
    return "\n".join(line for line in lines if line)


def normalize_text(text: str | None) -> str:
    """
    Normalize text for hashing.

    Removes HTML tags, collapses whitespace, drops punctuation other than
    ". @ -" and lowercases.

    Example:
        >>> normalize_text("<p>Bought  100 shares!</p>")
        'bought 100 shares'
    """
    if not text:
        return ""
    text = _TAG_RE.sub(" ", text)
    text = _WS_RE.sub(" ", text)
    text = _PUNCT_RE.sub("", text)
    return text.lower().strip()


def normalize_message_id(message_id: str | None) -> str | None:
    """Strip angle brackets and whitespace; lowercase. Empty -> None."""
    if not message_id:
        return None
    value = message_id.strip().strip("<>").strip().lower()
    return value or None


def extract_message_id(email: RawEmail) -> str | None:
    """Message-ID from the explicit field, then headers, then body text."""
    if email.message_id:
        return normalize_message_id(email.message_id)

    for key, value in email.headers.items():
        if key.lower() == "message-id":
            return normalize_message_id(value)

    for source in (email.html_body or "", email.text_body or ""):
        for pattern in MESSAGE_ID_PATTERNS:
            match = pattern.search(source)
            if match:
                return normalize_message_id(match.group(1))
    return None


def email_body_text(email: RawEmail) -> str:
    """Plain text for regex scanning: text body if present, else stripped HTML."""
    if email.text_body and email.text_body.strip():
        return email.text_body
    return strip_html(email.html_body)


def extract_order_ids(content: str) -> set[str]:
    """Extract broker order ids (upper-cased)."""
    found: set[str] = set()
    for pattern in ORDER_ID_PATTERNS:
        for match in pattern.finditer(content or ""):
            found.add(match.group(1).strip().upper())
    return found


def extract_confirmation_numbers(content: str) -> set[str]:
    """Extract confirmation/transaction numbers (must contain a digit)."""
    found: set[str] = set()
    for pattern in CONFIRMATION_PATTERNS:
        for match in pattern.finditer(content or ""):
            value = match.group(1).strip().upper()
            if any(ch.isdigit() for ch in value):
                found.add(value)
    return found


def compute_content_hash(
    subject: str,
    from_address: str,
    html_body: str | None,
    text_body: str | None = None,
) -> str:
    """
    Compute the Level-1 content fingerprint of an email.

    Hash components (in order): normalized subject, lower-cased sender,
    normalized HTML body, normalized text body.

    Returns:
        16-character hex prefix of SHA256
    """
    content = "|".join(
        [
            normalize_text(subject),
            (from_address or "").strip().lower(),
            normalize_text(html_body),
            normalize_text(text_body),
        ]
    )
    return hashlib.sha256(content.encode("utf-8")).hexdigest()[:CONTENT_HASH_LENGTH]


def compute_transaction_hash(
    symbol: str,
    transaction_type: TransactionType | str,
    quantity: Decimal,
    price: Decimal,
    transaction_date: date,
) -> str:
    """
    Compute a deterministic fingerprint of trade details.

    Quantity is normalized to 4 decimal places and price to 2 so that
    "100" and "100.0000" hash identically.
    """
    type_value = (
        transaction_type.value if isinstance(transaction_type, TransactionType) else transaction_type
    )
    content = "|".join(
        [
            symbol.strip().upper(),
            type_value,
            f"{Decimal(quantity):.4f}",
            f"{Decimal(price):.2f}",
            transaction_date.isoformat(),
        ]
    )
    return hashlib.sha256(content.encode("utf-8")).hexdigest()[:TRANSACTION_HASH_LENGTH]


def build_identification(
    email: RawEmail,
    candidate: EmailCandidate | None = None,
) -> EmailIdentification:
    """
    Build the identification record for an email (and its candidate).

    Order ids and confirmation numbers found by the parser are merged with
    those found by scanning the whole body.
    """
    body = email_body_text(email)
    scan = f"{email.subject}\n{body}"

    order_ids = extract_order_ids(scan)
    confirmations = extract_confirmation_numbers(scan)
    transaction_hash = None
    if candidate is not None:
        order_ids |= {o.upper() for o in candidate.order_ids}
        confirmations |= {c.upper() for c in candidate.confirmation_numbers}
        transaction_hash = compute_transaction_hash(
            candidate.symbol,
            candidate.transaction_type,
            candidate.quantity,
            candidate.price,
            candidate.transaction_date,
        )

    return EmailIdentification(
        message_id=extract_message_id(email),
        content_hash=compute_content_hash(
            email.subject, email.from_address, email.html_body, email.text_body
        ),
        transaction_hash=transaction_hash,
        from_email=(email.from_address or "").strip().lower(),
        subject=email.subject,
        timestamp=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        order_ids=order_ids,
        confirmation_numbers=confirmations,
    )
