"""
Candidate trade schema.

EmailCandidate is the contract between the parser and every downstream
stage. It is created by EmailParser and only replaced (never mutated in
place) by the review queue's update operation.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

# Audit excerpt bound
RAW_EXCERPT_LIMIT = 500


class TransactionType(str, Enum):
    """Kind of trade event reported by the broker."""

    BUY = "buy"
    SELL = "sell"
    DIVIDEND = "dividend"
    SPLIT = "split"
    OPTION_EXPIRED = "option_expired"


# Events that may legitimately carry zero quantity
ZERO_QUANTITY_TYPES = frozenset({TransactionType.DIVIDEND, TransactionType.OPTION_EXPIRED})


class ParseMethod(str, Enum):
    """How fields were located in the email."""

    HTML = "HTML"  # Structured cell lookup
    TEXT = "TEXT"  # Labeled regex capture


class AssetType(str, Enum):
    """Asset classes known to the asset store."""

    STOCK = "stock"
    ETF = "etf"
    OPTION = "option"
    CRYPTO = "crypto"
    BOND = "bond"
    MUTUAL_FUND = "mutual_fund"
    OTHER = "other"

    @classmethod
    def coerce(cls, value: str | None) -> AssetType | None:
        """Map loose strings ("Stock", "equity", "fund") onto an AssetType."""
        if not value:
            return None
        key = value.strip().lower().replace(" ", "_").replace("-", "_")
        aliases = {
            "equity": cls.STOCK,
            "share": cls.STOCK,
            "shares": cls.STOCK,
            "fund": cls.MUTUAL_FUND,
            "mutualfund": cls.MUTUAL_FUND,
            "cryptocurrency": cls.CRYPTO,
            "options": cls.OPTION,
        }
        if key in aliases:
            return aliases[key]
        try:
            return cls(key)
        except ValueError:
            return cls.OTHER


def _dec(value: Any, default: str = "0") -> Decimal:
    if value is None or value == "":
        return Decimal(default)
    return Decimal(str(value))


@dataclass
class RawEmail:
    """Inbound email as supplied by the mailbox collaborator."""

    subject: str
    from_address: str
    html_body: str = ""
    text_body: str | None = None
    message_id: str | None = None
    received_at: datetime | None = None
    headers: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "subject": self.subject,
            "from_address": self.from_address,
            "html_body": self.html_body,
            "text_body": self.text_body,
            "message_id": self.message_id,
            "received_at": self.received_at.isoformat() if self.received_at else None,
            "headers": dict(self.headers),
        }

    @classmethod
    def from_dict(cls, data: dict) -> RawEmail:
        """Create from dictionary."""
        received = data.get("received_at")
        return cls(
            subject=data.get("subject", ""),
            from_address=data.get("from_address") or data.get("from", ""),
            html_body=data.get("html_body") or data.get("html") or "",
            text_body=data.get("text_body") or data.get("text"),
            message_id=data.get("message_id"),
            received_at=datetime.fromisoformat(received.replace("Z", "+00:00")) if received else None,
            headers=data.get("headers", {}) or {},
        )


@dataclass
class EmailCandidate:
    """Structured trade data extracted from one email."""

    symbol: str
    transaction_type: TransactionType
    quantity: Decimal
    price: Decimal
    total_amount: Decimal
    transaction_date: date
    account_type_label: str = ""
    fees: Decimal = Decimal("0")
    currency: str = "CAD"
    confidence: float = 0.0
    parse_method: ParseMethod = ParseMethod.TEXT
    raw_content_excerpt: str = ""
    order_ids: set[str] = field(default_factory=set)
    confirmation_numbers: set[str] = field(default_factory=set)

    # Optional detail carried for review and audit
    asset_name: str | None = None
    asset_type_hint: AssetType | None = None
    execution_time: str | None = None  # HH:MM, 24h
    timezone: str | None = None  # As printed, e.g. "EST"
    template: str = ""

    def __post_init__(self) -> None:
        self.confidence = max(0.0, min(1.0, float(self.confidence)))
        if len(self.raw_content_excerpt) > RAW_EXCERPT_LIMIT:
            self.raw_content_excerpt = self.raw_content_excerpt[:RAW_EXCERPT_LIMIT]
        self.order_ids = set(self.order_ids)
        self.confirmation_numbers = set(self.confirmation_numbers)

    @property
    def allows_zero_quantity(self) -> bool:
        """Dividends and expiries may be reported without a share count."""
        return self.transaction_type in ZERO_QUANTITY_TYPES

    def with_changes(self, **changes: Any) -> EmailCandidate:
        """Return a copy with fields replaced (candidates are never edited in place)."""
        return replace(self, **changes)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "symbol": self.symbol,
            "transaction_type": self.transaction_type.value,
            "quantity": str(self.quantity),
            "price": str(self.price),
            "total_amount": str(self.total_amount),
            "fees": str(self.fees),
            "account_type_label": self.account_type_label,
            "transaction_date": self.transaction_date.isoformat(),
            "currency": self.currency,
            "confidence": self.confidence,
            "parse_method": self.parse_method.value,
            "raw_content_excerpt": self.raw_content_excerpt,
            "order_ids": sorted(self.order_ids),
            "confirmation_numbers": sorted(self.confirmation_numbers),
            "asset_name": self.asset_name,
            "asset_type_hint": self.asset_type_hint.value if self.asset_type_hint else None,
            "execution_time": self.execution_time,
            "timezone": self.timezone,
            "template": self.template,
        }

    @classmethod
    def from_dict(cls, data: dict) -> EmailCandidate:
        """Create from dictionary."""
        hint = data.get("asset_type_hint")
        return cls(
            symbol=data["symbol"],
            transaction_type=TransactionType(data["transaction_type"]),
            quantity=_dec(data.get("quantity")),
            price=_dec(data.get("price")),
            total_amount=_dec(data.get("total_amount")),
            fees=_dec(data.get("fees")),
            account_type_label=data.get("account_type_label", ""),
            transaction_date=date.fromisoformat(data["transaction_date"]),
            currency=data.get("currency", "CAD"),
            confidence=float(data.get("confidence", 0.0)),
            parse_method=ParseMethod(data.get("parse_method", ParseMethod.TEXT.value)),
            raw_content_excerpt=data.get("raw_content_excerpt", ""),
            order_ids=set(data.get("order_ids", [])),
            confirmation_numbers=set(data.get("confirmation_numbers", [])),
            asset_name=data.get("asset_name"),
            asset_type_hint=AssetType(hint) if hint else None,
            execution_time=data.get("execution_time"),
            timezone=data.get("timezone"),
            template=data.get("template", ""),
        )


@dataclass
class ParseResult:
    """Outcome of EmailParser.parse()."""

    success: bool
    data: EmailCandidate | None = None
    warnings: list[str] = field(default_factory=list)
    error: str | None = None
    error_code: str | None = None  # ParseErrorCode value

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "success": self.success,
            "data": self.data.to_dict() if self.data else None,
            "warnings": list(self.warnings),
            "error": self.error,
            "error_code": self.error_code,
        }
