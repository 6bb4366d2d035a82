"""
Persistence contract required by the pipeline.

The pipeline never talks to a database directly; it is handed a TradeStore.
StateStore (SQLite) is the bundled implementation.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any

from ..schemas import (
    AssetType,
    DuplicateDetectionResult,
    EmailCandidate,
    EmailIdentification,
    TransactionType,
)


class ReviewStatus(str, Enum):
    """Review queue item state. APPROVED and REJECTED are terminal."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self is not ReviewStatus.PENDING


class ReviewPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class EmailOutcome(str, Enum):
    """What happened to a processed email."""

    CREATED = "created"
    QUEUED = "queued"
    FAILED = "failed"


@dataclass
class PortfolioRecord:
    """A portfolio (account) that transactions belong to."""

    id: int
    name: str
    currency: str
    created_at: str

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> PortfolioRecord:
        """Create from database row."""
        return cls(
            id=row["id"],
            name=row["name"],
            currency=row["currency"],
            created_at=row["created_at"],
        )


@dataclass
class AssetRecord:
    """A tradable asset."""

    id: int
    symbol: str
    asset_type: AssetType
    name: str | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> AssetRecord:
        """Create from database row."""
        return cls(
            id=row["id"],
            symbol=row["symbol"],
            asset_type=AssetType(row["asset_type"]),
            name=row["name"],
        )


@dataclass
class TransactionRecord:
    """A persisted portfolio transaction."""

    id: int
    portfolio_id: int
    asset_id: int
    symbol: str
    transaction_type: TransactionType
    quantity: Decimal
    price: Decimal
    total_amount: Decimal
    fees: Decimal
    transaction_date: date
    currency: str
    notes: str | None
    external_id: str | None
    created_at: str
    execution_time: str | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> TransactionRecord:
        """Create from database row."""
        return cls(
            id=row["id"],
            portfolio_id=row["portfolio_id"],
            asset_id=row["asset_id"],
            symbol=row["symbol"],
            transaction_type=TransactionType(row["transaction_type"]),
            quantity=Decimal(row["quantity"]),
            price=Decimal(row["price"]),
            total_amount=Decimal(row["total_amount"]),
            fees=Decimal(row["fees"]),
            transaction_date=date.fromisoformat(row["transaction_date"]),
            currency=row["currency"],
            notes=row["notes"],
            external_id=row["external_id"],
            created_at=row["created_at"],
            execution_time=row["execution_time"],
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "portfolio_id": self.portfolio_id,
            "asset_id": self.asset_id,
            "symbol": self.symbol,
            "transaction_type": self.transaction_type.value,
            "quantity": str(self.quantity),
            "price": str(self.price),
            "total_amount": str(self.total_amount),
            "fees": str(self.fees),
            "transaction_date": self.transaction_date.isoformat(),
            "currency": self.currency,
            "notes": self.notes,
            "external_id": self.external_id,
            "execution_time": self.execution_time,
            "created_at": self.created_at,
        }


@dataclass
class ProcessedEmailRecord:
    """Identification of an email the pipeline has already routed."""

    id: int
    message_id: str | None
    content_hash: str
    transaction_hash: str | None
    from_email: str
    subject: str
    outcome: EmailOutcome
    transaction_id: int | None
    review_queue_id: int | None
    processed_at: str
    linkage_ids: set[str] = field(default_factory=set)

    @classmethod
    def from_row(cls, row: Mapping[str, Any], linkage_ids: set[str] | None = None) -> ProcessedEmailRecord:
        """Create from database row."""
        return cls(
            id=row["id"],
            message_id=row["message_id"],
            content_hash=row["content_hash"],
            transaction_hash=row["transaction_hash"],
            from_email=row["from_email"],
            subject=row["subject"],
            outcome=EmailOutcome(row["outcome"]),
            transaction_id=row["transaction_id"],
            review_queue_id=row["review_queue_id"],
            processed_at=row["processed_at"],
            linkage_ids=linkage_ids or set(),
        )


@dataclass
class ReviewQueueItem:
    """A candidate waiting for (or past) human review."""

    id: int
    candidate: EmailCandidate
    identification: EmailIdentification
    duplicate_result: DuplicateDetectionResult
    portfolio_id: int
    status: ReviewStatus
    priority: ReviewPriority
    reason: str
    created_at: str
    updated_at: str
    version: int = 1
    reviewed_by: str | None = None
    review_notes: str | None = None
    last_modified_by: str | None = None
    reviewed_at: str | None = None
    transaction_id: int | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> ReviewQueueItem:
        """Create from database row."""
        return cls(
            id=row["id"],
            candidate=EmailCandidate.from_dict(json.loads(row["candidate_json"])),
            identification=EmailIdentification.from_dict(json.loads(row["identification_json"])),
            duplicate_result=DuplicateDetectionResult.from_dict(
                json.loads(row["duplicate_json"]) if row["duplicate_json"] else None
            ),
            portfolio_id=row["portfolio_id"],
            status=ReviewStatus(row["status"]),
            priority=ReviewPriority(row["priority"]),
            reason=row["reason"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            version=row["version"],
            reviewed_by=row["reviewed_by"],
            review_notes=row["review_notes"],
            last_modified_by=row["last_modified_by"],
            reviewed_at=row["reviewed_at"],
            transaction_id=row["transaction_id"],
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "candidate": self.candidate.to_dict(),
            "identification": self.identification.to_dict(),
            "duplicate_result": self.duplicate_result.to_dict(),
            "portfolio_id": self.portfolio_id,
            "status": self.status.value,
            "priority": self.priority.value,
            "reason": self.reason,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "version": self.version,
            "reviewed_by": self.reviewed_by,
            "review_notes": self.review_notes,
            "last_modified_by": self.last_modified_by,
            "reviewed_at": self.reviewed_at,
            "transaction_id": self.transaction_id,
        }


class TradeStore(ABC):
    """
    Storage operations the pipeline depends on.

    Implementations must make create_transaction's import-key check and
    insert atomic, and update_review_queue_item a compare-and-set.
    """

    # Portfolios

    @abstractmethod
    def list_portfolios(self) -> list[PortfolioRecord]:
        pass

    @abstractmethod
    def find_portfolio(self, name: str) -> PortfolioRecord | None:
        """Case-insensitive exact name lookup."""
        pass

    @abstractmethod
    def create_portfolio(self, name: str, currency: str) -> PortfolioRecord:
        pass

    @abstractmethod
    def get_portfolio(self, portfolio_id: int) -> PortfolioRecord | None:
        pass

    # Assets

    @abstractmethod
    def get_or_create_asset(
        self, symbol: str, asset_type: AssetType, name: str | None = None
    ) -> AssetRecord:
        pass

    # Transactions

    @abstractmethod
    def create_transaction(
        self,
        portfolio_id: int,
        asset_id: int,
        transaction_type: TransactionType,
        quantity: Decimal,
        price: Decimal,
        total_amount: Decimal,
        transaction_date: date,
        fees: Decimal = Decimal("0"),
        currency: str = "CAD",
        notes: str | None = None,
        external_id: str | None = None,
        import_keys: list[str] | None = None,
        execution_time: str | None = None,
    ) -> TransactionRecord:
        """
        Create a transaction.

        import_keys are claimed in the same atomic step as the insert; if any
        is already claimed, DuplicateImportError is raised and nothing is
        written.
        """
        pass

    @abstractmethod
    def get_transaction(self, transaction_id: int) -> TransactionRecord | None:
        pass

    @abstractmethod
    def list_transactions(
        self,
        portfolio_id: int | None = None,
        date_range: tuple[date, date] | None = None,
        symbol: str | None = None,
    ) -> list[TransactionRecord]:
        pass

    @abstractmethod
    def find_transactions_by_external_ids(self, external_ids: set[str]) -> list[TransactionRecord]:
        pass

    # Processed emails

    @abstractmethod
    def record_processed_email(
        self,
        identification: EmailIdentification,
        outcome: EmailOutcome,
        transaction_id: int | None = None,
        review_queue_id: int | None = None,
    ) -> int:
        pass

    @abstractmethod
    def find_processed_emails(
        self,
        message_id: str | None = None,
        content_hash: str | None = None,
        linkage_ids: set[str] | None = None,
    ) -> list[ProcessedEmailRecord]:
        """Records matching any of the given keys."""
        pass

    # Review queue

    @abstractmethod
    def create_review_queue_item(
        self,
        candidate: EmailCandidate,
        identification: EmailIdentification,
        duplicate_result: DuplicateDetectionResult,
        portfolio_id: int,
        priority: ReviewPriority,
        reason: str,
    ) -> ReviewQueueItem:
        pass

    @abstractmethod
    def update_review_queue_item(
        self,
        item_id: int,
        expected_version: int,
        changes: dict[str, Any],
        expected_status: ReviewStatus = ReviewStatus.PENDING,
    ) -> bool:
        """
        Compare-and-set update.

        Applies changes only if the stored item still has expected_status and
        expected_version; bumps version. Returns False when the condition
        did not hold (nothing written).
        """
        pass

    @abstractmethod
    def get_review_queue_item(self, item_id: int) -> ReviewQueueItem | None:
        pass

    @abstractmethod
    def list_review_queue_items(
        self,
        status: ReviewStatus | None = None,
        priority: ReviewPriority | None = None,
    ) -> list[ReviewQueueItem]:
        pass

    @abstractmethod
    def delete_review_queue_items(self, statuses: list[ReviewStatus], older_than: str) -> int:
        """Delete items in the given statuses reviewed before older_than (ISO)."""
        pass
