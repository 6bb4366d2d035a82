"""
Base template interface and common types.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Optional

from ..confidence import EXPECTED_FIELDS
from ..schemas import AssetType, ParseMethod, RawEmail, TransactionType


@dataclass
class TemplateExtraction:
    """Raw result of one template's extraction attempt."""

    symbol: Optional[str] = None
    transaction_type: Optional[TransactionType] = None
    quantity: Optional[Decimal] = None
    price: Optional[Decimal] = None
    total_amount: Optional[Decimal] = None
    fees: Optional[Decimal] = None
    account_type_label: Optional[str] = None
    transaction_date: Optional[date] = None
    currency: Optional[str] = None

    # Detail
    asset_name: Optional[str] = None
    asset_type_hint: Optional[AssetType] = None
    execution_time: Optional[str] = None
    timezone: Optional[str] = None
    order_ids: set[str] = field(default_factory=set)
    confirmation_numbers: set[str] = field(default_factory=set)

    # Debug info (label -> raw value)
    raw_matches: dict[str, Any] = field(default_factory=dict)

    def found_fields(self) -> list[str]:
        """Expected fields that were extracted."""
        return [name for name in EXPECTED_FIELDS if getattr(self, name) not in (None, "")]

    def missing_fields(self) -> list[str]:
        """Expected fields that were not extracted."""
        found = set(self.found_fields())
        return [name for name in EXPECTED_FIELDS if name not in found]

    @property
    def is_empty(self) -> bool:
        return not self.found_fields()


class BaseTemplate(ABC):
    """
    Base class for all email templates.

    Each template recognises one structural signature:
    - Broker HTML tables / labeled cells
    - Broker plain-text "Label: value" lines
    - Free-form narrative sentences
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Template name for logging and provenance."""
        pass

    @property
    @abstractmethod
    def priority(self) -> int:
        """
        Priority for template selection.
        Higher = more trusted, tried first.
        """
        pass

    @property
    @abstractmethod
    def method(self) -> ParseMethod:
        """How this template locates fields."""
        pass

    @abstractmethod
    def matches(self, email: RawEmail) -> bool:
        """
        Check if this template recognises the email.

        Must be cheap; extraction happens only after a match.
        """
        pass

    @abstractmethod
    def extract(self, email: RawEmail) -> TemplateExtraction:
        """
        Extract trade fields from the email.

        Returns:
            TemplateExtraction with whatever fields were found
        """
        pass
