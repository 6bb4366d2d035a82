"""
Pipeline error taxonomy.

Fatal stage errors (parse, portfolio, creation, queue write) abort processing
of a single email. Non-fatal ones (symbol, duplicate detection, validation)
are downgraded to warnings by the orchestrator.
"""

from enum import Enum


class ParseErrorCode(str, Enum):
    """Why an email could not be turned into a candidate."""

    UNRECOGNIZED_FORMAT = "UNRECOGNIZED_FORMAT"
    FIELD_EXTRACTION_FAILED = "FIELD_EXTRACTION_FAILED"


class TradeMailError(Exception):
    """Base exception for all pipeline errors."""

    pass


class ParseError(TradeMailError):
    """Raised when no template can extract a candidate from an email."""

    def __init__(self, message: str, code: ParseErrorCode):
        super().__init__(message)
        self.code = code


class ValidationError(TradeMailError):
    """Candidate fields are internally inconsistent (e.g. total vs qty × price)."""

    def __init__(self, message: str, problems: list[str] | None = None):
        super().__init__(message)
        self.problems = problems or []


class PortfolioResolutionError(TradeMailError):
    """No portfolio matches the account label and creation is not allowed."""

    def __init__(self, message: str, label: str | None = None):
        super().__init__(message)
        self.label = label


class SymbolResolutionError(TradeMailError):
    """Symbol lookup failed (timeout, transport error, unusable response)."""

    pass


class DuplicateDetectionError(TradeMailError):
    """Duplicate checks could not read prior state."""

    pass


class TransactionCreationError(TradeMailError):
    """The persistence collaborator refused or failed to create a transaction."""

    pass


class DuplicateImportError(TransactionCreationError):
    """Final identification gate hit: this email already produced a transaction."""

    def __init__(self, message: str, existing_transaction_id: int | None = None):
        super().__init__(message)
        self.existing_transaction_id = existing_transaction_id


class QueueWriteError(TradeMailError):
    """A review queue item could not be written."""

    pass


class QueueItemNotFoundError(TradeMailError):
    """Review queue item does not exist."""

    def __init__(self, item_id: int):
        super().__init__(f"Review queue item {item_id} not found")
        self.item_id = item_id


class ConflictError(TradeMailError):
    """A review queue transition lost against the stored state.

    Raised when the item is already terminal or was modified concurrently.
    """

    def __init__(self, message: str, item_id: int | None = None, current_status: str | None = None):
        super().__init__(message)
        self.item_id = item_id
        self.current_status = current_status
