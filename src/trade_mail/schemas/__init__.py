"""
Data schemas for the pipeline.

Provides:
- EmailCandidate / RawEmail / ParseResult: parser contract
- EmailIdentification + fingerprint functions (SSOT for hashing)
- DuplicateDetectionResult: advisory duplicate verdict
"""

from .duplicates import (
    DuplicateDetectionResult,
    DuplicateLevel,
    DuplicateMatch,
    DuplicateRecommendation,
)
from .identification import (
    EmailIdentification,
    build_identification,
    compute_content_hash,
    compute_transaction_hash,
    extract_confirmation_numbers,
    extract_order_ids,
    normalize_text,
    strip_html,
)
from .trade_candidate import (
    RAW_EXCERPT_LIMIT,
    AssetType,
    EmailCandidate,
    ParseMethod,
    ParseResult,
    RawEmail,
    TransactionType,
)

__all__ = [
    "RAW_EXCERPT_LIMIT",
    "AssetType",
    "DuplicateDetectionResult",
    "DuplicateLevel",
    "DuplicateMatch",
    "DuplicateRecommendation",
    "EmailCandidate",
    "EmailIdentification",
    "ParseMethod",
    "ParseResult",
    "RawEmail",
    "TransactionType",
    "build_identification",
    "compute_content_hash",
    "compute_transaction_hash",
    "extract_confirmation_numbers",
    "extract_order_ids",
    "normalize_text",
    "strip_html",
]
