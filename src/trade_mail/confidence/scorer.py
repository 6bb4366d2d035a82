"""
Confidence scoring implementation.
"""

from decimal import Decimal
from typing import Optional

from ..config import ConfidenceThresholds
from ..schemas import EmailCandidate, ParseMethod, TransactionType

# Fields a complete trade confirmation yields
EXPECTED_FIELDS = (
    "symbol",
    "transaction_type",
    "quantity",
    "price",
    "total_amount",
    "account_type_label",
    "transaction_date",
    "currency",
)

# Absolute slack for cent rounding in total cross-checks
_CENT = Decimal("0.01")


class ConfidenceScorer:
    """
    Computes and validates confidence scores.

    Parse confidence sources (in order of trust):
    1. HTML cell lookup: full weight
    2. Labeled text regex: reduced weight
    Both scale with the fraction of expected fields found.
    """

    def __init__(self, thresholds: Optional[ConfidenceThresholds] = None):
        """Initialize scorer with thresholds."""
        self.thresholds = thresholds or ConfidenceThresholds()

    def method_weight(self, method: ParseMethod) -> float:
        if method == ParseMethod.HTML:
            return self.thresholds.html_method_weight
        return self.thresholds.text_method_weight

    def score_fields(self, found_fields: list[str], method: ParseMethod) -> float:
        """
        Parse confidence from field coverage and parse method.

        confidence = (found expected fields / expected fields) × method weight
        """
        found = [f for f in found_fields if f in EXPECTED_FIELDS]
        coverage = len(set(found)) / len(EXPECTED_FIELDS)
        return self.clamp(coverage * self.method_weight(method))

    def total_is_consistent(
        self,
        quantity: Decimal,
        price: Decimal,
        total: Decimal,
        fees: Decimal = Decimal("0"),
    ) -> bool:
        """
        Check total ≈ quantity × price ± fees within the relative tolerance.

        Fees may be added (purchase cost) or subtracted (sale proceeds), and
        either reading is accepted.
        """
        gross = quantity * price
        tolerance = Decimal(str(self.thresholds.total_tolerance))
        for expected in (gross, gross + fees, gross - fees):
            allowed = max(abs(expected) * tolerance, _CENT)
            if abs(abs(total) - abs(expected)) <= allowed:
                return True
        return False

    def apply_cross_check_penalty(self, confidence: float) -> float:
        return self.clamp(confidence * self.thresholds.cross_check_penalty)

    def combine_symbol_confidence(self, local: float, ai: float) -> float:
        """
        Conservative merge of parser and AI symbol confidence.

        Weighted mean of both, never above the AI's own stated confidence.
        """
        weighted = (
            self.thresholds.symbol_local_weight * local + self.thresholds.symbol_ai_weight * ai
        )
        return self.clamp(min(ai, weighted))

    def validate_candidate(self, candidate: EmailCandidate) -> list[str]:
        """
        Validate a candidate and return a list of issues.

        Used to flag problems that should lower confidence or require
        manual review; never fails a parse on its own.
        """
        issues = self.structural_issues(candidate)

        if candidate.confidence < self.thresholds.min_parse_confidence:
            issues.append(f"Parse confidence very low: {candidate.confidence:.2f}")

        return issues

    @staticmethod
    def structural_issues(candidate: EmailCandidate) -> list[str]:
        """Problems that make a candidate unbookable, whatever its confidence."""
        issues = []

        if not candidate.symbol or not candidate.symbol.strip():
            issues.append("Symbol is missing")

        if candidate.quantity < 0:
            issues.append(f"Quantity is negative: {candidate.quantity}")
        elif candidate.quantity == 0 and not candidate.allows_zero_quantity:
            issues.append("Quantity is zero for a trade")

        if candidate.price < 0:
            issues.append(f"Price is negative: {candidate.price}")
        elif candidate.price == 0 and candidate.transaction_type in (
            TransactionType.BUY,
            TransactionType.SELL,
        ):
            issues.append("Price is zero for a trade")

        if candidate.fees < 0:
            issues.append(f"Fees are negative: {candidate.fees}")

        if not candidate.currency or len(candidate.currency) != 3:
            issues.append(f"Currency code invalid: {candidate.currency!r}")

        return issues

    @staticmethod
    def clamp(value: float) -> float:
        return max(0.0, min(1.0, value))
