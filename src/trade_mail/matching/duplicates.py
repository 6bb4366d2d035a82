"""Duplicate detection for trade candidates.

Three independent levels, combined by DuplicateDetectionResult.combine:

- Level 1: the same email seen before (message id or content hash)
- Level 2: a broker order id / confirmation number already booked or seen
- Level 3: a transaction with matching details close in time

The result is advisory. Whether it changes routing is decided by the
orchestrator's duplicate routing policy.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, time, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING

from ..config import ConfidenceThresholds, DuplicateConfig, SourceConfig
from ..errors import DuplicateDetectionError
from ..schemas import (
    DuplicateDetectionResult,
    DuplicateLevel,
    DuplicateMatch,
    DuplicateRecommendation,
    EmailCandidate,
    EmailIdentification,
)

if TYPE_CHECKING:
    from ..state_store import TradeStore, TransactionRecord

logger = logging.getLogger(__name__)


class DuplicateDetector:
    """Checks a candidate against processed emails and booked transactions."""

    def __init__(
        self,
        store: TradeStore,
        config: DuplicateConfig | None = None,
    ) -> None:
        """Initialize the detector.

        Args:
            store: Store holding processed emails and transactions.
            config: Fuzzy matching tolerances.
        """
        self.store = store
        self.config = config or DuplicateConfig()

    def detect(
        self,
        candidate: EmailCandidate,
        identification: EmailIdentification,
        portfolio_id: int | None = None,
        source: SourceConfig | None = None,
    ) -> DuplicateDetectionResult:
        """Run all three levels.

        Args:
            candidate: Parsed (symbol-resolved) candidate.
            identification: Fingerprint of the email.
            portfolio_id: Restricts Level 3 to this portfolio when given.
            source: Per-source window and thresholds.

        Returns:
            Combined result; no_duplicate() when nothing matched.

        Raises:
            DuplicateDetectionError: If the store could not be read.
        """
        source = source or SourceConfig()
        thresholds = source.thresholds

        try:
            matches = [
                m
                for m in (
                    self._check_exact_email(identification),
                    self._check_linkage_ids(identification, thresholds),
                    self._check_fuzzy_details(
                        candidate, portfolio_id, source.duplicate_time_window_hours, thresholds
                    ),
                )
                if m is not None
            ]
        except Exception as e:
            raise DuplicateDetectionError(f"Duplicate check failed: {e}") from e

        result = DuplicateDetectionResult.combine(matches)
        if result.is_duplicate:
            logger.info(
                "Duplicate signal for %s %s: level %s, confidence %.2f, %s",
                candidate.transaction_type.value,
                candidate.symbol,
                result.highest_level.value if result.highest_level else "-",
                result.confidence,
                result.recommendation.value,
            )
        return result

    def _check_exact_email(self, identification: EmailIdentification) -> DuplicateMatch | None:
        records = self.store.find_processed_emails(
            message_id=identification.message_id,
            content_hash=identification.content_hash,
        )
        if not records:
            return None

        reasons = []
        for record in records:
            if identification.message_id and record.message_id == identification.message_id:
                reasons.append(f"Same message id already processed ({record.outcome.value})")
            else:
                reasons.append(f"Identical email content already processed ({record.outcome.value})")

        return DuplicateMatch(
            level=DuplicateLevel.EXACT_EMAIL,
            confidence=1.0,
            recommendation=DuplicateRecommendation.REJECT,
            reasons=_unique(reasons),
            matched_transaction_ids=[r.transaction_id for r in records if r.transaction_id],
        )

    def _check_linkage_ids(
        self,
        identification: EmailIdentification,
        thresholds: ConfidenceThresholds,
    ) -> DuplicateMatch | None:
        linkage = identification.linkage_ids
        if not linkage:
            return None

        transactions = self.store.find_transactions_by_external_ids(linkage)
        processed = self.store.find_processed_emails(linkage_ids=linkage)
        # Records of this very email belong to Level 1
        processed = [
            r
            for r in processed
            if not (identification.message_id and r.message_id == identification.message_id)
            and r.content_hash != identification.content_hash
        ]
        if not transactions and not processed:
            return None

        reasons = []
        for tx in transactions:
            reasons.append(f"Order id {tx.external_id} matches transaction #{tx.id}")
        for record in processed:
            shared = sorted(linkage & record.linkage_ids)
            reasons.append(f"Order/confirmation id {', '.join(shared)} seen in an earlier email")

        matched_ids = [tx.id for tx in transactions]
        matched_ids.extend(
            r.transaction_id for r in processed if r.transaction_id and r.transaction_id not in matched_ids
        )
        return DuplicateMatch(
            level=DuplicateLevel.ORDER_ID,
            confidence=thresholds.level2_confidence,
            recommendation=DuplicateRecommendation.REVIEW,
            reasons=_unique(reasons),
            matched_transaction_ids=matched_ids,
        )

    def _check_fuzzy_details(
        self,
        candidate: EmailCandidate,
        portfolio_id: int | None,
        window_hours: int,
        thresholds: ConfidenceThresholds,
    ) -> DuplicateMatch | None:
        window_days = math.ceil(window_hours / 24) if window_hours > 0 else 0
        date_range = (
            candidate.transaction_date - timedelta(days=window_days),
            candidate.transaction_date + timedelta(days=window_days),
        )
        transactions = self.store.list_transactions(
            portfolio_id=portfolio_id,
            date_range=date_range,
            symbol=candidate.symbol,
        )

        best_score = 0.0
        matched: list[TransactionRecord] = []
        for tx in transactions:
            score = self._detail_tightness(candidate, tx, window_hours)
            if score is None:
                continue
            matched.append(tx)
            best_score = max(best_score, score)

        if not matched:
            return None

        confidence = thresholds.level3_max_confidence * best_score
        recommendation = (
            DuplicateRecommendation.REVIEW
            if confidence >= thresholds.level3_review_threshold
            else DuplicateRecommendation.ACCEPT
        )
        return DuplicateMatch(
            level=DuplicateLevel.FUZZY_DETAIL,
            confidence=confidence,
            recommendation=recommendation,
            reasons=[
                f"Similar {tx.transaction_type.value} of {tx.quantity} {tx.symbol} @ {tx.price} "
                f"on {tx.transaction_date.isoformat()} (transaction #{tx.id})"
                for tx in matched
            ],
            matched_transaction_ids=[tx.id for tx in matched],
        )

    def _detail_tightness(
        self,
        candidate: EmailCandidate,
        tx: TransactionRecord,
        window_hours: int,
    ) -> float | None:
        """Mean closeness in [0, 1] of quantity, price and time; None if outside tolerance."""
        if tx.symbol.upper() != candidate.symbol.upper():
            return None
        if tx.transaction_type != candidate.transaction_type:
            return None

        qty = _closeness(candidate.quantity, tx.quantity, self.config.quantity_epsilon)
        price = _closeness(candidate.price, tx.price, self.config.price_epsilon)
        hours_apart = _hours_apart(candidate, tx)
        when = _closeness(hours_apart, Decimal(0), window_hours)
        if qty is None or price is None or when is None:
            return None
        return (qty + price + when) / 3


def _hours_apart(candidate: EmailCandidate, tx: TransactionRecord) -> Decimal:
    """Hours between executions; whole days when either side lacks a time."""
    start = _parse_time(candidate.execution_time)
    end = _parse_time(tx.execution_time)
    if start is None or end is None:
        return Decimal(abs((tx.transaction_date - candidate.transaction_date).days) * 24)
    delta = datetime.combine(tx.transaction_date, end) - datetime.combine(candidate.transaction_date, start)
    return abs(Decimal(int(delta.total_seconds())) / 3600)


def _parse_time(value: str | None) -> time | None:
    if not value:
        return None
    try:
        return time.fromisoformat(value.strip())
    except ValueError:
        return None


def _closeness(a: Decimal, b: Decimal, epsilon: float) -> float | None:
    """1.0 for equal values, falling linearly to 0.0 at epsilon; None beyond it."""
    diff = abs(Decimal(a) - Decimal(b))
    eps = Decimal(str(epsilon))
    if diff > eps:
        return None
    if eps == 0:
        return 1.0
    return float(1 - diff / eps)


def _unique(items: list[str]) -> list[str]:
    seen: list[str] = []
    for item in items:
        if item not in seen:
            seen.append(item)
    return seen
