"""
Manual review queue.

State machine:

    pending --approve--> approved   (terminal, creates the transaction)
    pending --reject---> rejected   (terminal)
    pending --update---> pending
    pending --escalate-> pending   (priority raised one level)

Every transition is a compare-and-set on (status, version) in the store, so
two reviewers acting on the same item cannot both win.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from ..confidence import ConfidenceScorer
from ..config import ConfidenceThresholds
from ..errors import (
    ConflictError,
    QueueItemNotFoundError,
    QueueWriteError,
    TransactionCreationError,
    ValidationError,
)
from ..schemas import (
    DuplicateDetectionResult,
    DuplicateRecommendation,
    EmailCandidate,
    EmailIdentification,
)
from ..services.transactions import TransactionWriter
from ..state_store import ReviewPriority, ReviewQueueItem, ReviewStatus, TradeStore

logger = logging.getLogger(__name__)

DEFAULT_REASON = "Auto-insert disabled"

_NEXT_PRIORITY = {
    ReviewPriority.LOW: ReviewPriority.MEDIUM,
    ReviewPriority.MEDIUM: ReviewPriority.HIGH,
}


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class ReviewQueue:
    """
    Holds candidates that were not auto-inserted.

    Responsibilities:
    - Prioritize new items
    - Apply approve / reject / update transitions
    - Create the transaction on approval
    - Escalate items left pending too long
    - Report and clean up
    """

    def __init__(
        self,
        store: TradeStore,
        writer: Optional[TransactionWriter] = None,
        thresholds: Optional[ConfidenceThresholds] = None,
        max_queue_size: Optional[int] = None,
    ):
        self.store = store
        self.writer = writer or TransactionWriter(store)
        self.thresholds = thresholds or ConfidenceThresholds()
        # None means unbounded
        self.max_queue_size = max_queue_size

    # === Intake ===

    def prioritize(
        self,
        candidate: EmailCandidate,
        duplicate_result: DuplicateDetectionResult,
        thresholds: Optional[ConfidenceThresholds] = None,
    ) -> tuple[ReviewPriority, list[str]]:
        """Priority and triggering conditions for a new item."""
        thresholds = thresholds or self.thresholds
        reasons: list[str] = []
        priority = ReviewPriority.LOW

        if duplicate_result.recommendation != DuplicateRecommendation.ACCEPT:
            level = duplicate_result.highest_level
            reasons.append(
                f"Potential duplicate (level {level.value if level else '?'}, "
                f"confidence {duplicate_result.confidence:.2f})"
            )
            if duplicate_result.confidence >= thresholds.high_priority_duplicate:
                priority = ReviewPriority.HIGH

        if candidate.confidence < thresholds.low_parse_confidence:
            reasons.append(f"Low parsing confidence ({candidate.confidence:.2f})")
            if priority == ReviewPriority.LOW:
                priority = ReviewPriority.MEDIUM

        return priority, reasons

    def add_to_queue(
        self,
        candidate: EmailCandidate,
        identification: EmailIdentification,
        duplicate_result: DuplicateDetectionResult,
        portfolio_id: int,
        fallback_reason: str = DEFAULT_REASON,
        thresholds: Optional[ConfidenceThresholds] = None,
    ) -> ReviewQueueItem:
        """
        Enqueue a candidate for review.

        Raises:
            QueueWriteError: If the queue is full or the store rejects the item
        """
        self._check_capacity()
        priority, reasons = self.prioritize(candidate, duplicate_result, thresholds)
        reason = "; ".join(reasons) if reasons else fallback_reason

        try:
            item = self.store.create_review_queue_item(
                candidate=candidate,
                identification=identification,
                duplicate_result=duplicate_result,
                portfolio_id=portfolio_id,
                priority=priority,
                reason=reason,
            )
        except Exception as e:
            raise QueueWriteError(f"Failed to enqueue candidate: {e}") from e

        logger.info(
            "Queued %s %s for review as #%d (%s priority: %s)",
            candidate.transaction_type.value,
            candidate.symbol,
            item.id,
            priority.value,
            reason,
        )
        return item

    # === Transitions ===

    def approve_queue_item(
        self,
        item_id: int,
        reviewer: str,
        notes: Optional[str] = None,
    ) -> ReviewQueueItem:
        """
        Approve a pending item and create its transaction.

        The transaction is built from the stored candidate, including any
        edits made with update_queue_item. If creation fails the item goes
        back to pending.

        Raises:
            QueueItemNotFoundError: Unknown id
            ConflictError: Item is not pending (or changed concurrently)
            ValidationError: Stored candidate cannot be booked
            TransactionCreationError: Store refused the transaction
        """
        item = self._get_pending(item_id, "approve")
        self._check_bookable(item_id, item.candidate)
        reviewed_at = _utc_now()
        self._compare_and_set(
            item,
            {
                "status": ReviewStatus.APPROVED,
                "reviewed_by": reviewer,
                "review_notes": notes,
                "reviewed_at": reviewed_at,
            },
            action="approve",
        )
        approved_version = item.version + 1

        try:
            transaction = self.writer.create_from_candidate(
                item.candidate,
                item.portfolio_id,
                identification=item.identification,
                asset_type=item.candidate.asset_type_hint,
            )
        except TransactionCreationError:
            restored = self.store.update_review_queue_item(
                item_id,
                expected_version=approved_version,
                changes={
                    "status": ReviewStatus.PENDING,
                    "reviewed_by": None,
                    "reviewed_at": None,
                    "review_notes": item.review_notes,
                },
                expected_status=ReviewStatus.APPROVED,
            )
            if not restored:
                logger.error("Review item #%d could not be restored to pending", item_id)
            raise

        self.store.update_review_queue_item(
            item_id,
            expected_version=approved_version,
            changes={"transaction_id": transaction.id},
            expected_status=ReviewStatus.APPROVED,
        )
        logger.info("Review item #%d approved by %s -> transaction #%d", item_id, reviewer, transaction.id)
        return self.get_queue_item(item_id)

    def reject_queue_item(
        self,
        item_id: int,
        reviewer: str,
        notes: Optional[str] = None,
    ) -> ReviewQueueItem:
        """
        Reject a pending item. No transaction is created.

        Raises:
            QueueItemNotFoundError: Unknown id
            ConflictError: Item is not pending (or changed concurrently)
        """
        item = self._get_pending(item_id, "reject")
        self._compare_and_set(
            item,
            {
                "status": ReviewStatus.REJECTED,
                "reviewed_by": reviewer,
                "review_notes": notes,
                "reviewed_at": _utc_now(),
            },
            action="reject",
        )
        logger.info("Review item #%d rejected by %s", item_id, reviewer)
        return self.get_queue_item(item_id)

    def update_queue_item(
        self,
        item_id: int,
        new_candidate: EmailCandidate,
        editor: str,
        notes: Optional[str] = None,
    ) -> ReviewQueueItem:
        """
        Replace the candidate of a pending item; it stays pending.

        Raises:
            QueueItemNotFoundError: Unknown id
            ValidationError: Edited candidate cannot be booked
            ConflictError: Item is not pending (or changed concurrently)
        """
        item = self._get_pending(item_id, "update")
        self._check_bookable(item_id, new_candidate)
        changes: dict[str, Any] = {"candidate": new_candidate, "last_modified_by": editor}
        if notes is not None:
            changes["review_notes"] = notes
        self._compare_and_set(item, changes, action="update")
        logger.info("Review item #%d edited by %s", item_id, editor)
        return self.get_queue_item(item_id)

    def escalate_stale_items(
        self,
        hours: float,
        now: Optional[datetime] = None,
    ) -> list[ReviewQueueItem]:
        """
        Raise the priority of pending items untouched for the given hours.

        Each stale item moves up one level (low -> medium -> high). The write
        refreshes updated_at, so an item climbs at most one level per period.
        Items changed by a reviewer in the meantime lose the compare-and-set
        and are skipped.

        Returns:
            The escalated items
        """
        now = now or datetime.now(timezone.utc)
        cutoff = (now - timedelta(hours=hours)).isoformat().replace("+00:00", "Z")
        note = f"Pending over {hours:g}h"

        escalated = []
        for item in self.store.list_review_queue_items(status=ReviewStatus.PENDING):
            target = _NEXT_PRIORITY.get(item.priority)
            if target is None or item.updated_at >= cutoff:
                continue
            reason = item.reason if note in item.reason else f"{item.reason}; {note}"
            if not self.store.update_review_queue_item(
                item.id,
                expected_version=item.version,
                changes={"priority": target, "reason": reason},
            ):
                logger.debug("Review item #%d changed during escalation, skipped", item.id)
                continue
            logger.info(
                "Review item #%d escalated from %s to %s", item.id, item.priority.value, target.value
            )
            escalated.append(self.get_queue_item(item.id))
        return escalated

    # === Queries ===

    def get_queue_item(self, item_id: int) -> ReviewQueueItem:
        item = self.store.get_review_queue_item(item_id)
        if item is None:
            raise QueueItemNotFoundError(item_id)
        return item

    def get_queue_items(
        self,
        status: Optional[ReviewStatus] = None,
        priority: Optional[ReviewPriority] = None,
    ) -> list[ReviewQueueItem]:
        """Items matching the filters, highest priority first."""
        return self.store.list_review_queue_items(status=status, priority=priority)

    def get_queue_statistics(self) -> dict[str, Any]:
        """Counts by status and by priority, plus total."""
        items = self.store.list_review_queue_items()
        by_status = {s.value: 0 for s in ReviewStatus}
        by_priority = {p.value: 0 for p in ReviewPriority}
        for item in items:
            by_status[item.status.value] += 1
            by_priority[item.priority.value] += 1
        return {
            "total": len(items),
            "by_status": by_status,
            "by_priority": by_priority,
        }

    def cleanup_old_items(self, days_threshold: int) -> int:
        """
        Delete approved/rejected items reviewed more than days_threshold ago.

        Pending items are never touched.

        Returns:
            Number of deleted items
        """
        cutoff = datetime.now(timezone.utc) - timedelta(days=days_threshold)
        older_than = cutoff.isoformat().replace("+00:00", "Z")
        deleted = self.store.delete_review_queue_items(
            [ReviewStatus.APPROVED, ReviewStatus.REJECTED], older_than
        )
        if deleted:
            logger.info("Removed %d reviewed queue items older than %d days", deleted, days_threshold)
        return deleted

    # === Helpers ===

    def _get_pending(self, item_id: int, action: str) -> ReviewQueueItem:
        item = self.get_queue_item(item_id)
        if item.status.is_terminal:
            raise ConflictError(
                f"Cannot {action} review item #{item_id}: already {item.status.value}",
                item_id=item_id,
                current_status=item.status.value,
            )
        return item

    def _check_capacity(self) -> None:
        if self.max_queue_size is None:
            return
        try:
            pending = len(self.store.list_review_queue_items(status=ReviewStatus.PENDING))
        except Exception as e:
            raise QueueWriteError(f"Failed to enqueue candidate: {e}") from e
        if pending >= self.max_queue_size:
            raise QueueWriteError(
                f"Review queue is full ({pending} pending, limit {self.max_queue_size})"
            )

    def _check_bookable(self, item_id: int, candidate: EmailCandidate) -> None:
        problems = ConfidenceScorer.structural_issues(candidate)
        if problems:
            raise ValidationError(
                f"Review item #{item_id} has an invalid candidate: {'; '.join(problems)}",
                problems,
            )

    def _compare_and_set(self, item: ReviewQueueItem, changes: dict[str, Any], action: str) -> None:
        if self.store.update_review_queue_item(
            item.id,
            expected_version=item.version,
            changes=changes,
            expected_status=ReviewStatus.PENDING,
        ):
            return

        current = self.store.get_review_queue_item(item.id)
        current_status = current.status.value if current else "deleted"
        raise ConflictError(
            f"Cannot {action} review item #{item.id}: modified concurrently (now {current_status})",
            item_id=item.id,
            current_status=current_status,
        )
