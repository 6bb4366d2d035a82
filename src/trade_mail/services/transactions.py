"""
Transaction creation from candidates.

Both auto-insert and review approval go through TransactionWriter, so the
import-key check (one transaction per email) cannot be bypassed.
"""

from __future__ import annotations

import logging
from typing import Optional

from ..confidence import ConfidenceScorer
from ..errors import DuplicateImportError, TransactionCreationError
from ..extractors.fields import infer_asset_type
from ..schemas import AssetType, EmailCandidate, EmailIdentification
from ..state_store import TradeStore, TransactionRecord

logger = logging.getLogger(__name__)


def build_notes(candidate: EmailCandidate) -> str:
    """Audit notes stored with the transaction."""
    parts = [f"Imported from email ({candidate.template or candidate.parse_method.value})"]
    if candidate.account_type_label:
        parts.append(f"account: {candidate.account_type_label}")
    if candidate.confirmation_numbers:
        parts.append("confirmation: " + ", ".join(sorted(candidate.confirmation_numbers)))
    if candidate.execution_time:
        tz = f" {candidate.timezone}" if candidate.timezone else ""
        parts.append(f"executed {candidate.execution_time}{tz}")
    return "; ".join(parts)


class TransactionWriter:
    """Creates transactions in the store from candidates."""

    def __init__(self, store: TradeStore):
        self.store = store

    def create_from_candidate(
        self,
        candidate: EmailCandidate,
        portfolio_id: int,
        identification: Optional[EmailIdentification] = None,
        asset_type: Optional[AssetType] = None,
    ) -> TransactionRecord:
        """
        Create the transaction for a candidate.

        Args:
            candidate: Candidate to book (symbol already resolved)
            portfolio_id: Target portfolio
            identification: Email fingerprint; its import keys are claimed
                atomically with the insert
            asset_type: Resolved asset type (falls back to the parser hint)

        Raises:
            DuplicateImportError: The email was already turned into a transaction
            TransactionCreationError: Candidate is not bookable, or any other
                store failure
        """
        problems = ConfidenceScorer.structural_issues(candidate)
        if problems:
            raise TransactionCreationError(f"Refusing invalid candidate: {'; '.join(problems)}")

        asset_type = (
            asset_type
            or candidate.asset_type_hint
            or infer_asset_type(candidate.symbol)
            or AssetType.STOCK
        )
        external_id = sorted(candidate.order_ids)[0] if candidate.order_ids else None
        import_keys = identification.import_keys() if identification else None

        try:
            asset = self.store.get_or_create_asset(
                candidate.symbol, asset_type, name=candidate.asset_name
            )
            transaction = self.store.create_transaction(
                portfolio_id=portfolio_id,
                asset_id=asset.id,
                transaction_type=candidate.transaction_type,
                quantity=candidate.quantity,
                price=candidate.price,
                total_amount=candidate.total_amount,
                transaction_date=candidate.transaction_date,
                fees=candidate.fees,
                currency=candidate.currency,
                notes=build_notes(candidate),
                external_id=external_id,
                import_keys=import_keys,
                execution_time=candidate.execution_time,
            )
        except DuplicateImportError:
            logger.warning("Refusing second transaction for already imported email")
            raise
        except Exception as e:
            raise TransactionCreationError(f"Failed to create transaction: {e}") from e

        logger.info(
            "Created transaction #%d: %s %s %s @ %s in portfolio %d",
            transaction.id,
            transaction.transaction_type.value,
            transaction.quantity,
            transaction.symbol,
            transaction.price,
            portfolio_id,
        )
        return transaction
