"""
Email parser - chooses and applies broker templates.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from ..confidence import ConfidenceScorer
from ..config import ConfidenceThresholds
from ..errors import ParseErrorCode
from ..schemas import (
    RAW_EXCERPT_LIMIT,
    EmailCandidate,
    ParseResult,
    RawEmail,
    TransactionType,
)
from ..schemas.identification import (
    email_body_text,
    extract_confirmation_numbers,
    extract_order_ids,
)
from .base import BaseTemplate, TemplateExtraction
from .html_template import WealthsimpleTableTemplate
from .text_template import NarrativeTemplate, WealthsimpleTextTemplate

logger = logging.getLogger(__name__)

# Human-readable names for warnings
FIELD_LABELS = {
    "symbol": "symbol",
    "transaction_type": "transaction type",
    "quantity": "quantity",
    "price": "price",
    "total_amount": "total amount",
    "account_type_label": "account",
    "transaction_date": "transaction date",
    "currency": "currency",
}


class EmailParser:
    """
    Parses trade-confirmation emails into candidates.

    Tries templates in priority order:
    1. Broker HTML cell lookup - highest confidence
    2. Broker labeled text lines
    3. Narrative sentences - lowest confidence

    The first template that matches AND yields the core fields wins; a
    template that matches but cannot extract them falls through to the next.
    """

    VERSION = "1.0.0"

    def __init__(
        self,
        templates: Optional[list[BaseTemplate]] = None,
        thresholds: Optional[ConfidenceThresholds] = None,
        default_currency: str = "CAD",
    ):
        """Initialize with default templates."""
        self.templates: list[BaseTemplate] = templates or [
            WealthsimpleTableTemplate(),
            WealthsimpleTextTemplate(),
            NarrativeTemplate(),
        ]
        # Sort by priority (highest first)
        self.templates.sort(key=lambda t: -t.priority)
        self.scorer = ConfidenceScorer(thresholds)
        self.default_currency = default_currency

    def parse(self, email: RawEmail) -> ParseResult:
        """
        Parse one email.

        Returns:
            ParseResult; on failure error_code is UNRECOGNIZED_FORMAT (no
            template matched) or FIELD_EXTRACTION_FAILED (matched, but core
            fields missing)
        """
        matched: list[str] = []
        failures: list[str] = []

        for template in self.templates:
            if not template.matches(email):
                continue
            matched.append(template.name)

            try:
                extraction = template.extract(email)
            except (ValueError, ArithmeticError) as e:
                logger.warning("Template %s failed on '%s': %s", template.name, email.subject, e)
                failures.append(f"{template.name}: {e}")
                continue

            missing_core = self._missing_core_fields(extraction)
            if missing_core:
                logger.debug("Template %s missing core fields %s", template.name, missing_core)
                failures.append(f"{template.name}: missing {', '.join(missing_core)}")
                continue

            return self._build_result(email, template, extraction)

        if not matched:
            logger.info("No template matched email '%s' from %s", email.subject, email.from_address)
            return ParseResult(
                success=False,
                error=f"Unrecognized email format: {email.subject!r}",
                error_code=ParseErrorCode.UNRECOGNIZED_FORMAT.value,
            )

        logger.info("Field extraction failed for '%s': %s", email.subject, "; ".join(failures))
        return ParseResult(
            success=False,
            error="Could not extract required fields (" + "; ".join(failures) + ")",
            error_code=ParseErrorCode.FIELD_EXTRACTION_FAILED.value,
        )

    def validate_candidate(self, candidate: EmailCandidate) -> list[str]:
        """Sanity problems with a parsed (or edited) candidate."""
        return self.scorer.validate_candidate(candidate)

    def _missing_core_fields(self, extraction: TemplateExtraction) -> list[str]:
        """Fields without which no candidate can be built."""
        missing = []
        if not extraction.symbol:
            missing.append("symbol")
        if extraction.transaction_type is None:
            missing.append("transaction type")
        elif extraction.transaction_type in (TransactionType.BUY, TransactionType.SELL):
            if not extraction.quantity:
                missing.append("quantity")
            if extraction.price is None and extraction.total_amount is None:
                missing.append("price")
        return missing

    def _build_result(
        self,
        email: RawEmail,
        template: BaseTemplate,
        extraction: TemplateExtraction,
    ) -> ParseResult:
        warnings: list[str] = []
        missing = extraction.missing_fields()
        for field_name in missing:
            warnings.append(f"Missing field: {FIELD_LABELS.get(field_name, field_name)}")

        quantity = extraction.quantity if extraction.quantity is not None else Decimal("0")
        fees = extraction.fees if extraction.fees is not None else Decimal("0")
        price = extraction.price
        if price is None:
            # Price can be backed out of total / quantity
            if extraction.total_amount is not None and quantity > 0:
                price = (extraction.total_amount / quantity).quantize(Decimal("0.0001"))
                warnings.append("Price derived from total amount / quantity")
            else:
                price = Decimal("0")

        total = extraction.total_amount
        if total is None:
            gross = quantity * price
            total = gross - fees if extraction.transaction_type == TransactionType.SELL else gross + fees
            warnings.append("Total amount derived from quantity × price")

        transaction_date = extraction.transaction_date
        if transaction_date is None:
            received = email.received_at or datetime.now(timezone.utc)
            transaction_date = received.date()
            warnings.append(f"Transaction date defaulted to {transaction_date.isoformat()}")

        confidence = self.scorer.score_fields(extraction.found_fields(), template.method)

        # Cross-check only when all three inputs were actually read
        if (
            extraction.quantity is not None
            and extraction.price is not None
            and extraction.total_amount is not None
            and not self.scorer.total_is_consistent(quantity, price, total, fees)
        ):
            confidence = self.scorer.apply_cross_check_penalty(confidence)
            warnings.append(
                f"Total {total} does not match quantity × price ({quantity} × {price}) ± fees {fees}"
            )

        body = email_body_text(email)
        candidate = EmailCandidate(
            symbol=extraction.symbol.strip().upper(),
            transaction_type=extraction.transaction_type,
            quantity=quantity,
            price=price,
            total_amount=total,
            fees=fees,
            account_type_label=extraction.account_type_label or "",
            transaction_date=transaction_date,
            currency=(extraction.currency or self.default_currency).upper(),
            confidence=confidence,
            parse_method=template.method,
            raw_content_excerpt=body[:RAW_EXCERPT_LIMIT],
            order_ids=extraction.order_ids | extract_order_ids(body),
            confirmation_numbers=extraction.confirmation_numbers
            | extract_confirmation_numbers(body),
            asset_name=extraction.asset_name,
            asset_type_hint=extraction.asset_type_hint,
            execution_time=extraction.execution_time,
            timezone=extraction.timezone,
            template=template.name,
        )

        logger.info(
            "Parsed %s %s %s @ %s via %s (confidence %.2f, %d missing)",
            candidate.transaction_type.value,
            candidate.quantity,
            candidate.symbol,
            candidate.price,
            template.name,
            candidate.confidence,
            len(missing),
        )
        return ParseResult(success=True, data=candidate, warnings=warnings)
