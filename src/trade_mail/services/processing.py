"""
Email processing pipeline.

Per email:

    parse -> validate -> resolve symbol -> resolve portfolio
          -> identify -> detect duplicates -> create transaction | enqueue

Stage failures never escape process_email. Fatal ones (parse, portfolio,
creation, queue write) stop the email and land in result.errors; the others
become warnings and processing continues with fallback data.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from ..config import Config, DuplicateRouting, SourceConfig
from ..errors import (
    DuplicateDetectionError,
    DuplicateImportError,
    ParseError,
    ParseErrorCode,
    PortfolioResolutionError,
    QueueWriteError,
    TransactionCreationError,
    ValidationError,
)
from ..extractors import EmailParser
from ..matching import DuplicateDetector
from ..portfolios import PortfolioResolution, PortfolioResolver
from ..review import ReviewQueue
from ..schemas import (
    DuplicateDetectionResult,
    DuplicateRecommendation,
    EmailCandidate,
    EmailIdentification,
    RawEmail,
    build_identification,
)
from ..schemas.identification import email_body_text
from ..state_store import EmailOutcome, StateStore, TradeStore, TransactionRecord
from ..symbol_lookup import (
    OllamaSymbolLookup,
    SymbolResolution,
    SymbolResolver,
    SymbolSource,
)
from .transactions import TransactionWriter

logger = logging.getLogger(__name__)

DUPLICATE_POLICY_REASON = "Routed to review by duplicate policy"


@dataclass
class EmailProcessingResult:
    """How far one email got through the pipeline."""

    success: bool = False
    email_parsed: bool = False
    symbol_processed: bool = False
    portfolio_mapped: bool = False
    duplicate_checked: bool = False
    transaction_created: bool = False
    queued_for_review: bool = False
    transaction: Optional[TransactionRecord] = None
    review_queue_id: Optional[int] = None
    candidate: Optional[EmailCandidate] = None
    symbol_result: Optional[SymbolResolution] = None
    portfolio: Optional[PortfolioResolution] = None
    duplicate_result: Optional[DuplicateDetectionResult] = None
    identification: Optional[EmailIdentification] = None
    error_code: Optional[str] = None
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "success": self.success,
            "email_parsed": self.email_parsed,
            "symbol_processed": self.symbol_processed,
            "portfolio_mapped": self.portfolio_mapped,
            "duplicate_checked": self.duplicate_checked,
            "transaction_created": self.transaction_created,
            "queued_for_review": self.queued_for_review,
            "transaction": self.transaction.to_dict() if self.transaction else None,
            "review_queue_id": self.review_queue_id,
            "candidate": self.candidate.to_dict() if self.candidate else None,
            "symbol_result": self.symbol_result.to_dict() if self.symbol_result else None,
            "portfolio": self.portfolio.to_dict() if self.portfolio else None,
            "duplicate_result": self.duplicate_result.to_dict() if self.duplicate_result else None,
            "identification": self.identification.to_dict() if self.identification else None,
            "error_code": self.error_code,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
        }


@dataclass
class ProcessingStats:
    """Batch counters."""

    total: int = 0
    successful: int = 0
    failed: int = 0
    emails_parsed: int = 0
    symbols_processed: int = 0
    portfolios_mapped: int = 0
    portfolios_created: int = 0
    transactions_created: int = 0
    queued_for_review: int = 0
    duplicates_detected: int = 0
    symbol_sources: dict[str, int] = field(
        default_factory=lambda: {source.value: 0 for source in SymbolSource}
    )
    mean_symbol_confidence: float = 0.0

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "successful": self.successful,
            "failed": self.failed,
            "emails_parsed": self.emails_parsed,
            "symbols_processed": self.symbols_processed,
            "portfolios_mapped": self.portfolios_mapped,
            "portfolios_created": self.portfolios_created,
            "transactions_created": self.transactions_created,
            "queued_for_review": self.queued_for_review,
            "duplicates_detected": self.duplicates_detected,
            "symbol_sources": dict(self.symbol_sources),
            "mean_symbol_confidence": round(self.mean_symbol_confidence, 4),
        }


@dataclass
class BatchResult:
    """Results of process_batch, in input order."""

    results: list[EmailProcessingResult]
    stats: ProcessingStats

    def to_dict(self) -> dict:
        return {
            "stats": self.stats.to_dict(),
            "results": [r.to_dict() for r in self.results],
        }


def get_processing_stats(results: list[EmailProcessingResult]) -> ProcessingStats:
    """Aggregate counters over processed emails."""
    stats = ProcessingStats(total=len(results))
    confidences: list[float] = []

    for result in results:
        if result.success:
            stats.successful += 1
        else:
            stats.failed += 1
        if result.email_parsed:
            stats.emails_parsed += 1
        if result.symbol_processed:
            stats.symbols_processed += 1
        if result.symbol_result:
            stats.symbol_sources[result.symbol_result.source.value] += 1
            confidences.append(result.symbol_result.confidence)
        if result.portfolio_mapped:
            stats.portfolios_mapped += 1
        if result.portfolio and result.portfolio.created:
            stats.portfolios_created += 1
        if result.transaction_created:
            stats.transactions_created += 1
        if result.queued_for_review:
            stats.queued_for_review += 1
        if result.duplicate_result and result.duplicate_result.is_duplicate:
            stats.duplicates_detected += 1

    if confidences:
        stats.mean_symbol_confidence = sum(confidences) / len(confidences)
    return stats


class ProcessingOrchestrator:
    """
    Runs emails through the pipeline and routes the candidates.

    Collaborators are injected; any left out are built from config.
    """

    def __init__(
        self,
        store: TradeStore,
        config: Optional[Config] = None,
        parser: Optional[EmailParser] = None,
        symbol_resolver: Optional[SymbolResolver] = None,
        portfolio_resolver: Optional[PortfolioResolver] = None,
        duplicate_detector: Optional[DuplicateDetector] = None,
        review_queue: Optional[ReviewQueue] = None,
        writer: Optional[TransactionWriter] = None,
    ):
        self.store = store
        self.config = config or Config()
        default_thresholds = self.config.get_source().thresholds

        self.parser = parser or EmailParser(
            thresholds=default_thresholds,
            default_currency=self.config.portfolios.default_currency,
        )
        if symbol_resolver is None:
            lookup = None
            if self.config.llm.enabled:
                cache = store if isinstance(store, StateStore) else None
                lookup = OllamaSymbolLookup(self.config.llm, cache_store=cache)
            symbol_resolver = SymbolResolver(
                lookup=lookup,
                thresholds=default_thresholds,
                timeout_seconds=self.config.llm.timeout_seconds,
            )
        self.symbol_resolver = symbol_resolver
        self.portfolio_resolver = portfolio_resolver or PortfolioResolver(store, self.config.portfolios)
        self.duplicate_detector = duplicate_detector or DuplicateDetector(store, self.config.duplicates)
        self.writer = writer or TransactionWriter(store)
        self.review_queue = review_queue or ReviewQueue(
            store,
            self.writer,
            default_thresholds,
            max_queue_size=self.config.review_max_queue_size,
        )

    def process_email(
        self,
        email: RawEmail,
        source: Optional[SourceConfig] = None,
    ) -> EmailProcessingResult:
        """
        Process one email end to end.

        Args:
            email: Raw email
            source: Per-source settings (default source if omitted)

        Returns:
            EmailProcessingResult; never raises for stage failures
        """
        source = source or self.config.get_source()
        result = EmailProcessingResult()

        # Parse
        try:
            candidate = self._parse(email, result)
        except ParseError as e:
            result.error_code = e.code.value
            result.errors.append(f"{e.code.value}: {e}")
            logger.info("Email '%s' not parsed: %s", email.subject, e)
            return result
        result.email_parsed = True

        # Validate
        try:
            self._validate(candidate)
        except ValidationError as e:
            result.warnings.extend(f"Validation: {problem}" for problem in e.problems)

        # Symbol
        body = email_body_text(email)
        try:
            resolution = self.symbol_resolver.resolve(
                candidate.symbol,
                candidate.confidence,
                asset_type_hint=candidate.asset_type_hint,
                context=f"{email.subject}\n{body}",
                thresholds=source.thresholds,
            )
        except Exception as e:
            logger.warning("Symbol resolution failed for %s: %s", candidate.symbol, e)
            result.warnings.append(f"Symbol resolution failed, using raw symbol: {e}")
        else:
            result.symbol_result = resolution
            result.symbol_processed = True
            result.warnings.extend(resolution.warnings)
            candidate = candidate.with_changes(
                symbol=resolution.symbol,
                asset_type_hint=resolution.asset_type,
            )
        result.candidate = candidate

        # Portfolio
        try:
            portfolio = self.portfolio_resolver.resolve(
                candidate.account_type_label,
                allow_create=source.create_missing_portfolios,
            )
        except PortfolioResolutionError as e:
            result.errors.append(f"Portfolio resolution failed: {e}")
            return result
        except Exception as e:
            logger.error("Portfolio lookup error: %s", e)
            result.errors.append(f"Portfolio resolution failed: {e}")
            return result
        result.portfolio = portfolio
        result.portfolio_mapped = True
        if portfolio.created:
            result.warnings.append(f"Created portfolio {portfolio.portfolio_name!r}")

        identification = build_identification(email, candidate)
        result.identification = identification

        # Duplicates (fail open)
        try:
            duplicate_result = self.duplicate_detector.detect(
                candidate, identification, portfolio.portfolio_id, source
            )
            result.duplicate_checked = True
        except DuplicateDetectionError as e:
            logger.warning("%s; treating as not a duplicate", e)
            result.warnings.append(f"{e}; treated as not a duplicate")
            duplicate_result = DuplicateDetectionResult.no_duplicate()
        result.duplicate_result = duplicate_result
        if duplicate_result.is_duplicate:
            result.warnings.append(
                f"Possible duplicate ({duplicate_result.recommendation.value}, "
                f"confidence {duplicate_result.confidence:.2f}): "
                + "; ".join(duplicate_result.reasons)
            )

        # Route
        if source.auto_insert_enabled and not self._duplicate_forces_review(duplicate_result, source):
            self._create_transaction(candidate, portfolio, identification, result)
        else:
            reason = (
                DUPLICATE_POLICY_REASON if source.auto_insert_enabled else "Auto-insert disabled"
            )
            self._enqueue(candidate, portfolio, identification, duplicate_result, reason, source, result)

        return result

    def process_batch(
        self,
        emails: list[RawEmail],
        source: Optional[SourceConfig] = None,
        delay_seconds: Optional[float] = None,
    ) -> BatchResult:
        """
        Process emails one at a time with a pause between them.

        A failure on one email never stops the batch.
        """
        delay = self.config.batch_delay_seconds if delay_seconds is None else delay_seconds
        results: list[EmailProcessingResult] = []

        for index, email in enumerate(emails):
            if index and delay > 0:
                time.sleep(delay)
            try:
                result = self.process_email(email, source)
            except Exception as e:
                logger.exception("Unexpected error processing '%s'", email.subject)
                result = EmailProcessingResult(errors=[f"Unexpected error: {e}"])
            results.append(result)

        stats = get_processing_stats(results)
        logger.info(
            "Batch done: %d/%d successful, %d created, %d queued, %d duplicates",
            stats.successful,
            stats.total,
            stats.transactions_created,
            stats.queued_for_review,
            stats.duplicates_detected,
        )
        return BatchResult(results=results, stats=stats)

    def validate_configuration(self) -> dict[str, Any]:
        """
        Check config consistency and collaborator reachability.

        Returns:
            Dict with "valid", "errors" and "warnings"
        """
        errors = list(self.config.validate())
        warnings: list[str] = []

        try:
            self.store.list_portfolios()
        except Exception as e:
            errors.append(f"Store not reachable: {e}")

        lookup = self.symbol_resolver.lookup
        if self.config.llm.enabled:
            if lookup is None:
                warnings.append("Symbol lookup enabled but no lookup client configured")
            elif not lookup.check_connection():
                warnings.append(
                    f"Symbol lookup not reachable at {self.config.llm.ollama_url}; raw symbols will be used"
                )
            elif self.config.llm.is_remote() and not self.config.llm.auth_header:
                warnings.append("Remote symbol lookup without auth header")

        return {"valid": not errors, "errors": errors, "warnings": warnings}

    def close(self) -> None:
        if self.symbol_resolver.lookup is not None:
            self.symbol_resolver.lookup.close()

    def __enter__(self) -> ProcessingOrchestrator:
        return self

    def __exit__(self, *args) -> None:
        self.close()

    # === Stages ===

    def _parse(self, email: RawEmail, result: EmailProcessingResult) -> EmailCandidate:
        parse_result = self.parser.parse(email)
        result.warnings.extend(parse_result.warnings)
        if not parse_result.success or parse_result.data is None:
            code = ParseErrorCode(parse_result.error_code or ParseErrorCode.UNRECOGNIZED_FORMAT.value)
            raise ParseError(parse_result.error or "Email could not be parsed", code)
        return parse_result.data

    def _validate(self, candidate: EmailCandidate) -> None:
        problems = self.parser.validate_candidate(candidate)
        if problems:
            raise ValidationError(f"{len(problems)} validation problem(s)", problems)

    def _duplicate_forces_review(
        self, duplicate_result: DuplicateDetectionResult, source: SourceConfig
    ) -> bool:
        policy = source.duplicate_routing
        if policy == DuplicateRouting.QUEUE_ON_REVIEW:
            return duplicate_result.recommendation in (
                DuplicateRecommendation.REVIEW,
                DuplicateRecommendation.REJECT,
            )
        if policy == DuplicateRouting.QUEUE_ON_REJECT:
            return duplicate_result.recommendation == DuplicateRecommendation.REJECT
        return False

    def _create_transaction(
        self,
        candidate: EmailCandidate,
        portfolio: PortfolioResolution,
        identification: EmailIdentification,
        result: EmailProcessingResult,
    ) -> None:
        try:
            transaction = self.writer.create_from_candidate(
                candidate,
                portfolio.portfolio_id,
                identification=identification,
                asset_type=candidate.asset_type_hint,
            )
        except DuplicateImportError as e:
            result.errors.append(f"Transaction not created: {e}")
            self._record(identification, EmailOutcome.FAILED, result, transaction_id=e.existing_transaction_id)
            return
        except TransactionCreationError as e:
            result.errors.append(str(e))
            return

        result.transaction = transaction
        result.transaction_created = True
        result.success = True
        self._record(identification, EmailOutcome.CREATED, result, transaction_id=transaction.id)

    def _enqueue(
        self,
        candidate: EmailCandidate,
        portfolio: PortfolioResolution,
        identification: EmailIdentification,
        duplicate_result: DuplicateDetectionResult,
        reason: str,
        source: SourceConfig,
        result: EmailProcessingResult,
    ) -> None:
        try:
            item = self.review_queue.add_to_queue(
                candidate,
                identification,
                duplicate_result,
                portfolio.portfolio_id,
                fallback_reason=reason,
                thresholds=source.thresholds,
            )
        except QueueWriteError as e:
            result.errors.append(str(e))
            return

        result.review_queue_id = item.id
        result.queued_for_review = True
        result.success = True
        self._record(identification, EmailOutcome.QUEUED, result, review_queue_id=item.id)

    def _record(
        self,
        identification: EmailIdentification,
        outcome: EmailOutcome,
        result: EmailProcessingResult,
        transaction_id: Optional[int] = None,
        review_queue_id: Optional[int] = None,
    ) -> None:
        try:
            self.store.record_processed_email(
                identification,
                outcome,
                transaction_id=transaction_id,
                review_queue_id=review_queue_id,
            )
        except Exception as e:
            logger.error("Failed to record processed email: %s", e)
            result.warnings.append(f"Processed email not recorded: {e}")
