"""Tests for the email processing pipeline."""

from dataclasses import replace
from decimal import Decimal
from unittest.mock import MagicMock, call, patch

import pytest

from trade_mail.config import DuplicateRouting, SourceConfig
from trade_mail.errors import DuplicateDetectionError, QueueWriteError, TransactionCreationError
from trade_mail.schemas import (
    AssetType,
    DuplicateLevel,
    DuplicateRecommendation,
    ParseResult,
    TransactionType,
)
from trade_mail.services import TransactionWriter
from trade_mail.services.processing import (
    DUPLICATE_POLICY_REASON,
    EmailProcessingResult,
    ProcessingOrchestrator,
    get_processing_stats,
)
from trade_mail.state_store import ReviewPriority, ReviewStatus
from trade_mail.symbol_lookup import SymbolResolver, SymbolSource


@pytest.fixture
def orchestrator(store, config):
    return ProcessingOrchestrator(store, config)


@pytest.fixture
def scripted(store, config):
    """Orchestrator whose parser returns the given candidates in order."""

    def _build(*candidates, **collaborators):
        parser = MagicMock()
        parser.parse.side_effect = [ParseResult(success=True, data=c) for c in candidates]
        parser.validate_candidate.return_value = []
        return ProcessingOrchestrator(store, config, parser=parser, **collaborators)

    return _build


class TestRouting:
    """End-to-end routing of single emails."""

    def test_auto_insert_creates_transaction(self, store, orchestrator, stock_buy_email):
        """High-confidence email with auto-insert on becomes a transaction."""
        result = orchestrator.process_email(stock_buy_email)

        assert result.success is True
        assert result.transaction_created is True
        assert result.queued_for_review is False
        assert result.errors == []
        assert result.symbol_result.source == SymbolSource.DIRECT
        transaction = result.transaction
        assert transaction.symbol == "AAPL"
        assert str(transaction.quantity) == "100"
        assert str(transaction.price) == "150.25"
        assert transaction.external_id == "WS123456789"
        assert transaction.execution_time == "10:30"
        assert store.get_stats()["emails_by_outcome"] == {"created": 1}

    def test_missing_portfolio_is_created(self, store, orchestrator, stock_buy_email):
        result = orchestrator.process_email(stock_buy_email)

        assert result.portfolio.created is True
        assert "Created portfolio 'TFSA - Tax-Free Savings Account'" in result.warnings
        assert store.get_portfolio(result.portfolio.portfolio_id).currency == "CAD"

    def test_existing_portfolio_is_reused(self, store, orchestrator, stock_buy_email):
        portfolio = store.create_portfolio("TFSA", "CAD")

        result = orchestrator.process_email(stock_buy_email)

        assert result.portfolio.portfolio_id == portfolio.id
        assert result.portfolio.created is False
        assert result.transaction.portfolio_id == portfolio.id

    def test_auto_insert_disabled_queues(self, store, config, orchestrator, stock_buy_email):
        """With auto-insert off the same email waits for review instead."""
        result = orchestrator.process_email(stock_buy_email, source=config.get_source("manual"))

        assert result.success is True
        assert result.queued_for_review is True
        assert result.transaction_created is False
        assert result.review_queue_id is not None
        assert store.list_transactions() == []
        item = store.get_review_queue_item(result.review_queue_id)
        assert item.status == ReviewStatus.PENDING
        assert item.reason == "Auto-insert disabled"
        assert store.get_stats()["emails_by_outcome"] == {"queued": 1}

    def test_shared_order_id_is_level_two_duplicate(self, scripted, make_email, make_candidate):
        """A second email quoting a booked order id is flagged at Level 2."""
        candidate = make_candidate(order_ids={"WS-123456789"})
        orchestrator = scripted(candidate, candidate)

        first = orchestrator.process_email(
            make_email("<fill-1@wealthsimple.com>", body="Order WS-123456789 filled")
        )
        second = orchestrator.process_email(
            make_email("<fill-2@wealthsimple.com>", body="Reminder: order WS-123456789 settled")
        )

        assert first.duplicate_result.is_duplicate is False
        assert second.duplicate_result.is_duplicate is True
        assert second.duplicate_result.highest_level == DuplicateLevel.ORDER_ID
        assert second.duplicate_result.confidence >= 0.8
        assert any(w.startswith("Possible duplicate (review") for w in second.warnings)

    def test_low_confidence_is_medium_priority(self, store, config, scripted, make_email, make_candidate):
        orchestrator = scripted(make_candidate(confidence=0.2))

        result = orchestrator.process_email(make_email(), source=config.get_source("manual"))

        assert result.queued_for_review is True
        item = store.get_review_queue_item(result.review_queue_id)
        assert item.priority == ReviewPriority.MEDIUM
        assert "Low parsing confidence" in item.reason

    def test_symbol_lookup_enhances_option(self, store, config, option_expired_email, stub_lookup):
        """Option descriptions go through the lookup and are booked under its symbol."""
        lookup = stub_lookup({"NVDA MAY 30 $108 CALL": ("NVDA250530C00108000", AssetType.OPTION, 0.9)})
        orchestrator = ProcessingOrchestrator(
            store, config, symbol_resolver=SymbolResolver(lookup=lookup)
        )

        result = orchestrator.process_email(option_expired_email)

        assert result.symbol_result.source == SymbolSource.AI_ENHANCED
        assert result.transaction.symbol == "NVDA250530C00108000"
        assert result.candidate.asset_type_hint == AssetType.OPTION


class TestDuplicateRouting:
    """Re-processing and duplicate routing policies."""

    def test_reprocessing_never_books_twice(self, store, orchestrator, stock_buy_email):
        """The same email processed twice yields exactly one transaction."""
        orchestrator.process_email(stock_buy_email)

        second = orchestrator.process_email(stock_buy_email)

        assert second.success is False
        assert second.duplicate_result.recommendation == DuplicateRecommendation.REJECT
        assert second.duplicate_result.highest_level == DuplicateLevel.EXACT_EMAIL
        assert any(e.startswith("Transaction not created: Email already imported") for e in second.errors)
        assert len(store.list_transactions()) == 1
        assert store.get_stats()["emails_by_outcome"] == {"created": 1, "failed": 1}

    def test_same_content_without_message_id_books_once(self, store, orchestrator, stock_buy_email):
        """A copy lacking a Message-ID still shares the content-hash import key."""
        first = orchestrator.process_email(replace(stock_buy_email, message_id=None))

        second = orchestrator.process_email(stock_buy_email)

        assert first.transaction_created is True
        assert second.transaction_created is False
        assert second.duplicate_result.recommendation == DuplicateRecommendation.REJECT
        assert any(e.startswith("Transaction not created: Email already imported (hash:") for e in second.errors)
        assert len(store.list_transactions()) == 1

    def test_queue_on_review_policy(self, store, orchestrator, stock_buy_email):
        source = SourceConfig(
            name="strict",
            auto_insert_enabled=True,
            duplicate_routing=DuplicateRouting.QUEUE_ON_REVIEW,
        )
        orchestrator.process_email(stock_buy_email, source=source)

        second = orchestrator.process_email(stock_buy_email, source=source)

        assert second.queued_for_review is True
        item = store.get_review_queue_item(second.review_queue_id)
        assert item.priority == ReviewPriority.HIGH
        assert item.reason.startswith("Potential duplicate (level 1, confidence 1.00)")
        assert len(store.list_transactions()) == 1

    def test_queue_on_reject_lets_reviews_through(self, store, scripted, make_email, make_candidate):
        """Under queue_on_reject a Level 2 finding alone still auto-inserts."""
        source = SourceConfig(
            name="lenient",
            auto_insert_enabled=True,
            duplicate_routing=DuplicateRouting.QUEUE_ON_REJECT,
        )
        candidate = make_candidate(order_ids={"WS-123456789"})
        orchestrator = scripted(candidate, candidate)
        orchestrator.process_email(make_email("<fill-1@wealthsimple.com>", body="WS-123456789"), source)

        second = orchestrator.process_email(
            make_email("<fill-2@wealthsimple.com>", body="Settled WS-123456789"), source
        )

        assert second.duplicate_result.recommendation == DuplicateRecommendation.REVIEW
        assert second.transaction_created is True
        assert len(store.list_transactions()) == 2

    def test_policy_reason_without_other_conditions(self, store, config, make_email, make_candidate):
        """The policy reason is used when no priority condition explains the item."""
        detector = MagicMock()
        detector.detect.return_value.is_duplicate = True
        detector.detect.return_value.recommendation = DuplicateRecommendation.REVIEW
        detector.detect.return_value.confidence = 0.6
        detector.detect.return_value.reasons = ["similar"]
        queue = MagicMock()
        queue.add_to_queue.return_value.id = 7
        parser = MagicMock()
        parser.parse.return_value = ParseResult(success=True, data=make_candidate())
        parser.validate_candidate.return_value = []
        orchestrator = ProcessingOrchestrator(
            store, config, parser=parser, duplicate_detector=detector, review_queue=queue
        )
        source = SourceConfig(auto_insert_enabled=True, duplicate_routing=DuplicateRouting.QUEUE_ON_REVIEW)

        result = orchestrator.process_email(make_email(), source)

        assert result.review_queue_id == 7
        assert queue.add_to_queue.call_args.kwargs["fallback_reason"] == DUPLICATE_POLICY_REASON


class TestFailures:
    """Stage failures end up in the result, never as exceptions."""

    def test_unrecognized_email(self, store, orchestrator, unrelated_email):
        result = orchestrator.process_email(unrelated_email)

        assert result.success is False
        assert result.email_parsed is False
        assert result.error_code == "UNRECOGNIZED_FORMAT"
        assert result.errors[0].startswith("UNRECOGNIZED_FORMAT: ")
        assert store.get_stats()["processed_emails"] == 0

    def test_portfolio_creation_disabled(self, store, orchestrator, stock_buy_email):
        source = SourceConfig(auto_insert_enabled=True, create_missing_portfolios=False)

        result = orchestrator.process_email(stock_buy_email, source)

        assert result.success is False
        assert result.email_parsed is True
        assert result.portfolio_mapped is False
        assert result.errors[0].startswith("Portfolio resolution failed")
        assert store.list_portfolios() == []

    def test_duplicate_check_fails_open(self, store, config, stock_buy_email):
        """A broken detector does not block the email."""
        detector = MagicMock()
        detector.detect.side_effect = DuplicateDetectionError(
            "Duplicate check failed: database is locked"
        )
        orchestrator = ProcessingOrchestrator(store, config, duplicate_detector=detector)

        result = orchestrator.process_email(stock_buy_email)

        assert result.transaction_created is True
        assert result.duplicate_checked is False
        assert result.duplicate_result.is_duplicate is False
        assert (
            "Duplicate check failed: database is locked; treated as not a duplicate"
            in result.warnings
        )

    def test_queue_write_failure(self, store, config, stock_buy_email):
        queue = MagicMock()
        queue.add_to_queue.side_effect = QueueWriteError("Failed to enqueue candidate: disk full")
        orchestrator = ProcessingOrchestrator(store, config, review_queue=queue)

        result = orchestrator.process_email(stock_buy_email, source=config.get_source("manual"))

        assert result.success is False
        assert result.queued_for_review is False
        assert result.errors == ["Failed to enqueue candidate: disk full"]
        assert store.get_stats()["processed_emails"] == 0

    def test_full_review_queue(self, store, config, stock_buy_email, stock_sell_email):
        """The pending limit from the config applies to queued emails."""
        config.review_max_queue_size = 1
        orchestrator = ProcessingOrchestrator(store, config)
        manual = config.get_source("manual")
        orchestrator.process_email(stock_buy_email, source=manual)

        result = orchestrator.process_email(stock_sell_email, source=manual)

        assert result.success is False
        assert result.errors == ["Review queue is full (1 pending, limit 1)"]
        assert len(store.list_review_queue_items()) == 1

    def test_symbol_fallback_is_a_warning(self, scripted, make_email, make_candidate):
        """Low-confidence symbols without a lookup keep the raw symbol."""
        orchestrator = scripted(make_candidate(symbol="aapl", confidence=0.5))

        result = orchestrator.process_email(make_email())

        assert result.symbol_result.source == SymbolSource.AI_FALLBACK
        assert result.candidate.symbol == "AAPL"
        assert "Symbol lookup not configured; using raw symbol" in result.warnings
        assert result.transaction_created is True


class TestProcessBatch:
    """Tests for batch processing and statistics."""

    def test_batch_statistics(
        self, orchestrator, stock_buy_email, stock_sell_email, unrelated_email
    ):
        batch = orchestrator.process_batch(
            [stock_buy_email, stock_sell_email, unrelated_email, stock_buy_email]
        )

        stats = batch.stats
        assert [r.success for r in batch.results] == [True, True, False, False]
        assert stats.total == 4
        assert stats.successful == 2
        assert stats.failed == 2
        assert stats.emails_parsed == 3
        assert stats.transactions_created == 2
        assert stats.portfolios_created == 2
        assert stats.duplicates_detected == 1
        assert stats.symbol_sources["direct"] == 3

    def test_unexpected_error_does_not_stop_batch(self, store, config, make_email, make_candidate):
        parser = MagicMock()
        parser.parse.side_effect = [RuntimeError("boom"), ParseResult(success=True, data=make_candidate())]
        parser.validate_candidate.return_value = []
        orchestrator = ProcessingOrchestrator(store, config, parser=parser)

        batch = orchestrator.process_batch([make_email("<a@x.com>"), make_email("<b@x.com>")])

        assert batch.results[0].errors == ["Unexpected error: boom"]
        assert batch.results[1].transaction_created is True

    @patch("trade_mail.services.processing.time.sleep")
    def test_delay_between_emails(self, mock_sleep, orchestrator, unrelated_email):
        orchestrator.process_batch([unrelated_email] * 3, delay_seconds=0.5)

        assert mock_sleep.call_args_list == [call(0.5), call(0.5)]

    def test_stats_mean_symbol_confidence(self, orchestrator, stock_buy_email, stock_sell_email):
        results = [
            orchestrator.process_email(stock_buy_email),
            orchestrator.process_email(stock_sell_email),
            EmailProcessingResult(),
        ]

        stats = get_processing_stats(results)

        assert stats.mean_symbol_confidence == pytest.approx((1.0 + 0.875) / 2)
        assert stats.to_dict()["failed"] == 1


class TestValidateConfiguration:
    """Tests for ProcessingOrchestrator.validate_configuration."""

    def test_default_config_is_valid(self, orchestrator):
        assert orchestrator.validate_configuration() == {"valid": True, "errors": [], "warnings": []}

    def test_inconsistent_thresholds(self, config, orchestrator):
        config.sources["default"].thresholds.level3_max_confidence = 0.9

        report = orchestrator.validate_configuration()

        assert report["valid"] is False
        assert "sources.default: level3_max_confidence must be below level2_confidence" in report["errors"]

    def test_unreachable_lookup_is_a_warning(self, store, config):
        """An unreachable lookup degrades to raw symbols rather than failing."""
        config.llm.enabled = True
        lookup = MagicMock()
        lookup.check_connection.return_value = False
        orchestrator = ProcessingOrchestrator(
            store, config, symbol_resolver=SymbolResolver(lookup=lookup)
        )

        report = orchestrator.validate_configuration()

        assert report["valid"] is True
        assert "not reachable" in report["warnings"][0]

    def test_context_manager_closes_lookup(self, store, config):
        lookup = MagicMock()

        with ProcessingOrchestrator(store, config, symbol_resolver=SymbolResolver(lookup=lookup)):
            pass

        lookup.close.assert_called_once()


class TestTransactionWriter:
    """Tests for the bookability guard on transaction creation."""

    def test_unbookable_candidate_is_refused(self, store, make_candidate):
        portfolio = store.create_portfolio("TFSA", "CAD")

        with pytest.raises(TransactionCreationError, match="Quantity is negative: -5"):
            TransactionWriter(store).create_from_candidate(
                make_candidate(quantity=Decimal("-5")), portfolio.id
            )

        assert store.list_transactions() == []

    def test_dividend_without_quantity_is_booked(self, store, make_candidate):
        portfolio = store.create_portfolio("TFSA", "CAD")
        candidate = make_candidate(
            transaction_type=TransactionType.DIVIDEND,
            quantity=Decimal("0"),
            price=Decimal("0"),
            total_amount=Decimal("12.34"),
        )

        transaction = TransactionWriter(store).create_from_candidate(candidate, portfolio.id)

        assert transaction.quantity == Decimal("0")
