"""Tests for email identification and fingerprints."""

from datetime import date
from decimal import Decimal

from trade_mail.schemas import (
    EmailCandidate,
    RawEmail,
    TransactionType,
    build_identification,
    compute_content_hash,
    compute_transaction_hash,
    extract_confirmation_numbers,
    extract_order_ids,
    normalize_text,
)
from trade_mail.schemas.identification import extract_message_id, normalize_message_id


class TestNormalization:
    """Tests for text normalization used in hashing."""

    def test_normalize_text_strips_markup_and_case(self):
        """Tags, punctuation and case do not affect the normalized form."""
        assert normalize_text("<p>Bought  100 shares!</p>") == "bought 100 shares"

    def test_normalize_text_empty(self):
        assert normalize_text(None) == ""
        assert normalize_text("") == ""

    def test_normalize_message_id(self):
        """Angle brackets and case are dropped."""
        assert normalize_message_id(" <ABC@Mail.Example.com> ") == "abc@mail.example.com"
        assert normalize_message_id("<>") is None
        assert normalize_message_id(None) is None


class TestFingerprints:
    """Tests for content and transaction hashes."""

    def test_content_hash_ignores_whitespace_and_markup(self):
        """Reformatted copies of an email hash identically."""
        a = compute_content_hash("Trade Confirmation", "A@wealthsimple.com", "<p>Bought 100 AAPL</p>")
        b = compute_content_hash(
            "Trade  Confirmation", "a@wealthsimple.com", "<div>Bought\n100   AAPL</div>"
        )

        assert a == b
        assert len(a) == 16

    def test_content_hash_changes_with_content(self):
        a = compute_content_hash("Trade Confirmation", "a@wealthsimple.com", "Bought 100 AAPL")
        b = compute_content_hash("Trade Confirmation", "a@wealthsimple.com", "Bought 101 AAPL")

        assert a != b

    def test_transaction_hash_normalizes_numbers(self):
        """100 and 100.0000 shares hash the same."""
        a = compute_transaction_hash(
            "aapl", TransactionType.BUY, Decimal("100"), Decimal("150.25"), date(2025, 1, 15)
        )
        b = compute_transaction_hash(
            "AAPL", "buy", Decimal("100.0000"), Decimal("150.250"), date(2025, 1, 15)
        )

        assert a == b
        assert len(a) == 20

    def test_transaction_hash_differs_by_type(self):
        buy = compute_transaction_hash(
            "AAPL", TransactionType.BUY, Decimal("1"), Decimal("1"), date(2025, 1, 15)
        )
        sell = compute_transaction_hash(
            "AAPL", TransactionType.SELL, Decimal("1"), Decimal("1"), date(2025, 1, 15)
        )

        assert buy != sell


class TestIdExtraction:
    """Tests for order id, confirmation number and message id extraction."""

    def test_extract_order_ids(self):
        """Labeled and Wealthsimple-style ids are found and upper-cased."""
        text = "Order ID: WS123456789\nReference # ab12345678\nAlso see ws-987654321"

        assert extract_order_ids(text) == {"WS123456789", "AB12345678", "WS-987654321"}

    def test_extract_order_ids_ignores_prose(self):
        assert extract_order_ids("Your order has been executed successfully.") == set()

    def test_extract_confirmation_numbers_need_digits(self):
        """Confirmation labels followed by words are not ids."""
        assert extract_confirmation_numbers("Confirmation #: CF-2025-0001") == {"CF-2025-0001"}
        assert extract_confirmation_numbers("Confirmation: CNR Purchase Complete") == set()

    def test_message_id_from_headers(self):
        """Header Message-ID is used when the field is empty."""
        email = RawEmail(
            subject="s",
            from_address="a@b.com",
            headers={"Message-ID": "<Header-ID@example.com>"},
        )

        assert extract_message_id(email) == "header-id@example.com"

    def test_message_id_field_wins(self):
        email = RawEmail(
            subject="s",
            from_address="a@b.com",
            message_id="<Field@example.com>",
            headers={"Message-ID": "<header@example.com>"},
        )

        assert extract_message_id(email) == "field@example.com"


class TestBuildIdentification:
    """Tests for build_identification."""

    def test_merges_candidate_and_body_ids(self, make_email, make_candidate):
        """Ids found by the parser and in the body are combined."""
        email = make_email(body="Order ID: WS123456789\nConfirmation #: CF-000123")
        candidate = make_candidate(order_ids={"WS-555666777"})

        identification = build_identification(email, candidate)

        assert identification.order_ids == {"WS123456789", "WS-555666777"}
        assert identification.confirmation_numbers == {"CF-000123"}
        assert identification.linkage_ids == {"WS123456789", "WS-555666777", "CF-000123"}
        assert identification.transaction_hash is not None
        assert identification.from_email == "notifications@wealthsimple.com"

    def test_without_candidate_has_no_transaction_hash(self, make_email):
        identification = build_identification(make_email())

        assert identification.transaction_hash is None

    def test_import_keys_always_include_content_hash(self, make_email, make_candidate):
        """Message id and content hash are both claimed when the id is known."""
        with_id = build_identification(make_email(message_id="<a@b.com>"), make_candidate())
        without_id = build_identification(make_email(message_id=None), make_candidate())

        assert with_id.import_keys() == ["mid:a@b.com", f"hash:{with_id.content_hash}"]
        assert without_id.import_keys() == [f"hash:{without_id.content_hash}"]

    def test_round_trip_dict(self, make_identification):
        identification = make_identification()

        restored = type(identification).from_dict(identification.to_dict())

        assert restored == identification

    def test_same_email_same_fingerprint(self, make_email, make_candidate):
        """Re-identifying an email is deterministic apart from the timestamp."""
        a = build_identification(make_email(), make_candidate())
        b = build_identification(make_email(), make_candidate())

        assert a.message_id == b.message_id
        assert a.content_hash == b.content_hash
        assert a.transaction_hash == b.transaction_hash


class TestCandidate:
    """Tests for EmailCandidate invariants."""

    def test_confidence_is_clamped(self, make_candidate):
        assert make_candidate(confidence=1.7).confidence == 1.0
        assert make_candidate(confidence=-0.2).confidence == 0.0

    def test_excerpt_is_truncated(self, make_candidate):
        candidate = make_candidate(raw_content_excerpt="x" * 900)

        assert len(candidate.raw_content_excerpt) == 500

    def test_with_changes_returns_copy(self, make_candidate):
        """Candidates are replaced, never edited in place."""
        original = make_candidate()
        changed = original.with_changes(symbol="MSFT")

        assert original.symbol == "AAPL"
        assert changed.symbol == "MSFT"

    def test_zero_quantity_types(self, make_candidate):
        assert make_candidate(transaction_type=TransactionType.DIVIDEND).allows_zero_quantity
        assert not make_candidate(transaction_type=TransactionType.BUY).allows_zero_quantity

    def test_dict_round_trip(self, make_candidate):
        candidate = make_candidate(confirmation_numbers={"CF-1"})

        assert EmailCandidate.from_dict(candidate.to_dict()) == candidate
