"""
Text templates.

- WealthsimpleTextTemplate: "Label: value" lines from the plain-text part
- NarrativeTemplate: broker-agnostic sentences ("You bought 100 shares of
  AAPL at $150.25"), the lowest-trust fallback
"""

import logging
import re
from decimal import Decimal

from ..schemas import AssetType, ParseMethod, RawEmail, TransactionType
from ..schemas.identification import email_body_text
from .base import BaseTemplate, TemplateExtraction
from .fields import (
    DIVIDEND_PATTERN,
    FEE_PATTERN,
    LABEL_FIELDS,
    OPTION_PATTERN,
    PRICE_PATTERNS,
    QUANTITY_PATTERN,
    TOTAL_PATTERNS,
    detect_currency,
    domain_matches,
    infer_asset_type,
    interpret_labeled_fields,
    looks_like_trade,
    match_trade_sentence,
    normalize_label,
    parse_account,
    parse_action,
    parse_amount,
    parse_time,
    parse_trade_date,
)
from .html_template import WEALTHSIMPLE_DOMAINS

logger = logging.getLogger(__name__)

LABELED_LINE_RE = re.compile(r"^[ \t]*([A-Za-z][A-Za-z #/]{0,40}?)[ \t]*:[ \t]*(\S.*?)[ \t]*$", re.MULTILINE)

# A labeled layout needs at least this many known labels
MIN_KNOWN_LABELS = 2


def collect_text_fields(text: str) -> dict[str, str]:
    """Collect 'Label: value' lines (first occurrence wins)."""
    fields: dict[str, str] = {}
    for match in LABELED_LINE_RE.finditer(text or ""):
        label = normalize_label(match.group(1))
        fields.setdefault(label, match.group(2))
    return fields


def _known_label_count(fields: dict[str, str]) -> int:
    return sum(1 for label in fields if label in LABEL_FIELDS)


class WealthsimpleTextTemplate(BaseTemplate):
    """Labeled regex capture over Wealthsimple plain-text notifications."""

    @property
    def name(self) -> str:
        return "wealthsimple_text"

    @property
    def priority(self) -> int:
        return 50

    @property
    def method(self) -> ParseMethod:
        return ParseMethod.TEXT

    def matches(self, email: RawEmail) -> bool:
        if not domain_matches(email.from_address, WEALTHSIMPLE_DOMAINS):
            return False
        text = email_body_text(email)
        if not looks_like_trade(f"{email.subject} {text}"):
            return False
        return _known_label_count(collect_text_fields(text)) >= MIN_KNOWN_LABELS

    def extract(self, email: RawEmail) -> TemplateExtraction:
        text = email_body_text(email)
        fields = collect_text_fields(text)
        logger.debug("Text template found %d labeled lines", len(fields))
        return interpret_labeled_fields(fields, f"{email.subject}\n{text}")


class NarrativeTemplate(BaseTemplate):
    """
    Free-form sentence patterns, independent of broker.

    Handles:
    - "You bought 100 shares of AAPL at $150.25"
    - "A dividend of C$138.00 from Royal Bank of Canada (RY.TO) ..."
    - "Your NVDA MAY 30 $108 CALL option expired"
    """

    @property
    def name(self) -> str:
        return "narrative_text"

    @property
    def priority(self) -> int:
        return 10

    @property
    def method(self) -> ParseMethod:
        return ParseMethod.TEXT

    def matches(self, email: RawEmail) -> bool:
        text = f"{email.subject}\n{email_body_text(email)}"
        if match_trade_sentence(text) or DIVIDEND_PATTERN.search(text):
            return True
        return bool(OPTION_PATTERN.search(text)) and "expir" in text.lower()

    def extract(self, email: RawEmail) -> TemplateExtraction:
        body = email_body_text(email)
        text = f"{email.subject}\n{body}"
        result = TemplateExtraction()

        sentence = match_trade_sentence(text)
        dividend = DIVIDEND_PATTERN.search(text)
        option = OPTION_PATTERN.search(text)

        if sentence:
            result.transaction_type, result.quantity, result.symbol = sentence
            result.raw_matches["sentence"] = True
        elif dividend:
            result.transaction_type = TransactionType.DIVIDEND
            result.total_amount = parse_amount(dividend.group(1))
            result.symbol = dividend.group(2)
            result.raw_matches["dividend"] = dividend.group(0)
        elif option and "expir" in text.lower():
            result.transaction_type = TransactionType.OPTION_EXPIRED
            result.symbol = " ".join(option.group(1).upper().split())
            result.asset_type_hint = AssetType.OPTION
            result.price = Decimal("0")
            result.total_amount = Decimal("0")
        else:
            result.transaction_type = parse_action(email.subject)

        if result.quantity is None:
            quantity = QUANTITY_PATTERN.search(body)
            if quantity:
                result.quantity = parse_amount(quantity.group(1))

        if result.price is None:
            for pattern in PRICE_PATTERNS:
                match = pattern.search(body)
                if match:
                    result.price = parse_amount(match.group(1))
                    break

        if result.total_amount is None:
            for pattern in TOTAL_PATTERNS:
                match = pattern.search(body)
                if match:
                    result.total_amount = parse_amount(match.group(1))
                    break

        fee = FEE_PATTERN.search(body)
        if fee:
            result.fees = parse_amount(fee.group(1))

        result.account_type_label = parse_account(body)
        result.transaction_date = parse_trade_date(body)
        result.execution_time, result.timezone = parse_time(body)
        result.currency = detect_currency(body)

        if result.asset_type_hint is None and result.symbol:
            result.asset_type_hint = infer_asset_type(result.symbol, body)

        return result
