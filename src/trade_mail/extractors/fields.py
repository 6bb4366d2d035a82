"""
Field parsing shared by all templates.

Turns raw strings ("C$12,412.50", "January 15, 2025 at 10:30 AM EST",
"Bought 100 shares of AAPL") into typed values, and maps broker
"Label: value" pairs onto candidate fields.

Supported formats:
- Dates: 2025-01-15, 01/15/2025, January 15, 2025, Jan 15 2025
- Amounts: 1,234.56 with $, C$, US$, CAD, USD prefixes/suffixes
- Times: 10:30 AM, 09:45 with EST/EDT/ET/UTC style zones
"""

import re
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Optional

from ..schemas import AssetType, TransactionType
from .base import TemplateExtraction

TICKER = r"[A-Z]{1,5}(?:\.[A-Z]{1,2})?"
NUMBER = r"\d{1,3}(?:,\d{3})+(?:\.\d+)?|\d+(?:\.\d+)?"
MONEY_PREFIX = r"(?:C\$|CA\$|US\$|\$|CAD\s*|USD\s*)?"

SIMPLE_TICKER_RE = re.compile(rf"^{TICKER}$")
TICKER_IN_PARENS_RE = re.compile(rf"\(({TICKER})\)")
NUMBER_RE = re.compile(rf"-?(?:{NUMBER})")

# Narrative trade sentences: (pattern, type). Groups: quantity, symbol.
TRANSACTION_PATTERNS = [
    (
        re.compile(
            rf"(?i:\b(?:bought|purchased|buy|acquired))\s+({NUMBER})\s+"
            rf"(?i:(?:shares?|units?)\s+of\s+)?({TICKER})\b"
        ),
        TransactionType.BUY,
    ),
    (
        re.compile(
            rf"(?i:\b(?:sold|sell))\s+({NUMBER})\s+(?i:(?:shares?|units?)\s+of\s+)?({TICKER})\b"
        ),
        TransactionType.SELL,
    ),
]

DIVIDEND_PATTERN = re.compile(
    rf"(?i:dividend(?:\s+payment)?\s+of)\s+{MONEY_PREFIX}({NUMBER})\s+"
    rf"(?i:(?:from|on|for))\s+(?:[^()\n]*\()?({TICKER})\b"
)

OPTION_PATTERN = re.compile(
    rf"\b({TICKER}\s+(?:JAN|FEB|MAR|APR|MAY|JUN|JUL|AUG|SEP|OCT|NOV|DEC)[A-Z]*\s+\d{{1,2}}"
    rf"(?:,?\s+\d{{4}})?\s+\$?\d+(?:\.\d+)?\s+(?:CALL|PUT))\b",
    re.IGNORECASE,
)

PRICE_PATTERNS = [
    # "at $150.25" needs an explicit money marker ("at 10:30" is a time)
    re.compile(rf"\bat\s+(?:a\s+price\s+of\s+)?(?:C\$|CA\$|US\$|\$)\s*({NUMBER})", re.IGNORECASE),
    re.compile(
        rf"\b(?:price|price per share|execution price|average price)\s*(?:of|:)?\s*{MONEY_PREFIX}({NUMBER})",
        re.IGNORECASE,
    ),
    re.compile(rf"{MONEY_PREFIX}({NUMBER})\s*(?:per\s+share|each|/\s*share)", re.IGNORECASE),
]

TOTAL_PATTERNS = [
    re.compile(
        rf"\b(?:total(?:\s+(?:amount|cost|value))?|net\s+amount|net\s+proceeds)\s*(?:of|:|was|is)?\s*{MONEY_PREFIX}({NUMBER})",
        re.IGNORECASE,
    ),
    re.compile(rf"\bfor\s+a\s+total\s+of\s+{MONEY_PREFIX}({NUMBER})", re.IGNORECASE),
]

FEE_PATTERN = re.compile(
    rf"\b(?:fees?|commission|charge)s?\s*(?:of|:)?\s*{MONEY_PREFIX}({NUMBER})", re.IGNORECASE
)

QUANTITY_PATTERN = re.compile(
    rf"\b({NUMBER})\s+(?:shares?|units?|contracts?)\b", re.IGNORECASE
)

# Account patterns: (pattern, canonical label)
ACCOUNT_PATTERNS = [
    (re.compile(r"\bTFSA\b|tax[-\s]free\s+savings", re.IGNORECASE), "TFSA"),
    (re.compile(r"\bRRSP\b|registered\s+retirement\s+savings", re.IGNORECASE), "RRSP"),
    (re.compile(r"\bRESP\b|registered\s+education\s+savings", re.IGNORECASE), "RESP"),
    (re.compile(r"\bLIRA\b|locked[-\s]in\s+retirement", re.IGNORECASE), "LIRA"),
    (re.compile(r"\bRRIF\b|registered\s+retirement\s+income", re.IGNORECASE), "RRIF"),
    (re.compile(r"\bmargin\b|non[-\s]registered", re.IGNORECASE), "Margin"),
    (re.compile(r"\bcash\s+account\b", re.IGNORECASE), "Cash"),
]

MONTHS = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
}

# Date patterns (ordered by specificity)
DATE_PATTERNS = [
    # ISO format: 2025-01-15
    (re.compile(r"\b(\d{4})-(\d{2})-(\d{2})\b"), "iso"),
    # Month name: January 15, 2025 / Jan 15 2025
    (
        re.compile(
            r"\b(Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Oct|Nov|Dec)[a-z]*\.?\s+(\d{1,2})(?:st|nd|rd|th)?,?\s+(\d{4})\b",
            re.IGNORECASE,
        ),
        "month_name",
    ),
    # North American slash format: 01/15/2025
    (re.compile(r"\b(\d{1,2})/(\d{1,2})/(\d{4})\b"), "us_slash"),
]

TIME_PATTERN = re.compile(r"\b(\d{1,2}):(\d{2})(?::\d{2})?\s*([AaPp]\.?[Mm]\.?)?")
TIMEZONE_PATTERN = re.compile(r"\b(EST|EDT|ET|CST|CDT|MST|MDT|PST|PDT|UTC|GMT)\b")

CURRENCY_PATTERNS = [
    (re.compile(r"C\$|CA\$|\bCAD\b"), "CAD"),
    (re.compile(r"US\$|\bUSD\b"), "USD"),
    (re.compile(r"€|\bEUR\b"), "EUR"),
    (re.compile(r"£|\bGBP\b"), "GBP"),
]

# Broker labels -> logical field
LABEL_FIELDS = {
    "account": "account",
    "account type": "account",
    "account name": "account",
    "action": "action",
    "transaction": "action",
    "transaction type": "action",
    "order type": "action",
    "type": "action",
    "side": "action",
    "symbol": "symbol",
    "ticker": "symbol",
    "security": "security",
    "stock": "security",
    "option": "option",
    "company": "asset_name",
    "security name": "asset_name",
    "quantity": "quantity",
    "shares": "quantity",
    "shares held": "quantity",
    "filled quantity": "quantity",
    "contracts": "quantity",
    "units": "quantity",
    "price": "price",
    "execution price": "price",
    "average price": "price",
    "fill price": "price",
    "price per share": "price",
    "dividend rate": "price",
    "total": "total",
    "total amount": "total",
    "total cost": "total",
    "total value": "total",
    "net amount": "total",
    "net proceeds": "total",
    "amount": "total",
    "value": "total",
    "gross amount": "gross",
    "gross proceeds": "gross",
    "commission": "fees",
    "fee": "fees",
    "fees": "fees",
    "trade date": "date",
    "transaction date": "date",
    "execution date": "date",
    "payment date": "date",
    "expiration date": "date",
    "date": "date",
    "execution time": "datetime",
    "time": "datetime",
    "filled at": "datetime",
    "executed at": "datetime",
    "currency": "currency",
    "order id": "order_id",
    "order number": "order_id",
    "order #": "order_id",
    "reference": "order_id",
    "reference number": "order_id",
    "confirmation": "confirmation",
    "confirmation number": "confirmation",
    "confirmation #": "confirmation",
}

TRADE_KEYWORDS = re.compile(
    r"trade|order|bought|sold|purchase|confirmation|executed|filled|dividend|expir",
    re.IGNORECASE,
)


def normalize_label(label: str) -> str:
    """'  Total Amount: ' -> 'total amount'."""
    label = re.sub(r"\s+", " ", label or "").strip().rstrip(":").strip()
    return label.lower()


def parse_amount(value: Optional[str]) -> Optional[Decimal]:
    """Parse the first amount in a string ('C$12,412.50' -> 12412.50)."""
    if not value:
        return None
    match = NUMBER_RE.search(value)
    if not match:
        return None
    try:
        return Decimal(match.group(0).replace(",", ""))
    except InvalidOperation:
        return None


def detect_currency(text: Optional[str]) -> Optional[str]:
    """ISO code from an explicit marker (C$, USD, €); bare '$' is ambiguous."""
    if not text:
        return None
    for pattern, code in CURRENCY_PATTERNS:
        if pattern.search(text):
            return code
    return None


def parse_trade_date(text: Optional[str]) -> Optional[date]:
    """Parse the first date found in text."""
    if not text:
        return None
    for pattern, kind in DATE_PATTERNS:
        match = pattern.search(text)
        if not match:
            continue
        try:
            if kind == "iso":
                return date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
            if kind == "month_name":
                month = MONTHS[match.group(1)[:3].lower()]
                return date(int(match.group(3)), month, int(match.group(2)))
            if kind == "us_slash":
                return date(int(match.group(3)), int(match.group(1)), int(match.group(2)))
        except ValueError:
            continue
    return None


def parse_time(text: Optional[str]) -> tuple[Optional[str], Optional[str]]:
    """Execution time as HH:MM (24h) and the printed timezone, if any."""
    if not text:
        return None, None
    time_value = None
    match = TIME_PATTERN.search(text)
    if match:
        hour, minute = int(match.group(1)), int(match.group(2))
        meridiem = (match.group(3) or "").replace(".", "").lower()
        if meridiem == "pm" and hour < 12:
            hour += 12
        elif meridiem == "am" and hour == 12:
            hour = 0
        if hour < 24 and minute < 60:
            time_value = f"{hour:02d}:{minute:02d}"
    tz_match = TIMEZONE_PATTERN.search(text)
    return time_value, tz_match.group(1) if tz_match else None


def parse_symbol(value: Optional[str]) -> tuple[Optional[str], Optional[str]]:
    """
    Symbol and asset name from a security cell.

    'Apple Inc. (AAPL)' -> ('AAPL', 'Apple Inc.'); 'CNR.TO' -> ('CNR.TO', None)
    """
    if not value:
        return None, None
    value = re.sub(r"\s+", " ", value).strip()
    paren = TICKER_IN_PARENS_RE.search(value)
    if paren:
        name = value[: paren.start()].strip(" -") or None
        return paren.group(1), name
    token = value.split(" ")[0].upper()
    if SIMPLE_TICKER_RE.match(token):
        return token, None
    return value.upper(), None


def parse_account(text: Optional[str]) -> Optional[str]:
    """Canonical account label found anywhere in text (TFSA, RRSP, Margin...)."""
    if not text:
        return None
    for pattern, label in ACCOUNT_PATTERNS:
        if pattern.search(text):
            return label
    return None


def parse_action(value: Optional[str]) -> Optional[TransactionType]:
    """Transaction type from an action cell or subject line."""
    if not value:
        return None
    lowered = value.lower()
    if "dividend" in lowered or "distribution" in lowered:
        return TransactionType.DIVIDEND
    if "expir" in lowered:
        return TransactionType.OPTION_EXPIRED
    if "split" in lowered:
        return TransactionType.SPLIT
    if re.search(r"\b(?:sold|sell|sale)\b", lowered):
        return TransactionType.SELL
    if re.search(r"\b(?:bought|buy|purchased?|acquired)\b", lowered):
        return TransactionType.BUY
    return None


def match_trade_sentence(
    text: str,
) -> Optional[tuple[TransactionType, Decimal, str]]:
    """Find 'Bought 100 shares of AAPL' style sentences."""
    for pattern, tx_type in TRANSACTION_PATTERNS:
        match = pattern.search(text or "")
        if match:
            return tx_type, Decimal(match.group(1).replace(",", "")), match.group(2)
    return None


def looks_like_trade(text: str) -> bool:
    return bool(TRADE_KEYWORDS.search(text or ""))


def sender_domain(from_address: str) -> str:
    """'Wealthsimple <trade@mail.wealthsimple.com>' -> 'mail.wealthsimple.com'."""
    match = re.search(r"@([A-Za-z0-9.-]+)", from_address or "")
    return match.group(1).lower().rstrip(".") if match else ""


def domain_matches(from_address: str, domains: tuple[str, ...]) -> bool:
    host = sender_domain(from_address)
    return any(host == d or host.endswith("." + d) for d in domains)


def infer_asset_type(symbol: Optional[str], context: str = "") -> Optional[AssetType]:
    """Local asset-type guess used when no lookup is available."""
    if not symbol:
        return None
    upper = symbol.upper()
    if OPTION_PATTERN.search(upper) or re.search(r"\b(?:CALL|PUT)\b", upper) or re.search(
        r"\d{6}[CP]\d{8}$", upper
    ):
        return AssetType.OPTION
    if re.search(r"-(?:USD|CAD)$", upper) or upper in {"BTC", "ETH"}:
        return AssetType.CRYPTO
    if re.search(r"\bETF\b", context or "", re.IGNORECASE):
        return AssetType.ETF
    return AssetType.STOCK


def interpret_labeled_fields(fields: dict[str, str], context: str = "") -> TemplateExtraction:
    """
    Map broker 'Label: value' pairs onto a TemplateExtraction.

    Args:
        fields: Normalized label -> raw value (first occurrence wins)
        context: Subject plus body text, used to infer the type and currency
                 when no label carries them

    Returns:
        TemplateExtraction (fields not found stay None)
    """
    result = TemplateExtraction()
    by_field: dict[str, str] = {}
    for label, value in fields.items():
        key = LABEL_FIELDS.get(normalize_label(label))
        if key and value and key not in by_field:
            by_field[key] = value.strip()
    result.raw_matches = dict(by_field)

    # Action cell may carry type, quantity and symbol at once
    action = by_field.get("action")
    if action:
        sentence = match_trade_sentence(action)
        if sentence:
            result.transaction_type, result.quantity, result.symbol = sentence
        else:
            result.transaction_type = parse_action(action)

    # Symbol
    if "symbol" in by_field:
        result.symbol, _ = parse_symbol(by_field["symbol"])
    if "option" in by_field:
        option = re.sub(r"\s+", " ", by_field["option"]).strip().upper()
        result.symbol = result.symbol or option
        result.asset_type_hint = AssetType.OPTION
    if "security" in by_field:
        symbol, name = parse_symbol(by_field["security"])
        result.symbol = result.symbol or symbol
        result.asset_name = name
    if "asset_name" in by_field:
        result.asset_name = by_field["asset_name"]

    if result.transaction_type is None:
        result.transaction_type = parse_action(context)

    # Quantities and amounts
    if "quantity" in by_field:
        result.quantity = parse_amount(by_field["quantity"])
    if "price" in by_field:
        result.price = parse_amount(by_field["price"])
    if "total" in by_field:
        result.total_amount = parse_amount(by_field["total"])
    elif "gross" in by_field:
        result.total_amount = parse_amount(by_field["gross"])
    if "fees" in by_field:
        result.fees = parse_amount(by_field["fees"])

    if result.transaction_type == TransactionType.OPTION_EXPIRED:
        result.asset_type_hint = AssetType.OPTION
        if result.price is None:
            result.price = Decimal("0")

    # Account
    if "account" in by_field:
        result.account_type_label = re.sub(r"\s+", " ", by_field["account"]).strip()

    # Date and time
    if "date" in by_field:
        result.transaction_date = parse_trade_date(by_field["date"])
    if "datetime" in by_field:
        result.transaction_date = result.transaction_date or parse_trade_date(by_field["datetime"])
        result.execution_time, result.timezone = parse_time(by_field["datetime"])

    # Currency: explicit label, then markers in amounts, then anywhere
    if "currency" in by_field:
        result.currency = detect_currency(by_field["currency"]) or by_field["currency"][:3].upper()
    else:
        amounts = " ".join(by_field.get(k, "") for k in ("price", "total", "gross", "fees"))
        result.currency = detect_currency(amounts) or detect_currency(context)

    # Broker ids
    if "order_id" in by_field:
        result.order_ids.add(by_field["order_id"].split()[0].upper())
    if "confirmation" in by_field:
        result.confirmation_numbers.add(by_field["confirmation"].split()[0].upper())

    if result.asset_type_hint is None and result.symbol:
        result.asset_type_hint = infer_asset_type(result.symbol, context)

    return result
