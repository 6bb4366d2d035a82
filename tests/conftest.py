"""Test fixtures and utilities."""

from datetime import date, datetime, timezone
from decimal import Decimal
from pathlib import Path

import pytest

from trade_mail.config import Config, SourceConfig
from trade_mail.schemas import (
    AssetType,
    EmailCandidate,
    ParseMethod,
    RawEmail,
    TransactionType,
    build_identification,
)
from trade_mail.state_store import StateStore
from trade_mail.symbol_lookup import SymbolLookup, SymbolLookupResponse

# Sample Wealthsimple notifications
STOCK_BUY_HTML = """
<html>
  <body>
    <h2>Trade Confirmation</h2>
    <p>Your order has been executed successfully.</p>

    <div class="trade-details">
      <h3>Transaction Details</h3>
      <p><strong>Account:</strong> TFSA - Tax-Free Savings Account</p>
      <p><strong>Action:</strong> Bought 100 shares of AAPL</p>
      <p><strong>Price:</strong> $150.25 per share</p>
      <p><strong>Total Amount:</strong> $15,025.00</p>
      <p><strong>Execution Time:</strong> January 15, 2025 at 10:30 AM EST</p>
      <p><strong>Order ID:</strong> WS123456789</p>
    </div>

    <div class="company-info">
      <p><strong>Security:</strong> Apple Inc. (AAPL)</p>
      <p><strong>Exchange:</strong> NASDAQ</p>
      <p><strong>Currency:</strong> USD</p>
    </div>
  </body>
</html>
"""

STOCK_BUY_TEXT = """
Trade Confirmation

Your order has been executed successfully.

Transaction Details:
Account: TFSA - Tax-Free Savings Account
Action: Bought 100 shares of AAPL
Price: $150.25 per share
Total Amount: $15,025.00
Execution Time: January 15, 2025 at 10:30 AM EST
Order ID: WS123456789

Security: Apple Inc. (AAPL)
Exchange: NASDAQ
Currency: USD
"""

STOCK_SELL_HTML = """
<html>
  <body>
    <h2>Order Filled</h2>
    <p>Your sell order has been completed.</p>

    <div class="transaction">
      <p><strong>Account Type:</strong> RRSP</p>
      <p><strong>Transaction:</strong> Sold 50 shares of TSLA</p>
      <p><strong>Execution Price:</strong> $248.75</p>
      <p><strong>Gross Proceeds:</strong> $12,437.50</p>
      <p><strong>Commission:</strong> $0.00</p>
      <p><strong>Net Proceeds:</strong> $12,437.50</p>
      <p><strong>Settlement Date:</strong> 2025-01-17</p>
      <p><strong>Trade Date:</strong> 2025-01-15</p>
    </div>
  </body>
</html>
"""

CANADIAN_STOCK_HTML = """
<html>
  <body>
    <h1>Trade Executed</h1>
    <p>Your purchase order has been filled.</p>

    <table>
      <tr><td>Account:</td><td>Margin Account</td></tr>
      <tr><td>Symbol:</td><td>CNR.TO</td></tr>
      <tr><td>Company:</td><td>Canadian National Railway Company</td></tr>
      <tr><td>Action:</td><td>Buy</td></tr>
      <tr><td>Quantity:</td><td>75 shares</td></tr>
      <tr><td>Price:</td><td>C$165.50</td></tr>
      <tr><td>Total:</td><td>C$12,412.50</td></tr>
      <tr><td>Time:</td><td>09:45 EST on 2025-01-15</td></tr>
    </table>
  </body>
</html>
"""

OPTION_EXPIRED_HTML = """
<html>
  <body>
    <h2>Option Expiration</h2>
    <p>The following option in your account has expired.</p>

    <div class="option-details">
      <p><strong>Account:</strong> Cash Account</p>
      <p><strong>Option:</strong> NVDA MAY 30 $108 CALL</p>
      <p><strong>Quantity:</strong> 2 contracts</p>
      <p><strong>Expiration Date:</strong> May 30, 2025</p>
      <p><strong>Strike Price:</strong> $108.00</p>
      <p><strong>Status:</strong> Expired Out of the Money</p>
      <p><strong>Value:</strong> $0.00</p>
    </div>
  </body>
</html>
"""

DIVIDEND_HTML = """
<html>
  <body>
    <h2>Dividend Received</h2>
    <p>A dividend payment has been credited to your account.</p>

    <div class="dividend-info">
      <p><strong>Account:</strong> TFSA</p>
      <p><strong>Security:</strong> Royal Bank of Canada (RY.TO)</p>
      <p><strong>Payment Date:</strong> January 15, 2025</p>
      <p><strong>Record Date:</strong> December 15, 2024</p>
      <p><strong>Dividend Rate:</strong> C$1.38 per share</p>
      <p><strong>Shares Held:</strong> 100</p>
      <p><strong>Gross Amount:</strong> C$138.00</p>
      <p><strong>Withholding Tax:</strong> C$0.00</p>
      <p><strong>Net Amount:</strong> C$138.00</p>
    </div>
  </body>
</html>
"""

NARRATIVE_TEXT = """
Hello,

You bought 100 shares of AAPL at $150.25 per share in your TFSA account on 2025-01-15.
Total cost: $15,025.00

Thank you for trading with us.
"""

RECEIVED_AT = datetime(2025, 1, 15, 16, 0, tzinfo=timezone.utc)


class StubSymbolLookup(SymbolLookup):
    """In-process lookup returning canned answers."""

    def __init__(self, answers=None, error=None):
        self.answers = answers or {}
        self.error = error
        self.requests = []

    def lookup(self, request):
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        answer = self.answers.get(request.symbol_candidate)
        if answer is None:
            return None
        symbol, asset_type, confidence = answer
        return SymbolLookupResponse(
            normalized_symbol=symbol,
            asset_type=asset_type,
            confidence=confidence,
            model="stub",
        )


@pytest.fixture
def temp_db(tmp_path) -> Path:
    """Temporary database path for testing."""
    return tmp_path / "test_state.db"


@pytest.fixture
def store(temp_db) -> StateStore:
    """Fresh state store."""
    return StateStore(temp_db)


@pytest.fixture
def config(temp_db) -> Config:
    """Config with auto-insert on for the default source and a manual source."""
    return Config(
        sources={
            "default": SourceConfig(name="default", auto_insert_enabled=True),
            "manual": SourceConfig(name="manual", auto_insert_enabled=False),
        },
        state_db_path=temp_db,
        batch_delay_seconds=0,
    )


@pytest.fixture
def stock_buy_email() -> RawEmail:
    return RawEmail(
        subject="Trade Confirmation - AAPL Purchase",
        from_address="notifications@wealthsimple.com",
        html_body=STOCK_BUY_HTML,
        text_body=STOCK_BUY_TEXT,
        message_id="<trade-aapl-001@wealthsimple.com>",
        received_at=RECEIVED_AT,
    )


@pytest.fixture
def stock_sell_email() -> RawEmail:
    return RawEmail(
        subject="Trade Confirmation - TSLA Sale",
        from_address="trade@wealthsimple.com",
        html_body=STOCK_SELL_HTML,
        message_id="<trade-tsla-001@wealthsimple.com>",
        received_at=RECEIVED_AT,
    )


@pytest.fixture
def canadian_stock_email() -> RawEmail:
    return RawEmail(
        subject="Confirmation: CNR Purchase Complete",
        from_address="notifications@wealthsimple.com",
        html_body=CANADIAN_STOCK_HTML,
        message_id="<trade-cnr-001@wealthsimple.com>",
        received_at=RECEIVED_AT,
    )


@pytest.fixture
def option_expired_email() -> RawEmail:
    return RawEmail(
        subject="Option Expiration Notice - NVDA Call",
        from_address="notifications@wealthsimple.com",
        html_body=OPTION_EXPIRED_HTML,
        message_id="<option-nvda-001@wealthsimple.com>",
        received_at=RECEIVED_AT,
    )


@pytest.fixture
def dividend_email() -> RawEmail:
    return RawEmail(
        subject="Dividend Payment - RY.TO",
        from_address="notifications@wealthsimple.com",
        html_body=DIVIDEND_HTML,
        message_id="<dividend-ry-001@wealthsimple.com>",
        received_at=RECEIVED_AT,
    )


@pytest.fixture
def narrative_email() -> RawEmail:
    return RawEmail(
        subject="Your trade was executed",
        from_address="alerts@examplebroker.com",
        text_body=NARRATIVE_TEXT,
        message_id="<narrative-001@examplebroker.com>",
        received_at=RECEIVED_AT,
    )


@pytest.fixture
def unrelated_email() -> RawEmail:
    return RawEmail(
        subject="Welcome to Wealthsimple",
        from_address="welcome@wealthsimple.com",
        html_body="<p>Welcome to our platform!</p>",
        text_body="Welcome to our platform!",
        message_id="<welcome-001@wealthsimple.com>",
    )


@pytest.fixture
def make_candidate():
    """Factory for candidates with sensible defaults."""

    def _make(**overrides) -> EmailCandidate:
        values = {
            "symbol": "AAPL",
            "transaction_type": TransactionType.BUY,
            "quantity": Decimal("100"),
            "price": Decimal("150.25"),
            "total_amount": Decimal("15025.00"),
            "transaction_date": date(2025, 1, 15),
            "account_type_label": "TFSA",
            "currency": "USD",
            "confidence": 0.95,
            "parse_method": ParseMethod.HTML,
            "asset_type_hint": AssetType.STOCK,
            "order_ids": {"WS123456789"},
        }
        values.update(overrides)
        return EmailCandidate(**values)

    return _make


@pytest.fixture
def make_email():
    """Factory for minimal raw emails."""

    def _make(
        message_id: str = "<msg-1@wealthsimple.com>",
        subject: str = "Trade Confirmation - AAPL Purchase",
        body: str = "Bought 100 shares of AAPL. Order ID: WS123456789",
    ) -> RawEmail:
        return RawEmail(
            subject=subject,
            from_address="notifications@wealthsimple.com",
            text_body=body,
            message_id=message_id,
            received_at=RECEIVED_AT,
        )

    return _make


@pytest.fixture
def make_identification(make_email, make_candidate):
    """Factory for identifications built from make_email/make_candidate."""

    def _make(email: RawEmail | None = None, candidate: EmailCandidate | None = None):
        return build_identification(email or make_email(), candidate or make_candidate())

    return _make


@pytest.fixture
def stub_lookup():
    """Lookup class with canned answers: stub_lookup({raw: (symbol, type, confidence)})."""
    return StubSymbolLookup
