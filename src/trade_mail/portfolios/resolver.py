"""
Account label to portfolio mapping.

Match order against existing portfolios:
1. Exact name (case-insensitive)
2. Substring in either direction
3. Whole-word overlap

Known Canadian account types are also tried under their long names, so
"TFSA" finds a portfolio called "Tax-Free Savings Account".
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Optional

from ..config import PortfolioConfig
from ..errors import PortfolioResolutionError
from ..state_store import PortfolioRecord, TradeStore

logger = logging.getLogger(__name__)

_WS_RE = re.compile(r"\s+")
_WORD_RE = re.compile(r"[A-Z]{2,}")
# Too common in portfolio names to identify one
_GENERIC_WORDS = frozenset({"ACCOUNT", "PORTFOLIO", "PLAN", "FUND", "THE", "AND", "JOINT"})


@dataclass(frozen=True)
class AccountAlias:
    """A registered account type."""

    code: str
    long_name: str
    currency: str
    variations: tuple[str, ...] = ()


ACCOUNT_ALIASES: tuple[AccountAlias, ...] = (
    AccountAlias("TFSA", "Tax-Free Savings Account", "CAD", ("TAX-FREE SAVINGS", "TAX FREE SAVINGS")),
    AccountAlias("RRSP", "Registered Retirement Savings Plan", "CAD", ("REGISTERED RETIREMENT SAVINGS", "RSP")),
    AccountAlias("RESP", "Registered Education Savings Plan", "CAD", ("REGISTERED EDUCATION",)),
    AccountAlias("LIRA", "Locked-In Retirement Account", "CAD", ("LOCKED-IN RETIREMENT",)),
    AccountAlias("RRIF", "Registered Retirement Income Fund", "CAD", ("RETIREMENT INCOME",)),
    AccountAlias("MARGIN", "Margin Account", "CAD", ("NON-REGISTERED",)),
    AccountAlias("CASH", "Cash Account", "CAD", ("PERSONAL",)),
)


@dataclass
class PortfolioResolution:
    """Which portfolio a label resolved to."""

    portfolio_id: int
    portfolio_name: str
    created: bool = False
    matched_by: str = "exact"

    def to_dict(self) -> dict:
        return {
            "portfolio_id": self.portfolio_id,
            "portfolio_name": self.portfolio_name,
            "created": self.created,
            "matched_by": self.matched_by,
        }


def normalize_label(label: Optional[str]) -> str:
    """Upper-case, trim and collapse whitespace."""
    return _WS_RE.sub(" ", (label or "").strip()).upper()


def find_alias(normalized: str) -> Optional[AccountAlias]:
    """Registered account type a normalized label refers to, if any."""
    for alias in ACCOUNT_ALIASES:
        if re.search(rf"\b{re.escape(alias.code)}\b", normalized):
            return alias
        if normalized == alias.long_name.upper():
            return alias
        if any(variation in normalized for variation in alias.variations):
            return alias
    return None


class PortfolioResolver:
    """Maps free-text account labels to portfolios, creating them when allowed."""

    def __init__(self, store: TradeStore, config: Optional[PortfolioConfig] = None):
        self.store = store
        self.config = config or PortfolioConfig()

    def resolve(self, label: Optional[str], allow_create: bool = True) -> PortfolioResolution:
        """
        Resolve an account label.

        Raises:
            PortfolioResolutionError: Empty label without a fallback, or no
                match while creation is disallowed
        """
        display = _WS_RE.sub(" ", (label or "").strip())
        if not display:
            if not self.config.fallback_account_label:
                raise PortfolioResolutionError("No account label in email and no fallback configured")
            display = self.config.fallback_account_label.strip()
            logger.info("No account label; using fallback %r", display)

        normalized = normalize_label(display)
        alias = find_alias(normalized)
        forms = [normalized]
        if alias:
            for form in (alias.code, alias.long_name.upper()):
                if form not in forms:
                    forms.append(form)

        portfolios = self.store.list_portfolios()
        match = self._match(forms, portfolios)
        if match:
            portfolio, how = match
            logger.debug("Label %r matched portfolio %r (%s)", display, portfolio.name, how)
            return PortfolioResolution(
                portfolio_id=portfolio.id,
                portfolio_name=portfolio.name,
                created=False,
                matched_by=how,
            )

        if not allow_create:
            raise PortfolioResolutionError(
                f"No portfolio matches account {display!r} and creation is disabled",
                label=display,
            )

        currency = alias.currency if alias else self.config.default_currency
        portfolio = self.store.create_portfolio(display, currency)
        logger.info("Created portfolio %r (%s) for account label", portfolio.name, portfolio.currency)
        return PortfolioResolution(
            portfolio_id=portfolio.id,
            portfolio_name=portfolio.name,
            created=True,
            matched_by="created",
        )

    def _match(
        self, forms: list[str], portfolios: list[PortfolioRecord]
    ) -> Optional[tuple[PortfolioRecord, str]]:
        names = [(p, normalize_label(p.name)) for p in portfolios]

        for form in forms:
            for portfolio, name in names:
                if name == form:
                    return portfolio, "exact"

        for form in forms:
            for portfolio, name in names:
                if form in name or name in form:
                    return portfolio, "substring"

        # Words of the label itself only; alias long names share generic words
        for word in _WORD_RE.findall(forms[0]):
            if word in _GENERIC_WORDS:
                continue
            pattern = re.compile(rf"\b{re.escape(word)}\b")
            for portfolio, name in names:
                if pattern.search(name):
                    return portfolio, "word"

        return None