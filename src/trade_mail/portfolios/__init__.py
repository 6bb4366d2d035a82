"""Portfolio resolution from broker account labels."""

from .resolver import (
    ACCOUNT_ALIASES,
    AccountAlias,
    PortfolioResolution,
    PortfolioResolver,
    find_alias,
    normalize_label,
)

__all__ = [
    "ACCOUNT_ALIASES",
    "AccountAlias",
    "PortfolioResolution",
    "PortfolioResolver",
    "find_alias",
    "normalize_label",
]
