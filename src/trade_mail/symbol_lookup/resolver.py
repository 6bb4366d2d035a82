"""
Symbol resolution.

Simple tickers read with good parser confidence pass through unchanged.
Anything else goes to the optional lookup service; a failed, slow or
missing lookup falls back to the raw symbol.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from enum import Enum

from ..confidence import ConfidenceScorer
from ..config import ConfidenceThresholds
from ..errors import SymbolResolutionError
from ..extractors.fields import SIMPLE_TICKER_RE, infer_asset_type
from ..schemas import AssetType
from .prompts import MAX_CONTEXT_CHARS
from .service import SymbolLookup, SymbolLookupRequest

logger = logging.getLogger(__name__)


class SymbolSource(str, Enum):
    """Where a resolved symbol came from."""

    DIRECT = "direct"
    AI_ENHANCED = "ai-enhanced"
    AI_FALLBACK = "ai-fallback"


@dataclass
class SymbolResolution:
    """Resolved symbol with provenance."""

    symbol: str
    original_symbol: str
    asset_type: AssetType
    confidence: float
    source: SymbolSource
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "original_symbol": self.original_symbol,
            "asset_type": self.asset_type.value,
            "confidence": self.confidence,
            "source": self.source.value,
            "warnings": list(self.warnings),
        }


@dataclass
class SymbolBatchItem:
    """One input to resolve_batch."""

    symbol: str
    confidence: float
    asset_type_hint: AssetType | None = None
    context: str = ""


@dataclass
class SymbolBatchSummary:
    """Aggregated batch outcome."""

    results: list[SymbolResolution]
    by_source: dict[str, int]
    mean_confidence: float

    @property
    def total(self) -> int:
        return len(self.results)

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "by_source": dict(self.by_source),
            "mean_confidence": round(self.mean_confidence, 4),
            "results": [r.to_dict() for r in self.results],
        }


class SymbolResolver:
    """
    Normalizes and validates tickers.

    The lookup call runs on a worker thread so it can be abandoned after
    timeout_seconds regardless of what the lookup implementation does.
    """

    def __init__(
        self,
        lookup: SymbolLookup | None = None,
        thresholds: ConfidenceThresholds | None = None,
        timeout_seconds: float = 30,
    ):
        self.lookup = lookup
        self.thresholds = thresholds or ConfidenceThresholds()
        self.scorer = ConfidenceScorer(self.thresholds)
        self.timeout_seconds = timeout_seconds

    def is_simple_ticker(self, symbol: str) -> bool:
        return bool(SIMPLE_TICKER_RE.match(symbol or ""))

    def resolve(
        self,
        symbol: str,
        confidence: float,
        asset_type_hint: AssetType | None = None,
        context: str = "",
        thresholds: ConfidenceThresholds | None = None,
    ) -> SymbolResolution:
        """
        Resolve one symbol.

        Args:
            symbol: Raw symbol from the candidate
            confidence: Parser confidence for the candidate
            asset_type_hint: Parser's asset type guess, if any
            context: Email text around the trade (truncated before sending)
            thresholds: Per-source override of the resolver's thresholds

        Returns:
            SymbolResolution; never raises for lookup problems
        """
        thresholds = thresholds or self.thresholds
        raw = (symbol or "").strip()
        local_confidence = ConfidenceScorer.clamp(confidence)
        local_type = asset_type_hint or infer_asset_type(raw, context) or AssetType.STOCK

        if self.is_simple_ticker(raw) and local_confidence >= thresholds.direct_symbol_confidence:
            return SymbolResolution(
                symbol=raw,
                original_symbol=raw,
                asset_type=local_type,
                confidence=local_confidence,
                source=SymbolSource.DIRECT,
            )

        if self.lookup is None:
            return self._fallback(raw, local_type, local_confidence, "Symbol lookup not configured")

        request = SymbolLookupRequest(
            symbol_candidate=raw,
            context_snippet=(context or "")[:MAX_CONTEXT_CHARS],
            asset_type_hint=asset_type_hint,
        )

        try:
            response = self._lookup_with_timeout(request)
        except SymbolResolutionError as e:
            logger.warning("Symbol lookup failed for %s: %s", raw, e)
            return self._fallback(raw, local_type, local_confidence, f"Symbol lookup failed: {e}")
        except Exception as e:
            logger.warning("Unexpected symbol lookup error for %s: %s", raw, e, exc_info=True)
            return self._fallback(raw, local_type, local_confidence, f"Symbol lookup error: {e}")

        if response is None or not response.normalized_symbol:
            return self._fallback(
                raw, local_type, local_confidence, f"Symbol lookup could not identify {raw!r}"
            )

        scorer = self.scorer if thresholds is self.thresholds else ConfidenceScorer(thresholds)
        combined = scorer.combine_symbol_confidence(local_confidence, response.confidence)
        resolution = SymbolResolution(
            symbol=response.normalized_symbol.strip().upper(),
            original_symbol=raw,
            asset_type=response.asset_type or local_type,
            confidence=combined,
            source=SymbolSource.AI_ENHANCED,
        )
        if resolution.symbol != raw.upper():
            resolution.warnings.append(f"Symbol normalized from {raw!r} to {resolution.symbol!r}")
        logger.debug(
            "Symbol %s resolved to %s (confidence %.2f)", raw, resolution.symbol, combined
        )
        return resolution

    def resolve_batch(self, items: list[SymbolBatchItem]) -> SymbolBatchSummary:
        """Resolve each item independently and aggregate by source."""
        results = [
            self.resolve(item.symbol, item.confidence, item.asset_type_hint, item.context)
            for item in items
        ]
        return summarize_resolutions(results)

    def _lookup_with_timeout(self, request: SymbolLookupRequest):
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="symbol-lookup")
        future = executor.submit(self.lookup.lookup, request)
        try:
            return future.result(timeout=self.timeout_seconds)
        except FutureTimeoutError as e:
            future.cancel()
            raise SymbolResolutionError(
                f"lookup timed out after {self.timeout_seconds}s"
            ) from e
        finally:
            # Do not wait for a hung lookup thread
            executor.shutdown(wait=False)

    def _fallback(
        self,
        raw: str,
        asset_type: AssetType,
        confidence: float,
        warning: str,
    ) -> SymbolResolution:
        return SymbolResolution(
            symbol=raw.upper(),
            original_symbol=raw,
            asset_type=asset_type,
            confidence=confidence,
            source=SymbolSource.AI_FALLBACK,
            warnings=[f"{warning}; using raw symbol"],
        )


def summarize_resolutions(results: list[SymbolResolution]) -> SymbolBatchSummary:
    """Counts by source plus mean confidence."""
    by_source = {source.value: 0 for source in SymbolSource}
    for result in results:
        by_source[result.source.value] += 1
    mean = sum(r.confidence for r in results) / len(results) if results else 0.0
    return SymbolBatchSummary(results=results, by_source=by_source, mean_confidence=mean)
