"""
Duplicate detection result schema.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class DuplicateRecommendation(str, Enum):
    """What the detector suggests doing with a candidate."""

    ACCEPT = "accept"
    REVIEW = "review"
    REJECT = "reject"

    @property
    def severity(self) -> int:
        """Ordering used when combining levels (reject > review > accept)."""
        return {"accept": 0, "review": 1, "reject": 2}[self.value]


class DuplicateLevel(int, Enum):
    """Detection level, in decreasing certainty."""

    EXACT_EMAIL = 1
    ORDER_ID = 2
    FUZZY_DETAIL = 3


@dataclass
class DuplicateMatch:
    """Finding from a single detection level."""

    level: DuplicateLevel
    confidence: float
    recommendation: DuplicateRecommendation
    reasons: list[str] = field(default_factory=list)
    matched_transaction_ids: list[int] = field(default_factory=list)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "level": self.level.value,
            "confidence": round(self.confidence, 4),
            "recommendation": self.recommendation.value,
            "reasons": list(self.reasons),
            "matched_transaction_ids": list(self.matched_transaction_ids),
        }

    @classmethod
    def from_dict(cls, data: dict) -> DuplicateMatch:
        """Create from dictionary."""
        return cls(
            level=DuplicateLevel(data["level"]),
            confidence=float(data["confidence"]),
            recommendation=DuplicateRecommendation(data["recommendation"]),
            reasons=list(data.get("reasons", [])),
            matched_transaction_ids=list(data.get("matched_transaction_ids", [])),
        )


@dataclass
class DuplicateDetectionResult:
    """Advisory combination of all detection levels.

    Never stored as authoritative state; review items keep a snapshot for
    display only.
    """

    is_duplicate: bool = False
    confidence: float = 0.0
    recommendation: DuplicateRecommendation = DuplicateRecommendation.ACCEPT
    reasons: list[str] = field(default_factory=list)
    matched_transaction_ids: list[int] = field(default_factory=list)
    matches: list[DuplicateMatch] = field(default_factory=list)

    @classmethod
    def no_duplicate(cls) -> DuplicateDetectionResult:
        """Result used when nothing matched or detection failed open."""
        return cls()

    @classmethod
    def combine(cls, matches: list[DuplicateMatch]) -> DuplicateDetectionResult:
        """
        Combine per-level findings.

        - confidence: maximum over levels
        - reasons: concatenated in level order
        - recommendation: most severe among levels
        - matched ids: union, first-seen order
        """
        if not matches:
            return cls.no_duplicate()

        ordered = sorted(matches, key=lambda m: m.level.value)
        reasons: list[str] = []
        matched_ids: list[int] = []
        for match in ordered:
            reasons.extend(match.reasons)
            for tx_id in match.matched_transaction_ids:
                if tx_id not in matched_ids:
                    matched_ids.append(tx_id)

        recommendation = max(
            (m.recommendation for m in ordered), key=lambda r: r.severity
        )
        return cls(
            is_duplicate=recommendation != DuplicateRecommendation.ACCEPT,
            confidence=max(0.0, min(1.0, max(m.confidence for m in ordered))),
            recommendation=recommendation,
            reasons=reasons,
            matched_transaction_ids=matched_ids,
            matches=ordered,
        )

    @property
    def highest_level(self) -> DuplicateLevel | None:
        """Most certain level that produced a finding."""
        if not self.matches:
            return None
        return min((m.level for m in self.matches), key=lambda lvl: lvl.value)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "is_duplicate": self.is_duplicate,
            "confidence": round(self.confidence, 4),
            "recommendation": self.recommendation.value,
            "reasons": list(self.reasons),
            "matched_transaction_ids": list(self.matched_transaction_ids),
            "matches": [m.to_dict() for m in self.matches],
        }

    @classmethod
    def from_dict(cls, data: dict | None) -> DuplicateDetectionResult:
        """Create from dictionary (None -> no duplicate)."""
        if not data:
            return cls.no_duplicate()
        return cls(
            is_duplicate=bool(data.get("is_duplicate", False)),
            confidence=float(data.get("confidence", 0.0)),
            recommendation=DuplicateRecommendation(data.get("recommendation", "accept")),
            reasons=list(data.get("reasons", [])),
            matched_transaction_ids=list(data.get("matched_transaction_ids", [])),
            matches=[DuplicateMatch.from_dict(m) for m in data.get("matches", [])],
        )
