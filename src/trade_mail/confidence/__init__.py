"""
Confidence scoring module.

Computes parse confidence from field coverage and parse method, checks
total consistency and merges symbol confidences.
"""

from .scorer import EXPECTED_FIELDS, ConfidenceScorer

__all__ = [
    "EXPECTED_FIELDS",
    "ConfidenceScorer",
]
