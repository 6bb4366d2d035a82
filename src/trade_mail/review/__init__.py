"""
Manual review queue for candidates that were not auto-inserted.
"""

from .queue import DEFAULT_REASON, ReviewQueue

__all__ = ["DEFAULT_REASON", "ReviewQueue"]
