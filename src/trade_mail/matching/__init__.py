"""Duplicate detection across processed emails and booked transactions."""

from .duplicates import DuplicateDetector

__all__ = ["DuplicateDetector"]
