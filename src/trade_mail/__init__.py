"""
Broker trade-confirmation email → portfolio transaction pipeline.

Parses trade notifications into candidate records, resolves symbols and
portfolios, detects duplicate submissions at three confidence levels and
routes each candidate to automatic creation or to a manual review queue.
"""

__version__ = "0.1.0"
