"""
Pipeline services.

- TransactionWriter: the one place transactions are created
- processing.ProcessingOrchestrator: runs emails through the pipeline
  (import from trade_mail.services.processing; it depends on the review queue,
  which depends on TransactionWriter)
"""

from .transactions import TransactionWriter, build_notes

__all__ = ["TransactionWriter", "build_notes"]
