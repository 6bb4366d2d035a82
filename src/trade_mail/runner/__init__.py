"""
CLI runner module.

Provides commands:
- process: Run email files through the pipeline
- queue / approve / reject: Work the review queue
- stats / check / cleanup: Maintenance
- init-config: Write a default config file
"""

from .main import create_cli, main

__all__ = [
    "create_cli",
    "main",
]
