"""
Trade email templates.

Provides:
- EmailParser: Chooses template and builds the candidate
- Wealthsimple HTML cell-lookup template
- Wealthsimple labeled-text template
- Broker-agnostic narrative template
- Base classes for custom templates

Adding a broker means adding a BaseTemplate variant.
"""

from .base import BaseTemplate, TemplateExtraction
from .html_template import WealthsimpleTableTemplate
from .router import EmailParser
from .text_template import NarrativeTemplate, WealthsimpleTextTemplate

__all__ = [
    "EmailParser",
    "BaseTemplate",
    "TemplateExtraction",
    "NarrativeTemplate",
    "WealthsimpleTableTemplate",
    "WealthsimpleTextTemplate",
]
