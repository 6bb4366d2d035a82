"""
Symbol resolution with optional LLM-assisted lookup.

The lookup is best-effort: it never blocks the pipeline and its answers
are cached per prompt version and model.
"""

from .prompts import PROMPT_VERSION, SymbolPrompt
from .resolver import (
    SymbolBatchItem,
    SymbolBatchSummary,
    SymbolResolution,
    SymbolResolver,
    SymbolSource,
    summarize_resolutions,
)
from .service import (
    OllamaSymbolLookup,
    SymbolLookup,
    SymbolLookupRequest,
    SymbolLookupResponse,
)

__all__ = [
    "PROMPT_VERSION",
    "OllamaSymbolLookup",
    "SymbolBatchItem",
    "SymbolBatchSummary",
    "SymbolLookup",
    "SymbolLookupRequest",
    "SymbolLookupResponse",
    "SymbolPrompt",
    "SymbolResolution",
    "SymbolResolver",
    "SymbolSource",
    "summarize_resolutions",
]
