"""Prompt templates for LLM-assisted symbol lookup.

Prompts are versioned to support cache invalidation.
"""

from __future__ import annotations

from dataclasses import dataclass

# Prompt version for cache invalidation
# v1.1: Exchange suffix guidance for Canadian listings
PROMPT_VERSION = "v1.1"

# Context snippets sent to the model are bounded
MAX_CONTEXT_CHARS = 600


@dataclass
class SymbolPrompt:
    """Prompt template for ticker normalization.

    Attributes:
        version: Prompt version for cache invalidation.
        system_prompt: System message setting LLM behavior.
        user_template: Template for user message with placeholders.
    """

    version: str = PROMPT_VERSION

    system_prompt: str = """You are a securities identification assistant.
Your task is to turn a raw security reference from a broker email into the
ticker symbol used to book the trade.

Rules:
1. Return the exchange ticker in upper case (e.g. "AAPL", "SHOP.TO", "BRK.B")
2. Canadian listings keep their exchange suffix (".TO", ".V", ".NE")
3. For options, return the underlying ticker and asset_type "option"
4. asset_type is one of: stock, etf, option, crypto, bond, mutual_fund, other
5. If you cannot identify the security, return the input unchanged with low confidence
6. Include a confidence score from 0.0 to 1.0

Respond in JSON format:
{
    "symbol": "AAPL",
    "asset_type": "stock",
    "confidence": 0.9
}"""

    user_template: str = """Identify this security:

Raw reference: {symbol}
Asset type hint: {asset_type}

Email context:
{context}

Provide your answer in JSON format."""

    def format_user_message(
        self,
        symbol: str,
        context: str | None,
        asset_type: str | None = None,
    ) -> str:
        """Format the user message with the raw symbol and context.

        Args:
            symbol: Raw symbol text from the email.
            context: Surrounding email text.
            asset_type: Optional asset type hint from the parser.

        Returns:
            Formatted user message.
        """
        snippet = (context or "").strip()[:MAX_CONTEXT_CHARS]
        return self.user_template.format(
            symbol=symbol,
            asset_type=asset_type or "unknown",
            context=snippet or "No context",
        )
