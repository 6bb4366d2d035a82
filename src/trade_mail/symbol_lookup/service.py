"""Symbol lookup capability.

SymbolLookup is the narrow request/response interface the resolver depends
on. OllamaSymbolLookup implements it against a local (or remote) Ollama
server.

Privacy Constraints:
- Never log prompts or raw email content at INFO level
- Remote Ollama: auth header support, no PII in logs
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING

import httpx

from ..errors import SymbolResolutionError
from ..schemas import AssetType
from .prompts import PROMPT_VERSION, SymbolPrompt

if TYPE_CHECKING:
    from ..config import LLMConfig
    from ..state_store import StateStore

logger = logging.getLogger(__name__)


@dataclass
class SymbolLookupRequest:
    """What the resolver asks the lookup service."""

    symbol_candidate: str
    context_snippet: str = ""
    asset_type_hint: AssetType | None = None


@dataclass
class SymbolLookupResponse:
    """Lookup answer."""

    normalized_symbol: str
    asset_type: AssetType | None
    confidence: float
    model: str = ""
    from_cache: bool = False

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "normalized_symbol": self.normalized_symbol,
            "asset_type": self.asset_type.value if self.asset_type else None,
            "confidence": self.confidence,
            "model": self.model,
            "from_cache": self.from_cache,
        }


class SymbolLookup(ABC):
    """Best-effort external symbol identification."""

    @abstractmethod
    def lookup(self, request: SymbolLookupRequest) -> SymbolLookupResponse | None:
        """
        Identify a security.

        Returns:
            Response, or None if the service has no answer

        Raises:
            SymbolResolutionError: On transport failure or unusable response
        """
        pass

    def check_connection(self) -> bool:
        """Whether the service is reachable. Defaults to True for in-process lookups."""
        return True

    def close(self) -> None:
        pass


class OllamaSymbolLookup(SymbolLookup):
    """Ollama-backed symbol lookup with response caching."""

    def __init__(
        self,
        llm_config: LLMConfig,
        cache_store: StateStore | None = None,
    ) -> None:
        """Initialize the lookup client.

        Args:
            llm_config: LLM configuration.
            cache_store: Optional state store for caching responses.
        """
        self.llm_config = llm_config
        self.store = cache_store

        headers = {}
        if llm_config.auth_header:
            # Support formats: "Bearer token" or "Custom-Header: value"
            if ":" in llm_config.auth_header:
                key, value = llm_config.auth_header.split(":", 1)
                headers[key.strip()] = value.strip()
            else:
                headers["Authorization"] = llm_config.auth_header

        self._client = httpx.Client(
            timeout=httpx.Timeout(
                connect=10.0,
                read=float(llm_config.timeout_seconds),
                write=30.0,
                pool=10.0,
            ),
            headers=headers,
        )
        self._prompt = SymbolPrompt()

    def lookup(self, request: SymbolLookupRequest) -> SymbolLookupResponse | None:
        hint = request.asset_type_hint.value if request.asset_type_hint else None
        cache_key = self._build_cache_key(request.symbol_candidate, hint)

        if self.store is not None:
            cached = self.store.get_symbol_cache(cache_key)
            if cached:
                logger.debug("Symbol cache hit for %s", request.symbol_candidate)
                data = json.loads(cached["response_json"])
                response = self._to_response(data, cached["model"])
                if response:
                    response.from_cache = True
                return response

        user_message = self._prompt.format_user_message(
            symbol=request.symbol_candidate,
            context=request.context_snippet,
            asset_type=hint,
        )
        result = self._call_ollama(self._prompt.system_prompt, user_message)

        try:
            data = self._parse_json_response(result["content"])
        except json.JSONDecodeError as e:
            raise SymbolResolutionError(f"Unparseable symbol lookup response: {e}") from e

        response = self._to_response(data, result["model"])
        if response and self.store is not None:
            self.store.set_symbol_cache(
                cache_key=cache_key,
                model=result["model"],
                prompt_version=PROMPT_VERSION,
                response_json=json.dumps(data),
                ttl_days=self.llm_config.cache_ttl_days,
            )
        return response

    def check_connection(self) -> bool:
        """Ping the Ollama tags endpoint."""
        try:
            response = self._client.get(f"{self.llm_config.ollama_url}/api/tags", timeout=10.0)
            response.raise_for_status()
            return True
        except httpx.HTTPError as e:
            logger.warning("Ollama not reachable at %s: %s", self.llm_config.ollama_url, e)
            return False

    def _to_response(self, data: dict, model: str) -> SymbolLookupResponse | None:
        symbol = str(data.get("symbol") or data.get("normalized_symbol") or "").strip().upper()
        if not symbol:
            return None
        try:
            confidence = float(data.get("confidence", 0.0))
        except (TypeError, ValueError):
            confidence = 0.0
        return SymbolLookupResponse(
            normalized_symbol=symbol,
            asset_type=AssetType.coerce(data.get("asset_type")),
            confidence=max(0.0, min(1.0, confidence)),
            model=model,
        )

    def _build_cache_key(self, symbol: str, asset_type: str | None) -> str:
        """Build a SHA256 cache key from prompt version, model and inputs."""
        components = ["symbol", PROMPT_VERSION, self.llm_config.model, symbol.strip().upper()]
        if asset_type:
            components.append(asset_type)
        return hashlib.sha256("|".join(components).encode()).hexdigest()

    def _call_ollama(self, system_prompt: str, user_message: str) -> dict:
        """Call Ollama chat API.

        Returns:
            Dict with "content" and "model" keys.

        Raises:
            SymbolResolutionError: On timeout, HTTP or transport errors.
        """
        url = f"{self.llm_config.ollama_url}/api/chat"
        payload = {
            "model": self.llm_config.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_message},
            ],
            "stream": False,
            "format": "json",
        }
        logger.debug("Calling Ollama model %s at %s", self.llm_config.model, self.llm_config.ollama_url)

        try:
            response = self._client.post(url, json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as e:
            logger.warning("Ollama request timed out after %ds", self.llm_config.timeout_seconds)
            raise SymbolResolutionError("Symbol lookup timed out") from e
        except httpx.HTTPStatusError as e:
            logger.error(
                "Ollama API error %s for model '%s' at %s",
                e.response.status_code,
                self.llm_config.model,
                self.llm_config.ollama_url,
            )
            raise SymbolResolutionError(f"Symbol lookup HTTP {e.response.status_code}") from e
        except httpx.RequestError as e:
            logger.error("Ollama request failed: %s (URL: %s)", e, self.llm_config.ollama_url)
            raise SymbolResolutionError(f"Symbol lookup request failed: {e}") from e
        except ValueError as e:
            raise SymbolResolutionError("Symbol lookup returned invalid JSON") from e

        message = data.get("message") if isinstance(data, dict) else None
        if not isinstance(message, dict):
            raise SymbolResolutionError("Symbol lookup returned an unexpected payload")
        content = message.get("content") or ""
        if not isinstance(content, str):
            raise SymbolResolutionError("Symbol lookup returned non-text content")
        logger.debug("Ollama %s returned %d chars", self.llm_config.model, len(content))
        return {"content": content, "model": self.llm_config.model}

    def _parse_json_response(self, content: str) -> dict:
        """Parse JSON from an LLM response, tolerating code fences and chatter.

        Raises:
            json.JSONDecodeError: If no JSON object can be recovered.
        """
        if not content:
            raise json.JSONDecodeError("Empty response", "", 0)

        content = content.strip()
        if content.startswith("```json"):
            content = content[7:]
        elif content.startswith("```"):
            content = content[3:]
        if content.endswith("```"):
            content = content[:-3]
        content = content.strip()

        try:
            parsed = json.loads(content)
            if isinstance(parsed, dict):
                return parsed
        except json.JSONDecodeError:
            pass

        json_match = re.search(r"\{[^{}]*\}", content, re.DOTALL)
        if json_match:
            try:
                return json.loads(json_match.group())
            except json.JSONDecodeError:
                pass

        # Trailing commas are the most common defect
        cleaned = re.sub(r",\s*([}\]])", r"\1", content)
        try:
            parsed = json.loads(cleaned)
            if isinstance(parsed, dict):
                return parsed
        except json.JSONDecodeError:
            pass

        raise json.JSONDecodeError(
            f"Could not parse JSON from response: {content[:200]}...", content, 0
        )

    def close(self) -> None:
        """Close HTTP client."""
        self._client.close()

    def __enter__(self) -> OllamaSymbolLookup:
        """Enter context manager."""
        return self

    def __exit__(self, *args) -> None:
        """Exit context manager."""
        self.close()
