"""
Configuration management (SSOT).

All configuration keys and defaults are defined here; no other module should
invent config keys or hardcode thresholds.

Key invariants:
- Every confidence threshold lives in ConfidenceThresholds (versioned)
- Per-source behaviour (auto-insert, duplicate window) lives in SourceConfig
- Duplicate detection is advisory unless duplicate_routing says otherwise
"""

import os
from dataclasses import dataclass, field, fields
from enum import Enum
from pathlib import Path

import yaml


class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""

    pass


class DuplicateRouting(str, Enum):
    """How duplicate recommendations affect routing when auto-insert is on.

    ADVISORY keeps the duplicate result informational: only the source's
    auto_insert_enabled flag decides routing.
    """

    ADVISORY = "advisory"
    QUEUE_ON_REVIEW = "queue_on_review"  # review or reject -> queue
    QUEUE_ON_REJECT = "queue_on_reject"  # only reject -> queue


@dataclass
class ConfidenceThresholds:
    """All scoring thresholds in one place.

    Bump version whenever a default changes so stored results can be traced
    back to the rules that produced them.
    """

    version: str = "1.0"

    # Parser
    html_method_weight: float = 1.0
    text_method_weight: float = 0.85
    total_tolerance: float = 0.01  # relative
    cross_check_penalty: float = 0.8
    min_parse_confidence: float = 0.3

    # Symbol resolution
    direct_symbol_confidence: float = 0.7
    symbol_local_weight: float = 0.7
    symbol_ai_weight: float = 0.3

    # Duplicate detection
    level2_confidence: float = 0.85
    level3_max_confidence: float = 0.8
    level3_review_threshold: float = 0.5

    # Review queue priority
    high_priority_duplicate: float = 0.7
    low_parse_confidence: float = 0.5

    @classmethod
    def from_dict(cls, data: dict) -> "ConfidenceThresholds":
        """Build from a partial mapping; unknown keys are ignored."""
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in (data or {}).items() if k in known}
        if "version" in values:
            values["version"] = str(values["version"])
        return cls(**values)


@dataclass
class SourceConfig:
    """Per-source (mailbox / broker feed) configuration."""

    name: str = "default"
    # Create transactions without human review
    auto_insert_enabled: bool = False
    # Symmetric window for fuzzy (Level 3) duplicate matching
    duplicate_time_window_hours: int = 24
    # Allow PortfolioResolver to create portfolios for unknown labels
    create_missing_portfolios: bool = True
    duplicate_routing: DuplicateRouting = DuplicateRouting.ADVISORY
    thresholds: ConfidenceThresholds = field(default_factory=ConfidenceThresholds)


@dataclass
class DuplicateConfig:
    """Tolerances for fuzzy duplicate matching."""

    quantity_epsilon: float = 0.01
    price_epsilon: float = 0.01


@dataclass
class PortfolioConfig:
    """Portfolio resolution settings."""

    default_currency: str = "CAD"
    # Used when an email carries no account label at all
    fallback_account_label: str | None = None


@dataclass
class LLMConfig:
    """Local LLM (Ollama) symbol lookup configuration.

    - enabled: Master switch (default OFF)
    - ollama_url: Can be localhost, LAN IP, or remote URL
    - auth_header: Optional auth header for proxied deployments
    """

    enabled: bool = False
    ollama_url: str = "http://localhost:11434"
    # Format: "Bearer <token>" or "Header-Name: value"
    auth_header: str | None = None
    model: str = "qwen2.5:3b-instruct-q4_K_M"
    # Request timeout (seconds); also bounds the lookup future
    timeout_seconds: int = 30
    # Cache TTL (days)
    cache_ttl_days: int = 30

    def is_remote(self) -> bool:
        """Check if Ollama URL is remote (not localhost)."""
        url_lower = self.ollama_url.lower()
        return not any(
            local in url_lower
            for local in ["localhost", "127.0.0.1", "::1", "host.docker.internal"]
        )


@dataclass
class Config:
    """Application configuration (SSOT)."""

    sources: dict[str, SourceConfig] = field(
        default_factory=lambda: {"default": SourceConfig()}
    )
    duplicates: DuplicateConfig = field(default_factory=DuplicateConfig)
    portfolios: PortfolioConfig = field(default_factory=PortfolioConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    state_db_path: Path = field(default_factory=lambda: Path("data/state.db"))
    # Pause between emails in a batch (seconds)
    batch_delay_seconds: float = 0.1
    # Terminal review items older than this are removed by cleanup
    review_retention_days: int = 90
    # Pending items beyond this are refused (None: unbounded)
    review_max_queue_size: int | None = 1000
    # Pending items untouched this long move up one priority level
    review_escalation_hours: float = 24

    def get_source(self, name: str | None = None) -> SourceConfig:
        """Get a source config by name, falling back to 'default'."""
        if name and name in self.sources:
            return self.sources[name]
        if "default" in self.sources:
            return self.sources["default"]
        return SourceConfig(name=name or "default")

    def validate(self) -> list[str]:
        """Validate configuration completeness and consistency.

        Returns:
            List of validation errors (empty if valid)
        """
        errors: list[str] = []

        for name, source in self.sources.items():
            t = source.thresholds
            for attr in (
                "html_method_weight",
                "text_method_weight",
                "cross_check_penalty",
                "direct_symbol_confidence",
                "level2_confidence",
                "level3_max_confidence",
                "level3_review_threshold",
                "high_priority_duplicate",
                "low_parse_confidence",
            ):
                value = getattr(t, attr)
                if not 0.0 <= value <= 1.0:
                    errors.append(f"sources.{name}.thresholds.{attr} must be in [0, 1]")
            if t.level3_max_confidence >= t.level2_confidence:
                errors.append(
                    f"sources.{name}: level3_max_confidence must be below level2_confidence"
                )
            if abs(t.symbol_local_weight + t.symbol_ai_weight - 1.0) > 1e-6:
                errors.append(f"sources.{name}: symbol weights must sum to 1.0")
            if source.duplicate_time_window_hours < 0:
                errors.append(f"sources.{name}.duplicate_time_window_hours must be >= 0")

        if self.duplicates.quantity_epsilon < 0 or self.duplicates.price_epsilon < 0:
            errors.append("duplicates epsilons must be >= 0")

        if self.llm.enabled and not self.llm.ollama_url:
            errors.append("llm.ollama_url is required when LLM is enabled")

        if self.batch_delay_seconds < 0:
            errors.append("batch_delay_seconds must be >= 0")

        if self.review_max_queue_size is not None and self.review_max_queue_size < 1:
            errors.append("review_max_queue_size must be >= 1")

        if self.review_escalation_hours <= 0:
            errors.append("review_escalation_hours must be > 0")

        return errors


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name, "").lower()
    if value in ("true", "1", "yes"):
        return True
    if value in ("false", "0", "no"):
        return False
    return default


def _optional_int(value) -> int | None:
    return None if value is None else int(value)


def _load_source(name: str, data: dict) -> SourceConfig:
    routing = data.get("duplicate_routing", DuplicateRouting.ADVISORY.value)
    try:
        duplicate_routing = DuplicateRouting(routing)
    except ValueError as e:
        raise ConfigValidationError(
            f"sources.{name}.duplicate_routing: unknown policy '{routing}'"
        ) from e

    return SourceConfig(
        name=name,
        auto_insert_enabled=bool(data.get("auto_insert_enabled", False)),
        duplicate_time_window_hours=int(data.get("duplicate_time_window_hours", 24)),
        create_missing_portfolios=bool(data.get("create_missing_portfolios", True)),
        duplicate_routing=duplicate_routing,
        thresholds=ConfidenceThresholds.from_dict(data.get("thresholds", {})),
    )


def load_config(config_path: Path) -> Config:
    """
    Load configuration from YAML file.

    Environment variables can override config values:
    - TRADE_MAIL_DB_PATH
    - TRADE_MAIL_AUTO_INSERT (true/false, applies to the default source)
    - SYMBOL_LOOKUP_ENABLED (true/false)
    - OLLAMA_URL
    - OLLAMA_MODEL
    - OLLAMA_AUTH_HEADER
    - OLLAMA_TIMEOUT (request timeout in seconds)
    """
    if config_path.exists():
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    else:
        data = {}

    # Sources
    sources_data = data.get("sources") or {"default": {}}
    sources = {name: _load_source(name, src or {}) for name, src in sources_data.items()}
    if "default" not in sources:
        sources["default"] = SourceConfig()
    sources["default"].auto_insert_enabled = _env_bool(
        "TRADE_MAIL_AUTO_INSERT", sources["default"].auto_insert_enabled
    )

    # Duplicate tolerances
    dup_data = data.get("duplicates", {})
    duplicates = DuplicateConfig(
        quantity_epsilon=float(dup_data.get("quantity_epsilon", 0.01)),
        price_epsilon=float(dup_data.get("price_epsilon", 0.01)),
    )

    # Portfolios
    portfolio_data = data.get("portfolios", {})
    portfolios = PortfolioConfig(
        default_currency=portfolio_data.get("default_currency", "CAD"),
        fallback_account_label=portfolio_data.get("fallback_account_label"),
    )

    # LLM symbol lookup
    llm_data = data.get("llm", {})
    llm = LLMConfig(
        enabled=_env_bool("SYMBOL_LOOKUP_ENABLED", llm_data.get("enabled", False)),
        ollama_url=os.environ.get(
            "OLLAMA_URL", llm_data.get("ollama_url", "http://localhost:11434")
        ),
        auth_header=os.environ.get("OLLAMA_AUTH_HEADER", llm_data.get("auth_header")),
        model=os.environ.get("OLLAMA_MODEL", llm_data.get("model", "qwen2.5:3b-instruct-q4_K_M")),
        timeout_seconds=int(os.environ.get("OLLAMA_TIMEOUT", llm_data.get("timeout_seconds", 30))),
        cache_ttl_days=int(llm_data.get("cache_ttl_days", 30)),
    )

    state_db = os.environ.get("TRADE_MAIL_DB_PATH", data.get("state_db_path", "data/state.db"))

    return Config(
        sources=sources,
        duplicates=duplicates,
        portfolios=portfolios,
        llm=llm,
        state_db_path=Path(state_db),
        batch_delay_seconds=float(data.get("batch_delay_seconds", 0.1)),
        review_retention_days=int(data.get("review_retention_days", 90)),
        review_max_queue_size=_optional_int(data.get("review_max_queue_size", 1000)),
        review_escalation_hours=float(data.get("review_escalation_hours", 24)),
    )


def create_default_config(config_path: Path) -> None:
    """Create a default configuration file."""
    default_config = """# Trade confirmation email pipeline configuration

# Per-source settings. "default" is used when no source is named.
sources:
  default:
    auto_insert_enabled: false            # Create transactions without review
    duplicate_time_window_hours: 24       # Fuzzy duplicate window (+/- hours)
    create_missing_portfolios: true       # Create portfolios for unknown account labels
    duplicate_routing: advisory           # advisory | queue_on_review | queue_on_reject
    thresholds:
      version: "1.0"
      direct_symbol_confidence: 0.7       # Skip AI lookup above this parse confidence
      high_priority_duplicate: 0.7        # Duplicate confidence for high review priority
      low_parse_confidence: 0.5           # Below this: medium review priority

# Fuzzy duplicate tolerances
duplicates:
  quantity_epsilon: 0.01
  price_epsilon: 0.01

portfolios:
  default_currency: "CAD"
  fallback_account_label: null            # Label used when the email has none

# Local LLM symbol lookup (Ollama)
llm:
  enabled: false
  ollama_url: "http://localhost:11434"
  auth_header: null
  model: "qwen2.5:3b-instruct-q4_K_M"
  timeout_seconds: 30
  cache_ttl_days: 30

# State database path
state_db_path: "data/state.db"

batch_delay_seconds: 0.1                  # Pause between emails in a batch
review_retention_days: 90                 # Cleanup age for approved/rejected items
review_max_queue_size: 1000               # Refuse new review items beyond this many pending (null: no limit)
review_escalation_hours: 24               # Pending items untouched this long move up one priority
"""

    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        f.write(default_config)
