"""Tests for configuration loading and validation."""

from pathlib import Path

import pytest
import yaml

from trade_mail.config import (
    Config,
    ConfidenceThresholds,
    ConfigValidationError,
    DuplicateRouting,
    LLMConfig,
    SourceConfig,
    create_default_config,
    load_config,
)

ENV_VARS = (
    "TRADE_MAIL_DB_PATH",
    "TRADE_MAIL_AUTO_INSERT",
    "SYMBOL_LOOKUP_ENABLED",
    "OLLAMA_URL",
    "OLLAMA_MODEL",
    "OLLAMA_AUTH_HEADER",
    "OLLAMA_TIMEOUT",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def _write(tmp_path, data) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(data))
    return path


class TestLoadConfig:
    """Tests for load_config."""

    def test_missing_file_gives_defaults(self, tmp_path):
        config = load_config(tmp_path / "absent.yaml")

        assert config.get_source().auto_insert_enabled is False
        assert config.llm.enabled is False
        assert config.state_db_path == Path("data/state.db")
        assert config.validate() == []

    def test_sources_and_thresholds(self, tmp_path):
        """Per-source settings and partial threshold overrides are read."""
        path = _write(
            tmp_path,
            {
                "sources": {
                    "wealthsimple": {
                        "auto_insert_enabled": True,
                        "duplicate_time_window_hours": 48,
                        "duplicate_routing": "queue_on_reject",
                        "thresholds": {"version": 1.1, "low_parse_confidence": 0.6},
                    }
                },
                "portfolios": {"default_currency": "USD", "fallback_account_label": "Unsorted"},
            },
        )

        config = load_config(path)

        source = config.get_source("wealthsimple")
        assert source.auto_insert_enabled is True
        assert source.duplicate_time_window_hours == 48
        assert source.duplicate_routing == DuplicateRouting.QUEUE_ON_REJECT
        assert source.thresholds.version == "1.1"
        assert source.thresholds.low_parse_confidence == 0.6
        assert source.thresholds.level2_confidence == 0.85
        assert config.portfolios.default_currency == "USD"
        assert config.portfolios.fallback_account_label == "Unsorted"
        # default source is always present
        assert config.get_source().name == "default"

    def test_unknown_source_falls_back_to_default(self, tmp_path):
        config = load_config(tmp_path / "absent.yaml")

        assert config.get_source("nope") is config.sources["default"]

    def test_unknown_routing_policy(self, tmp_path):
        path = _write(tmp_path, {"sources": {"default": {"duplicate_routing": "sometimes"}}})

        with pytest.raises(ConfigValidationError, match="sometimes"):
            load_config(path)

    def test_env_overrides(self, tmp_path, monkeypatch):
        """Environment variables win over the file."""
        path = _write(
            tmp_path,
            {
                "state_db_path": "file.db",
                "llm": {"enabled": False, "model": "file-model", "timeout_seconds": 10},
            },
        )
        monkeypatch.setenv("TRADE_MAIL_DB_PATH", "/tmp/env.db")
        monkeypatch.setenv("TRADE_MAIL_AUTO_INSERT", "yes")
        monkeypatch.setenv("SYMBOL_LOOKUP_ENABLED", "true")
        monkeypatch.setenv("OLLAMA_URL", "https://llm.example.com")
        monkeypatch.setenv("OLLAMA_MODEL", "env-model")
        monkeypatch.setenv("OLLAMA_AUTH_HEADER", "Bearer abc")
        monkeypatch.setenv("OLLAMA_TIMEOUT", "5")

        config = load_config(path)

        assert config.state_db_path == Path("/tmp/env.db")
        assert config.get_source().auto_insert_enabled is True
        assert config.llm.enabled is True
        assert config.llm.ollama_url == "https://llm.example.com"
        assert config.llm.model == "env-model"
        assert config.llm.auth_header == "Bearer abc"
        assert config.llm.timeout_seconds == 5

    def test_unrecognised_bool_keeps_file_value(self, tmp_path, monkeypatch):
        path = _write(tmp_path, {"sources": {"default": {"auto_insert_enabled": True}}})
        monkeypatch.setenv("TRADE_MAIL_AUTO_INSERT", "maybe")

        assert load_config(path).get_source().auto_insert_enabled is True

    def test_queue_limits(self, tmp_path):
        """A null queue size disables the limit."""
        path = _write(tmp_path, {"review_max_queue_size": None, "review_escalation_hours": 6})

        config = load_config(path)

        assert config.review_max_queue_size is None
        assert config.review_escalation_hours == 6.0

    def test_default_config_file_round_trip(self, tmp_path):
        """The generated default file loads into a valid config."""
        path = tmp_path / "nested" / "config.yaml"

        create_default_config(path)
        config = load_config(path)

        assert path.exists()
        assert config.validate() == []
        assert config.review_retention_days == 90
        assert config.review_max_queue_size == 1000
        assert config.review_escalation_hours == 24
        assert config.get_source().thresholds == ConfidenceThresholds()


class TestValidate:
    """Tests for Config.validate."""

    def test_threshold_out_of_range(self):
        config = Config(sources={"default": SourceConfig(thresholds=ConfidenceThresholds(low_parse_confidence=1.5))})

        assert "sources.default.thresholds.low_parse_confidence must be in [0, 1]" in config.validate()

    def test_level_ordering(self):
        """Level 3 can never outrank Level 2."""
        thresholds = ConfidenceThresholds(level3_max_confidence=0.9, level2_confidence=0.85)
        config = Config(sources={"default": SourceConfig(thresholds=thresholds)})

        assert config.validate() == [
            "sources.default: level3_max_confidence must be below level2_confidence"
        ]

    def test_symbol_weights(self):
        thresholds = ConfidenceThresholds(symbol_local_weight=0.5, symbol_ai_weight=0.3)
        config = Config(sources={"default": SourceConfig(thresholds=thresholds)})

        assert config.validate() == ["sources.default: symbol weights must sum to 1.0"]

    def test_misc_errors(self):
        config = Config(batch_delay_seconds=-1, llm=LLMConfig(enabled=True, ollama_url=""))
        config.duplicates.price_epsilon = -0.1

        errors = config.validate()

        assert "batch_delay_seconds must be >= 0" in errors
        assert "llm.ollama_url is required when LLM is enabled" in errors
        assert "duplicates epsilons must be >= 0" in errors

    def test_queue_limit_errors(self):
        config = Config(review_max_queue_size=0, review_escalation_hours=0)

        assert config.validate() == [
            "review_max_queue_size must be >= 1",
            "review_escalation_hours must be > 0",
        ]


class TestLLMConfig:
    """Tests for LLMConfig helpers."""

    @pytest.mark.parametrize(
        "url,remote",
        [
            ("http://localhost:11434", False),
            ("http://127.0.0.1:11434", False),
            ("http://host.docker.internal:11434", False),
            ("https://ollama.example.com", True),
        ],
    )
    def test_is_remote(self, url, remote):
        assert LLMConfig(ollama_url=url).is_remote() is remote
