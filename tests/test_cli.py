"""Tests for CLI commands."""

import json
from email.message import EmailMessage

import pytest
import yaml

from trade_mail.config import DuplicateRouting, load_config
from trade_mail.runner.main import create_cli, load_email_file, main


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("TRADE_MAIL_DB_PATH", "TRADE_MAIL_AUTO_INSERT", "SYMBOL_LOOKUP_ENABLED"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def config_file(tmp_path):
    """Config with an auto-insert default source and a manual source."""
    path = tmp_path / "config.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "state_db_path": str(tmp_path / "state.db"),
                "batch_delay_seconds": 0,
                "sources": {
                    "default": {"auto_insert_enabled": True},
                    "manual": {"auto_insert_enabled": False},
                },
            }
        )
    )
    return path


@pytest.fixture
def email_json(tmp_path, stock_buy_email):
    path = tmp_path / "aapl.json"
    path.write_text(json.dumps(stock_buy_email.to_dict()))
    return path


class TestCLICommandRegistry:
    """Tests for CLI command registration."""

    def test_all_commands_registered(self):
        """Verify all expected commands are registered."""
        parser = create_cli()

        subparsers_action = next(a for a in parser._actions if a.dest == "command")
        commands = set(subparsers_action.choices)

        assert commands == {
            "process",
            "queue",
            "approve",
            "reject",
            "escalate",
            "stats",
            "check",
            "cleanup",
            "init-config",
        }

    def test_queue_defaults_to_pending(self):
        args = create_cli().parse_args(["queue"])

        assert args.status == "pending"
        assert args.priority is None

    def test_approve_arguments(self):
        """Approve takes an item id and defaults the reviewer to 'cli'."""
        args = create_cli().parse_args(["approve", "12", "--notes", "checked statement"])

        assert args.item_id == 12
        assert args.reviewer == "cli"
        assert args.notes == "checked statement"

    def test_process_requires_paths(self):
        with pytest.raises(SystemExit):
            create_cli().parse_args(["process"])


class TestLoadEmailFile:
    """Tests for reading .json and .eml inputs."""

    def test_json_single_and_list(self, tmp_path, stock_buy_email, stock_sell_email):
        single = tmp_path / "one.json"
        single.write_text(json.dumps(stock_buy_email.to_dict()))
        many = tmp_path / "many.json"
        many.write_text(json.dumps([stock_buy_email.to_dict(), stock_sell_email.to_dict()]))

        assert load_email_file(single)[0].subject == stock_buy_email.subject
        assert [e.subject for e in load_email_file(many)] == [
            stock_buy_email.subject,
            stock_sell_email.subject,
        ]

    def test_eml_file(self, tmp_path, stock_buy_email):
        """Both MIME alternatives and the headers are read from an .eml file."""
        message = EmailMessage()
        message["Subject"] = stock_buy_email.subject
        message["From"] = stock_buy_email.from_address
        message["Message-ID"] = stock_buy_email.message_id
        message["Date"] = "Wed, 15 Jan 2025 16:00:00 +0000"
        message.set_content(stock_buy_email.text_body)
        message.add_alternative(stock_buy_email.html_body, subtype="html")
        path = tmp_path / "trade.eml"
        path.write_bytes(message.as_bytes())

        [raw] = load_email_file(path)

        assert raw.subject == stock_buy_email.subject
        assert raw.message_id == stock_buy_email.message_id
        assert "Bought 100 shares of AAPL" in raw.text_body
        assert "<strong>Order ID:</strong>" in raw.html_body
        assert raw.received_at == stock_buy_email.received_at


class TestCommands:
    """Tests running commands through main()."""

    def test_no_command_prints_help(self, capsys):
        assert main([]) == 1
        assert "usage:" in capsys.readouterr().out

    def test_init_config(self, tmp_path, capsys):
        path = tmp_path / "conf" / "config.yaml"

        assert main(["-c", str(path), "init-config"]) == 0
        assert main(["-c", str(path), "init-config"]) == 1
        assert "already exists" in capsys.readouterr().out
        assert main(["-c", str(path), "init-config", "--force"]) == 0

        config = load_config(path)
        assert config.get_source().auto_insert_enabled is False
        assert config.get_source().duplicate_routing == DuplicateRouting.ADVISORY
        assert config.validate() == []

    def test_process_creates_transaction(self, config_file, email_json, capsys):
        assert main(["-c", str(config_file), "process", str(email_json)]) == 0

        out = capsys.readouterr().out
        assert "-> transaction #1" in out
        assert "Created:       1" in out

    def test_process_json_output(self, config_file, email_json, capsys):
        assert main(["-c", str(config_file), "process", "--json", str(email_json)]) == 0

        report = json.loads(capsys.readouterr().out)
        assert report["stats"]["total"] == 1
        assert report["results"][0]["transaction"]["symbol"] == "AAPL"

    def test_process_missing_file(self, config_file, tmp_path, capsys):
        assert main(["-c", str(config_file), "process", str(tmp_path / "nope.json")]) == 1
        assert "Cannot read" in capsys.readouterr().out

    def test_review_workflow(self, config_file, email_json, capsys):
        """Queue an email from the manual source, list it and approve it once."""
        cfg = ["-c", str(config_file)]
        assert main(cfg + ["process", "--source", "manual", str(email_json)]) == 0
        assert "-> review item #1" in capsys.readouterr().out

        assert main(cfg + ["queue"]) == 0
        listing = capsys.readouterr().out
        assert "[1] low" in listing
        assert "Auto-insert disabled" in listing

        assert main(cfg + ["approve", "1", "--reviewer", "alice"]) == 0
        assert "approved -> transaction #1" in capsys.readouterr().out

        assert main(cfg + ["approve", "1"]) == 1
        assert "already approved" in capsys.readouterr().out

        assert main(cfg + ["queue"]) == 0
        assert "Review queue is empty" in capsys.readouterr().out

    def test_reject_unknown_item(self, config_file, capsys):
        assert main(["-c", str(config_file), "reject", "42"]) == 1
        assert "Review queue item 42 not found" in capsys.readouterr().out

    def test_stats(self, config_file, email_json, capsys):
        main(["-c", str(config_file), "process", str(email_json)])
        capsys.readouterr()

        assert main(["-c", str(config_file), "stats"]) == 0
        out = capsys.readouterr().out
        assert "Transactions:           1" in out
        assert "created" in out

    def test_escalate(self, config_file, email_json, capsys):
        main(["-c", str(config_file), "process", "--source", "manual", str(email_json)])
        capsys.readouterr()

        assert main(["-c", str(config_file), "escalate"]) == 0
        assert "Escalated 0 item(s) pending over 24h" in capsys.readouterr().out

        assert main(["-c", str(config_file), "escalate", "--hours", "0"]) == 0
        out = capsys.readouterr().out
        assert "[1] -> medium" in out
        assert "Escalated 1 item(s) pending over 0h" in out

    def test_check(self, config_file, capsys):
        assert main(["-c", str(config_file), "check"]) == 0
        assert "Configuration OK" in capsys.readouterr().out

    def test_cleanup(self, config_file, capsys):
        assert main(["-c", str(config_file), "cleanup", "--days", "30"]) == 0
        out = capsys.readouterr().out
        assert "Removed 0 reviewed item(s) older than 30 days" in out
        assert "Cleared 0 expired symbol cache entries" in out

    def test_invalid_config(self, tmp_path, capsys):
        path = tmp_path / "bad.yaml"
        path.write_text(yaml.safe_dump({"sources": {"default": {"duplicate_routing": "always"}}}))

        assert main(["-c", str(path), "stats"]) == 1
        assert "Failed to load config" in capsys.readouterr().out
