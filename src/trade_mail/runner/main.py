"""
CLI main entry point.
"""

import argparse
import email
import json
import logging
import sys
from email import policy
from email.utils import parsedate_to_datetime
from pathlib import Path

from ..config import Config, ConfigValidationError, create_default_config, load_config
from ..errors import ConflictError, QueueItemNotFoundError, TradeMailError
from ..review import ReviewQueue
from ..schemas import RawEmail
from ..services.processing import ProcessingOrchestrator
from ..state_store import ReviewPriority, ReviewStatus, StateStore

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def create_cli() -> argparse.ArgumentParser:
    """Create CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="trade-mail",
        description="Turn broker trade-confirmation emails into portfolio transactions",
    )

    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=Path("config.yaml"),
        help="Path to config file (default: config.yaml)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # process command
    process_parser = subparsers.add_parser(
        "process", help="Process .eml files or JSON email dumps"
    )
    process_parser.add_argument("paths", nargs="+", type=Path, help="Email files")
    process_parser.add_argument(
        "--source",
        type=str,
        default=None,
        help="Source config to apply (default: default)",
    )
    process_parser.add_argument(
        "--delay",
        type=float,
        default=None,
        help="Seconds between emails (default: batch_delay_seconds)",
    )
    process_parser.add_argument(
        "--json",
        action="store_true",
        help="Print full results as JSON",
    )

    # queue command
    queue_parser = subparsers.add_parser("queue", help="List review queue items")
    queue_parser.add_argument(
        "--status",
        choices=[s.value for s in ReviewStatus],
        default=ReviewStatus.PENDING.value,
        help="Status filter (default: pending)",
    )
    queue_parser.add_argument(
        "--priority",
        choices=[p.value for p in ReviewPriority],
        default=None,
        help="Priority filter",
    )
    queue_parser.add_argument("--json", action="store_true", help="Print items as JSON")

    # approve / reject commands
    for name, help_text in (
        ("approve", "Approve a review item and create its transaction"),
        ("reject", "Reject a review item"),
    ):
        decision_parser = subparsers.add_parser(name, help=help_text)
        decision_parser.add_argument("item_id", type=int, help="Review queue item ID")
        decision_parser.add_argument(
            "--reviewer", type=str, default="cli", help="Reviewer name (default: cli)"
        )
        decision_parser.add_argument("--notes", type=str, default=None, help="Review notes")

    # escalate command
    escalate_parser = subparsers.add_parser(
        "escalate", help="Raise the priority of review items left pending too long"
    )
    escalate_parser.add_argument(
        "--hours",
        type=float,
        default=None,
        help="Age threshold in hours (default: review_escalation_hours)",
    )

    # stats command
    subparsers.add_parser("stats", help="Show store and queue statistics")

    # check command
    subparsers.add_parser("check", help="Validate configuration and connectivity")

    # cleanup command
    cleanup_parser = subparsers.add_parser(
        "cleanup", help="Remove old reviewed items and expired lookup cache"
    )
    cleanup_parser.add_argument(
        "--days",
        type=int,
        default=None,
        help="Age threshold in days (default: review_retention_days)",
    )

    # init-config command
    init_parser = subparsers.add_parser("init-config", help="Write a default config file")
    init_parser.add_argument(
        "--force", action="store_true", help="Overwrite an existing config file"
    )

    return parser


def load_email_file(path: Path) -> list[RawEmail]:
    """
    Load emails from a file.

    .eml files hold one RFC 822 message; .json files hold one email object
    or a list of them (keys as in RawEmail.to_dict).
    """
    if path.suffix.lower() == ".json":
        with open(path) as f:
            data = json.load(f)
        items = data if isinstance(data, list) else [data]
        return [RawEmail.from_dict(item) for item in items]

    with open(path, "rb") as f:
        message = email.message_from_binary_file(f, policy=policy.default)

    html_part = message.get_body(preferencelist=("html",))
    text_part = message.get_body(preferencelist=("plain",))
    received_at = None
    if message["Date"]:
        try:
            received_at = parsedate_to_datetime(str(message["Date"]))
        except (TypeError, ValueError):
            logger.warning("Unparseable Date header in %s", path)

    return [
        RawEmail(
            subject=str(message["Subject"] or ""),
            from_address=str(message["From"] or ""),
            html_body=html_part.get_content() if html_part else "",
            text_body=text_part.get_content() if text_part else None,
            message_id=str(message["Message-ID"]) if message["Message-ID"] else None,
            received_at=received_at,
            headers={k: str(v) for k, v in message.items()},
        )
    ]


def cmd_process(
    config: Config,
    paths: list[Path],
    source_name: str | None,
    delay: float | None,
    as_json: bool,
) -> int:
    """Process email files through the pipeline."""
    emails: list[RawEmail] = []
    for path in paths:
        try:
            emails.extend(load_email_file(path))
        except (OSError, ValueError) as e:
            print(f"❌ Cannot read {path}: {e}")
            return 1

    if not emails:
        print("No emails to process")
        return 0

    if not as_json:
        print(f"📧 Processing {len(emails)} email(s)...")

    store = StateStore(config.state_db_path)
    with ProcessingOrchestrator(store, config) as orchestrator:
        batch = orchestrator.process_batch(emails, config.get_source(source_name), delay)

    if as_json:
        print(json.dumps(batch.to_dict(), indent=2, default=str))
        return 0 if batch.stats.failed == 0 else 1

    for email_obj, result in zip(emails, batch.results):
        if result.transaction_created and result.transaction:
            print(f"  ✓ {email_obj.subject} -> transaction #{result.transaction.id}")
        elif result.queued_for_review:
            print(f"  📋 {email_obj.subject} -> review item #{result.review_queue_id}")
        else:
            print(f"  ❌ {email_obj.subject}: {'; '.join(result.errors)}")
        for warning in result.warnings:
            print(f"      ⚠ {warning}")

    stats = batch.stats
    print()
    print(f"  Successful:    {stats.successful}/{stats.total}")
    print(f"  Created:       {stats.transactions_created}")
    print(f"  Queued:        {stats.queued_for_review}")
    print(f"  Duplicates:    {stats.duplicates_detected}")
    print(f"  Symbol source: {stats.symbol_sources}")
    return 0 if stats.failed == 0 else 1


def cmd_queue(config: Config, status: str | None, priority: str | None, as_json: bool) -> int:
    """List review queue items."""
    store = StateStore(config.state_db_path)
    queue = ReviewQueue(store)
    items = queue.get_queue_items(
        status=ReviewStatus(status) if status else None,
        priority=ReviewPriority(priority) if priority else None,
    )

    if as_json:
        print(json.dumps([item.to_dict() for item in items], indent=2, default=str))
        return 0

    if not items:
        print("✓ Review queue is empty")
        return 0

    for item in items:
        c = item.candidate
        print(
            f"  [{item.id}] {item.priority.value:<6} {c.transaction_type.value} "
            f"{c.quantity} {c.symbol} @ {c.price} {c.currency} on {c.transaction_date} "
            f"({c.account_type_label or 'no account'})"
        )
        print(f"        {item.reason}")
    print(f"\n{len(items)} item(s)")
    return 0


def cmd_decide(config: Config, action: str, item_id: int, reviewer: str, notes: str | None) -> int:
    """Approve or reject a review item."""
    store = StateStore(config.state_db_path)
    queue = ReviewQueue(store, thresholds=config.get_source().thresholds)

    try:
        if action == "approve":
            item = queue.approve_queue_item(item_id, reviewer, notes)
            print(f"✓ Item #{item.id} approved -> transaction #{item.transaction_id}")
        else:
            item = queue.reject_queue_item(item_id, reviewer, notes)
            print(f"✓ Item #{item.id} rejected")
    except (QueueItemNotFoundError, ConflictError) as e:
        print(f"❌ {e}")
        return 1
    except TradeMailError as e:
        print(f"❌ {action.capitalize()} failed: {e}")
        return 1
    return 0


def cmd_escalate(config: Config, hours: float | None) -> int:
    """Escalate stale pending review items."""
    store = StateStore(config.state_db_path)
    hours = config.review_escalation_hours if hours is None else hours
    escalated = ReviewQueue(store).escalate_stale_items(hours)

    for item in escalated:
        print(f"  [{item.id}] -> {item.priority.value}")
    print(f"✓ Escalated {len(escalated)} item(s) pending over {hours:g}h")
    return 0


def cmd_stats(config: Config) -> int:
    """Show store and queue statistics."""
    store = StateStore(config.state_db_path)
    stats = store.get_stats()
    queue_stats = ReviewQueue(store).get_queue_statistics()

    print("\n📊 Pipeline Status")
    print("=" * 40)
    print(f"  Portfolios:             {stats['portfolios']}")
    print(f"  Transactions:           {stats['transactions']}")
    print(f"  Emails processed:       {stats['processed_emails']}")
    for outcome, count in sorted(stats["emails_by_outcome"].items()):
        print(f"    {outcome:<20} {count}")
    print(f"  Review items:           {queue_stats['total']}")
    for status, count in queue_stats["by_status"].items():
        print(f"    {status:<20} {count}")
    for priority, count in queue_stats["by_priority"].items():
        print(f"    {priority + ' priority':<20} {count}")
    print()
    return 0


def cmd_check(config: Config) -> int:
    """Validate configuration and connectivity."""
    store = StateStore(config.state_db_path)
    with ProcessingOrchestrator(store, config) as orchestrator:
        report = orchestrator.validate_configuration()

    for error in report["errors"]:
        print(f"❌ {error}")
    for warning in report["warnings"]:
        print(f"⚠ {warning}")
    if report["valid"]:
        print("✓ Configuration OK")
        return 0
    return 1


def cmd_cleanup(config: Config, days: int | None) -> int:
    """Remove reviewed queue items and expired cache entries."""
    store = StateStore(config.state_db_path)
    days = config.review_retention_days if days is None else days
    removed = ReviewQueue(store).cleanup_old_items(days)
    expired = store.clear_expired_symbol_cache()
    print(f"✓ Removed {removed} reviewed item(s) older than {days} days")
    print(f"✓ Cleared {expired} expired symbol cache entr{'y' if expired == 1 else 'ies'}")
    return 0


def cmd_init_config(path: Path, force: bool) -> int:
    """Write the default config file."""
    if path.exists() and not force:
        print(f"❌ {path} already exists (use --force to overwrite)")
        return 1
    create_default_config(path)
    print(f"✓ Wrote {path}")
    return 0


def main(args: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_cli()
    parsed = parser.parse_args(args)

    setup_logging(parsed.verbose)

    if not parsed.command:
        parser.print_help()
        return 1

    if parsed.command == "init-config":
        return cmd_init_config(parsed.config, parsed.force)

    # Load config
    try:
        config = load_config(parsed.config)
    except (ConfigValidationError, OSError, ValueError) as e:
        print(f"❌ Failed to load config: {e}")
        return 1

    # Route to command
    if parsed.command == "process":
        return cmd_process(config, parsed.paths, parsed.source, parsed.delay, parsed.json)
    elif parsed.command == "queue":
        return cmd_queue(config, parsed.status, parsed.priority, parsed.json)
    elif parsed.command in ("approve", "reject"):
        return cmd_decide(config, parsed.command, parsed.item_id, parsed.reviewer, parsed.notes)
    elif parsed.command == "escalate":
        return cmd_escalate(config, parsed.hours)
    elif parsed.command == "stats":
        return cmd_stats(config)
    elif parsed.command == "check":
        return cmd_check(config)
    elif parsed.command == "cleanup":
        return cmd_cleanup(config, parsed.days)
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
