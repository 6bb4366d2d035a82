"""
SQLite-based state store implementation.

Tables:
- portfolios: Accounts transactions are booked into
- assets: Tradable symbols
- transactions: Created portfolio transactions (external_id = broker order id)
- email_imports: Claimed import keys (one transaction per email)
- processed_emails / processed_email_ids: Identifications of routed emails
- review_queue_items: Manual review queue (versioned for compare-and-set)
- symbol_cache: Cached AI symbol lookups
"""

import json
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any

from ..errors import DuplicateImportError
from ..schemas import (
    AssetType,
    DuplicateDetectionResult,
    EmailCandidate,
    EmailIdentification,
    TransactionType,
)
from .base import (
    AssetRecord,
    EmailOutcome,
    PortfolioRecord,
    ProcessedEmailRecord,
    ReviewPriority,
    ReviewQueueItem,
    ReviewStatus,
    TradeStore,
    TransactionRecord,
)

# Columns a review queue update may touch
_REVIEW_UPDATABLE = {
    "status",
    "candidate",
    "priority",
    "reason",
    "reviewed_by",
    "review_notes",
    "last_modified_by",
    "reviewed_at",
    "transaction_id",
}


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class StateStore(TradeStore):
    """
    SQLite-based state store for the pipeline.

    Provides persistent tracking of:
    - Portfolios, assets and transactions
    - Processed email identifications (duplicate detection)
    - Review queue items
    - Symbol lookup cache

    Thread-safe for single-writer scenarios. Each operation opens its own
    connection, so concurrent writers are serialized by SQLite's locking.
    """

    SCHEMA_VERSION = 2

    def __init__(self, db_path: Path | str):
        """
        Initialize state store.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with row factory."""
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database transactions."""
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS portfolios (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL UNIQUE COLLATE NOCASE,
                    currency TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS assets (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    symbol TEXT NOT NULL UNIQUE,
                    asset_type TEXT NOT NULL,
                    name TEXT,
                    created_at TEXT NOT NULL
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS transactions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    portfolio_id INTEGER NOT NULL REFERENCES portfolios(id),
                    asset_id INTEGER NOT NULL REFERENCES assets(id),
                    symbol TEXT NOT NULL,
                    transaction_type TEXT NOT NULL,
                    quantity TEXT NOT NULL,  -- Decimal as string
                    price TEXT NOT NULL,
                    total_amount TEXT NOT NULL,
                    fees TEXT NOT NULL,
                    transaction_date TEXT NOT NULL,  -- YYYY-MM-DD
                    currency TEXT NOT NULL,
                    notes TEXT,
                    external_id TEXT,
                    execution_time TEXT,  -- HH:MM as printed by the broker
                    created_at TEXT NOT NULL
                )
            """
            )
            # Databases created before execution_time was stored
            columns = {row["name"] for row in conn.execute("PRAGMA table_info(transactions)")}
            if "execution_time" not in columns:
                conn.execute("ALTER TABLE transactions ADD COLUMN execution_time TEXT")
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_transactions_external_id ON transactions(external_id)"
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_transactions_portfolio_date
                ON transactions(portfolio_id, transaction_date)
            """
            )

            # One row per claimed import key ("mid:<id>" / "hash:<hash>")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS email_imports (
                    import_key TEXT PRIMARY KEY,
                    transaction_id INTEGER NOT NULL REFERENCES transactions(id),
                    created_at TEXT NOT NULL
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS processed_emails (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    message_id TEXT,
                    content_hash TEXT NOT NULL,
                    transaction_hash TEXT,
                    from_email TEXT NOT NULL,
                    subject TEXT NOT NULL,
                    outcome TEXT NOT NULL,
                    transaction_id INTEGER,
                    review_queue_id INTEGER,
                    identification_json TEXT NOT NULL,
                    processed_at TEXT NOT NULL
                )
            """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_processed_message_id ON processed_emails(message_id)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_processed_content_hash ON processed_emails(content_hash)"
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS processed_email_ids (
                    processed_email_id INTEGER NOT NULL REFERENCES processed_emails(id)
                        ON DELETE CASCADE,
                    linkage_id TEXT NOT NULL,
                    PRIMARY KEY (processed_email_id, linkage_id)
                )
            """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_processed_linkage ON processed_email_ids(linkage_id)"
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS review_queue_items (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    candidate_json TEXT NOT NULL,
                    identification_json TEXT NOT NULL,
                    duplicate_json TEXT,
                    portfolio_id INTEGER NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    priority TEXT NOT NULL,
                    reason TEXT NOT NULL,
                    reviewed_by TEXT,
                    review_notes TEXT,
                    last_modified_by TEXT,
                    transaction_id INTEGER,
                    version INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    reviewed_at TEXT
                )
            """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_review_status ON review_queue_items(status, priority)"
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS symbol_cache (
                    cache_key TEXT PRIMARY KEY,
                    model TEXT NOT NULL,
                    prompt_version TEXT NOT NULL,
                    response_json TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    expires_at TEXT NOT NULL,
                    hit_count INTEGER NOT NULL DEFAULT 1
                )
            """
            )

            conn.execute(
                "INSERT OR IGNORE INTO schema_version (version) VALUES (?)",
                (self.SCHEMA_VERSION,),
            )

    # === Portfolios ===

    def list_portfolios(self) -> list[PortfolioRecord]:
        with self._transaction() as conn:
            rows = conn.execute("SELECT * FROM portfolios ORDER BY id").fetchall()
            return [PortfolioRecord.from_row(row) for row in rows]

    def find_portfolio(self, name: str) -> PortfolioRecord | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM portfolios WHERE name = ? COLLATE NOCASE",
                (name.strip(),),
            ).fetchone()
            return PortfolioRecord.from_row(row) if row else None

    def create_portfolio(self, name: str, currency: str) -> PortfolioRecord:
        """Create a portfolio. Returns the existing one if the name is taken."""
        now = _utc_now()
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO portfolios (name, currency, created_at)
                VALUES (?, ?, ?)
                ON CONFLICT(name) DO NOTHING
            """,
                (name.strip(), currency.upper(), now),
            )
            row = conn.execute(
                "SELECT * FROM portfolios WHERE name = ? COLLATE NOCASE", (name.strip(),)
            ).fetchone()
            return PortfolioRecord.from_row(row)

    def get_portfolio(self, portfolio_id: int) -> PortfolioRecord | None:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM portfolios WHERE id = ?", (portfolio_id,)).fetchone()
            return PortfolioRecord.from_row(row) if row else None

    # === Assets ===

    def get_or_create_asset(
        self, symbol: str, asset_type: AssetType, name: str | None = None
    ) -> AssetRecord:
        symbol = symbol.strip().upper()
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO assets (symbol, asset_type, name, created_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(symbol) DO NOTHING
            """,
                (symbol, asset_type.value, name, _utc_now()),
            )
            row = conn.execute("SELECT * FROM assets WHERE symbol = ?", (symbol,)).fetchone()
            return AssetRecord.from_row(row)

    # === Transactions ===

    def create_transaction(
        self,
        portfolio_id: int,
        asset_id: int,
        transaction_type: TransactionType,
        quantity: Decimal,
        price: Decimal,
        total_amount: Decimal,
        transaction_date: date,
        fees: Decimal = Decimal("0"),
        currency: str = "CAD",
        notes: str | None = None,
        external_id: str | None = None,
        import_keys: list[str] | None = None,
        execution_time: str | None = None,
    ) -> TransactionRecord:
        """Create a transaction, claiming import_keys in the same SQLite transaction.

        Raises:
            DuplicateImportError: If any import key was already claimed.
        """
        now = _utc_now()
        keys = list(import_keys or [])

        with self._transaction() as conn:
            # Take the write lock before the check so check+insert is atomic
            conn.execute("BEGIN IMMEDIATE")

            if keys:
                placeholders = ",".join("?" * len(keys))
                existing = conn.execute(
                    f"SELECT import_key, transaction_id FROM email_imports WHERE import_key IN ({placeholders})",
                    keys,
                ).fetchone()
                if existing:
                    raise DuplicateImportError(
                        f"Email already imported ({existing['import_key']})",
                        existing_transaction_id=existing["transaction_id"],
                    )

            symbol_row = conn.execute("SELECT symbol FROM assets WHERE id = ?", (asset_id,)).fetchone()
            symbol = symbol_row["symbol"] if symbol_row else ""

            cursor = conn.execute(
                """
                INSERT INTO transactions
                (portfolio_id, asset_id, symbol, transaction_type, quantity, price,
                 total_amount, fees, transaction_date, currency, notes, external_id,
                 execution_time, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    portfolio_id,
                    asset_id,
                    symbol,
                    transaction_type.value,
                    str(quantity),
                    str(price),
                    str(total_amount),
                    str(fees),
                    transaction_date.isoformat(),
                    currency.upper(),
                    notes,
                    external_id,
                    execution_time,
                    now,
                ),
            )
            transaction_id = cursor.lastrowid

            for key in keys:
                conn.execute(
                    "INSERT INTO email_imports (import_key, transaction_id, created_at) VALUES (?, ?, ?)",
                    (key, transaction_id, now),
                )

            row = conn.execute(
                "SELECT * FROM transactions WHERE id = ?", (transaction_id,)
            ).fetchone()
            return TransactionRecord.from_row(row)

    def get_transaction(self, transaction_id: int) -> TransactionRecord | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM transactions WHERE id = ?", (transaction_id,)
            ).fetchone()
            return TransactionRecord.from_row(row) if row else None

    def list_transactions(
        self,
        portfolio_id: int | None = None,
        date_range: tuple[date, date] | None = None,
        symbol: str | None = None,
    ) -> list[TransactionRecord]:
        clauses: list[str] = []
        params: list[Any] = []
        if portfolio_id is not None:
            clauses.append("portfolio_id = ?")
            params.append(portfolio_id)
        if date_range is not None:
            clauses.append("transaction_date BETWEEN ? AND ?")
            params.extend([date_range[0].isoformat(), date_range[1].isoformat()])
        if symbol:
            clauses.append("symbol = ?")
            params.append(symbol.strip().upper())

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._transaction() as conn:
            rows = conn.execute(
                f"SELECT * FROM transactions {where} ORDER BY transaction_date, id", params
            ).fetchall()
            return [TransactionRecord.from_row(row) for row in rows]

    def find_transactions_by_external_ids(self, external_ids: set[str]) -> list[TransactionRecord]:
        ids = sorted({i.strip().upper() for i in external_ids if i})
        if not ids:
            return []
        placeholders = ",".join("?" * len(ids))
        with self._transaction() as conn:
            rows = conn.execute(
                f"SELECT * FROM transactions WHERE UPPER(external_id) IN ({placeholders}) ORDER BY id",
                ids,
            ).fetchall()
            return [TransactionRecord.from_row(row) for row in rows]

    # === Processed emails ===

    def record_processed_email(
        self,
        identification: EmailIdentification,
        outcome: EmailOutcome,
        transaction_id: int | None = None,
        review_queue_id: int | None = None,
    ) -> int:
        """Record an email identification. Returns the record ID."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO processed_emails
                (message_id, content_hash, transaction_hash, from_email, subject, outcome,
                 transaction_id, review_queue_id, identification_json, processed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    identification.message_id,
                    identification.content_hash,
                    identification.transaction_hash,
                    identification.from_email,
                    identification.subject,
                    outcome.value,
                    transaction_id,
                    review_queue_id,
                    json.dumps(identification.to_dict()),
                    _utc_now(),
                ),
            )
            record_id = cursor.lastrowid
            for linkage_id in sorted(identification.linkage_ids):
                conn.execute(
                    "INSERT OR IGNORE INTO processed_email_ids (processed_email_id, linkage_id) VALUES (?, ?)",
                    (record_id, linkage_id.upper()),
                )
            return record_id

    def find_processed_emails(
        self,
        message_id: str | None = None,
        content_hash: str | None = None,
        linkage_ids: set[str] | None = None,
    ) -> list[ProcessedEmailRecord]:
        clauses: list[str] = []
        params: list[Any] = []
        if message_id:
            clauses.append("message_id = ?")
            params.append(message_id)
        if content_hash:
            clauses.append("content_hash = ?")
            params.append(content_hash)
        ids = sorted({i.upper() for i in (linkage_ids or set()) if i})
        if ids:
            placeholders = ",".join("?" * len(ids))
            clauses.append(
                f"id IN (SELECT processed_email_id FROM processed_email_ids WHERE linkage_id IN ({placeholders}))"
            )
            params.extend(ids)
        if not clauses:
            return []

        with self._transaction() as conn:
            rows = conn.execute(
                f"SELECT * FROM processed_emails WHERE {' OR '.join(clauses)} ORDER BY id",
                params,
            ).fetchall()
            records = []
            for row in rows:
                linked = conn.execute(
                    "SELECT linkage_id FROM processed_email_ids WHERE processed_email_id = ?",
                    (row["id"],),
                ).fetchall()
                records.append(
                    ProcessedEmailRecord.from_row(row, {r["linkage_id"] for r in linked})
                )
            return records

    # === Review queue ===

    def create_review_queue_item(
        self,
        candidate: EmailCandidate,
        identification: EmailIdentification,
        duplicate_result: DuplicateDetectionResult,
        portfolio_id: int,
        priority: ReviewPriority,
        reason: str,
    ) -> ReviewQueueItem:
        now = _utc_now()
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO review_queue_items
                (candidate_json, identification_json, duplicate_json, portfolio_id,
                 status, priority, reason, version, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, 1, ?, ?)
            """,
                (
                    json.dumps(candidate.to_dict()),
                    json.dumps(identification.to_dict()),
                    json.dumps(duplicate_result.to_dict()),
                    portfolio_id,
                    ReviewStatus.PENDING.value,
                    priority.value,
                    reason,
                    now,
                    now,
                ),
            )
            row = conn.execute(
                "SELECT * FROM review_queue_items WHERE id = ?", (cursor.lastrowid,)
            ).fetchone()
            return ReviewQueueItem.from_row(row)

    def update_review_queue_item(
        self,
        item_id: int,
        expected_version: int,
        changes: dict[str, Any],
        expected_status: ReviewStatus = ReviewStatus.PENDING,
    ) -> bool:
        unknown = set(changes) - _REVIEW_UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update review item fields: {sorted(unknown)}")

        updates = ["version = version + 1", "updated_at = ?"]
        params: list[Any] = [_utc_now()]
        for key, value in changes.items():
            if key == "candidate":
                updates.append("candidate_json = ?")
                params.append(json.dumps(value.to_dict()))
            elif key in ("status", "priority"):
                updates.append(f"{key} = ?")
                params.append(value.value if value is not None else None)
            else:
                updates.append(f"{key} = ?")
                params.append(value)

        params.extend([item_id, expected_status.value, expected_version])
        with self._transaction() as conn:
            cursor = conn.execute(
                f"""
                UPDATE review_queue_items
                SET {', '.join(updates)}
                WHERE id = ? AND status = ? AND version = ?
                """,
                params,
            )
            return cursor.rowcount > 0

    def get_review_queue_item(self, item_id: int) -> ReviewQueueItem | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM review_queue_items WHERE id = ?", (item_id,)
            ).fetchone()
            return ReviewQueueItem.from_row(row) if row else None

    def list_review_queue_items(
        self,
        status: ReviewStatus | None = None,
        priority: ReviewPriority | None = None,
    ) -> list[ReviewQueueItem]:
        clauses: list[str] = []
        params: list[Any] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if priority is not None:
            clauses.append("priority = ?")
            params.append(priority.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        with self._transaction() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM review_queue_items {where}
                ORDER BY CASE priority WHEN 'high' THEN 0 WHEN 'medium' THEN 1 ELSE 2 END,
                         created_at ASC, id ASC
                """,
                params,
            ).fetchall()
            return [ReviewQueueItem.from_row(row) for row in rows]

    def delete_review_queue_items(self, statuses: list[ReviewStatus], older_than: str) -> int:
        if not statuses:
            return 0
        placeholders = ",".join("?" * len(statuses))
        with self._transaction() as conn:
            cursor = conn.execute(
                f"""
                DELETE FROM review_queue_items
                WHERE status IN ({placeholders})
                AND COALESCE(reviewed_at, updated_at) < ?
                """,
                [s.value for s in statuses] + [older_than],
            )
            return cursor.rowcount

    # === Symbol cache ===

    def get_symbol_cache(self, cache_key: str) -> dict[str, Any] | None:
        """Get cached symbol lookup by key (unexpired only)."""
        with self._transaction() as conn:
            row = conn.execute(
                """
                SELECT * FROM symbol_cache
                WHERE cache_key = ? AND expires_at > ?
            """,
                (cache_key, _utc_now()),
            ).fetchone()

            if row:
                conn.execute(
                    "UPDATE symbol_cache SET hit_count = hit_count + 1 WHERE cache_key = ?",
                    (cache_key,),
                )
                return dict(row)
            return None

    def set_symbol_cache(
        self,
        cache_key: str,
        model: str,
        prompt_version: str,
        response_json: str,
        ttl_days: int = 30,
    ) -> None:
        """Store a symbol lookup response."""
        now = datetime.now(timezone.utc)
        expires = now + timedelta(days=ttl_days)

        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO symbol_cache
                (cache_key, model, prompt_version, response_json, created_at, expires_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(cache_key) DO UPDATE SET
                    response_json = excluded.response_json,
                    created_at = excluded.created_at,
                    expires_at = excluded.expires_at,
                    hit_count = 1
            """,
                (
                    cache_key,
                    model,
                    prompt_version,
                    response_json,
                    now.isoformat().replace("+00:00", "Z"),
                    expires.isoformat().replace("+00:00", "Z"),
                ),
            )

    def clear_expired_symbol_cache(self) -> int:
        """Clear expired cache entries. Returns count of deleted rows."""
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM symbol_cache WHERE expires_at < ?", (_utc_now(),))
            return cursor.rowcount

    # === Stats ===

    def get_stats(self) -> dict[str, Any]:
        """Get summary counts for reporting."""
        with self._transaction() as conn:
            stats: dict[str, Any] = {}
            stats["portfolios"] = conn.execute("SELECT COUNT(*) FROM portfolios").fetchone()[0]
            stats["transactions"] = conn.execute("SELECT COUNT(*) FROM transactions").fetchone()[0]
            stats["processed_emails"] = conn.execute(
                "SELECT COUNT(*) FROM processed_emails"
            ).fetchone()[0]

            by_outcome = conn.execute(
                "SELECT outcome, COUNT(*) AS n FROM processed_emails GROUP BY outcome"
            ).fetchall()
            stats["emails_by_outcome"] = {row["outcome"]: row["n"] for row in by_outcome}

            by_status = conn.execute(
                "SELECT status, COUNT(*) AS n FROM review_queue_items GROUP BY status"
            ).fetchall()
            stats["review_by_status"] = {row["status"]: row["n"] for row in by_status}
            return stats
