import logging
import os
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from threading import RLock
from typing import Callable, Iterator, List

from autocare.services.errors import UpstreamUnavailableError

logger = logging.getLogger(__name__)

BUSY_TIMEOUT_SECONDS = 10.0


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _run_callbacks(callbacks: List[Callable[[], None]]) -> None:
    for callback in callbacks:
        try:
            callback()
        except Exception:
            logger.exception("After-commit callback failed")


@dataclass
class Transaction:
    conn: sqlite3.Connection
    _after_commit: List[Callable[[], None]] = field(default_factory=list)
    _after_release: List[Callable[[], None]] = field(default_factory=list)

    def execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        return self.conn.execute(sql, params)

    def on_commit(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` after a successful commit, still inside the writer lock."""
        self._after_commit.append(callback)

    def after_release(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` after a successful commit once the writer lock is released.

        Slow side effects such as push delivery go here so they never hold up other readers and writers.
        """
        self._after_release.append(callback)


@dataclass
class Database:
    db_path: str

    def __post_init__(self) -> None:
        # Reentrant so after-commit callbacks (event handlers) may read the store.
        self._lock = RLock()
        path = Path(self.db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = str(path)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(
                self.db_path,
                check_same_thread=False,
                timeout=BUSY_TIMEOUT_SECONDS,
                isolation_level=None,
            )
        except sqlite3.Error as exc:
            raise UpstreamUnavailableError(f"Store unavailable: {exc}") from exc
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def read(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = self._connect()
            try:
                yield conn
            except (sqlite3.OperationalError, sqlite3.DatabaseError) as exc:
                raise UpstreamUnavailableError(f"Store read failed: {exc}") from exc
            finally:
                conn.close()

    @contextmanager
    def transaction(self) -> Iterator[Transaction]:
        """One all-or-nothing write against the store.

        ``BEGIN IMMEDIATE`` takes the SQLite write lock up front, so concurrent
        writers in other processes serialize behind us instead of failing at commit.
        """
        with self._lock:
            conn = self._connect()
            tx = Transaction(conn=conn)
            try:
                conn.execute("BEGIN IMMEDIATE")
                yield tx
                conn.execute("COMMIT")
            except sqlite3.IntegrityError:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            except (sqlite3.OperationalError, sqlite3.DatabaseError) as exc:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise UpstreamUnavailableError(f"Store write failed: {exc}") from exc
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            finally:
                conn.close()
            _run_callbacks(tx._after_commit)
        _run_callbacks(tx._after_release)

    def ping(self) -> bool:
        try:
            with self.read() as conn:
                conn.execute("SELECT 1").fetchone()
            return True
        except UpstreamUnavailableError:
            logger.exception("Store ping failed")
            return False

    def _ensure_column(self, conn: sqlite3.Connection, table: str, column: str, definition: str) -> None:
        columns = conn.execute(f"PRAGMA table_info({table})").fetchall()
        existing = {row["name"] for row in columns}
        if column in existing:
            return
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")

    def _init_db(self) -> None:
        with self._lock:
            conn = self._connect()
            try:
                conn.execute("PRAGMA journal_mode=WAL")
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS accounts (
                        id TEXT PRIMARY KEY,
                        email TEXT NOT NULL UNIQUE,
                        password_hash TEXT NOT NULL,
                        full_name TEXT NOT NULL,
                        phone TEXT NOT NULL DEFAULT '',
                        role TEXT NOT NULL,
                        email_confirmed INTEGER NOT NULL DEFAULT 0,
                        sessions_valid_after INTEGER NOT NULL DEFAULT 0,
                        created_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS auth_tokens (
                        token TEXT PRIMARY KEY,
                        user_id TEXT NOT NULL,
                        purpose TEXT NOT NULL,
                        expires_at TEXT NOT NULL,
                        used_at TEXT
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS revoked_tokens (
                        token TEXT PRIMARY KEY,
                        user_id TEXT NOT NULL,
                        revoked_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS providers (
                        id TEXT PRIMARY KEY,
                        owner_user_id TEXT NOT NULL,
                        name TEXT NOT NULL,
                        kind TEXT NOT NULL,
                        city TEXT NOT NULL,
                        latitude REAL,
                        longitude REAL,
                        approval_status TEXT NOT NULL DEFAULT 'pending',
                        rating REAL NOT NULL DEFAULT 0.0,
                        review_count INTEGER NOT NULL DEFAULT 0,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL,
                        decided_at TEXT
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS provider_services (
                        provider_id TEXT NOT NULL,
                        service_id TEXT NOT NULL,
                        price INTEGER NOT NULL,
                        PRIMARY KEY (provider_id, service_id)
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS orders (
                        id TEXT PRIMARY KEY,
                        customer_id TEXT NOT NULL,
                        service_type TEXT NOT NULL,
                        latitude REAL,
                        longitude REAL,
                        address TEXT NOT NULL,
                        city TEXT NOT NULL,
                        scheduled_date TEXT NOT NULL,
                        scheduled_time TEXT NOT NULL,
                        vehicle_description TEXT NOT NULL,
                        special_instructions TEXT NOT NULL DEFAULT '',
                        status TEXT NOT NULL,
                        selected_provider_id TEXT,
                        total_amount INTEGER NOT NULL DEFAULT 0,
                        payment_status TEXT NOT NULL DEFAULT 'unpaid',
                        payment_id TEXT,
                        version INTEGER NOT NULL DEFAULT 1,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS order_invitations (
                        order_id TEXT NOT NULL,
                        provider_id TEXT NOT NULL,
                        created_at TEXT NOT NULL,
                        PRIMARY KEY (order_id, provider_id)
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS order_declines (
                        order_id TEXT NOT NULL,
                        provider_id TEXT NOT NULL,
                        reason TEXT NOT NULL DEFAULT '',
                        created_at TEXT NOT NULL,
                        PRIMARY KEY (order_id, provider_id)
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS order_status_history (
                        id TEXT PRIMARY KEY,
                        order_id TEXT NOT NULL,
                        actor_id TEXT NOT NULL,
                        from_status TEXT NOT NULL,
                        to_status TEXT NOT NULL,
                        note TEXT NOT NULL,
                        created_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS quotes (
                        id TEXT PRIMARY KEY,
                        order_id TEXT NOT NULL,
                        provider_id TEXT NOT NULL,
                        quoted_price INTEGER NOT NULL,
                        estimated_duration_minutes INTEGER NOT NULL,
                        notes TEXT NOT NULL DEFAULT '',
                        status TEXT NOT NULL DEFAULT 'pending',
                        created_at TEXT NOT NULL,
                        decided_at TEXT
                    )
                    """
                )
                conn.execute("CREATE INDEX IF NOT EXISTS idx_quotes_order ON quotes (order_id, status)")
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS idempotency_keys (
                        key TEXT NOT NULL,
                        actor_id TEXT NOT NULL DEFAULT '',
                        operation TEXT NOT NULL,
                        entity_id TEXT NOT NULL,
                        created_at TEXT NOT NULL,
                        PRIMARY KEY (key, actor_id)
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS feedback (
                        order_id TEXT PRIMARY KEY,
                        customer_id TEXT NOT NULL,
                        provider_id TEXT NOT NULL,
                        rating INTEGER NOT NULL,
                        comment TEXT NOT NULL DEFAULT '',
                        created_at TEXT NOT NULL
                    )
                    """
                )
                self._ensure_column(conn, "orders", "payment_id", "TEXT")
                self._ensure_column(conn, "providers", "decided_at", "TEXT")
                self._ensure_column(conn, "accounts", "sessions_valid_after", "INTEGER NOT NULL DEFAULT 0")
                self._ensure_column(conn, "idempotency_keys", "actor_id", "TEXT NOT NULL DEFAULT ''")
            finally:
                conn.close()


default_db = str(Path(__file__).resolve().parents[2] / "data" / "marketplace.sqlite3")
database = Database(db_path=os.getenv("MARKETPLACE_DB_PATH", default_db))
