"""
Per-tenant SQLite database handling shared by all graphinbox stores.

Each store keeps one SQLite file per tenant under a data directory. This
module owns connection setup (pragmas, WAL mode, busy timeout), lazy schema
creation and immediate-mode transactions.

Invariants:
    - One SQLite file per (store, tenant_id)
    - Writes that touch more than one row run inside BEGIN IMMEDIATE
    - Locked/busy errors surface as TransientStoreError, never raw sqlite3

How to change safely:
    - Schema changes must use CREATE ... IF NOT EXISTS and additive columns
    - Keep the tenant id sanitization; it guards against path traversal
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from ..entities import normalize_tenant_id
from ..errors import TransientStoreError

logger = logging.getLogger(__name__)

_TRANSIENT_MARKERS = ("locked", "busy")


def is_transient(error: sqlite3.OperationalError) -> bool:
    message = str(error).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)


class TenantDatabase:
    """Base class for stores that keep one SQLite file per tenant.

    Subclasses set DB_PREFIX and SCHEMA.

    Thread safety:
        Each database connection is created per-operation.
        SQLite handles concurrent access via WAL mode.
    """

    DB_PREFIX = "tenant"
    SCHEMA = ""

    def __init__(
        self,
        data_dir: str,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        cache_size_pages: int = -64000,
    ) -> None:
        """Initialize the store.

        Args:
            data_dir: Directory for SQLite database files
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
            cache_size_pages: SQLite cache size (negative = KB)
        """
        self.data_dir = Path(data_dir)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self.cache_size_pages = cache_size_pages
        self._initialized: set[Path] = set()

    def _get_db_path(self, tenant_id: str) -> Path:
        """Get database file path for a tenant."""
        # Sanitize tenant_id to prevent path traversal
        tenant = normalize_tenant_id(tenant_id)
        safe_id = "".join(c for c in tenant if c.isalnum() or c in "-_")
        return self.data_dir / f"{self.DB_PREFIX}_{safe_id}.db"

    @contextmanager
    def _get_connection(self, tenant_id: str) -> Iterator[sqlite3.Connection]:
        """Get a database connection for a tenant, creating it on first use.

        Args:
            tenant_id: Tenant identifier

        Yields:
            SQLite connection

        Raises:
            TransientStoreError: If SQLite reports a locked or busy database
        """
        db_path = self._get_db_path(tenant_id)
        db_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            conn = sqlite3.connect(
                str(db_path),
                timeout=self.busy_timeout_ms / 1000.0,
                isolation_level=None,  # Autocommit by default, explicit transactions
            )
        except sqlite3.OperationalError as e:
            raise TransientStoreError(f"Cannot open {db_path.name}: {e}", "connect") from e

        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            conn.execute(f"PRAGMA cache_size = {self.cache_size_pages}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")

            if db_path not in self._initialized:
                conn.executescript(self.SCHEMA)
                self._initialized.add(db_path)
                logger.debug(
                    "Initialized tenant database",
                    extra={"tenant_id": tenant_id, "path": str(db_path)},
                )

            yield conn

        except sqlite3.OperationalError as e:
            if is_transient(e):
                raise TransientStoreError(str(e), self.DB_PREFIX) from e
            raise
        finally:
            conn.close()

    @contextmanager
    def _transaction(self, conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
        """Run a block inside BEGIN IMMEDIATE, rolling back on any error."""
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
            conn.execute("COMMIT")
        except Exception:
            conn.execute("ROLLBACK")
            raise

    async def tenant_exists(self, tenant_id: str) -> bool:
        """Check if the tenant database exists."""
        return self._get_db_path(tenant_id).exists()

    def get_db_path(self, tenant_id: str) -> Path:
        """Get the database file path for a tenant.

        Args:
            tenant_id: Tenant identifier

        Returns:
            Path to database file
        """
        return self._get_db_path(tenant_id)
