"""
Signature Store Abstraction

This module defines the SignatureStore interface and provides two implementations:
- InMemorySignatureStore: For development and testing
- PostgresSignatureStore: For production with full durability and concurrency safety

The SignatureStore is the authoritative table of signature records. It owns:
- Invalidation (flip is_valid True -> False, never delete)
- Insertion (append-only history)
- The one-valid-signature-per-page invariant

TRANSACTION CONTRACT:
Every write runs inside the begin_page_write() context manager, which holds
a mutual-exclusion scope keyed by page id:

    with store.begin_page_write(page_id) as ctx:
        ctx.invalidate_all_valid()
        ctx.insert(record)
        ctx.commit()

Nothing is visible to readers until commit(). Leaving the block without
committing rolls everything back, so an invalidation never lands without its
insert. Writes to different pages never wait on each other.
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Callable, Generator, Optional

import psycopg2

from ..core.errors import PersistenceError
from ..observability import ContextLogger, get_logger
from ..schemas import SignatureRecord


# ============================================================
# EXCEPTIONS
# ============================================================

class SignatureStoreError(PersistenceError):
    """Base exception for signature store errors."""
    pass


class LockTimeoutError(SignatureStoreError):
    """Raised when the page write lock cannot be acquired in time (page busy)."""
    pass


# ============================================================
# DATA STRUCTURES
# ============================================================

@dataclass
class PageWriteContext:
    """
    Transaction context for writes to one page's signatures.

    Holds the connection and the staged changes. Commit and rollback always
    happen on the same connection that took the page lock.
    """
    page_id: int
    _store: "SignatureStore"
    _conn: Any = field(default=None)
    _cursor: Any = field(default=None)
    _pending_invalidations: list = field(default_factory=list)
    _pending_inserts: list = field(default_factory=list)
    _committed: bool = field(default=False, init=False)
    _rolled_back: bool = field(default=False, init=False)

    def _check_open(self) -> None:
        if self._committed:
            raise SignatureStoreError("Transaction already committed")
        if self._rolled_back:
            raise SignatureStoreError("Transaction already rolled back")

    def invalidate_all_valid(self) -> int:
        """Invalidate every valid signature of this page. Returns affected count."""
        self._check_open()
        return self._store._do_invalidate(self)

    def insert(self, record: SignatureRecord) -> bool:
        """Stage a new valid record for this page."""
        self._check_open()
        if record.page_id != self.page_id:
            raise SignatureStoreError(
                f"Record for page {record.page_id} written inside page {self.page_id} transaction"
            )
        return self._store._do_insert(self, record)

    def commit(self) -> None:
        self._check_open()
        self._store._do_commit(self)
        self._committed = True

    def rollback(self) -> None:
        if not self._committed and not self._rolled_back:
            self._store._do_rollback(self)
            self._rolled_back = True


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================
# ABSTRACT BASE CLASS
# ============================================================

class SignatureStore(ABC):
    """
    Abstract base class for signature storage.

    Implementations must ensure:
    1. At most one valid record per page, observable by any reader at any time
    2. Records are never deleted and never change except is_valid True -> False
    3. Writes to one page are serialized; writes to different pages are not
    """

    def __init__(self, logger: Optional[ContextLogger] = None):
        self._logger = logger or get_logger(__name__)

    @contextmanager
    @abstractmethod
    def begin_page_write(self, page_id: int) -> Generator[PageWriteContext, None, None]:
        """
        Begin an atomic write to one page's signatures.

        Acquires the page's exclusive write scope, yields a PageWriteContext,
        and rolls back anything uncommitted on exit.
        """
        pass

    @abstractmethod
    def _do_invalidate(self, ctx: PageWriteContext) -> int:
        """Internal: invalidate within the current transaction."""
        pass

    @abstractmethod
    def _do_insert(self, ctx: PageWriteContext, record: SignatureRecord) -> bool:
        """Internal: insert within the current transaction."""
        pass

    @abstractmethod
    def _do_commit(self, ctx: PageWriteContext) -> None:
        """Internal: commit the current transaction. Use ctx.commit() instead."""
        pass

    @abstractmethod
    def _do_rollback(self, ctx: PageWriteContext) -> None:
        """Internal: rollback the current transaction. Use ctx.rollback() instead."""
        pass

    @abstractmethod
    def get_valid_signature(self, page_id: int, revision_id: int) -> Optional[SignatureRecord]:
        """Return the valid record for exactly this page and revision, if any."""
        pass

    @abstractmethod
    def get_current_signature(self, page_id: int) -> Optional[SignatureRecord]:
        """Return the page's valid record, whatever revision it signs."""
        pass

    @abstractmethod
    def list_history(self, page_id: int) -> list[SignatureRecord]:
        """Return every record for the page, oldest first."""
        pass

    # ================================================================
    # WRITE OPERATIONS
    # ================================================================

    def invalidate_all_valid(self, page_id: int) -> int:
        """
        Invalidate every currently valid signature of a page.

        Returns:
            Number of records invalidated (0 is a normal outcome)
        """
        self._logger.info("Starting invalidation", page_id=page_id)
        with self.begin_page_write(page_id) as ctx:
            affected = ctx.invalidate_all_valid()
            ctx.commit()
        self._logger.info(
            "Invalidation completed",
            page_id=page_id,
            affected_rows=affected,
        )
        return affected

    def insert(self, record: SignatureRecord) -> bool:
        """
        Append a new valid record.

        Refuses to create a second valid record for the page; use
        add_signature() to replace the current one.

        Raises:
            SignatureStoreError: If the write fails
        """
        with self.begin_page_write(record.page_id) as ctx:
            if not ctx.insert(record):
                return False
            ctx.commit()
        return True

    def add_signature(
        self,
        page_id: int,
        revision_id: int,
        signer_id: int,
        content_hash: str,
        remarks: Optional[str] = None,
        precondition: Optional[Callable[[], None]] = None,
    ) -> bool:
        """
        Replace the page's signature: invalidate all valid records, then insert.

        Both steps run in one page-scoped transaction, so no reader ever sees
        two valid records for the page, and a failure leaves the previous
        signature in place.

        ``precondition`` runs once the page lock is held and before anything
        is written. Whatever it raises aborts the write and propagates.

        Returns:
            True on success, False if the store refused the insert

        Raises:
            SignatureStoreError: If the underlying store fails
        """
        self._logger.info(
            "Attempting to add signature",
            page_id=page_id,
            revision_id=revision_id,
            signer_id=signer_id,
            remarks=remarks if remarks else "[none]",
        )

        with self.begin_page_write(page_id) as ctx:
            if precondition is not None:
                precondition()

            invalidated = ctx.invalidate_all_valid()
            self._logger.info(
                "Invalidation before add",
                page_id=page_id,
                affected_rows=invalidated,
            )

            # Timestamp is taken inside the page lock so that commit order
            # and timestamp order agree.
            record = SignatureRecord(
                page_id=page_id,
                revision_id=revision_id,
                signer_id=signer_id,
                timestamp=_utcnow(),
                content_hash=content_hash,
                is_valid=True,
                remarks=remarks,
            )
            if not ctx.insert(record):
                self._logger.error(
                    "Failed to add new signature",
                    page_id=page_id,
                    revision_id=revision_id,
                )
                return False
            ctx.commit()

        self._logger.info(
            "Successfully added new signature",
            page_id=page_id,
            revision_id=revision_id,
        )
        return True


# ============================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================

class InMemorySignatureStore(SignatureStore):
    """
    In-memory implementation of SignatureStore.

    Suitable for:
    - Development
    - Testing
    - Single-process deployments without persistence requirements

    Writes take a per-page lock; staged changes are applied under a short
    store-wide lock at commit, so readers see either the old state or the
    new one, never a mix.
    """

    def __init__(self, logger: Optional[ContextLogger] = None):
        super().__init__(logger)
        self._records: dict[int, SignatureRecord] = {}
        self._by_page: dict[int, list[int]] = {}
        self._next_id = 1
        # page_id -> [lock, holders + waiters]; dropped when nobody uses it
        self._page_locks: dict[int, list] = {}
        self._registry_lock = Lock()
        self._data_lock = Lock()

    def _claim_page_lock(self, page_id: int) -> Lock:
        with self._registry_lock:
            entry = self._page_locks.get(page_id)
            if entry is None:
                entry = self._page_locks[page_id] = [Lock(), 0]
            entry[1] += 1
            return entry[0]

    def _release_page_lock(self, page_id: int) -> None:
        with self._registry_lock:
            entry = self._page_locks[page_id]
            entry[0].release()
            entry[1] -= 1
            if entry[1] == 0:
                del self._page_locks[page_id]

    @contextmanager
    def begin_page_write(self, page_id: int) -> Generator[PageWriteContext, None, None]:
        """Begin atomic page write with a per-page thread lock."""
        lock = self._claim_page_lock(page_id)
        lock.acquire()
        ctx = PageWriteContext(page_id=page_id, _store=self, _conn="in_memory_lock")
        try:
            yield ctx
        finally:
            if not ctx._committed:
                ctx.rollback()
            self._release_page_lock(page_id)

    def _valid_ids(self, page_id: int) -> list[int]:
        return [
            sid for sid in self._by_page.get(page_id, [])
            if self._records[sid].is_valid
        ]

    def _do_invalidate(self, ctx: PageWriteContext) -> int:
        with self._data_lock:
            to_invalidate = [
                sid for sid in self._valid_ids(ctx.page_id)
                if sid not in ctx._pending_invalidations
            ]
        ctx._pending_invalidations.extend(to_invalidate)
        # Rows inserted earlier in this transaction are invalidated too and
        # still land in history, as an UPDATE inside one transaction does.
        staged = 0
        for i, record in enumerate(ctx._pending_inserts):
            if record.is_valid:
                ctx._pending_inserts[i] = record.model_copy(update={"is_valid": False})
                staged += 1
        return len(to_invalidate) + staged

    def _do_insert(self, ctx: PageWriteContext, record: SignatureRecord) -> bool:
        with self._data_lock:
            remaining = set(self._valid_ids(ctx.page_id)) - set(ctx._pending_invalidations)
        if remaining or any(r.is_valid for r in ctx._pending_inserts):
            raise SignatureStoreError(
                f"Page {ctx.page_id} already has a valid signature; "
                "invalidate it in the same transaction first"
            )
        ctx._pending_inserts.append(record.model_copy(update={"is_valid": True}))
        return True

    def _do_commit(self, ctx: PageWriteContext) -> None:
        if ctx._conn != "in_memory_lock":
            raise SignatureStoreError("_do_commit called outside transaction")
        with self._data_lock:
            for sid in ctx._pending_invalidations:
                self._records[sid] = self._records[sid].model_copy(update={"is_valid": False})
            for record in ctx._pending_inserts:
                sid = self._next_id
                self._next_id += 1
                self._records[sid] = record.model_copy(update={"signature_id": sid})
                self._by_page.setdefault(ctx.page_id, []).append(sid)
        ctx._conn = None

    def _do_rollback(self, ctx: PageWriteContext) -> None:
        ctx._pending_invalidations.clear()
        ctx._pending_inserts.clear()
        ctx._conn = None

    def get_valid_signature(self, page_id: int, revision_id: int) -> Optional[SignatureRecord]:
        with self._data_lock:
            for sid in self._valid_ids(page_id):
                record = self._records[sid]
                if record.revision_id == revision_id:
                    self._logger.debug(
                        "Found valid signature",
                        page_id=page_id,
                        revision_id=revision_id,
                    )
                    return record
        self._logger.debug("No valid signature found", page_id=page_id, revision_id=revision_id)
        return None

    def get_current_signature(self, page_id: int) -> Optional[SignatureRecord]:
        with self._data_lock:
            valid = self._valid_ids(page_id)
            return self._records[valid[0]] if valid else None

    def list_history(self, page_id: int) -> list[SignatureRecord]:
        with self._data_lock:
            return [self._records[sid] for sid in self._by_page.get(page_id, [])]


# ============================================================
# POSTGRESQL IMPLEMENTATION
# ============================================================

_SELECT_COLUMNS = """
    id, page_id, revision_id, signer_id, signed_at,
    content_hash, is_valid, remarks
"""


def _row_to_record(row) -> SignatureRecord:
    return SignatureRecord(
        signature_id=row[0],
        page_id=row[1],
        revision_id=row[2],
        signer_id=row[3],
        timestamp=row[4],
        content_hash=row[5],
        is_valid=row[6],
        remarks=row[7],
    )


class PostgresSignatureStore(SignatureStore):
    """
    PostgreSQL implementation of SignatureStore.

    Provides:
    - Full ACID guarantees
    - Per-page serialization via pg_advisory_xact_lock(page_id)
    - A partial unique index on (page_id) WHERE is_valid as a second line
      for the one-valid-signature rule
    - Lock/statement timeouts to prevent hanging

    THREAD SAFETY:
    All transaction state (conn, cursor) is stored in PageWriteContext, NOT on
    the store, so one store instance can be shared across request threads.

    Requirements:
    - Table created by wikisign.db.schema.ensure_schema
    - psycopg2 for connection
    """

    # Timeouts to prevent hanging under load
    LOCK_TIMEOUT_MS = 2000
    STATEMENT_TIMEOUT_MS = 10000

    # psycopg2 error codes for lock/statement timeout
    PGCODE_LOCK_NOT_AVAILABLE = '55P03'
    PGCODE_QUERY_CANCELED = '57014'

    def __init__(
        self,
        connection_factory: Callable[[], Any],
        lock_timeout_ms: int = LOCK_TIMEOUT_MS,
        statement_timeout_ms: int = STATEMENT_TIMEOUT_MS,
        logger: Optional[ContextLogger] = None,
    ):
        """
        Initialize PostgreSQL signature store.

        Args:
            connection_factory: Callable that returns a psycopg2 connection.
            lock_timeout_ms: How long to wait for the page lock (ms).
            statement_timeout_ms: Max statement execution time (ms).
        """
        super().__init__(logger)
        self._connection_factory = connection_factory
        self._lock_timeout_ms = lock_timeout_ms
        self._statement_timeout_ms = statement_timeout_ms

    def _connect(self):
        try:
            return self._connection_factory()
        except psycopg2.Error as e:
            raise SignatureStoreError(f"Could not connect to signature database: {e}") from e

    @contextmanager
    def begin_page_write(self, page_id: int) -> Generator[PageWriteContext, None, None]:
        """
        Begin atomic page write holding a transaction-scoped advisory lock.

        The lock is released by PostgreSQL itself when the transaction ends,
        whether by commit, rollback or a dropped connection.
        """
        conn = self._connect()
        ctx = None

        try:
            conn.autocommit = False
            cursor = conn.cursor()
        except psycopg2.Error as e:
            conn.close()
            raise SignatureStoreError(f"Could not open transaction: {e}") from e

        try:
            try:
                # SET LOCAL keeps the timeouts transaction-scoped
                cursor.execute(f"SET LOCAL lock_timeout = '{self._lock_timeout_ms}ms'")
                cursor.execute(f"SET LOCAL statement_timeout = '{self._statement_timeout_ms}ms'")
                cursor.execute("SELECT pg_advisory_xact_lock(%s)", (page_id,))
            except psycopg2.Error as e:
                kind = self._timeout_kind(e)
                if kind == "lock":
                    raise LockTimeoutError(
                        f"Page {page_id} busy - could not acquire signature lock. Try again."
                    ) from e
                if kind == "statement":
                    raise SignatureStoreError("Query timed out - statement took too long.") from e
                raise SignatureStoreError(f"Could not lock page {page_id}: {e}") from e

            ctx = PageWriteContext(page_id=page_id, _store=self, _conn=conn, _cursor=cursor)
            yield ctx

        finally:
            # Single rollback path: if context exists and wasn't committed, rollback
            if ctx is None or not ctx._committed:
                try:
                    conn.rollback()
                except psycopg2.Error:
                    self._logger.warning("Rollback failed, connection likely broken", page_id=page_id)
            try:
                cursor.close()
            finally:
                conn.close()

    def _timeout_kind(self, e: Exception) -> Optional[str]:
        """
        Determine the type of timeout from a PostgreSQL exception.

        Returns:
            "lock" - Lock-related failure
            "statement" - Statement timeout
            "timeout" - Some timeout but unclear which
            None - Not a timeout error

        PostgreSQL uses 57014 (query_canceled) for both lock_timeout and
        statement_timeout; the message tells them apart.
        """
        pgcode = getattr(e, 'pgcode', None)
        err_msg = (getattr(e, 'pgerror', None) or str(e)).lower()

        if pgcode == self.PGCODE_LOCK_NOT_AVAILABLE:
            return "lock"

        if pgcode == self.PGCODE_QUERY_CANCELED:
            if 'lock timeout' in err_msg or 'lock_timeout' in err_msg:
                return "lock"
            if 'statement timeout' in err_msg or 'statement_timeout' in err_msg:
                return "statement"
            return "timeout"

        if 'lock' in err_msg and 'timeout' in err_msg:
            return "lock"
        if 'statement' in err_msg and 'timeout' in err_msg:
            return "statement"

        return None

    def _do_invalidate(self, ctx: PageWriteContext) -> int:
        try:
            ctx._cursor.execute("""
                UPDATE digital_signatures
                SET is_valid = FALSE
                WHERE page_id = %s AND is_valid
            """, (ctx.page_id,))
        except psycopg2.Error as e:
            raise SignatureStoreError(f"Invalidation failed for page {ctx.page_id}: {e}") from e
        return max(ctx._cursor.rowcount, 0)

    def _do_insert(self, ctx: PageWriteContext, record: SignatureRecord) -> bool:
        try:
            ctx._cursor.execute("""
                INSERT INTO digital_signatures (
                    page_id,
                    revision_id,
                    signer_id,
                    signed_at,
                    content_hash,
                    is_valid,
                    remarks
                ) VALUES (%s, %s, %s, %s, %s, TRUE, %s)
                RETURNING id
            """, (
                record.page_id,
                record.revision_id,
                record.signer_id,
                record.timestamp,
                record.content_hash,
                record.remarks,
            ))
        except psycopg2.IntegrityError as e:
            raise SignatureStoreError(
                f"Page {record.page_id} already has a valid signature: {e}"
            ) from e
        except psycopg2.Error as e:
            raise SignatureStoreError(f"Insert failed for page {record.page_id}: {e}") from e
        return ctx._cursor.fetchone() is not None

    def _do_commit(self, ctx: PageWriteContext) -> None:
        if ctx._conn is None:
            raise SignatureStoreError("_do_commit called outside begin_page_write context")
        try:
            ctx._conn.commit()
        except psycopg2.Error as e:
            raise SignatureStoreError(f"Commit failed for page {ctx.page_id}: {e}") from e

    def _do_rollback(self, ctx: PageWriteContext) -> None:
        if ctx._conn is not None:
            try:
                ctx._conn.rollback()
            except psycopg2.Error:
                self._logger.warning("Rollback failed", page_id=ctx.page_id)

    def _fetch(self, query: str, params: tuple) -> list[SignatureRecord]:
        conn = self._connect()
        try:
            cursor = conn.cursor()
            try:
                cursor.execute(query, params)
                return [_row_to_record(row) for row in cursor.fetchall()]
            finally:
                cursor.close()
        except psycopg2.Error as e:
            raise SignatureStoreError(f"Signature query failed: {e}") from e
        finally:
            conn.close()

    def get_valid_signature(self, page_id: int, revision_id: int) -> Optional[SignatureRecord]:
        rows = self._fetch(f"""
            SELECT {_SELECT_COLUMNS}
            FROM digital_signatures
            WHERE page_id = %s AND revision_id = %s AND is_valid
        """, (page_id, revision_id))
        if rows:
            self._logger.debug("Found valid signature", page_id=page_id, revision_id=revision_id)
            return rows[0]
        self._logger.debug("No valid signature found", page_id=page_id, revision_id=revision_id)
        return None

    def get_current_signature(self, page_id: int) -> Optional[SignatureRecord]:
        rows = self._fetch(f"""
            SELECT {_SELECT_COLUMNS}
            FROM digital_signatures
            WHERE page_id = %s AND is_valid
        """, (page_id,))
        return rows[0] if rows else None

    def list_history(self, page_id: int) -> list[SignatureRecord]:
        return self._fetch(f"""
            SELECT {_SELECT_COLUMNS}
            FROM digital_signatures
            WHERE page_id = %s
            ORDER BY id
        """, (page_id,))
