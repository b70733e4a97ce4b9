"""
SQLite database module for the reconciliation engine.

Provides persistent storage for:
- Entities and their typed identifiers (contacts)
- Calendar events with their sync state
- External connections (credentials and last-sync status)
- Sync job audit records and the durable job queue
"""

import json
import sqlite3
import threading
from collections.abc import Generator, Iterable
from contextlib import contextmanager, nullcontext
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Union

from relsync.sync.record import (
    EntityMetadata,
    format_datetime,
    parse_bool,
    utcnow,
)
from relsync.sync.state import (
    EXPORTABLE_STATUSES,
    SyncStatus,
    status_after_local_edit,
    status_after_sync,
)
from relsync.utils.normalization import (
    normalize_email,
    normalize_name,
    normalize_phone,
    normalize_title,
)

SCHEMA = """
CREATE TABLE IF NOT EXISTS entities (
    id INTEGER PRIMARY KEY,
    owner_id TEXT NOT NULL,
    name TEXT NOT NULL,
    description TEXT,
    metadata TEXT NOT NULL DEFAULT '{}',
    external_id TEXT,
    archived_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_entities_owner ON entities(owner_id);
CREATE INDEX IF NOT EXISTS idx_entities_owner_name ON entities(owner_id, name);
CREATE INDEX IF NOT EXISTS idx_entities_external_id ON entities(owner_id, external_id);

CREATE TABLE IF NOT EXISTS identifiers (
    id INTEGER PRIMARY KEY,
    entity_id INTEGER NOT NULL REFERENCES entities(id),
    type TEXT NOT NULL,
    value TEXT NOT NULL,
    normalized_value TEXT NOT NULL,
    is_primary INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    UNIQUE(entity_id, type, normalized_value)
);

CREATE INDEX IF NOT EXISTS idx_identifiers_lookup
    ON identifiers(type, normalized_value);

CREATE TABLE IF NOT EXISTS events (
    id INTEGER PRIMARY KEY,
    user_id TEXT NOT NULL,
    title TEXT NOT NULL,
    title_key TEXT NOT NULL,
    description TEXT,
    location TEXT,
    starts_at TEXT NOT NULL,
    ends_at TEXT,
    all_day INTEGER NOT NULL DEFAULT 0,
    external_id TEXT,
    connection_id INTEGER REFERENCES connections(id),
    sync_status TEXT NOT NULL DEFAULT 'local_only',
    sync_metadata TEXT NOT NULL DEFAULT '{}',
    last_synced_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_events_user_external_id
    ON events(user_id, external_id) WHERE external_id IS NOT NULL;
CREATE INDEX IF NOT EXISTS idx_events_title_key ON events(user_id, title_key);
CREATE INDEX IF NOT EXISTS idx_events_sync_status ON events(user_id, sync_status);

CREATE TABLE IF NOT EXISTS connections (
    id INTEGER PRIMARY KEY,
    user_id TEXT NOT NULL,
    provider TEXT NOT NULL,
    account_identifier TEXT,
    access_token TEXT,
    refresh_token TEXT,
    token_expires_at TEXT,
    status TEXT NOT NULL DEFAULT 'connected',
    last_synced_at TEXT,
    sync_error TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_connections_user ON connections(user_id);

CREATE TABLE IF NOT EXISTS sync_jobs (
    id INTEGER PRIMARY KEY,
    user_id TEXT NOT NULL,
    connection_id INTEGER NOT NULL REFERENCES connections(id),
    source TEXT NOT NULL,
    direction TEXT NOT NULL DEFAULT 'both',
    status TEXT NOT NULL DEFAULT 'pending',
    total INTEGER NOT NULL DEFAULT 0,
    processed INTEGER NOT NULL DEFAULT 0,
    created INTEGER NOT NULL DEFAULT 0,
    merged INTEGER NOT NULL DEFAULT 0,
    skipped INTEGER NOT NULL DEFAULT 0,
    exported INTEGER NOT NULL DEFAULT 0,
    export_failed INTEGER NOT NULL DEFAULT 0,
    errors INTEGER NOT NULL DEFAULT 0,
    error_log TEXT NOT NULL DEFAULT '[]',
    attempts INTEGER NOT NULL DEFAULT 0,
    started_at TEXT,
    completed_at TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sync_jobs_user ON sync_jobs(user_id);

CREATE TABLE IF NOT EXISTS job_queue (
    id INTEGER PRIMARY KEY,
    sync_job_id INTEGER NOT NULL REFERENCES sync_jobs(id),
    connection_id INTEGER NOT NULL,
    user_id TEXT NOT NULL,
    direction TEXT NOT NULL DEFAULT 'both',
    state TEXT NOT NULL DEFAULT 'available',
    attempts INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL DEFAULT 3,
    run_after TEXT NOT NULL,
    last_error TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_job_queue_state ON job_queue(state, run_after);
"""

# Identifier types written by the merge pipeline
IDENTIFIER_EMAIL = "email"
IDENTIFIER_PHONE = "phone"

_IDENTIFIER_NORMALIZERS = {
    IDENTIFIER_EMAIL: normalize_email,
    IDENTIFIER_PHONE: normalize_phone,
}

# Event fields a user may edit locally
EDITABLE_EVENT_FIELDS = frozenset(
    {"title", "description", "location", "starts_at", "ends_at", "all_day"}
)

# Counters persisted on a sync job record
JOB_COUNTERS = (
    "total",
    "processed",
    "created",
    "merged",
    "skipped",
    "exported",
    "export_failed",
    "errors",
)


class DatabaseError(Exception):
    """Raised when a storage operation refers to a missing row."""

    pass


class ConnectionStatus(Enum):
    """Lifecycle state of an external connection."""

    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"
    PENDING_REAUTH = "pending_reauth"


class JobStatus(Enum):
    """Status of a sync job audit record."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class QueueState(Enum):
    """State of a row in the durable job queue."""

    AVAILABLE = "available"  # Waiting for run_after to pass
    RUNNING = "running"  # Claimed by a worker
    COMPLETED = "completed"
    DISCARDED = "discarded"  # Out of attempts


def normalize_identifier(identifier_type: str, value: str) -> str:
    """Normalized form of an identifier value, used for uniqueness."""
    normalizer = _IDENTIFIER_NORMALIZERS.get(identifier_type)
    if normalizer is None:
        return value.strip()
    return normalizer(value)


def _now() -> str:
    return format_datetime(utcnow()) or ""


def _status_value(status: Union[str, Enum]) -> str:
    return status.value if isinstance(status, Enum) else status


class SyncDatabase:
    """
    SQLite database manager for reconciled records and sync bookkeeping.

    File databases open a fresh connection per operation, so worker threads
    never share one. In-memory databases share a single connection guarded
    by a lock so the schema persists across operations.

    Usage:
        db = SyncDatabase('/path/to/relsync.db')
        db.initialize()

        # Or use in-memory for testing:
        db = SyncDatabase(':memory:')
        db.initialize()
    """

    def __init__(self, db_path: Union[str, Path], timeout: float = 30.0):
        """
        Initialize the database manager.

        Args:
            db_path: Path to SQLite database file, or ':memory:'
            timeout: Seconds to wait on a locked database before failing
        """
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            self.db_path = str(Path(self.db_path).expanduser())
        self.timeout = timeout
        self._shared_connection: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()

    @property
    def is_memory(self) -> bool:
        return self.db_path == ":memory:"

    def _open(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.db_path,
            timeout=self.timeout,
            check_same_thread=not self.is_memory,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _get_connection(self) -> sqlite3.Connection:
        if self.is_memory:
            if self._shared_connection is None:
                self._shared_connection = self._open()
            return self._shared_connection
        return self._open()

    @contextmanager
    def connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Context manager for database connections.

        Commits on success and rolls back on any exception.

        Usage:
            with db.connection() as conn:
                conn.execute("SELECT * FROM entities")
        """
        with self._lock if self.is_memory else nullcontext():
            conn = self._get_connection()
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                if not self.is_memory:
                    conn.close()

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Context manager for a write transaction taken up front.

        BEGIN IMMEDIATE acquires the write lock before the first read, so a
        check followed by an insert cannot interleave with another writer.
        """
        with self.connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            yield conn

    def initialize(self) -> None:
        """Create all tables and indexes if they don't exist."""
        if not self.is_memory:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        with self.connection() as conn:
            conn.executescript(SCHEMA)

    def close(self) -> None:
        """Close the shared in-memory connection, if any."""
        if self._shared_connection is not None:
            self._shared_connection.close()
            self._shared_connection = None

    # =========================================================================
    # Entity Operations
    # =========================================================================

    @staticmethod
    def _entity_from_row(row: sqlite3.Row) -> dict[str, Any]:
        entity = dict(row)
        entity["metadata"] = EntityMetadata.from_json(row["metadata"])
        return entity

    def create_entity(
        self,
        owner_id: str,
        name: str,
        description: Optional[str] = None,
        metadata: Optional[EntityMetadata] = None,
        external_id: Optional[str] = None,
        identifiers: Iterable[tuple[str, str]] = (),
    ) -> int:
        """
        Create an entity together with its identifiers in one transaction.

        Args:
            owner_id: Owning user
            name: Display name (trimmed before storing)
            description: Free-text description
            metadata: Provenance metadata
            external_id: Primary external id from the creating provider
            identifiers: (type, value) pairs to attach

        Returns:
            The new entity id
        """
        now = _now()
        metadata = metadata or EntityMetadata()
        with self.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO entities
                    (owner_id, name, description, metadata, external_id,
                     created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    owner_id,
                    normalize_name(name),
                    description,
                    metadata.to_json(),
                    external_id,
                    now,
                    now,
                ),
            )
            entity_id = int(cursor.lastrowid)
            for identifier_type, value in identifiers:
                self._insert_identifier(conn, entity_id, identifier_type, value)
        return entity_id

    def get_entity(self, entity_id: int) -> Optional[dict[str, Any]]:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM entities WHERE id = ?", (entity_id,)
            ).fetchone()
            return self._entity_from_row(row) if row else None

    def list_entities(
        self, owner_id: str, include_archived: bool = False
    ) -> list[dict[str, Any]]:
        query = "SELECT * FROM entities WHERE owner_id = ?"
        if not include_archived:
            query += " AND archived_at IS NULL"
        with self.connection() as conn:
            rows = conn.execute(query + " ORDER BY id", (owner_id,)).fetchall()
            return [self._entity_from_row(row) for row in rows]

    def count_entities(self, owner_id: str) -> int:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM entities WHERE owner_id = ? "
                "AND archived_at IS NULL",
                (owner_id,),
            ).fetchone()
            return int(row[0])

    def find_entity_by_external_id(
        self, owner_id: str, external_id: str
    ) -> Optional[dict[str, Any]]:
        """
        Find an entity by a provider-native id.

        Matches the primary external_id column or any value of the
        metadata external_ids map.
        """
        with self.connection() as conn:
            row = conn.execute(
                """
                SELECT * FROM entities
                WHERE owner_id = ? AND archived_at IS NULL
                  AND (
                    external_id = ?
                    OR EXISTS (
                        SELECT 1 FROM json_each(entities.metadata, '$.external_ids')
                        WHERE json_each.value = ?
                    )
                  )
                ORDER BY id
                LIMIT 1
                """,
                (owner_id, external_id, external_id),
            ).fetchone()
            return self._entity_from_row(row) if row else None

    def find_entity_by_identifier(
        self, owner_id: str, identifier_type: str, value: str
    ) -> Optional[dict[str, Any]]:
        """Find the oldest entity carrying an identifier with this normalized value."""
        normalized = normalize_identifier(identifier_type, value)
        if not normalized:
            return None
        with self.connection() as conn:
            row = conn.execute(
                """
                SELECT e.* FROM entities e
                JOIN identifiers i ON i.entity_id = e.id
                WHERE e.owner_id = ? AND e.archived_at IS NULL
                  AND i.type = ? AND i.normalized_value = ?
                ORDER BY e.id
                LIMIT 1
                """,
                (owner_id, identifier_type, normalized),
            ).fetchone()
            return self._entity_from_row(row) if row else None

    def find_entity_by_name(
        self, owner_id: str, name: str
    ) -> Optional[dict[str, Any]]:
        """Find the oldest entity whose trimmed name equals name exactly."""
        trimmed = normalize_name(name)
        if not trimmed:
            return None
        with self.connection() as conn:
            row = conn.execute(
                """
                SELECT * FROM entities
                WHERE owner_id = ? AND archived_at IS NULL AND name = ?
                ORDER BY id
                LIMIT 1
                """,
                (owner_id, trimmed),
            ).fetchone()
            return self._entity_from_row(row) if row else None

    def apply_entity_merge(
        self,
        entity_id: int,
        name: Optional[str] = None,
        description: Optional[str] = None,
        metadata: Optional[EntityMetadata] = None,
        identifiers: Iterable[tuple[str, str]] = (),
    ) -> int:
        """
        Apply a computed merge to an entity in one transaction.

        Only the fields passed as non-None are written. Identifiers are
        added with check-then-insert under the write lock.

        Returns:
            Number of identifiers actually added
        """
        updates: list[str] = []
        params: list[Any] = []
        if name is not None:
            updates.append("name = ?")
            params.append(normalize_name(name))
        if description is not None:
            updates.append("description = ?")
            params.append(description)
        if metadata is not None:
            updates.append("metadata = ?")
            params.append(metadata.to_json())

        added = 0
        with self.transaction() as conn:
            if updates:
                updates.append("updated_at = ?")
                params.extend([_now(), entity_id])
                cursor = conn.execute(
                    f"UPDATE entities SET {', '.join(updates)} WHERE id = ?",
                    params,
                )
                if cursor.rowcount == 0:
                    raise DatabaseError(f"Entity {entity_id} not found")
            for identifier_type, value in identifiers:
                if self._insert_identifier(conn, entity_id, identifier_type, value):
                    added += 1
        return added

    def archive_entity(self, entity_id: int) -> None:
        """Soft-delete an entity. Archived entities are never matched."""
        with self.connection() as conn:
            conn.execute(
                "UPDATE entities SET archived_at = ?, updated_at = ? WHERE id = ?",
                (_now(), _now(), entity_id),
            )

    # =========================================================================
    # Identifier Operations
    # =========================================================================

    def _insert_identifier(
        self,
        conn: sqlite3.Connection,
        entity_id: int,
        identifier_type: str,
        value: str,
    ) -> bool:
        normalized = normalize_identifier(identifier_type, value)
        if not normalized:
            return False

        existing = conn.execute(
            "SELECT 1 FROM identifiers WHERE entity_id = ? AND type = ? "
            "AND normalized_value = ?",
            (entity_id, identifier_type, normalized),
        ).fetchone()
        if existing:
            return False

        has_type = conn.execute(
            "SELECT 1 FROM identifiers WHERE entity_id = ? AND type = ? LIMIT 1",
            (entity_id, identifier_type),
        ).fetchone()
        stored_value = normalized if identifier_type == IDENTIFIER_EMAIL else value

        cursor = conn.execute(
            """
            INSERT INTO identifiers
                (entity_id, type, value, normalized_value, is_primary, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(entity_id, type, normalized_value) DO NOTHING
            """,
            (
                entity_id,
                identifier_type,
                stored_value.strip(),
                normalized,
                0 if has_type else 1,
                _now(),
            ),
        )
        return cursor.rowcount == 1

    def add_identifier(self, entity_id: int, identifier_type: str, value: str) -> bool:
        """
        Attach an identifier unless the entity already has it.

        The first identifier of a type on an entity becomes primary.

        Returns:
            True if a row was inserted
        """
        with self.transaction() as conn:
            return self._insert_identifier(conn, entity_id, identifier_type, value)

    def list_identifiers(
        self, entity_id: int, identifier_type: Optional[str] = None
    ) -> list[dict[str, Any]]:
        query = "SELECT * FROM identifiers WHERE entity_id = ?"
        params: list[Any] = [entity_id]
        if identifier_type:
            query += " AND type = ?"
            params.append(identifier_type)
        with self.connection() as conn:
            rows = conn.execute(query + " ORDER BY id", params).fetchall()
            return [dict(row) for row in rows]

    # =========================================================================
    # Event Operations
    # =========================================================================

    @staticmethod
    def _event_from_row(row: sqlite3.Row) -> dict[str, Any]:
        event = dict(row)
        event["all_day"] = bool(row["all_day"])
        event["sync_metadata"] = json.loads(row["sync_metadata"] or "{}")
        return event

    def create_event(
        self,
        user_id: str,
        title: str,
        starts_at: Any,
        ends_at: Any = None,
        description: Optional[str] = None,
        location: Optional[str] = None,
        all_day: bool = False,
        external_id: Optional[str] = None,
        connection_id: Optional[int] = None,
        sync_status: Union[str, SyncStatus] = SyncStatus.LOCAL_ONLY,
        sync_metadata: Optional[dict[str, Any]] = None,
        last_synced_at: Any = None,
    ) -> int:
        """
        Create an event.

        Events created directly by a user default to local_only; the event
        reconciler passes synced along with the provider's etag.

        Returns:
            The new event id
        """
        now = _now()
        with self.connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO events
                    (user_id, title, title_key, description, location,
                     starts_at, ends_at, all_day, external_id, connection_id,
                     sync_status, sync_metadata, last_synced_at,
                     created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    title.strip(),
                    normalize_title(title),
                    description,
                    location,
                    format_datetime(starts_at),
                    format_datetime(ends_at),
                    int(all_day),
                    external_id,
                    connection_id,
                    SyncStatus.parse(sync_status).value,
                    json.dumps(sync_metadata or {}, sort_keys=True),
                    format_datetime(last_synced_at),
                    now,
                    now,
                ),
            )
            return int(cursor.lastrowid)

    def get_event(self, event_id: int) -> Optional[dict[str, Any]]:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM events WHERE id = ?", (event_id,)
            ).fetchone()
            return self._event_from_row(row) if row else None

    def list_events(self, user_id: str) -> list[dict[str, Any]]:
        with self.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM events WHERE user_id = ? ORDER BY starts_at, id",
                (user_id,),
            ).fetchall()
            return [self._event_from_row(row) for row in rows]

    def count_events(self, user_id: str) -> int:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM events WHERE user_id = ?", (user_id,)
            ).fetchone()
            return int(row[0])

    def find_event_by_external_id(
        self, user_id: str, external_id: str
    ) -> Optional[dict[str, Any]]:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM events WHERE user_id = ? AND external_id = ?",
                (user_id, external_id),
            ).fetchone()
            return self._event_from_row(row) if row else None

    def find_events_by_title(self, user_id: str, title: str) -> list[dict[str, Any]]:
        """Events whose title equals title ignoring case and surrounding space."""
        with self.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM events WHERE user_id = ? AND title_key = ? ORDER BY id",
                (user_id, normalize_title(title)),
            ).fetchall()
            return [self._event_from_row(row) for row in rows]

    def update_event(self, event_id: int, **changes: Any) -> dict[str, Any]:
        """
        Apply a local user edit to an event.

        Editing a synced event moves it to pending_push; every other state
        is left unchanged.

        Args:
            event_id: Event to edit
            **changes: Any of title, description, location, starts_at,
                       ends_at, all_day

        Returns:
            The updated event

        Raises:
            DatabaseError: If the event does not exist
            ValueError: If changes names a field that is not user-editable
        """
        unknown = set(changes) - EDITABLE_EVENT_FIELDS
        if unknown:
            raise ValueError(f"Fields not editable: {', '.join(sorted(unknown))}")

        with self.transaction() as conn:
            row = conn.execute(
                "SELECT sync_status FROM events WHERE id = ?", (event_id,)
            ).fetchone()
            if row is None:
                raise DatabaseError(f"Event {event_id} not found")

            columns = dict(changes)
            if "title" in columns:
                columns["title"] = columns["title"].strip()
                columns["title_key"] = normalize_title(columns["title"])
            for key in ("starts_at", "ends_at"):
                if key in columns:
                    columns[key] = format_datetime(columns[key])
            if "all_day" in columns:
                columns["all_day"] = int(parse_bool(columns["all_day"]))
            if columns:
                columns["sync_status"] = status_after_local_edit(
                    row["sync_status"]
                ).value
            columns["updated_at"] = _now()

            assignments = ", ".join(f"{key} = ?" for key in columns)
            conn.execute(
                f"UPDATE events SET {assignments} WHERE id = ?",
                [*columns.values(), event_id],
            )

        event = self.get_event(event_id)
        if event is None:
            raise DatabaseError(f"Event {event_id} disappeared during update")
        return event

    def apply_external_event(
        self,
        event_id: int,
        fields: dict[str, Any],
        connection_id: Optional[int],
        source: str,
        etag: Optional[str],
    ) -> None:
        """
        Overwrite an event with its external copy and mark it synced.

        This is the import path; it does not go through the local-edit
        transition.
        """
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT sync_metadata FROM events WHERE id = ?", (event_id,)
            ).fetchone()
            if row is None:
                raise DatabaseError(f"Event {event_id} not found")
            sync_metadata = json.loads(row["sync_metadata"] or "{}")
            sync_metadata.update({"etag": etag, "source": source})
            now = _now()
            conn.execute(
                """
                UPDATE events SET
                    title = ?, title_key = ?, description = ?, location = ?,
                    starts_at = ?, ends_at = ?, all_day = ?, external_id = ?,
                    connection_id = ?, sync_status = ?, sync_metadata = ?,
                    last_synced_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    fields["title"].strip(),
                    normalize_title(fields["title"]),
                    fields.get("description"),
                    fields.get("location"),
                    format_datetime(fields["starts_at"]),
                    format_datetime(fields.get("ends_at")),
                    int(bool(fields.get("all_day", False))),
                    fields.get("external_id"),
                    connection_id,
                    status_after_sync().value,
                    json.dumps(sync_metadata, sort_keys=True),
                    now,
                    now,
                    event_id,
                ),
            )

    def mark_event_exported(
        self,
        event_id: int,
        external_id: str,
        etag: Optional[str],
        connection_id: int,
        source: str,
    ) -> None:
        """Record a successful export: new external id/etag, state synced."""
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT sync_metadata FROM events WHERE id = ?", (event_id,)
            ).fetchone()
            if row is None:
                raise DatabaseError(f"Event {event_id} not found")
            sync_metadata = json.loads(row["sync_metadata"] or "{}")
            sync_metadata.update({"etag": etag, "source": source})
            now = _now()
            conn.execute(
                """
                UPDATE events SET
                    external_id = ?, connection_id = ?, sync_status = ?,
                    sync_metadata = ?, last_synced_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    external_id,
                    connection_id,
                    status_after_sync().value,
                    json.dumps(sync_metadata, sort_keys=True),
                    now,
                    now,
                    event_id,
                ),
            )

    def update_sync_status(
        self, event_id: int, status: Union[str, SyncStatus]
    ) -> None:
        """Set an event's sync status directly (e.g. to flag a conflict)."""
        with self.connection() as conn:
            conn.execute(
                "UPDATE events SET sync_status = ?, updated_at = ? WHERE id = ?",
                (SyncStatus.parse(status).value, _now(), event_id),
            )

    def mark_pending_push(self, event_id: int) -> bool:
        """
        Flag an event as needing export.

        Events with no external id have never been exported and keep their
        state.

        Returns:
            True if the event was changed
        """
        with self.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE events SET sync_status = ?, updated_at = ?
                WHERE id = ? AND external_id IS NOT NULL
                """,
                (SyncStatus.PENDING_PUSH.value, _now(), event_id),
            )
            return cursor.rowcount == 1

    def list_events_pending_sync(
        self, user_id: str, connection_id: int
    ) -> list[dict[str, Any]]:
        """
        Events waiting for export through a connection.

        Selects local_only and pending_push events that belong to the
        connection or to no connection at all.
        """
        placeholders = ", ".join("?" for _ in EXPORTABLE_STATUSES)
        with self.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM events
                WHERE user_id = ?
                  AND sync_status IN ({placeholders})
                  AND (connection_id = ? OR connection_id IS NULL)
                ORDER BY starts_at, id
                """,
                (user_id, *[s.value for s in EXPORTABLE_STATUSES], connection_id),
            ).fetchall()
            return [self._event_from_row(row) for row in rows]

    # =========================================================================
    # Connection Operations
    # =========================================================================

    def create_connection(
        self,
        user_id: str,
        provider: str,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
        token_expires_at: Any = None,
        account_identifier: Optional[str] = None,
    ) -> int:
        now = _now()
        with self.connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO connections
                    (user_id, provider, account_identifier, access_token,
                     refresh_token, token_expires_at, status, created_at,
                     updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    provider,
                    account_identifier,
                    access_token,
                    refresh_token,
                    format_datetime(token_expires_at),
                    ConnectionStatus.CONNECTED.value,
                    now,
                    now,
                ),
            )
            return int(cursor.lastrowid)

    def get_connection(self, connection_id: int) -> Optional[dict[str, Any]]:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM connections WHERE id = ?", (connection_id,)
            ).fetchone()
            return dict(row) if row else None

    def list_connections(self, user_id: Optional[str] = None) -> list[dict[str, Any]]:
        with self.connection() as conn:
            if user_id is None:
                rows = conn.execute("SELECT * FROM connections ORDER BY id").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM connections WHERE user_id = ? ORDER BY id",
                    (user_id,),
                ).fetchall()
            return [dict(row) for row in rows]

    def update_connection_tokens(
        self,
        connection_id: int,
        access_token: str,
        token_expires_at: Any = None,
        refresh_token: Optional[str] = None,
    ) -> None:
        """Store refreshed tokens. A None refresh_token keeps the old one."""
        with self.connection() as conn:
            conn.execute(
                """
                UPDATE connections SET
                    access_token = ?,
                    token_expires_at = ?,
                    refresh_token = COALESCE(?, refresh_token),
                    updated_at = ?
                WHERE id = ?
                """,
                (
                    access_token,
                    format_datetime(token_expires_at),
                    refresh_token,
                    _now(),
                    connection_id,
                ),
            )

    def mark_connection_synced(self, connection_id: int) -> None:
        """Record a successful run: connected, last_synced_at now, no error."""
        now = _now()
        with self.connection() as conn:
            conn.execute(
                """
                UPDATE connections SET
                    status = ?, last_synced_at = ?, sync_error = NULL, updated_at = ?
                WHERE id = ?
                """,
                (ConnectionStatus.CONNECTED.value, now, now, connection_id),
            )

    def mark_connection_error(self, connection_id: int, message: str) -> None:
        with self.connection() as conn:
            conn.execute(
                """
                UPDATE connections SET status = ?, sync_error = ?, updated_at = ?
                WHERE id = ?
                """,
                (ConnectionStatus.ERROR.value, message, _now(), connection_id),
            )

    def set_connection_status(
        self, connection_id: int, status: Union[str, ConnectionStatus]
    ) -> None:
        with self.connection() as conn:
            conn.execute(
                "UPDATE connections SET status = ?, updated_at = ? WHERE id = ?",
                (ConnectionStatus(_status_value(status)).value, _now(), connection_id),
            )

    # =========================================================================
    # Sync Job Operations
    # =========================================================================

    @staticmethod
    def _job_from_row(row: sqlite3.Row) -> dict[str, Any]:
        job = dict(row)
        job["error_log"] = json.loads(row["error_log"] or "[]")
        return job

    def create_sync_job(
        self,
        user_id: str,
        connection_id: int,
        source: str,
        direction: str = "both",
        conn: Optional[sqlite3.Connection] = None,
    ) -> int:
        """
        Create a pending sync job record.

        Args:
            conn: Existing connection to write through, so enqueueing can
                  create the record and its queue row atomically
        """
        params = (
            user_id,
            connection_id,
            source,
            direction,
            JobStatus.PENDING.value,
            _now(),
        )
        sql = """
            INSERT INTO sync_jobs
                (user_id, connection_id, source, direction, status, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
        """
        if conn is not None:
            return int(conn.execute(sql, params).lastrowid)
        with self.connection() as own:
            return int(own.execute(sql, params).lastrowid)

    def get_sync_job(self, job_id: int) -> Optional[dict[str, Any]]:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM sync_jobs WHERE id = ?", (job_id,)
            ).fetchone()
            return self._job_from_row(row) if row else None

    def list_sync_jobs(
        self, user_id: Optional[str] = None, limit: int = 20
    ) -> list[dict[str, Any]]:
        with self.connection() as conn:
            if user_id is None:
                rows = conn.execute(
                    "SELECT * FROM sync_jobs ORDER BY id DESC LIMIT ?", (limit,)
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM sync_jobs WHERE user_id = ? "
                    "ORDER BY id DESC LIMIT ?",
                    (user_id, limit),
                ).fetchall()
            return [self._job_from_row(row) for row in rows]

    def start_sync_job(self, job_id: int) -> None:
        """Move a job to processing and count the attempt."""
        with self.connection() as conn:
            conn.execute(
                """
                UPDATE sync_jobs SET
                    status = ?, started_at = ?, completed_at = NULL,
                    attempts = attempts + 1
                WHERE id = ?
                """,
                (JobStatus.PROCESSING.value, _now(), job_id),
            )

    def finish_sync_job(
        self,
        job_id: int,
        status: Union[str, JobStatus],
        counters: dict[str, int],
        error_log: list[str],
    ) -> None:
        """
        Persist a run's outcome onto its job record.

        Args:
            job_id: Job record to update
            status: completed or failed
            counters: Values for any of the JOB_COUNTERS columns
            error_log: Error entries, already truncated by the caller
        """
        values = {key: int(counters.get(key, 0)) for key in JOB_COUNTERS}
        assignments = ", ".join(f"{key} = ?" for key in values)
        with self.connection() as conn:
            conn.execute(
                f"""
                UPDATE sync_jobs SET
                    status = ?, {assignments}, error_log = ?, completed_at = ?
                WHERE id = ?
                """,
                (
                    JobStatus(_status_value(status)).value,
                    *values.values(),
                    json.dumps(error_log),
                    _now(),
                    job_id,
                ),
            )

    def reset_sync_job(self, job_id: int) -> None:
        """Return a failed job to pending so a retry can run it again."""
        with self.connection() as conn:
            conn.execute(
                "UPDATE sync_jobs SET status = ?, completed_at = NULL WHERE id = ?",
                (JobStatus.PENDING.value, job_id),
            )

    # =========================================================================
    # Job Queue Operations
    # =========================================================================

    def enqueue_job(
        self,
        user_id: str,
        connection_id: int,
        source: str,
        direction: str,
        max_attempts: int,
    ) -> dict[str, Any]:
        """
        Create a sync job record and its queue row in one transaction.

        Returns:
            The new queue row
        """
        now = _now()
        with self.transaction() as conn:
            sync_job_id = self.create_sync_job(
                user_id, connection_id, source, direction, conn=conn
            )
            cursor = conn.execute(
                """
                INSERT INTO job_queue
                    (sync_job_id, connection_id, user_id, direction, state,
                     max_attempts, run_after, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    sync_job_id,
                    connection_id,
                    user_id,
                    direction,
                    QueueState.AVAILABLE.value,
                    max_attempts,
                    now,
                    now,
                    now,
                ),
            )
            row = conn.execute(
                "SELECT * FROM job_queue WHERE id = ?", (cursor.lastrowid,)
            ).fetchone()
            return dict(row)

    def claim_queue_job(
        self, now: Any = None, queue_id: Optional[int] = None
    ) -> Optional[dict[str, Any]]:
        """
        Atomically claim the next due queue row, or a specific one.

        The row moves to running and its attempt count is incremented.

        Returns:
            The claimed row, or None if nothing is due
        """
        due = format_datetime(now) if now is not None else _now()
        with self.transaction() as conn:
            row = conn.execute(
                """
                SELECT id FROM job_queue
                WHERE state = ? AND run_after <= ? AND (? IS NULL OR id = ?)
                ORDER BY run_after, id
                LIMIT 1
                """,
                (QueueState.AVAILABLE.value, due, queue_id, queue_id),
            ).fetchone()
            if row is None:
                return None
            conn.execute(
                """
                UPDATE job_queue SET
                    state = ?, attempts = attempts + 1, updated_at = ?
                WHERE id = ?
                """,
                (QueueState.RUNNING.value, _now(), row["id"]),
            )
            claimed = conn.execute(
                "SELECT * FROM job_queue WHERE id = ?", (row["id"],)
            ).fetchone()
            return dict(claimed)

    def get_queue_job(self, queue_id: int) -> Optional[dict[str, Any]]:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM job_queue WHERE id = ?", (queue_id,)
            ).fetchone()
            return dict(row) if row else None

    def set_queue_state(
        self,
        queue_id: int,
        state: Union[str, QueueState],
        run_after: Any = None,
        last_error: Optional[str] = None,
    ) -> None:
        """Move a queue row to a new state, optionally rescheduling it."""
        with self.connection() as conn:
            conn.execute(
                """
                UPDATE job_queue SET
                    state = ?,
                    run_after = COALESCE(?, run_after),
                    last_error = COALESCE(?, last_error),
                    updated_at = ?
                WHERE id = ?
                """,
                (
                    QueueState(_status_value(state)).value,
                    format_datetime(run_after),
                    last_error,
                    _now(),
                    queue_id,
                ),
            )

    def list_queue_jobs(
        self, state: Union[str, QueueState, None] = None, limit: int = 50
    ) -> list[dict[str, Any]]:
        with self.connection() as conn:
            if state is None:
                rows = conn.execute(
                    "SELECT * FROM job_queue ORDER BY id DESC LIMIT ?", (limit,)
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM job_queue WHERE state = ? "
                    "ORDER BY id DESC LIMIT ?",
                    (QueueState(_status_value(state)).value, limit),
                ).fetchall()
            return [dict(row) for row in rows]

    def count_queue_jobs(self) -> dict[str, int]:
        """Number of queue rows per state, with every state present."""
        counts = {state.value: 0 for state in QueueState}
        with self.connection() as conn:
            for row in conn.execute(
                "SELECT state, COUNT(*) AS n FROM job_queue GROUP BY state"
            ):
                counts[row["state"]] = row["n"]
        return counts


__all__ = [
    "ConnectionStatus",
    "DatabaseError",
    "IDENTIFIER_EMAIL",
    "IDENTIFIER_PHONE",
    "JOB_COUNTERS",
    "JobStatus",
    "QueueState",
    "SCHEMA",
    "SyncDatabase",
    "normalize_identifier",
]
