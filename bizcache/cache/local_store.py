"""Local SQLite storage for cached entity collections and the version record."""

import json
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from ..errors import DecodeError
from ..models import ENTITY_TYPES, LocalVersionRecord, decode_collection

logger = logging.getLogger(__name__)

# SQL schema for the cache database
SCHEMA = """
-- Key/value cache: one row per entity collection plus one for the version record
CREATE TABLE IF NOT EXISTS cache_entries (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""

VERSION_KEY = "version"


def collection_key(collection: str) -> str:
    return f"collection:{collection}"


class LocalStore:
    """Persistent key/value cache scoped to one client instance.

    Every public mutation commits (or rolls back) before returning, so the
    next read always sees it. Storage failures never raise: reads degrade
    to empty/absent and writes report ``False``. An empty read therefore
    means "needs a full sync", not "the dataset is empty".
    """

    def __init__(self, db_path: str | Path):
        """Initialize the local store.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
        """
        self.db_path = db_path if db_path == ":memory:" else Path(db_path).expanduser()
        self._conn: sqlite3.Connection | None = None
        self._write_count = 0

    def connect(self) -> None:
        """Initialize database connection and schema."""
        if self._conn is not None:
            return

        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(SCHEMA)
        self._conn.commit()

        logger.info(f"LocalStore connected to {self.db_path}")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
            logger.info("LocalStore connection closed")

    def _ensure_connected(self) -> sqlite3.Connection:
        """Ensure we have a database connection."""
        if self._conn is None:
            self.connect()
        return self._conn

    # ==================== Raw access ====================

    def _read_raw(self, key: str) -> Any:
        """Read and JSON-decode one entry. Returns None when missing.

        Raises:
            sqlite3.Error: If the database cannot be read.
            DecodeError: If the stored value is not valid JSON.
        """
        conn = self._ensure_connected()
        row = conn.execute(
            "SELECT value FROM cache_entries WHERE key = ?", (key,)
        ).fetchone()

        if row is None:
            return None

        try:
            return json.loads(row["value"])
        except ValueError as e:
            raise DecodeError(f"Cache entry {key} is not valid JSON") from e

    def _write_many(self, entries: dict[str, Any]) -> bool:
        """Write several entries in a single transaction."""
        now = datetime.now(timezone.utc).isoformat()

        try:
            rows = [(key, json.dumps(value), now) for key, value in entries.items()]
            conn = self._ensure_connected()
            with conn:
                conn.executemany(
                    """
                    INSERT INTO cache_entries (key, value, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    """,
                    rows,
                )
        except (sqlite3.Error, TypeError, ValueError) as e:
            logger.warning(f"Cache write failed for {sorted(entries)}: {e}")
            return False

        self._write_count += 1
        return True

    # ==================== Collection Operations ====================

    def _load_collection(self, collection: str) -> list | None:
        raw = self._read_raw(collection_key(collection))
        if raw is None:
            return None
        return decode_collection(collection, raw)

    def read_collection(self, collection: str) -> list | None:
        """Get a collection, telling "absent" apart from a stored empty list.

        Returns:
            Decoded entities, or None when the collection was never stored,
            cannot be read or fails to decode.
        """
        try:
            return self._load_collection(collection)
        except (sqlite3.Error, DecodeError) as e:
            logger.warning(f"Cached {collection} is unreadable, treating as absent: {e}")
            return None

    def get(self, collection: str) -> list:
        """Get every cached entity of a collection.

        Args:
            collection: Collection name ("businesses", "categories").

        Returns:
            Decoded entities, or an empty list when missing or malformed.
        """
        return self.read_collection(collection) or []

    def set_all(self, collection: str, entities: list) -> bool:
        """Replace a whole collection.

        Returns:
            True if the write committed.
        """
        return self._write_many(
            {collection_key(collection): [e.to_dict() for e in entities]}
        )

    def upsert_one(self, collection: str, entity: Any) -> bool:
        """Replace the entity with the same id, or append it if absent.

        A collection that cannot be decoded is left alone rather than
        rewritten with just this entity.
        """
        try:
            entities = self._load_collection(collection) or []
        except (sqlite3.Error, DecodeError) as e:
            logger.warning(f"Not patching unreadable {collection}: {e}")
            return False

        for i, existing in enumerate(entities):
            if existing.id == entity.id:
                entities[i] = entity
                break
        else:
            entities.append(entity)

        return self.set_all(collection, entities)

    def delete_one(self, collection: str, entity_id: str) -> bool:
        """Remove the entity with ``entity_id``. Missing ids are a no-op."""
        try:
            entities = self._load_collection(collection) or []
        except (sqlite3.Error, DecodeError) as e:
            logger.warning(f"Not patching unreadable {collection}: {e}")
            return False

        remaining = [e for e in entities if e.id != entity_id]
        if len(remaining) == len(entities):
            return True

        return self.set_all(collection, remaining)

    # ==================== Version Operations ====================

    def get_version(self) -> LocalVersionRecord | None:
        """Get the stored version record, or None if absent or malformed."""
        try:
            raw = self._read_raw(VERSION_KEY)
            if raw is None:
                return None
            return LocalVersionRecord.from_dict(raw)
        except (sqlite3.Error, DecodeError) as e:
            logger.warning(f"Cached version record is unreadable, treating as absent: {e}")
            return None
    def set_version(self, record: LocalVersionRecord) -> bool:
        """Overwrite the stored version record."""
        return self._write_many({VERSION_KEY: record.to_dict()})

    def replace_snapshot(
        self,
        collections: dict[str, list],
        record: LocalVersionRecord,
    ) -> bool:
        """Atomically replace collections and the version record together.

        Either every collection and the version record are written, or
        none of them are.
        """
        entries: dict[str, Any] = {
            collection_key(name): [e.to_dict() for e in entities]
            for name, entities in collections.items()
        }
        entries[VERSION_KEY] = record.to_dict()
        return self._write_many(entries)

    @property
    def write_count(self) -> int:
        """Number of committed writes since this store was created."""
        return self._write_count

    # ==================== Maintenance ====================

    def has_data(self) -> bool:
        """True if any known collection has cached entities."""
        return any(self.get(name) for name in ENTITY_TYPES)

    def clear(self) -> bool:
        """Drop every cached entry."""
        try:
            conn = self._ensure_connected()
            with conn:
                conn.execute("DELETE FROM cache_entries")
        except sqlite3.Error as e:
            logger.warning(f"Failed to clear cache: {e}")
            return False

        logger.info("Local cache cleared")
        return True

    def get_stats(self) -> dict[str, Any]:
        """Get cache statistics.

        Returns:
            Dict with per-collection counts, version info and size.
        """
        stats: dict[str, Any] = {
            name: len(self.get(name)) for name in ENTITY_TYPES
        }

        version = self.get_version()
        stats["version_token"] = version.version_token if version else None
        stats["last_sync"] = version.last_sync.isoformat() if version else None

        if isinstance(self.db_path, Path) and self.db_path.exists():
            stats["db_size_mb"] = round(self.db_path.stat().st_size / (1024 * 1024), 2)

        return stats
