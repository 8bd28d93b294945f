"""
Recipe document store backed by SQLite.
Each recipe is one JSON document keyed by its canonical int id; writes merge
into the stored document. In-memory by default, which tests rely on.
"""

import json
import logging
import random
import sqlite3
import threading
from datetime import datetime, timezone
from typing import Any, Callable, List, Mapping, Optional, Sequence, TypeVar

from starlette.concurrency import run_in_threadpool

from mealcache.core.keys import canonical_recipe_id
from mealcache.errors import InvalidKeyError, StoreWriteError
from mealcache.models import (
    BatchWriteReport,
    CacheEntry,
    ChunkResult,
    UserFavorite,
    ViewRecord,
)
from mealcache.validation import validate_recipe_document

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Firestore's per-batch write limit; kept identical so both stores chunk alike
MAX_BATCH_SIZE = 500


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _init_schema(conn: sqlite3.Connection) -> None:
    """Create tables if not exists."""
    conn.executescript("""
        CREATE TABLE IF NOT EXISTS recipes (
            id INTEGER PRIMARY KEY,
            document TEXT NOT NULL,
            has_details INTEGER NOT NULL DEFAULT 0,
            cached_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        CREATE TABLE IF NOT EXISTS favorites (
            user_id TEXT NOT NULL,
            recipe_id INTEGER NOT NULL,
            favorited_at TEXT NOT NULL,
            title TEXT,
            image TEXT,
            PRIMARY KEY (user_id, recipe_id)
        );
        CREATE TABLE IF NOT EXISTS views (
            user_id TEXT NOT NULL,
            recipe_id INTEGER NOT NULL,
            viewed_at TEXT NOT NULL,
            view_count INTEGER NOT NULL DEFAULT 0,
            PRIMARY KEY (user_id, recipe_id)
        );
    """)
    conn.commit()


def _entry_from_document(raw_json: str) -> Optional[CacheEntry]:
    """Build CacheEntry from a stored JSON document. Unreadable documents are skipped."""
    entry, errors = validate_recipe_document(json.loads(raw_json))
    if errors:
        logger.warning("Skipping unreadable cached recipe document: %s", errors)
        return None
    return entry


def _has_details(document: Mapping[str, Any]) -> bool:
    return bool(document.get("ingredients")) and bool(document.get("instructions"))


def _ids_of(documents: Sequence[Mapping[str, Any]]) -> List[int]:
    ids = []
    for document in documents:
        try:
            ids.append(canonical_recipe_id(document.get("id")))
        except InvalidKeyError:
            continue
    return ids


def chunked(items: Sequence[T], size: int) -> List[Sequence[T]]:
    """Split items into consecutive chunks of at most size."""
    if size <= 0:
        raise ValueError("Chunk size must be positive")
    return [items[i : i + size] for i in range(0, len(items), size)]


class SQLiteRecipeStore:
    """SQLite-backed recipe store implementing RecipeStore and UserActivityStore."""

    def __init__(self, db_path: Optional[str] = None, max_batch_size: int = MAX_BATCH_SIZE) -> None:
        self._db_path = db_path or ":memory:"
        self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
        self._lock = threading.Lock()
        self.max_batch_size = max_batch_size
        _init_schema(self._conn)

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        """Run a blocking call off the event loop, serialized on the connection."""

        def locked() -> T:
            with self._lock:
                return fn(*args)

        return await run_in_threadpool(locked)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # --- Recipe entries ---

    def _merge_write(self, recipe_id: int, fields: Mapping[str, Any], now: datetime) -> None:
        """Merge fields into the stored document. Caller owns the transaction."""
        row = self._conn.execute(
            "SELECT document FROM recipes WHERE id = ?", (recipe_id,)
        ).fetchone()
        document: dict[str, Any] = json.loads(row[0]) if row else {}
        document.update(fields)
        document["id"] = recipe_id
        document["updated_at"] = now.isoformat()
        if _has_details(fields):
            document["detail_cached_at"] = now.isoformat()
        if row is None:
            document.setdefault("cached_at", now.isoformat())
            self._conn.execute(
                "INSERT INTO recipes (id, document, has_details, cached_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (recipe_id, json.dumps(document), int(_has_details(document)),
                 document["cached_at"], now.isoformat()),
            )
        else:
            self._conn.execute(
                "UPDATE recipes SET document=?, has_details=?, updated_at=? WHERE id=?",
                (json.dumps(document), int(_has_details(document)), now.isoformat(), recipe_id),
            )

    def _put_sync(self, recipe_id: int, fields: Mapping[str, Any]) -> None:
        try:
            with self._conn:
                self._merge_write(recipe_id, fields, _now())
        except (sqlite3.Error, TypeError, ValueError) as e:
            raise StoreWriteError("put", str(e)) from e

    def _put_chunk_sync(self, documents: Sequence[Mapping[str, Any]]) -> None:
        now = _now()
        with self._conn:
            for document in documents:
                self._merge_write(canonical_recipe_id(document.get("id")), document, now)

    def _get_sync(self, recipe_id: int) -> Optional[CacheEntry]:
        row = self._conn.execute(
            "SELECT document FROM recipes WHERE id = ?", (recipe_id,)
        ).fetchone()
        return _entry_from_document(row[0]) if row else None

    def _select_entries(self, sql: str, params: tuple = ()) -> List[CacheEntry]:
        entries = []
        for (raw,) in self._conn.execute(sql, params).fetchall():
            entry = _entry_from_document(raw)
            if entry is not None:
                entries.append(entry)
        return entries

    def _query_sync(self, keyword: Optional[str], limit: int) -> List[CacheEntry]:
        if keyword and keyword.strip():
            needle = keyword.strip().lower()
            matches = [
                e
                for e in self._select_entries("SELECT document FROM recipes ORDER BY id")
                if needle in (e.title or "").lower() or needle in (e.summary or "").lower()
            ]
            return matches[:limit]
        entries = self._select_entries("SELECT document FROM recipes")
        return random.sample(entries, min(limit, len(entries)))

    def _delete_older_than_sync(self, cutoff: datetime) -> int:
        with self._conn:
            cur = self._conn.execute(
                "DELETE FROM recipes WHERE has_details = 0 AND updated_at < ?",
                (cutoff.isoformat(),),
            )
        return cur.rowcount

    async def get(self, recipe_id: int) -> Optional[CacheEntry]:
        return await self._run(self._get_sync, canonical_recipe_id(recipe_id))

    async def put(self, recipe_id: int, fields: Mapping[str, Any]) -> None:
        await self._run(self._put_sync, canonical_recipe_id(recipe_id), dict(fields))

    async def put_batch(self, documents: Sequence[Mapping[str, Any]]) -> BatchWriteReport:
        report = BatchWriteReport()
        for index, chunk in enumerate(chunked(list(documents), self.max_batch_size)):
            try:
                await self._run(self._put_chunk_sync, chunk)
                report.chunks.append(ChunkResult(index=index, size=len(chunk), committed=True))
            except (sqlite3.Error, InvalidKeyError, TypeError, ValueError) as e:
                logger.warning("Batch chunk %d (%d entries) failed: %s", index, len(chunk), e)
                report.chunks.append(
                    ChunkResult(index=index, size=len(chunk), committed=False, error=str(e))
                )
                report.failed_ids.extend(_ids_of(chunk))
        return report

    async def exists(self, recipe_id: int) -> bool:
        recipe_id = canonical_recipe_id(recipe_id)
        row = await self._run(
            lambda: self._conn.execute("SELECT 1 FROM recipes WHERE id = ?", (recipe_id,)).fetchone()
        )
        return row is not None

    async def query(self, keyword: Optional[str], limit: int = 20) -> List[CacheEntry]:
        return await self._run(self._query_sync, keyword, limit)

    async def list_page(self, limit: int = 20, after_id: Optional[int] = None) -> List[CacheEntry]:
        return await self._run(
            self._select_entries,
            "SELECT document FROM recipes WHERE id > ? ORDER BY id LIMIT ?",
            (after_id or 0, limit),
        )

    async def count(self) -> int:
        row = await self._run(
            lambda: self._conn.execute("SELECT COUNT(*) FROM recipes").fetchone()
        )
        return row[0]

    async def count_with_details(self) -> int:
        row = await self._run(
            lambda: self._conn.execute(
                "SELECT COUNT(*) FROM recipes WHERE has_details = 1"
            ).fetchone()
        )
        return row[0]

    async def ids_missing_details(self, limit: int = 10) -> List[int]:
        rows = await self._run(
            lambda: self._conn.execute(
                "SELECT id FROM recipes WHERE has_details = 0 ORDER BY cached_at LIMIT ?",
                (limit,),
            ).fetchall()
        )
        return [r[0] for r in rows]

    async def delete_older_than(self, cutoff: datetime) -> int:
        return await self._run(self._delete_older_than_sync, cutoff)

    # --- User activity ---

    def _add_favorite_sync(self, favorite: UserFavorite) -> None:
        with self._conn:
            self._conn.execute(
                "INSERT OR REPLACE INTO favorites (user_id, recipe_id, favorited_at, title, image) "
                "VALUES (?, ?, ?, ?, ?)",
                (favorite.user_id, favorite.recipe_id, favorite.favorited_at.isoformat(),
                 favorite.title, favorite.image),
            )

    def _remove_favorite_sync(self, user_id: str, recipe_id: int) -> bool:
        with self._conn:
            cur = self._conn.execute(
                "DELETE FROM favorites WHERE user_id = ? AND recipe_id = ?", (user_id, recipe_id)
            )
        return cur.rowcount > 0

    def _record_view_sync(self, user_id: str, recipe_id: int, viewed_at: datetime) -> ViewRecord:
        with self._conn:
            self._conn.execute(
                "INSERT INTO views (user_id, recipe_id, viewed_at, view_count) VALUES (?, ?, ?, 1) "
                "ON CONFLICT (user_id, recipe_id) DO UPDATE SET "
                "viewed_at = excluded.viewed_at, view_count = view_count + 1",
                (user_id, recipe_id, viewed_at.isoformat()),
            )
            row = self._conn.execute(
                "SELECT viewed_at, view_count FROM views WHERE user_id = ? AND recipe_id = ?",
                (user_id, recipe_id),
            ).fetchone()
        return ViewRecord(
            user_id=user_id,
            recipe_id=recipe_id,
            viewed_at=datetime.fromisoformat(row[0]),
            view_count=row[1],
        )

    async def add_favorite(self, favorite: UserFavorite) -> None:
        try:
            await self._run(self._add_favorite_sync, favorite)
        except sqlite3.Error as e:
            raise StoreWriteError("add_favorite", str(e)) from e

    async def remove_favorite(self, user_id: str, recipe_id: int) -> bool:
        return await self._run(self._remove_favorite_sync, user_id, canonical_recipe_id(recipe_id))

    async def is_favorite(self, user_id: str, recipe_id: int) -> bool:
        recipe_id = canonical_recipe_id(recipe_id)
        row = await self._run(
            lambda: self._conn.execute(
                "SELECT 1 FROM favorites WHERE user_id = ? AND recipe_id = ?", (user_id, recipe_id)
            ).fetchone()
        )
        return row is not None

    async def list_favorites(self, user_id: str) -> List[UserFavorite]:
        rows = await self._run(
            lambda: self._conn.execute(
                "SELECT recipe_id, favorited_at, title, image FROM favorites "
                "WHERE user_id = ? ORDER BY favorited_at DESC",
                (user_id,),
            ).fetchall()
        )
        return [
            UserFavorite(
                user_id=user_id,
                recipe_id=recipe_id,
                favorited_at=datetime.fromisoformat(favorited_at),
                title=title,
                image=image,
            )
            for recipe_id, favorited_at, title, image in rows
        ]

    async def record_view(self, user_id: str, recipe_id: int, viewed_at: datetime) -> ViewRecord:
        try:
            return await self._run(
                self._record_view_sync, user_id, canonical_recipe_id(recipe_id), viewed_at
            )
        except sqlite3.Error as e:
            raise StoreWriteError("record_view", str(e)) from e

    async def recently_viewed(self, user_id: str, limit: int = 20) -> List[ViewRecord]:
        rows = await self._run(
            lambda: self._conn.execute(
                "SELECT recipe_id, viewed_at, view_count FROM views "
                "WHERE user_id = ? ORDER BY viewed_at DESC LIMIT ?",
                (user_id, limit),
            ).fetchall()
        )
        return [
            ViewRecord(
                user_id=user_id,
                recipe_id=recipe_id,
                viewed_at=datetime.fromisoformat(viewed_at),
                view_count=view_count,
            )
            for recipe_id, viewed_at, view_count in rows
        ]
