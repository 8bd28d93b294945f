from __future__ import annotations

import logging
import os
import random
from datetime import datetime, timezone
from typing import Any, List, Mapping, Optional, Sequence

from google.api_core import exceptions as gcloud_exceptions
from google.cloud import firestore

from mealcache.core.keys import canonical_recipe_id, document_key
from mealcache.errors import InvalidKeyError, StoreWriteError
from mealcache.models import (
    BatchWriteReport,
    CacheEntry,
    ChunkResult,
    UserFavorite,
    ViewRecord,
)
from mealcache.services.storage import MAX_BATCH_SIZE, chunked
from mealcache.validation import validate_recipe_document

logger = logging.getLogger(__name__)

# Documents scanned per requested result when filtering client-side
SCAN_FACTOR = 5


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _entry_from_snapshot(snapshot: Any) -> Optional[CacheEntry]:
    data = snapshot.to_dict() or {}
    data.setdefault("id", snapshot.id)
    entry, errors = validate_recipe_document(data)
    if errors:
        logger.warning("Skipping unreadable recipe document %s: %s", snapshot.id, errors)
        return None
    return entry


def _prepare_write(fields: Mapping[str, Any], recipe_id: int, now: datetime) -> dict[str, Any]:
    data = dict(fields)
    data["id"] = recipe_id
    data["updated_at"] = now
    # has_details is only ever set to True; summary writes must not clear it
    if data.get("ingredients") and data.get("instructions"):
        data["has_details"] = True
        data["detail_cached_at"] = now
    return data


class FirestoreRecipeStore:
    """Firestore-backed recipe store implementing RecipeStore and UserActivityStore."""

    def __init__(
        self,
        *,
        client: Optional[Any] = None,
        project: Optional[str] = None,
        collection_name: str = "recipes",
        users_collection_name: str = "users",
        max_batch_size: int = MAX_BATCH_SIZE,
    ) -> None:
        self._client = client if client is not None else firestore.AsyncClient(project=project)
        self._collection = self._client.collection(collection_name)
        self._users = self._client.collection(users_collection_name)
        self.max_batch_size = max_batch_size

    @classmethod
    def from_env(cls) -> "FirestoreRecipeStore":
        """Build a store instance from environment variables."""

        project = os.environ.get("GCP_PROJECT")
        collection_name = os.environ.get("RECIPES_COLLECTION", "recipes")
        return cls(project=project, collection_name=collection_name)

    def _doc(self, recipe_id: int) -> Any:
        return self._collection.document(document_key(recipe_id))

    # --- Recipe entries ---

    async def get(self, recipe_id: int) -> Optional[CacheEntry]:
        snapshot = await self._doc(canonical_recipe_id(recipe_id)).get()
        if not snapshot.exists:
            return None
        return _entry_from_snapshot(snapshot)

    async def put(self, recipe_id: int, fields: Mapping[str, Any]) -> None:
        recipe_id = canonical_recipe_id(recipe_id)
        try:
            await self._doc(recipe_id).set(_prepare_write(fields, recipe_id, _now()), merge=True)
        except gcloud_exceptions.GoogleAPICallError as e:
            raise StoreWriteError("put", str(e)) from e

    async def put_batch(self, documents: Sequence[Mapping[str, Any]]) -> BatchWriteReport:
        report = BatchWriteReport()
        for index, chunk in enumerate(chunked(list(documents), self.max_batch_size)):
            ids: List[int] = []
            try:
                now = _now()
                batch = self._client.batch()
                for document in chunk:
                    recipe_id = canonical_recipe_id(document.get("id"))
                    ids.append(recipe_id)
                    batch.set(self._doc(recipe_id), _prepare_write(document, recipe_id, now), merge=True)
                await batch.commit()
                report.chunks.append(ChunkResult(index=index, size=len(chunk), committed=True))
            except (gcloud_exceptions.GoogleAPICallError, InvalidKeyError) as e:
                logger.warning("Batch chunk %d (%d entries) failed: %s", index, len(chunk), e)
                report.chunks.append(
                    ChunkResult(index=index, size=len(chunk), committed=False, error=str(e))
                )
                report.failed_ids.extend(ids)
        return report

    async def exists(self, recipe_id: int) -> bool:
        snapshot = await self._doc(canonical_recipe_id(recipe_id)).get()
        return snapshot.exists

    async def _scan(self, limit: int) -> List[CacheEntry]:
        entries = []
        async for snapshot in self._collection.limit(limit).stream():
            entry = _entry_from_snapshot(snapshot)
            if entry is not None:
                entries.append(entry)
        return entries

    async def query(self, keyword: Optional[str], limit: int = 20) -> List[CacheEntry]:
        """Firestore has no substring search, so matching happens on a bounded scan."""
        entries = await self._scan(limit * SCAN_FACTOR)
        if keyword and keyword.strip():
            needle = keyword.strip().lower()
            matches = [
                e
                for e in entries
                if needle in (e.title or "").lower() or needle in (e.summary or "").lower()
            ]
            return matches[:limit]
        return random.sample(entries, min(limit, len(entries)))

    async def list_page(self, limit: int = 20, after_id: Optional[int] = None) -> List[CacheEntry]:
        query = self._collection.order_by("id")
        if after_id is not None:
            query = query.start_after({"id": after_id})
        entries = []
        async for snapshot in query.limit(limit).stream():
            entry = _entry_from_snapshot(snapshot)
            if entry is not None:
                entries.append(entry)
        return entries

    async def _count(self, query: Any) -> int:
        results = await query.count().get()
        return int(results[0][0].value)

    async def count(self) -> int:
        return await self._count(self._collection)

    async def count_with_details(self) -> int:
        """
        Counts documents flagged has_details. Older documents holding details
        without the flag count as basic-only until ids_missing_details backfills it.
        """
        return await self._count(self._collection.where("has_details", "==", True))

    async def ids_missing_details(self, limit: int = 10) -> List[int]:
        """Page through the collection until limit summary-only ids are found or it ends."""
        page_size = max(limit, 1) * SCAN_FACTOR
        missing: List[int] = []
        cursor = None
        while len(missing) < limit:
            query = self._collection if cursor is None else self._collection.start_after(cursor)
            unflagged = []
            scanned = 0
            async for snapshot in query.limit(page_size).stream():
                scanned += 1
                cursor = snapshot
                entry = _entry_from_snapshot(snapshot)
                if entry is None:
                    continue
                if not entry.has_full_details:
                    missing.append(entry.id)
                elif not (snapshot.to_dict() or {}).get("has_details"):
                    unflagged.append(snapshot.reference)
            await self._backfill_detail_flag(unflagged)
            if scanned < page_size:
                break
        return missing[:limit]

    async def _backfill_detail_flag(self, refs: List[Any]) -> None:
        for chunk in chunked(refs, self.max_batch_size):
            batch = self._client.batch()
            for ref in chunk:
                batch.set(ref, {"has_details": True}, merge=True)
            try:
                await batch.commit()
                logger.info("Flagged %d cached recipes as having details", len(chunk))
            except gcloud_exceptions.GoogleAPICallError as e:
                logger.warning("Failed to flag %d recipes as having details: %s", len(chunk), e)

    async def delete_older_than(self, cutoff: datetime) -> int:
        stale = []
        async for snapshot in self._collection.where("updated_at", "<", cutoff).stream():
            entry = _entry_from_snapshot(snapshot)
            if entry is not None and not entry.has_full_details:
                stale.append(snapshot.reference)

        deleted = 0
        for chunk in chunked(stale, self.max_batch_size):
            batch = self._client.batch()
            for ref in chunk:
                batch.delete(ref)
            try:
                await batch.commit()
                deleted += len(chunk)
            except gcloud_exceptions.GoogleAPICallError as e:
                logger.warning("Failed to prune %d stale recipes: %s", len(chunk), e)
        return deleted

    # --- User activity ---

    def _favorites(self, user_id: str) -> Any:
        return self._users.document(user_id).collection("favorites")

    def _views(self, user_id: str) -> Any:
        return self._users.document(user_id).collection("recently_viewed")

    async def add_favorite(self, favorite: UserFavorite) -> None:
        try:
            await self._favorites(favorite.user_id).document(document_key(favorite.recipe_id)).set(
                favorite.model_dump(exclude={"user_id"})
            )
        except gcloud_exceptions.GoogleAPICallError as e:
            raise StoreWriteError("add_favorite", str(e)) from e

    async def remove_favorite(self, user_id: str, recipe_id: int) -> bool:
        ref = self._favorites(user_id).document(document_key(canonical_recipe_id(recipe_id)))
        snapshot = await ref.get()
        if not snapshot.exists:
            return False
        await ref.delete()
        return True

    async def is_favorite(self, user_id: str, recipe_id: int) -> bool:
        ref = self._favorites(user_id).document(document_key(canonical_recipe_id(recipe_id)))
        snapshot = await ref.get()
        return snapshot.exists

    async def list_favorites(self, user_id: str) -> List[UserFavorite]:
        query = self._favorites(user_id).order_by(
            "favorited_at", direction=firestore.Query.DESCENDING
        )
        favorites = []
        async for snapshot in query.stream():
            data = snapshot.to_dict() or {}
            data.setdefault("recipe_id", snapshot.id)
            favorites.append(
                UserFavorite(user_id=user_id, **{**data, "recipe_id": canonical_recipe_id(data["recipe_id"])})
            )
        return favorites

    async def record_view(self, user_id: str, recipe_id: int, viewed_at: datetime) -> ViewRecord:
        recipe_id = canonical_recipe_id(recipe_id)
        ref = self._views(user_id).document(document_key(recipe_id))
        try:
            await ref.set(
                {
                    "recipe_id": recipe_id,
                    "viewed_at": viewed_at,
                    "view_count": firestore.Increment(1),
                },
                merge=True,
            )
        except gcloud_exceptions.GoogleAPICallError as e:
            raise StoreWriteError("record_view", str(e)) from e
        data = (await ref.get()).to_dict() or {}
        return ViewRecord(
            user_id=user_id,
            recipe_id=recipe_id,
            viewed_at=data.get("viewed_at", viewed_at),
            view_count=int(data.get("view_count", 1)),
        )

    async def recently_viewed(self, user_id: str, limit: int = 20) -> List[ViewRecord]:
        query = (
            self._views(user_id)
            .order_by("viewed_at", direction=firestore.Query.DESCENDING)
            .limit(limit)
        )
        records = []
        async for snapshot in query.stream():
            data = snapshot.to_dict() or {}
            records.append(
                ViewRecord(
                    user_id=user_id,
                    recipe_id=canonical_recipe_id(data.get("recipe_id", snapshot.id)),
                    viewed_at=data["viewed_at"],
                    view_count=int(data.get("view_count", 1)),
                )
            )
        return records
