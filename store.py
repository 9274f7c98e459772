# store.py
# =============================================================================
# Document store on SQLAlchemy 2.x async. Every record lives in one `document`
# table keyed by (collection path, doc_id); subscribers get the whole
# collection re-delivered after each write, like a live snapshot listener.
# =============================================================================

from __future__ import annotations

import logging
import uuid
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import JSON, Integer, String, asc, delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.pool import NullPool

from derive import day_workout_ids
from errors import DocumentNotFound, PartialDeletionError, StoreOperationError

log = logging.getLogger("fittrack.store")

WORKOUTS = "workouts"
WEIGHT_LOG = "weightLog"
WORKOUT_PLANS = "workout_plans"
PROFILES = "profiles"

Snapshot = List[Dict[str, Any]]
Listener = Callable[[Snapshot], None]


# -----------------------------------------------------------------------------
# Engine & model
# -----------------------------------------------------------------------------
def make_engine(url: str) -> AsyncEngine:
    if url.startswith("sqlite"):
        # No pooled aiosqlite connections: each session opens its own
        return create_async_engine(url, echo=False, poolclass=NullPool)
    return create_async_engine(
        url, echo=False, pool_pre_ping=True,
        pool_size=20, max_overflow=30, pool_timeout=30,
    )


class Base(DeclarativeBase):
    pass


class Document(Base):
    __tablename__ = "document"
    __table_args__ = {"extend_existing": True}

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    doc_id: Mapped[str] = mapped_column(String(32), nullable=False, unique=True, index=True)
    collection: Mapped[str] = mapped_column(String, nullable=False, index=True)
    data: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)


async def init_db(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def _to_snapshot_doc(d: Document) -> Dict[str, Any]:
    return {"id": d.doc_id, **(d.data or {})}


def _escape_like(s: str) -> str:
    """Escape SQL LIKE special characters."""
    return s.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


# -----------------------------------------------------------------------------
# Collection paths
# -----------------------------------------------------------------------------
def scope_path(app_id: str, user_id: str, profile_id: Optional[str] = None) -> str:
    base = f"artifacts/{app_id}/users/{user_id}"
    if profile_id:
        base = f"{base}/profiles/{profile_id}"
    return base


def collection_path(app_id: str, user_id: str, name: str, profile_id: Optional[str] = None) -> str:
    return f"{scope_path(app_id, user_id, profile_id)}/{name}"


# -----------------------------------------------------------------------------
# Subscriptions
# -----------------------------------------------------------------------------
class Subscription:
    """Handle returned by DocumentStore.subscribe."""

    def __init__(self, store: "DocumentStore", collection: str, listener: Listener):
        self._store = store
        self.collection = collection
        self.listener = listener
        self.active = True
        # generation of the newest snapshot handed to the listener
        self.generation = 0

    def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        self._store._remove_listener(self)


# -----------------------------------------------------------------------------
# Store
# -----------------------------------------------------------------------------
class DocumentStore:
    """create/update/replace/delete/subscribe over scoped collections.

    No locking: the last writer wins on every field.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory
        self._subscriptions: Dict[str, List[Subscription]] = {}
        self._generations: Dict[str, int] = {}

    # -- reads ---------------------------------------------------------------
    async def list(self, collection: str) -> Snapshot:
        try:
            async with self._session_factory() as s:
                result = await s.execute(
                    select(Document)
                    .where(Document.collection == collection)
                    .order_by(asc(Document.seq))
                )
                rows = result.scalars().all()
        except SQLAlchemyError as e:
            log.error(f"List of {collection} failed: {e}")
            raise StoreOperationError(f"Could not read {collection}") from e
        return [_to_snapshot_doc(d) for d in rows]

    async def get(self, collection: str, doc_id: str) -> Dict[str, Any]:
        try:
            async with self._session_factory() as s:
                d = await self._find(s, collection, doc_id)
                return _to_snapshot_doc(d)
        except SQLAlchemyError as e:
            log.error(f"Get of {collection}/{doc_id} failed: {e}")
            raise StoreOperationError(f"Could not read {collection}/{doc_id}") from e

    # -- writes --------------------------------------------------------------
    async def create(self, collection: str, fields: Dict[str, Any]) -> str:
        doc_id = uuid.uuid4().hex
        try:
            async with self._session_factory() as s:
                s.add(Document(doc_id=doc_id, collection=collection, data=dict(fields)))
                await s.commit()
        except SQLAlchemyError as e:
            log.error(f"Create in {collection} failed: {e}")
            raise StoreOperationError(f"Could not create document in {collection}") from e
        await self._notify([collection])
        return doc_id

    async def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        """Merge fields into an existing document."""
        await self._write(collection, doc_id, lambda old: {**old, **fields})

    async def replace(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        """Overwrite every non-id field of an existing document."""
        await self._write(collection, doc_id, lambda old: dict(fields))

    async def delete(self, collection: str, doc_id: str) -> None:
        try:
            async with self._session_factory() as s:
                d = await self._find(s, collection, doc_id)
                await s.delete(d)
                await s.commit()
        except SQLAlchemyError as e:
            log.error(f"Delete of {collection}/{doc_id} failed: {e}")
            raise StoreOperationError(f"Could not delete {collection}/{doc_id}") from e
        await self._notify([collection])

    async def delete_many(self, collection: str, doc_ids: Iterable[str]) -> int:
        """Delete several documents in one transaction: all of them or none."""
        ids = list(doc_ids)
        try:
            async with self._session_factory() as s:
                for doc_id in ids:
                    await s.delete(await self._find(s, collection, doc_id))
                await s.commit()
        except SQLAlchemyError as e:
            log.error(f"Batch delete in {collection} failed: {e}")
            raise StoreOperationError(f"Could not delete {len(ids)} documents in {collection}") from e
        await self._notify([collection])
        return len(ids)

    async def delete_prefix(self, prefix: str, owner: Optional[Tuple[str, str]] = None) -> int:
        """Remove every document whose collection path lies under prefix.

        owner is an optional (collection, doc_id) removed in the same
        transaction, e.g. the profile document that owns the prefix. Either
        all of it goes or nothing does.
        """
        pattern = f"{_escape_like(prefix.rstrip('/'))}/%"
        try:
            async with self._session_factory() as s:
                found = await s.execute(
                    select(Document.collection).where(Document.collection.like(pattern, escape="\\"))
                )
                touched = set(found.scalars().all())
                result = await s.execute(
                    delete(Document).where(Document.collection.like(pattern, escape="\\"))
                )
                removed = int(result.rowcount or 0)
                if owner is not None:
                    await s.delete(await self._find(s, *owner))
                    touched.add(owner[0])
                await s.commit()
        except SQLAlchemyError as e:
            log.error(f"Delete under {prefix} failed: {e}")
            raise StoreOperationError(f"Could not delete documents under {prefix}") from e
        await self._notify(sorted(touched))
        return removed

    # -- live snapshots ------------------------------------------------------
    async def subscribe(self, collection: str, listener: Listener) -> Subscription:
        """Deliver the current snapshot now and again after every write."""
        sub = Subscription(self, collection, listener)
        self._subscriptions.setdefault(collection, []).append(sub)
        generation = self._next_generation(collection)
        try:
            snapshot = await self.list(collection)
        except StoreOperationError:
            sub.unsubscribe()
            raise
        self._deliver(sub, snapshot, generation)
        return sub

    def subscriber_count(self, collection: str) -> int:
        return len(self._subscriptions.get(collection, []))

    # -- internals -----------------------------------------------------------
    async def _find(self, s: AsyncSession, collection: str, doc_id: str) -> Document:
        result = await s.execute(
            select(Document).where(Document.collection == collection, Document.doc_id == doc_id)
        )
        d = result.scalar()
        if d is None:
            raise DocumentNotFound(collection, doc_id)
        return d

    async def _write(self, collection: str, doc_id: str, merge: Callable[[Dict[str, Any]], Dict[str, Any]]) -> None:
        try:
            async with self._session_factory() as s:
                d = await self._find(s, collection, doc_id)
                # new dict so the JSON column is flagged dirty
                d.data = merge(dict(d.data or {}))
                await s.commit()
        except SQLAlchemyError as e:
            log.error(f"Write to {collection}/{doc_id} failed: {e}")
            raise StoreOperationError(f"Could not write {collection}/{doc_id}") from e
        await self._notify([collection])

    def _remove_listener(self, sub: Subscription) -> None:
        subs = self._subscriptions.get(sub.collection, [])
        if sub in subs:
            subs.remove(sub)
        if not subs:
            self._subscriptions.pop(sub.collection, None)

    async def _notify(self, collections: Iterable[str]) -> None:
        for collection in collections:
            subs = list(self._subscriptions.get(collection, []))
            if not subs:
                continue
            generation = self._next_generation(collection)
            try:
                snapshot = await self.list(collection)
            except StoreOperationError as e:
                log.error(f"Snapshot refresh of {collection} failed: {e}")
                continue
            for sub in subs:
                self._deliver(sub, snapshot, generation)

    def _next_generation(self, collection: str) -> int:
        """Number a snapshot read before it starts. A read that starts later
        sees every write committed before it, so higher means fresher.
        """
        generation = self._generations.get(collection, 0) + 1
        self._generations[collection] = generation
        return generation

    def _deliver(self, sub: Subscription, snapshot: Snapshot, generation: int) -> None:
        # reads can finish out of order; never replace a newer snapshot
        if not sub.active or generation <= sub.generation:
            return
        sub.generation = generation
        try:
            sub.listener([dict(d) for d in snapshot])
        except Exception:
            log.exception(f"Snapshot listener on {sub.collection} raised")


# -----------------------------------------------------------------------------
# Day deletion
# -----------------------------------------------------------------------------
async def delete_day(store: DocumentStore, collection: str, day: str, atomic: bool = True) -> List[str]:
    """Delete every workout whose date equals day.

    atomic=True removes the whole day in one transaction. atomic=False issues
    one delete per record and keeps going past failures; if any fail, a
    PartialDeletionError reports what was and wasn't removed.
    """
    ids = day_workout_ids(await store.list(collection), day)
    if not ids:
        raise DocumentNotFound(collection, day)
    if atomic:
        await store.delete_many(collection, ids)
        return ids

    deleted: List[str] = []
    failed: List[str] = []
    for doc_id in ids:
        try:
            await store.delete(collection, doc_id)
            deleted.append(doc_id)
        except StoreOperationError as e:
            log.error(f"Delete of {doc_id} for day {day} failed: {e}")
            failed.append(doc_id)
    if failed:
        raise PartialDeletionError(deleted, failed)
    return deleted
