"""Keeps one view's list of entities consistent with the store.

A ``ListReconciler`` owns a single ViewList. It loads a page from the remote
store, patches it with change feed events as they arrive, and optionally
merges in rows from the local fallback cache.

States::

    LOADING --fetch ok--> LIVE --query change / refresh--> LOADING
    LOADING --fetch failed--> ERROR   (terminal; mount a new reconciler)
    any --dispose--> DISPOSED

The subscription is opened before the fetch so that no change falls in the
gap between the two. Events received while LOADING are buffered and replayed
on top of the fetched page; when a row is in both, the newer version wins.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable

from campusfix.core.errors import CampusFixError, RemoteError
from campusfix.core.logger import campusfix_logger as logger
from campusfix.storage.data_models.change_event import ChangeEvent, ChangeKind
from campusfix.storage.data_models.entity import Entity, entity_class_for
from campusfix.storage.data_models.fallback_record import FallbackRecord
from campusfix.storage.data_models.query import Filter, Sort, ViewQuery
from campusfix.storage.fallback.fallback_store import FallbackStore
from campusfix.sync.change_feed import ChangeFeed, SubscriptionHandle
from campusfix.sync.fallback_merge import content_key, merge_fallback
from campusfix.sync.remote_store import RemoteStore


class ViewState(str, Enum):
    LOADING = 'loading'
    LIVE = 'live'
    ERROR = 'error'
    DISPOSED = 'disposed'


class ErrorRetention(str, Enum):
    """What an errored view shows: its last good rows, or nothing."""

    RETAIN = 'retain'
    CLEAR = 'clear'


@dataclass(frozen=True)
class ViewSnapshot:
    state: ViewState
    items: tuple[Entity, ...]
    total_count: int
    live: bool
    from_fallback: bool
    error: str | None
    query: ViewQuery


Listener = Callable[[ViewSnapshot], None]


class ListReconciler:
    def __init__(
        self,
        remote_store: RemoteStore,
        change_feed: ChangeFeed,
        query: ViewQuery,
        fallback_store: FallbackStore | None = None,
        fallback_purpose: str | None = None,
        owner_id: str | None = None,
        error_retention: ErrorRetention = ErrorRetention.RETAIN,
        initial_items: list[Entity] | None = None,
    ):
        self.remote_store = remote_store
        self.change_feed = change_feed
        self.query = query
        self.fallback_store = fallback_store
        self.fallback_purpose = fallback_purpose
        self.owner_id = owner_id
        self.error_retention = error_retention

        self.state = ViewState.LOADING
        self.total_count = len(initial_items or [])
        self.error: CampusFixError | None = None
        self.from_fallback = False
        self._items: list[Entity] = list(initial_items or [])
        self._pinned: set[str] = set()
        self._buffer: list[ChangeEvent] = []
        self._handle: SubscriptionHandle | None = None
        self._generation = 0
        self._listeners: list[Listener] = []

    @property
    def items(self) -> list[Entity]:
        return list(self._items)

    @property
    def live(self) -> bool:
        return self._handle is not None and self._handle.live

    @property
    def has_fallback(self) -> bool:
        return self.fallback_store is not None and self.fallback_purpose is not None

    def snapshot(self) -> ViewSnapshot:
        return ViewSnapshot(
            state=self.state,
            items=tuple(self._items),
            total_count=self.total_count,
            live=self.live,
            from_fallback=self.from_fallback,
            error=str(self.error) if self.error else None,
            query=self.query,
        )

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # Lifecycle

    async def start(self) -> None:
        await self._load()

    async def change_query(
        self,
        filter: Filter | None = None,
        sort: Sort | None = None,
        offset: int | None = None,
        limit: int | None = None,
    ) -> None:
        """Switch to a new filter/sort/page and reload."""
        self._ensure_usable()
        self.query = ViewQuery(
            collection=self.query.collection,
            filter=self.query.filter if filter is None else filter,
            sort=self.query.sort if sort is None else sort,
            offset=self.query.offset if offset is None else offset,
            limit=self.query.limit if limit is None else limit,
        )
        await self._load()

    async def refresh(self) -> None:
        """Reload with the current query, e.g. when the change feed is down."""
        self._ensure_usable()
        await self._load()

    async def dispose(self) -> None:
        if self.state is ViewState.DISPOSED:
            return
        self.state = ViewState.DISPOSED
        self._generation += 1
        self._buffer = []
        self._listeners.clear()
        handle, self._handle = self._handle, None
        if handle is not None:
            handle.close()
            await self.change_feed.unsubscribe(handle)

    def _ensure_usable(self) -> None:
        if self.state is ViewState.DISPOSED:
            raise RuntimeError('View has been disposed')
        if self.state is ViewState.ERROR:
            raise RuntimeError('View is in error state; mount a new one to retry')

    def _is_stale(self, generation: int) -> bool:
        return self.state is ViewState.DISPOSED or generation != self._generation

    # Loading

    async def _load(self) -> None:
        self._generation += 1
        generation = self._generation
        self.state = ViewState.LOADING
        self._buffer = []
        self._notify()

        await self._resubscribe(generation)
        if self._is_stale(generation):
            return

        query = self.query
        try:
            page = await self.remote_store.fetch_page(
                query.collection, query.filter, query.sort, query.offset, query.limit
            )
        except RemoteError as e:
            if self._is_stale(generation):
                return
            logger.warning(f'Loading {query.collection} view failed: {e}')
            await self._recover_or_fail(generation, e)
            return

        records = await self._fallback_records()
        if self._is_stale(generation):
            logger.debug(f'Discarding {query.collection} page fetched for a superseded query')
            return

        if records is None:
            self._items, self._pinned = list(page.rows), set()
        else:
            merged = merge_fallback(records, page.rows, query)
            self._items, self._pinned = merged.items, merged.pinned_ids
        self.total_count = page.total_count + len(self._pinned)
        self.error = None
        self.from_fallback = False
        self._go_live()

    async def _recover_or_fail(self, generation: int, error: RemoteError) -> None:
        records = await self._fallback_records()
        if self._is_stale(generation):
            return

        if records is not None:
            merged = merge_fallback(records, [], self.query)
            self._items, self._pinned = merged.items, merged.pinned_ids
            self.total_count = len(self._items)
            self.error = error
            self.from_fallback = True
            logger.info(
                f'Showing {len(self._items)} locally saved {self.query.collection} rows instead'
            )
            self._go_live()
            return

        self.state = ViewState.ERROR
        self.error = error
        self._buffer = []
        if self.error_retention is ErrorRetention.CLEAR:
            self._items, self._pinned = [], set()
            self.total_count = 0
        handle, self._handle = self._handle, None
        if handle is not None:
            await self.change_feed.unsubscribe(handle)
        self._notify()

    def _go_live(self) -> None:
        buffered, self._buffer = self._buffer, []
        for event in buffered:
            self._patch(event, keep_newer=True)
        self.state = ViewState.LIVE
        self._notify()

    async def _resubscribe(self, generation: int) -> None:
        old, self._handle = self._handle, None
        if old is not None:
            await self.change_feed.unsubscribe(old)
        if self._is_stale(generation):
            return

        owner_column = entity_class_for(self.query.collection).owner_column
        predicate = self.query.filter.equality_scope(preferred_field=owner_column)
        handle = await self.change_feed.subscribe(
            self.query.collection,
            predicate,
            lambda event: self._on_event(generation, event),
        )
        if self._is_stale(generation):
            await self.change_feed.unsubscribe(handle)
            return
        self._handle = handle

    async def _fallback_records(self) -> list[FallbackRecord] | None:
        if not self.has_fallback:
            return None
        try:
            return await self.fallback_store.list_for(self.fallback_purpose, self.owner_id)
        except OSError as e:
            logger.error(f'Could not read fallback records for {self.fallback_purpose}: {e}')
            return []

    # Patching

    def apply(self, event: ChangeEvent) -> None:
        """Apply one change event to the current list."""
        self._on_event(self._generation, event)

    def _on_event(self, generation: int, event: ChangeEvent) -> None:
        if self._is_stale(generation) or event.collection != self.query.collection:
            return
        if self.state is ViewState.LOADING:
            self._buffer.append(event)
            return
        if self.state is not ViewState.LIVE:
            return
        self._patch(event)
        self._notify()

    def _index_of(self, entity_id: str) -> int | None:
        for i, item in enumerate(self._items):
            if item.id == entity_id:
                return i
        return None

    def _remove_at(self, index: int) -> None:
        removed = self._items.pop(index)
        self._pinned.discard(removed.id)
        self.total_count = max(0, self.total_count - 1)

    def _patch(self, event: ChangeEvent, keep_newer: bool = False) -> None:
        if event.kind is ChangeKind.DELETE:
            index = self._index_of(event.entity_id)
            if index is not None:
                self._remove_at(index)
            return

        entity = event.entity
        index = self._index_of(entity.id)

        if keep_newer and index is not None and self._items[index].version > entity.version:
            return

        if not self.query.filter.matches(entity):
            # Changed so that it no longer belongs in this view
            if index is not None:
                self._remove_at(index)
            return

        if index is not None:
            # Insert for a known id is an update; replace in place
            self._items[index] = entity
            return

        # Unknown id: an update for a row we have not seen counts as an insert.
        # Such a row may already be counted on another page, so only a real
        # insert grows the total.
        if event.kind is ChangeKind.INSERT:
            self.total_count += 1
        self._drop_local_copy(entity)
        self._insert_in_window(entity)

    def _drop_local_copy(self, entity: Entity) -> None:
        """Remove a pinned local-only row that the store has now confirmed."""
        if entity.is_local or not self._pinned:
            return
        key = content_key(entity)
        for i, item in enumerate(self._items):
            if item.id in self._pinned and item.is_local and content_key(item) == key:
                self._remove_at(i)
                return

    def _insert_in_window(self, entity: Entity) -> None:
        """Insert at the sorted position, keeping the page at most ``limit`` rows.

        Pinned fallback rows sit ahead of the page and do not count against it.
        A row that sorts before a later page's first row belongs to an earlier
        page, and one that sorts after a full page's last row to a later one;
        both are left out.
        """
        start = 0
        while start < len(self._items) and self._items[start].id in self._pinned:
            start += 1
        page = self._items[start:]
        sort = self.query.sort

        if self.query.offset > 0 and page and sort.precedes(entity, page[0]):
            return
        position = len(self._items)
        for i in range(start, len(self._items)):
            if sort.precedes(entity, self._items[i]):
                position = i
                break
        if len(page) >= self.query.limit:
            if position == len(self._items):
                return
            # The last row moves on to the next page
            self._items.pop()
        self._items.insert(position, entity)

    def _notify(self) -> None:
        if not self._listeners:
            return
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.error(f'View listener failed: {e}', exc_info=True)
