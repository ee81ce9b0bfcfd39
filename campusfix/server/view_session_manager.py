"""Registry of the views mounted by clients.

Each mounted view is a ``ViewSession`` owning exactly one ListReconciler.
Clients read it over HTTP and follow it over a WebSocket; every snapshot the
reconciler publishes is fanned out to the session's open streams.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone

from campusfix.core.logger import campusfix_logger as logger
from campusfix.server.shared import AppServices
from campusfix.services.submission_service import fallback_purpose_for
from campusfix.storage.data_models.query import ViewQuery
from campusfix.sync.list_reconciler import (
    ErrorRetention,
    ListReconciler,
    ViewSnapshot,
    ViewState,
)


@dataclass
class ViewSession:
    view_id: str
    reconciler: ListReconciler
    owner_id: str | None = None
    use_fallback: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    _streams: list[asyncio.Queue] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.reconciler.add_listener(self._publish)

    def _publish(self, snapshot: ViewSnapshot) -> None:
        for stream in self._streams:
            stream.put_nowait(snapshot)

    def open_stream(self) -> asyncio.Queue:
        stream: asyncio.Queue = asyncio.Queue()
        self._streams.append(stream)
        return stream

    def close_stream(self, stream: asyncio.Queue) -> None:
        if stream in self._streams:
            self._streams.remove(stream)

    def replace_reconciler(self, reconciler: ListReconciler) -> None:
        self.reconciler = reconciler
        reconciler.add_listener(self._publish)

    def snapshot(self) -> ViewSnapshot:
        return self.reconciler.snapshot()


@dataclass
class ViewSessionManager:
    services: AppServices
    _sessions: dict[str, ViewSession] = field(default_factory=dict)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def error_retention(self) -> ErrorRetention:
        return ErrorRetention(self.services.config.error_retention)

    def _build_reconciler(
        self,
        query: ViewQuery,
        owner_id: str | None,
        use_fallback: bool,
        initial_items: list | None = None,
    ) -> ListReconciler:
        return ListReconciler(
            remote_store=self.services.remote_store,
            change_feed=self.services.change_feed,
            query=query,
            fallback_store=self.services.fallback_store if use_fallback else None,
            fallback_purpose=fallback_purpose_for(query.collection) if use_fallback else None,
            owner_id=owner_id,
            error_retention=self.error_retention,
            initial_items=initial_items,
        )

    async def mount(
        self,
        query: ViewQuery,
        owner_id: str | None = None,
        use_fallback: bool = False,
    ) -> ViewSession:
        """Create a view and run its first load.

        A view whose first load fails stays mounted in the error state so the
        client can see the error and ask for a retry.
        """
        view_id = uuid.uuid4().hex
        session = ViewSession(
            view_id=view_id,
            reconciler=self._build_reconciler(query, owner_id, use_fallback),
            owner_id=owner_id,
            use_fallback=use_fallback,
        )
        async with self._lock:
            self._sessions[view_id] = session
        logger.info(f'Mounted {query.collection} view', extra={'view_id': view_id})
        await session.reconciler.start()
        return session

    def get(self, view_id: str) -> ViewSession | None:
        return self._sessions.get(view_id)

    async def unmount(self, view_id: str) -> bool:
        async with self._lock:
            session = self._sessions.pop(view_id, None)
        if session is None:
            return False
        await session.reconciler.dispose()
        logger.info('Unmounted view', extra={'view_id': view_id})
        return True

    async def retry(self, view_id: str) -> ViewSession | None:
        """Replace an errored view's reconciler with a fresh one and load again."""
        session = self.get(view_id)
        if session is None:
            return None
        old = session.reconciler
        if old.state is not ViewState.ERROR:
            await old.refresh()
            return session

        carried = old.items if self.error_retention is ErrorRetention.RETAIN else None
        reconciler = self._build_reconciler(
            old.query, session.owner_id, session.use_fallback, initial_items=carried
        )
        await old.dispose()
        session.replace_reconciler(reconciler)
        logger.info('Retrying view', extra={'view_id': view_id})
        await reconciler.start()
        return session

    def list_views(self) -> list[ViewSession]:
        return list(self._sessions.values())

    async def shutdown(self) -> None:
        logger.info(f'Shutting down ViewSessionManager ({len(self._sessions)} views)')
        async with self._lock:
            sessions, self._sessions = list(self._sessions.values()), {}
        for session in sessions:
            await session.reconciler.dispose()


# Global singleton instance
_view_manager: ViewSessionManager | None = None


def get_view_session_manager() -> ViewSessionManager:
    """Get the global ViewSessionManager instance."""
    if _view_manager is None:
        raise RuntimeError('ViewSessionManager has not been initialized')
    return _view_manager


async def initialize_view_session_manager(services: AppServices) -> ViewSessionManager:
    """Initialize the global view session manager."""
    global _view_manager
    if _view_manager is not None:
        await _view_manager.shutdown()
    _view_manager = ViewSessionManager(services=services)
    return _view_manager


async def shutdown_view_session_manager() -> None:
    """Shutdown the global view session manager."""
    global _view_manager
    if _view_manager:
        await _view_manager.shutdown()
        _view_manager = None
