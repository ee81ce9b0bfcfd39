"""Process-wide services shared by the routes and the view session manager."""

from __future__ import annotations

from dataclasses import dataclass

from starlette.requests import HTTPConnection

from campusfix.core.config.campusfix_config import CampusFixConfig
from campusfix.core.logger import campusfix_logger as logger
from campusfix.services.comment_service import CommentService
from campusfix.services.event_registration_service import EventRegistrationService
from campusfix.services.submission_service import SubmissionService
from campusfix.storage.fallback.fallback_store import FallbackStore
from campusfix.storage.fallback.file_fallback_store import FileFallbackStore
from campusfix.sync.change_feed import ChangeFeed
from campusfix.sync.realtime_transport import RealtimeTransport
from campusfix.sync.remote_store import RemoteStore, SupabaseRemoteStore


@dataclass
class AppServices:
    config: CampusFixConfig
    remote_store: RemoteStore
    fallback_store: FallbackStore
    change_feed: ChangeFeed

    def __post_init__(self) -> None:
        self.submissions = SubmissionService(
            self.remote_store, self.fallback_store, self.config
        )
        self.registrations = EventRegistrationService(self.remote_store)
        self.comments = CommentService(self.remote_store)

    async def close(self) -> None:
        if self.change_feed.transport is not None:
            await self.change_feed.transport.close()
        await self.remote_store.close()


async def create_services(config: CampusFixConfig) -> AppServices:
    remote_store = await SupabaseRemoteStore.get_instance(config)
    fallback_store = await FileFallbackStore.get_instance(config)
    transport = None
    if config.realtime_enabled:
        transport = await RealtimeTransport.get_instance(config)
    else:
        logger.info('Realtime disabled; views will only refresh on request')
    return AppServices(
        config=config,
        remote_store=remote_store,
        fallback_store=fallback_store,
        change_feed=ChangeFeed(transport),
    )


def get_app_services(connection: HTTPConnection) -> AppServices:
    return connection.app.state.services
