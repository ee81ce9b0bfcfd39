"""Subscriptions to a collection's insert/update/delete stream.

The transport side mirrors the backend's channel API (open a channel,
register a handler for an event pattern, subscribe, remove the channel).
``ChangeFeed`` sits on top of it and hands decoded ``ChangeEvent``s to view
handlers, one event at a time and in arrival order.
"""

from __future__ import annotations

import itertools
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable

from campusfix.core.errors import EntityDecodeError, SubscriptionError
from campusfix.core.logger import campusfix_logger as logger
from campusfix.storage.data_models.change_event import (
    ChangeEvent,
    change_event_from_payload,
)
from campusfix.storage.data_models.query import Eq

PayloadHandler = Callable[[dict[str, Any]], None]
ChangeHandler = Callable[[ChangeEvent], None]


@dataclass(frozen=True)
class EventPattern:
    table: str
    event: str = '*'
    schema: str = 'public'
    filter: str | None = None

    def accepts(self, payload: dict[str, Any]) -> bool:
        if self.event != '*' and payload.get('eventType') != self.event:
            return False
        table = payload.get('table')
        return table is None or table == self.table

    def to_config(self) -> dict[str, str]:
        config = {'event': self.event, 'schema': self.schema, 'table': self.table}
        if self.filter:
            config['filter'] = self.filter
        return config


class Channel(ABC):
    """One logical channel on the change feed transport."""

    def __init__(self, name: str):
        self.name = name
        self.bindings: list[tuple[EventPattern, PayloadHandler]] = []

    def on(self, pattern: EventPattern, handler: PayloadHandler) -> Channel:
        self.bindings.append((pattern, handler))
        return self

    def deliver(self, payload: dict[str, Any]) -> None:
        for pattern, handler in self.bindings:
            if pattern.accepts(payload):
                handler(payload)

    @abstractmethod
    async def subscribe(self) -> None:
        """Establish the channel. Raises SubscriptionError on failure."""


class ChannelTransport(ABC):
    @abstractmethod
    def open_channel(self, name: str) -> Channel:
        """Create a channel; nothing is sent until it is subscribed."""

    @abstractmethod
    async def remove_channel(self, channel: Channel) -> None:
        """Leave and forget a channel."""

    async def close(self) -> None:
        """Drop every channel and the underlying connection."""


def render_predicate(predicate: Eq | None) -> str | None:
    if predicate is None:
        return None
    return f'{predicate.field}=eq.{predicate.value}'


@dataclass
class SubscriptionHandle:
    """Returned by ``ChangeFeed.subscribe``.

    ``live`` is False when the channel could not be established; the owning
    view then only shows its fetched snapshot until it is refreshed.
    """

    collection: str
    predicate: Eq | None
    channel: Channel | None = None
    live: bool = False
    closed: bool = False

    def close(self) -> None:
        """Stop delivery immediately; the channel itself is removed by unsubscribe."""
        self.closed = True
        self.live = False


class ChangeFeed:
    def __init__(self, transport: ChannelTransport | None):
        self.transport = transport
        self._counter = itertools.count(1)

    async def subscribe(
        self,
        collection: str,
        predicate: Eq | None,
        handler: ChangeHandler,
    ) -> SubscriptionHandle:
        """Deliver every change on ``collection`` (scoped by ``predicate``) to ``handler``.

        Never raises for a channel that cannot be established: the returned
        handle is simply not live. Events that happened before this call are
        not replayed.
        """
        handle = SubscriptionHandle(collection=collection, predicate=predicate)
        if self.transport is None:
            logger.info(f'Realtime disabled, {collection} view will not receive live updates')
            return handle

        name = f'{collection}-changes-{next(self._counter)}'
        pattern = EventPattern(table=collection, filter=render_predicate(predicate))
        channel = self.transport.open_channel(name)
        channel.on(pattern, lambda payload: self._dispatch(handle, payload, handler))
        handle.channel = channel

        try:
            await channel.subscribe()
        except SubscriptionError as e:
            logger.warning(
                f'Could not subscribe to {collection} changes, continuing without live updates: {e}',
                extra={'channel': name},
            )
            handle.channel = None
            await self._remove_quietly(channel)
            return handle

        if handle.closed:
            # Torn down while the join was in flight; unsubscribe removed the channel
            return handle

        handle.live = True
        logger.debug(f'Subscribed to {collection} changes', extra={'channel': name})
        return handle

    async def unsubscribe(self, handle: SubscriptionHandle) -> None:
        handle.close()
        channel, handle.channel = handle.channel, None
        if channel is not None:
            await self._remove_quietly(channel)
            logger.debug(f'Unsubscribed from {handle.collection} changes', extra={'channel': channel.name})

    async def _remove_quietly(self, channel: Channel) -> None:
        if self.transport is None:
            return
        try:
            await self.transport.remove_channel(channel)
        except SubscriptionError as e:
            logger.warning(f'Error removing channel {channel.name}: {e}')

    def _dispatch(
        self,
        handle: SubscriptionHandle,
        payload: dict[str, Any],
        handler: ChangeHandler,
    ) -> None:
        if handle.closed:
            return
        try:
            event = change_event_from_payload(handle.collection, payload)
        except EntityDecodeError as e:
            logger.warning(f'Dropping malformed {handle.collection} change: {e}')
            return
        try:
            handler(event)
        except Exception as e:
            # One bad event must not stop delivery of the ones after it
            logger.error(
                f'Error handling {event.kind.value} for {handle.collection} {event.entity_id}: {e}',
                exc_info=True,
            )
