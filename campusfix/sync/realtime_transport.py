"""Change feed transport for Supabase Realtime.

Realtime speaks the Phoenix channel protocol over a single WebSocket: each
channel joins a ``realtime:<name>`` topic with a ``postgres_changes`` config,
the server replies with ``phx_reply`` and then pushes ``postgres_changes``
messages for matching rows. A heartbeat on the ``phoenix`` topic keeps the
socket open.
"""

from __future__ import annotations

import asyncio
import itertools
import json
from typing import Any, Callable

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from campusfix.core.config.campusfix_config import CampusFixConfig
from campusfix.core.errors import SubscriptionError
from campusfix.core.logger import campusfix_logger as logger
from campusfix.sync.change_feed import Channel, ChannelTransport

PHOENIX_TOPIC = 'phoenix'


def normalize_postgres_change(payload: Any) -> dict[str, Any] | None:
    """Turn a ``postgres_changes`` push into ``{eventType, table, new, old}``."""
    if not isinstance(payload, dict):
        return None
    data = payload.get('data')
    if not isinstance(data, dict) or 'type' not in data:
        return None
    return {
        'eventType': str(data['type']).upper(),
        'schema': data.get('schema'),
        'table': data.get('table'),
        'commit_timestamp': data.get('commit_timestamp'),
        'new': data.get('record') or {},
        'old': data.get('old_record') or {},
    }


class RealtimeChannel(Channel):
    def __init__(self, transport: RealtimeTransport, name: str):
        super().__init__(name)
        self.transport = transport
        self.topic = f'realtime:{name}'

    async def subscribe(self) -> None:
        await self.transport.join(self)


class RealtimeTransport(ChannelTransport):
    def __init__(
        self,
        config: CampusFixConfig,
        connect: Callable[..., Any] = websockets.connect,
    ):
        self.token = config.access_token or config.supabase_anon_key
        self.url = f'{config.realtime_url}?apikey={config.supabase_anon_key}&vsn=1.0.0'
        self.subscribe_timeout = config.subscribe_timeout
        self.heartbeat_interval = config.heartbeat_interval
        self._connect = connect
        self._ws: Any = None
        self._reader: asyncio.Task | None = None
        self._heartbeat: asyncio.Task | None = None
        self._channels: dict[str, RealtimeChannel] = {}
        self._pending: dict[str, asyncio.Future] = {}
        self._refs = itertools.count(1)
        self._connect_lock = asyncio.Lock()

    @classmethod
    async def get_instance(cls, config: CampusFixConfig) -> RealtimeTransport:
        return cls(config)

    def open_channel(self, name: str) -> RealtimeChannel:
        return RealtimeChannel(self, name)

    async def _ensure_connected(self) -> None:
        async with self._connect_lock:
            if self._ws is not None:
                return
            try:
                self._ws = await asyncio.wait_for(
                    self._connect(self.url), timeout=self.subscribe_timeout
                )
            except (OSError, WebSocketException, asyncio.TimeoutError) as e:
                raise SubscriptionError(f'Could not connect to realtime: {e}') from e
            logger.info('Connected to realtime')
            self._reader = asyncio.create_task(self._read_loop(self._ws))
            self._heartbeat = asyncio.create_task(self._heartbeat_loop())

    async def _push(
        self,
        topic: str,
        event: str,
        payload: dict[str, Any],
        wait_reply: bool = False,
    ) -> dict[str, Any] | None:
        if self._ws is None:
            raise SubscriptionError('Realtime connection is not open')
        ref = str(next(self._refs))
        future: asyncio.Future | None = None
        if wait_reply:
            future = asyncio.get_running_loop().create_future()
            self._pending[ref] = future
        message = {'topic': topic, 'event': event, 'payload': payload, 'ref': ref}
        try:
            await self._ws.send(json.dumps(message))
            if future is None:
                return None
            return await asyncio.wait_for(future, timeout=self.subscribe_timeout)
        except asyncio.TimeoutError as e:
            raise SubscriptionError(f'No reply to {event} on {topic}') from e
        except WebSocketException as e:
            raise SubscriptionError(f'Could not send {event} on {topic}: {e}') from e
        finally:
            self._pending.pop(ref, None)

    async def join(self, channel: RealtimeChannel) -> None:
        await self._ensure_connected()
        self._channels[channel.topic] = channel
        payload = {
            'config': {
                'broadcast': {'self': False},
                'presence': {'key': ''},
                'postgres_changes': [pattern.to_config() for pattern, _ in channel.bindings],
            },
            'access_token': self.token,
        }
        try:
            reply = await self._push(channel.topic, 'phx_join', payload, wait_reply=True)
        except SubscriptionError:
            self._channels.pop(channel.topic, None)
            raise
        reply = reply or {}
        if reply.get('status') != 'ok':
            self._channels.pop(channel.topic, None)
            raise SubscriptionError(
                f'Join of {channel.topic} rejected: {reply.get("response")}'
            )
        logger.debug(f'Joined {channel.topic}')

    async def remove_channel(self, channel: Channel) -> None:
        topic = getattr(channel, 'topic', f'realtime:{channel.name}')
        if self._channels.pop(topic, None) is None:
            return
        if self._ws is not None:
            try:
                await self._push(topic, 'phx_leave', {})
            except SubscriptionError as e:
                logger.debug(f'Leave of {topic} not sent: {e}')
        if not self._channels:
            await self.close()

    def handle_message(self, raw: str | bytes) -> None:
        try:
            message = json.loads(raw)
        except ValueError:
            logger.warning('Ignoring undecodable realtime message')
            return
        if not isinstance(message, dict):
            return

        event = message.get('event')
        if event == 'phx_reply':
            future = self._pending.get(str(message.get('ref')))
            if future is not None and not future.done():
                future.set_result(message.get('payload') or {})
            return

        channel = self._channels.get(message.get('topic'))
        if channel is None:
            return
        if event == 'postgres_changes':
            payload = normalize_postgres_change(message.get('payload'))
            if payload is None:
                logger.warning(f'Ignoring malformed change on {channel.topic}')
                return
            channel.deliver(payload)
        elif event in ('phx_error', 'phx_close', 'system'):
            logger.warning(f'Realtime {event} on {channel.topic}: {message.get("payload")}')

    async def _read_loop(self, ws: Any) -> None:
        try:
            async for raw in ws:
                self.handle_message(raw)
        except ConnectionClosed as e:
            logger.warning(f'Realtime connection closed: {e}')
        finally:
            if self._ws is ws:
                self._ws = None
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(SubscriptionError('Realtime connection closed'))
            if self._channels:
                logger.warning(
                    f'{len(self._channels)} channel(s) stopped receiving changes; views keep their last snapshot'
                )

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self._push(PHOENIX_TOPIC, 'heartbeat', {})
            except SubscriptionError as e:
                logger.warning(f'Realtime heartbeat failed: {e}')
                return

    async def close(self) -> None:
        for task in (self._heartbeat, self._reader):
            if task is not None and not task.done():
                task.cancel()
        self._heartbeat = None
        self._reader = None
        ws, self._ws = self._ws, None
        self._channels.clear()
        if ws is not None:
            try:
                await ws.close()
            except WebSocketException as e:
                logger.debug(f'Error closing realtime connection: {e}')
