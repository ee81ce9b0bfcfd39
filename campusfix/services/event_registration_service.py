from __future__ import annotations

from campusfix.core.errors import RegistrationClosedError
from campusfix.core.logger import campusfix_logger as logger
from campusfix.storage.data_models.entity import Event, utc_now
from campusfix.storage.data_models.query import Eq, Filter
from campusfix.sync.remote_store import RemoteStore

REGISTRATIONS_TABLE = 'event_registrations'


class EventRegistrationService:
    """Registrations live in a link table of ``(event_id, user_id)`` rows."""

    def __init__(self, remote_store: RemoteStore):
        self.remote_store = remote_store

    async def registered_event_ids(self, user_id: str) -> list[str]:
        rows = await self.remote_store.fetch_rows(
            REGISTRATIONS_TABLE, Filter.of(Eq('user_id', user_id))
        )
        return [str(row['event_id']) for row in rows if row.get('event_id') is not None]

    async def registration_count(self, event_id: str) -> int:
        return await self.remote_store.count(
            REGISTRATIONS_TABLE, Filter.of(Eq('event_id', event_id))
        )

    async def _get_event(self, event_id: str) -> Event | None:
        event = await self.remote_store.fetch_one('events', event_id)
        if event is not None and not isinstance(event, Event):
            return None
        return event

    async def register(self, event_id: str, user_id: str) -> bool:
        """Register a user for an event. Returns False if there is no such event."""
        event = await self._get_event(event_id)
        if event is None:
            return False
        if not event.is_registration_open():
            raise RegistrationClosedError('Registration is closed for this event')

        existing = await self.remote_store.fetch_rows(
            REGISTRATIONS_TABLE,
            Filter.of(Eq('event_id', event_id), Eq('user_id', user_id)),
        )
        if existing:
            return True

        if event.capacity is not None:
            taken = await self.registration_count(event_id)
            if taken >= event.capacity:
                raise RegistrationClosedError('This event is full')

        await self.remote_store.insert_row(
            REGISTRATIONS_TABLE,
            {'event_id': event_id, 'user_id': user_id, 'created_at': utc_now().isoformat()},
        )
        logger.info(f'User {user_id} registered for event {event_id}')
        return True

    async def cancel(self, event_id: str, user_id: str) -> bool:
        event = await self._get_event(event_id)
        if event is None:
            return False
        if event.is_past():
            raise RegistrationClosedError('Registrations for past events cannot be cancelled')
        await self.remote_store.delete_rows(
            REGISTRATIONS_TABLE,
            Filter.of(Eq('event_id', event_id), Eq('user_id', user_id)),
        )
        logger.info(f'User {user_id} cancelled registration for event {event_id}')
        return True
