"""Write path for issues, reports and events.

Every successful submission is also mirrored into the fallback cache so the
submitter's views show it immediately. A failed remote insert is not lost:
the row is kept locally under a ``local-`` id and flagged ``saved_locally``.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field, fields
from typing import Any

from campusfix.core.config.campusfix_config import CampusFixConfig
from campusfix.core.errors import RemoteError, UploadError
from campusfix.core.logger import campusfix_logger as logger
from campusfix.storage.data_models.entity import (
    Entity,
    decode_row,
    entity_class_for,
    is_local_id,
    make_local_id,
    utc_now,
)
from campusfix.storage.data_models.fallback_record import FallbackRecord
from campusfix.storage.data_models.query import Eq, Filter
from campusfix.storage.fallback.fallback_store import FallbackStore
from campusfix.sync.remote_store import RemoteStore

# Rows that reference an issue and go with it
ISSUE_CHILD_TABLES = ('issue_comments', 'comments')


def fallback_purpose_for(collection: str) -> str:
    """Purpose under which a collection's submissions are mirrored."""
    return collection


def _has_field(cls: type[Entity], name: str) -> bool:
    return any(f.name == name for f in fields(cls))


@dataclass
class Attachment:
    filename: str
    data: bytes
    content_type: str = 'application/octet-stream'

    @property
    def extension(self) -> str:
        if '.' not in self.filename:
            return 'bin'
        return self.filename.rsplit('.', 1)[1].lower() or 'bin'


@dataclass
class WriteResult:
    entity: Entity | None = None
    found: bool = True
    saved_locally: bool = False
    upload_failed: bool = False
    notifications: list[str] = field(default_factory=list)


class SubmissionService:
    def __init__(
        self,
        remote_store: RemoteStore,
        fallback_store: FallbackStore,
        config: CampusFixConfig,
    ):
        self.remote_store = remote_store
        self.fallback_store = fallback_store
        self.config = config

    def object_path(self, owner_id: str, attachment: Attachment) -> str:
        millis = int(time.time() * 1000)
        return f'{owner_id}-{millis}-{uuid.uuid4().hex[:8]}.{attachment.extension}'

    async def _upload(
        self, collection: str, owner_id: str, attachment: Attachment
    ) -> str:
        bucket = self.config.bucket_for(collection)
        path = self.object_path(owner_id, attachment)
        return await self.remote_store.upload_object(
            bucket, path, attachment.data, attachment.content_type
        )

    async def _mirror(self, entity: Entity, saved_locally: bool) -> None:
        purpose = fallback_purpose_for(entity.collection)
        try:
            await self.fallback_store.append(
                purpose, FallbackRecord(entity=entity, saved_locally=saved_locally)
            )
        except OSError as e:
            logger.warning(f'Failed to update local {purpose} cache: {e}')

    async def _patch_mirror(self, collection: str, entity_id: str, changes: dict[str, Any]) -> bool:
        try:
            return await self.fallback_store.patch(
                fallback_purpose_for(collection), entity_id, changes
            )
        except OSError as e:
            logger.warning(f'Failed to update local {collection} cache: {e}')
            return False

    async def _remove_mirror(self, collection: str, entity_id: str) -> None:
        try:
            await self.fallback_store.remove(fallback_purpose_for(collection), entity_id)
        except OSError as e:
            logger.warning(f'Failed to remove {entity_id} from local {collection} cache: {e}')

    async def submit(
        self,
        collection: str,
        owner_id: str,
        values: dict[str, Any],
        attachment: Attachment | None = None,
    ) -> WriteResult:
        """Create a row, uploading its attachment first.

        An upload failure does not abort the submission: the row goes in
        without a media reference and is flagged ``upload_pending``.
        """
        cls = entity_class_for(collection)
        result = WriteResult()

        row = {k: v for k, v in values.items() if k != 'id'}
        row[cls.owner_column] = owner_id
        row['status'] = cls.normalize_status(row.get('status'))
        row['created_at'] = utc_now().isoformat()

        if attachment is not None and cls.media_field:
            try:
                row[cls.media_field] = await self._upload(collection, owner_id, attachment)
            except UploadError as e:
                logger.warning(f'Continuing {collection} submission without attachment: {e}')
                result.upload_failed = True
                row[cls.media_field] = None
                if _has_field(cls, 'upload_pending'):
                    row['upload_pending'] = True
                result.notifications.append(
                    'The attachment could not be uploaded. Your submission was saved without it; retry the upload later.'
                )

        try:
            entity = await self.remote_store.insert(collection, row)
        except RemoteError as e:
            logger.error(f'Insert into {collection} failed, keeping it locally: {e}')
            entity = decode_row(collection, {**row, 'id': make_local_id(collection)})
            result.saved_locally = True
            result.notifications.append(
                'Saved locally because of a connection problem. It will show as pending sync.'
            )

        await self._mirror(entity, result.saved_locally)
        result.entity = entity
        result.notifications.insert(0, f'{cls.__name__} submitted successfully.')
        return result

    async def retry_upload(
        self,
        collection: str,
        entity_id: str,
        owner_id: str,
        attachment: Attachment,
    ) -> WriteResult:
        """Upload the attachment of a row flagged ``upload_pending``."""
        cls = entity_class_for(collection)
        if not cls.media_field:
            raise ValueError(f'{collection} rows have no attachment')
        try:
            url = await self._upload(collection, owner_id, attachment)
        except UploadError as e:
            logger.warning(f'Upload retry for {collection} {entity_id} failed: {e}')
            return WriteResult(
                upload_failed=True,
                notifications=['The attachment could not be uploaded. Try again later.'],
            )

        changes: dict[str, Any] = {cls.media_field: url, 'updated_at': utc_now().isoformat()}
        if _has_field(cls, 'upload_pending'):
            changes['upload_pending'] = False
        return await self._write_changes(collection, entity_id, changes, 'Attachment uploaded.')

    async def update_status(
        self,
        collection: str,
        entity_id: str,
        status: str,
        priority: str | None = None,
    ) -> WriteResult:
        cls = entity_class_for(collection)
        changes: dict[str, Any] = {
            'status': cls.normalize_status(status),
            'updated_at': utc_now().isoformat(),
        }
        if priority:
            changes['priority'] = priority
        return await self._write_changes(collection, entity_id, changes, 'Status updated.')

    async def _write_changes(
        self,
        collection: str,
        entity_id: str,
        changes: dict[str, Any],
        success_message: str,
    ) -> WriteResult:
        if is_local_id(entity_id):
            # Only exists in the fallback cache
            found = await self._patch_mirror(collection, entity_id, changes)
            return WriteResult(
                found=found,
                saved_locally=True,
                notifications=[success_message] if found else [],
            )

        try:
            await self.remote_store.update(collection, entity_id, changes)
        except RemoteError:
            if not await self._patch_mirror(collection, entity_id, changes):
                raise
            logger.warning(f'Update of {collection} {entity_id} kept locally only')
            return WriteResult(
                saved_locally=True,
                notifications=[
                    f'{success_message[:-1]} locally; the server could not be reached.'
                ],
            )

        await self._patch_mirror(collection, entity_id, changes)
        return WriteResult(notifications=[success_message])

    async def delete(self, collection: str, entity_id: str) -> WriteResult:
        if is_local_id(entity_id):
            raise ValueError('Locally saved records cannot be deleted from the server')
        if collection == 'issues':
            for table in ISSUE_CHILD_TABLES:
                await self.remote_store.delete_rows(table, Filter.of(Eq('issue_id', entity_id)))
        await self.remote_store.delete(collection, entity_id)
        await self._remove_mirror(collection, entity_id)
        return WriteResult(notifications=['Deleted.'])
