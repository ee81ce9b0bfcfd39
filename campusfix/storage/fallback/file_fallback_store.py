"""File-based implementation of FallbackStore."""

from __future__ import annotations

import asyncio
import json
import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any

from campusfix.core.config.campusfix_config import CampusFixConfig
from campusfix.core.errors import EntityDecodeError
from campusfix.core.logger import campusfix_logger as logger
from campusfix.storage import get_file_store
from campusfix.storage.data_models.entity import (
    Entity,
    decode_row,
    entity_to_row,
    utc_now,
)
from campusfix.storage.data_models.fallback_record import FallbackRecord
from campusfix.storage.fallback.fallback_store import FallbackStore
from campusfix.storage.files import FileStore
from campusfix.utils.async_utils import call_sync_from_async

FALLBACK_DIR = 'fallback'


def _encode_purpose(purpose: str) -> str:
    """Encode a purpose name for use in file paths."""
    return re.sub(r'[^A-Za-z0-9_.-]', '_', purpose)


def _record_to_dict(record: FallbackRecord) -> dict:
    return {
        'collection': record.entity.collection,
        'row': entity_to_row(record.entity),
        'saved_locally': record.saved_locally,
        'mirrored_at': record.mirrored_at.isoformat(),
    }


def _dict_to_record(data: dict) -> FallbackRecord:
    entity = decode_row(data['collection'], data['row'])
    mirrored_at = data.get('mirrored_at')
    if mirrored_at and isinstance(mirrored_at, str):
        mirrored_at = datetime.fromisoformat(mirrored_at)
    else:
        mirrored_at = datetime.now(timezone.utc)
    return FallbackRecord(
        entity=entity,
        saved_locally=bool(data.get('saved_locally', False)),
        mirrored_at=mirrored_at,
    )


@dataclass
class FileFallbackStore(FallbackStore):
    """File-based implementation of FallbackStore.

    Each purpose is one JSON list at ``fallback/{purpose}.json``, newest
    record first.
    """

    file_store: FileStore
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def _get_path(self, purpose: str) -> str:
        return f'{FALLBACK_DIR}/{_encode_purpose(purpose)}.json'

    def _load_file(self, purpose: str) -> list[dict]:
        path = self._get_path(purpose)
        try:
            content = self.file_store.read(path)
        except FileNotFoundError:
            return []
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            logger.error(f'Error parsing fallback file {path}: {e}')
            return []
        if not isinstance(data, list):
            logger.error(f'Fallback file {path} does not hold a list')
            return []
        return data

    def _save_file(self, purpose: str, records: list[FallbackRecord]) -> None:
        content = json.dumps([_record_to_dict(r) for r in records], indent=2)
        self.file_store.write(self._get_path(purpose), content)

    async def _load(self, purpose: str) -> list[FallbackRecord]:
        raw = await call_sync_from_async(self._load_file, purpose)
        records = []
        for item in raw:
            try:
                records.append(_dict_to_record(item))
            except (EntityDecodeError, KeyError, TypeError, ValueError) as e:
                logger.warning(f'Skipping unreadable fallback record in {purpose}: {e}')
        return records

    async def _save(self, purpose: str, records: list[FallbackRecord]) -> None:
        await call_sync_from_async(self._save_file, purpose, records)

    async def append(self, purpose: str, record: FallbackRecord) -> None:
        async with self._lock:
            records = await self._load(purpose)
            records = [r for r in records if r.id != record.id]
            records.insert(0, record)
            await self._save(purpose, records)
        logger.debug(f'Mirrored {record.entity.collection} {record.id} into {purpose}')

    async def list_for(
        self, purpose: str, owner_id: str | None = None
    ) -> list[FallbackRecord]:
        records = await self._load(purpose)
        if owner_id is None:
            return records
        return [r for r in records if r.owner_id == owner_id]

    async def patch(self, purpose: str, entity_id: str, fields: dict[str, Any]) -> bool:
        async with self._lock:
            records = await self._load(purpose)
            for i, existing in enumerate(records):
                if existing.id != entity_id:
                    continue
                records[i] = replace(existing, entity=_patched(existing.entity, fields))
                await self._save(purpose, records)
                return True
        return False

    async def remove(self, purpose: str, entity_id: str) -> bool:
        async with self._lock:
            records = await self._load(purpose)
            original_count = len(records)
            records = [r for r in records if r.id != entity_id]
            if len(records) < original_count:
                await self._save(purpose, records)
                logger.debug(f'Removed {entity_id} from {purpose}')
                return True
        return False

    @classmethod
    async def get_instance(cls, config: CampusFixConfig) -> FileFallbackStore:
        file_store = get_file_store(
            file_store_type=config.file_store,
            file_store_path=config.file_store_path,
        )
        return FileFallbackStore(file_store)


def _patched(entity: Entity, fields: dict[str, Any]) -> Entity:
    """Apply column updates to an entity, re-validating through decode_row."""
    row = entity_to_row(entity)
    row.update(fields)
    row['id'] = entity.id
    if 'updated_at' not in fields:
        row['updated_at'] = utc_now().isoformat()
    return decode_row(entity.collection, row)
