"""Access to the hosted relational store and object storage.

``SupabaseRemoteStore`` talks to PostgREST (``/rest/v1``) and Storage
(``/storage/v1``) with httpx. Nothing is cached here; every call is one
request and either returns rows or raises a typed error.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

import httpx

from campusfix.core.config.campusfix_config import CampusFixConfig
from campusfix.core.errors import (
    EntityDecodeError,
    RemoteError,
    RemoteErrorKind,
    UploadError,
)
from campusfix.core.logger import campusfix_logger as logger
from campusfix.storage.data_models.entity import Entity, decode_row
from campusfix.storage.data_models.query import Eq, Filter, Sort


@dataclass
class Page:
    rows: list[Entity]
    total_count: int


class RemoteStore(ABC):
    """Typed read/write access to the relational store and object storage.

    Writes are fire-and-confirm: there is no optimistic locking, so racing
    writes resolve last-writer-wins at the store.
    """

    @abstractmethod
    async def fetch_page(
        self,
        collection: str,
        filter: Filter,
        sort: Sort,
        offset: int,
        limit: int,
    ) -> Page:
        """Fetch one page of rows and the total number of matching rows."""

    @abstractmethod
    async def fetch_one(self, collection: str, entity_id: str) -> Entity | None:
        """Fetch a single row by id. Returns None if there is no such row."""

    @abstractmethod
    async def insert(self, collection: str, fields: dict[str, Any]) -> Entity:
        """Insert a row and return it as stored."""

    @abstractmethod
    async def update(self, collection: str, entity_id: str, fields: dict[str, Any]) -> None:
        """Update columns of the row with the given id."""

    @abstractmethod
    async def delete(self, collection: str, entity_id: str) -> None:
        """Delete the row with the given id."""

    @abstractmethod
    async def count(self, collection: str, filter: Filter) -> int:
        """Count the rows matching a filter."""

    @abstractmethod
    async def fetch_rows(self, table: str, filter: Filter) -> list[dict[str, Any]]:
        """Fetch untyped rows from a link table such as event_registrations."""

    @abstractmethod
    async def insert_row(self, table: str, row: dict[str, Any]) -> None:
        """Insert an untyped row into a link table."""

    @abstractmethod
    async def delete_rows(self, table: str, filter: Filter) -> None:
        """Delete the link-table rows matching a non-empty filter."""

    @abstractmethod
    async def upload_object(
        self,
        bucket: str,
        path: str,
        data: bytes,
        content_type: str = 'application/octet-stream',
    ) -> str:
        """Upload bytes to object storage and return their public URL.

        Raises UploadError on failure. The caller picks a unique path.
        """

    async def close(self) -> None:
        """Release any connections held by the store."""


def parse_content_range_total(header: str | None) -> int | None:
    """Read the total from a ``Content-Range`` header like ``0-8/42``."""
    if not header or '/' not in header:
        return None
    total = header.rsplit('/', 1)[1].strip()
    if total == '*':
        return None
    try:
        return int(total)
    except ValueError:
        return None


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    if isinstance(body, dict):
        return str(body.get('message') or body.get('error') or body)
    return str(body)


class SupabaseRemoteStore(RemoteStore):
    def __init__(self, config: CampusFixConfig, client: httpx.AsyncClient | None = None):
        self.config = config
        self.client = client or httpx.AsyncClient(timeout=config.request_timeout)
        token = config.access_token or config.supabase_anon_key
        self.headers = {
            'apikey': config.supabase_anon_key,
            'Authorization': f'Bearer {token}',
        }

    @classmethod
    async def get_instance(cls, config: CampusFixConfig) -> SupabaseRemoteStore:
        return cls(config)

    async def close(self) -> None:
        await self.client.aclose()

    async def _request(
        self,
        method: str,
        table: str,
        params: list[tuple[str, str]] | None = None,
        json: Any = None,
        headers: dict[str, str] | None = None,
        allowed_statuses: tuple[int, ...] = (),
    ) -> httpx.Response:
        url = f'{self.config.rest_url}/{table}'
        try:
            response = await self.client.request(
                method,
                url,
                params=params,
                json=json,
                headers={**self.headers, **(headers or {})},
            )
        except httpx.HTTPError as e:
            logger.warning(f'{method} {table} failed: {e}')
            raise RemoteError(
                f'{method} {table} failed: {e}', kind=RemoteErrorKind.NETWORK
            ) from e

        if response.status_code >= 400 and response.status_code not in allowed_statuses:
            message = _error_message(response)
            logger.warning(f'{method} {table} returned {response.status_code}: {message}')
            raise RemoteError.from_status(response.status_code, message)
        return response

    def _json_rows(self, table: str, response: httpx.Response) -> list[dict[str, Any]]:
        try:
            body = response.json()
        except ValueError as e:
            raise RemoteError(
                f'Undecodable response from {table}', kind=RemoteErrorKind.DECODE
            ) from e
        if not isinstance(body, list):
            raise RemoteError(
                f'Expected a list of rows from {table}', kind=RemoteErrorKind.DECODE
            )
        return body

    def _decode_one(self, collection: str, row: Any) -> Entity:
        try:
            return decode_row(collection, row)
        except EntityDecodeError as e:
            raise RemoteError(str(e), kind=RemoteErrorKind.DECODE) from e

    async def fetch_page(
        self,
        collection: str,
        filter: Filter,
        sort: Sort,
        offset: int,
        limit: int,
    ) -> Page:
        if limit <= 0:
            raise ValueError('limit must be positive')
        params = [('select', '*'), *filter.to_query_params(), *sort.to_query_params()]
        headers = {
            'Range-Unit': 'items',
            'Range': f'{offset}-{offset + limit - 1}',
            'Prefer': 'count=exact',
        }
        response = await self._request(
            'GET', collection, params=params, headers=headers, allowed_statuses=(416,)
        )
        total = parse_content_range_total(response.headers.get('content-range'))
        if response.status_code == 416:
            # Offset past the last row
            return Page(rows=[], total_count=total or 0)

        rows = []
        for raw in self._json_rows(collection, response):
            try:
                rows.append(decode_row(collection, raw))
            except EntityDecodeError as e:
                logger.warning(f'Skipping malformed {collection} row: {e}')
        return Page(rows=rows, total_count=total if total is not None else offset + len(rows))

    async def fetch_one(self, collection: str, entity_id: str) -> Entity | None:
        params = [('select', '*'), *Eq('id', entity_id).to_params(), ('limit', '1')]
        response = await self._request('GET', collection, params=params)
        rows = self._json_rows(collection, response)
        if not rows:
            return None
        return self._decode_one(collection, rows[0])

    async def insert(self, collection: str, fields: dict[str, Any]) -> Entity:
        response = await self._request(
            'POST',
            collection,
            json=fields,
            headers={'Prefer': 'return=representation'},
        )
        rows = self._json_rows(collection, response)
        if not rows:
            raise RemoteError(
                f'Insert into {collection} returned no row', kind=RemoteErrorKind.DECODE
            )
        entity = self._decode_one(collection, rows[0])
        logger.info(f'Inserted {collection} {entity.id}')
        return entity

    async def update(self, collection: str, entity_id: str, fields: dict[str, Any]) -> None:
        await self._request(
            'PATCH',
            collection,
            params=Eq('id', entity_id).to_params(),
            json=fields,
            headers={'Prefer': 'return=minimal'},
        )
        logger.info(f'Updated {collection} {entity_id}')

    async def delete(self, collection: str, entity_id: str) -> None:
        await self._request('DELETE', collection, params=Eq('id', entity_id).to_params())
        logger.info(f'Deleted {collection} {entity_id}')

    async def count(self, collection: str, filter: Filter) -> int:
        response = await self._request(
            'HEAD',
            collection,
            params=[('select', 'id'), *filter.to_query_params()],
            headers={'Prefer': 'count=exact'},
        )
        total = parse_content_range_total(response.headers.get('content-range'))
        if total is None:
            raise RemoteError(
                f'No count returned for {collection}', kind=RemoteErrorKind.DECODE
            )
        return total

    async def fetch_rows(self, table: str, filter: Filter) -> list[dict[str, Any]]:
        response = await self._request(
            'GET', table, params=[('select', '*'), *filter.to_query_params()]
        )
        return self._json_rows(table, response)

    async def insert_row(self, table: str, row: dict[str, Any]) -> None:
        await self._request('POST', table, json=row, headers={'Prefer': 'return=minimal'})

    async def delete_rows(self, table: str, filter: Filter) -> None:
        if not filter.predicates:
            raise ValueError(f'Refusing to delete every row of {table}')
        await self._request('DELETE', table, params=filter.to_query_params())

    def public_url(self, bucket: str, path: str) -> str:
        return f'{self.config.storage_url}/object/public/{bucket}/{quote(path)}'

    async def upload_object(
        self,
        bucket: str,
        path: str,
        data: bytes,
        content_type: str = 'application/octet-stream',
    ) -> str:
        url = f'{self.config.storage_url}/object/{bucket}/{quote(path)}'
        try:
            response = await self.client.post(
                url,
                content=data,
                headers={**self.headers, 'Content-Type': content_type, 'x-upsert': 'false'},
            )
        except httpx.HTTPError as e:
            logger.warning(f'Upload to {bucket}/{path} failed: {e}')
            raise UploadError(f'Upload failed: {e}', bucket, path) from e

        if response.status_code >= 400:
            message = _error_message(response)
            logger.warning(f'Upload to {bucket}/{path} returned {response.status_code}: {message}')
            raise UploadError(f'Upload failed: {message}', bucket, path)

        logger.info(f'Uploaded {len(data)} bytes to {bucket}/{path}')
        return self.public_url(bucket, path)
