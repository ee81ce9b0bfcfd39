"""
CampusFix - Test Configuration and Fixtures
"""
from typing import Any

import pytest

from campusfix.core.config import CampusFixConfig
from campusfix.storage.fallback.file_fallback_store import FileFallbackStore
from campusfix.storage.files import InMemoryFileStore
from campusfix.sync.change_feed import ChangeFeed
from tests.fakes import FakeRemoteStore, FakeTransport, at


@pytest.fixture
def config(tmp_path) -> CampusFixConfig:
    return CampusFixConfig(
        supabase_url='http://supabase.test/',
        supabase_anon_key='anon-key',
        file_store='memory',
        file_store_path=str(tmp_path),
    )


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def remote_store(transport) -> FakeRemoteStore:
    return FakeRemoteStore(transport)


@pytest.fixture
def change_feed(transport) -> ChangeFeed:
    return ChangeFeed(transport)


@pytest.fixture
def fallback_store() -> FileFallbackStore:
    return FileFallbackStore(InMemoryFileStore())


@pytest.fixture
def issue_row():
    """Build a raw ``issues`` row; ``minute`` offsets created_at from a fixed base."""

    def _issue_row(
        issue_id: str,
        owner: str = 'u1',
        status: str = 'Pending',
        minute: int = 0,
        title: str | None = None,
        updated_minute: int | None = None,
        **extra: Any,
    ) -> dict[str, Any]:
        row = {
            'id': issue_id,
            'student_id': owner,
            'status': status,
            'created_at': at(minute),
            'title': title or f'Issue {issue_id}',
            'description': 'Something is broken',
            **extra,
        }
        if updated_minute is not None:
            row['updated_at'] = at(updated_minute)
        return row

    return _issue_row
