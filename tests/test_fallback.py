import json
import logging

import pytest

from campusfix.storage import get_file_store
from campusfix.storage.data_models.entity import decode_row, make_local_id
from campusfix.storage.data_models.fallback_record import FallbackRecord
from campusfix.storage.data_models.query import Eq, Filter, Sort, ViewQuery
from campusfix.storage.fallback.file_fallback_store import FileFallbackStore
from campusfix.storage.files import InMemoryFileStore, LocalFileStore
from campusfix.sync.fallback_merge import merge_fallback


def record(issue_row, entity_id, saved_locally=False, **kwargs):
    return FallbackRecord(decode_row('issues', issue_row(entity_id, **kwargs)), saved_locally)


def query(offset=0, **filters):
    return ViewQuery(
        collection='issues',
        filter=Filter(tuple(Eq(k, v) for k, v in filters.items())),
        sort=Sort(),
        offset=offset,
        limit=20,
    )


async def test_append_is_newest_first_and_replaces_by_id(fallback_store, issue_row):
    await fallback_store.append('issues', record(issue_row, 'a', minute=1))
    await fallback_store.append('issues', record(issue_row, 'b', minute=2))
    await fallback_store.append('issues', record(issue_row, 'a', minute=1, title='Again'))

    records = await fallback_store.list_for('issues')

    assert [r.id for r in records] == ['a', 'b']
    assert records[0].entity.title == 'Again'


async def test_list_for_filters_by_owner(fallback_store, issue_row):
    await fallback_store.append('issues', record(issue_row, 'mine', owner='u1'))
    await fallback_store.append('issues', record(issue_row, 'theirs', owner='u2'))

    assert [r.id for r in await fallback_store.list_for('issues', 'u1')] == ['mine']
    assert await fallback_store.list_for('reports') == []


async def test_patch_updates_fields_and_timestamp(fallback_store, issue_row):
    await fallback_store.append('issues', record(issue_row, 'a'))

    assert await fallback_store.patch('issues', 'a', {'status': 'Resolved'})
    assert not await fallback_store.patch('issues', 'missing', {'status': 'Resolved'})

    (patched,) = await fallback_store.list_for('issues')
    assert patched.entity.status == 'Resolved'
    assert patched.entity.updated_at is not None


async def test_remove_drops_only_that_record(fallback_store, issue_row):
    await fallback_store.append('issues', record(issue_row, 'a'))
    await fallback_store.append('issues', record(issue_row, 'b'))

    assert await fallback_store.remove('issues', 'a')
    assert not await fallback_store.remove('issues', 'a')

    assert [r.id for r in await fallback_store.list_for('issues')] == ['b']


async def test_records_survive_a_new_store_instance(tmp_path, issue_row):
    first = FileFallbackStore(LocalFileStore(str(tmp_path)))
    await first.append('my reports', record(issue_row, 'a', saved_locally=True))

    second = FileFallbackStore(LocalFileStore(str(tmp_path)))
    (restored,) = await second.list_for('my reports')

    assert restored.id == 'a'
    assert restored.saved_locally
    assert (tmp_path / 'fallback' / 'my_reports.json').exists()


async def test_corrupt_file_reads_as_empty(caplog):
    files = InMemoryFileStore({'fallback/issues.json': '{not json'})
    store = FileFallbackStore(files)

    with caplog.at_level(logging.ERROR, logger='campusfix'):
        assert await store.list_for('issues') == []

    assert 'Error parsing fallback file' in caplog.text


async def test_undecodable_record_is_skipped(issue_row):
    good = {'collection': 'issues', 'row': issue_row('good'), 'saved_locally': False}
    bad = {'collection': 'issues', 'row': {'title': 'no id'}}
    store = FileFallbackStore(InMemoryFileStore({'fallback/issues.json': json.dumps([bad, good])}))

    assert [r.id for r in await store.list_for('issues')] == ['good']


def test_get_file_store():
    assert isinstance(get_file_store('memory'), InMemoryFileStore)
    with pytest.raises(ValueError):
        get_file_store('local')
    with pytest.raises(ValueError):
        get_file_store('s3', '/tmp')


def test_local_file_store_rejects_escaping_paths(tmp_path):
    files = LocalFileStore(str(tmp_path))

    with pytest.raises(ValueError):
        files.write('../outside.json', '{}')


def test_merge_puts_fallback_first(issue_row):
    remote = [decode_row('issues', issue_row('srv', minute=10))]
    local_id = make_local_id('issues')

    merged = merge_fallback([record(issue_row, local_id, True, minute=20)], remote, query())

    assert [e.id for e in merged.items] == [local_id, 'srv']
    assert merged.pinned_ids == {local_id}


def test_merge_drops_records_the_fetch_returned(issue_row):
    remote = [decode_row('issues', issue_row('srv', minute=10, title='Server copy'))]

    merged = merge_fallback([record(issue_row, 'srv', minute=10, title='Local copy')], remote, query())

    assert [e.title for e in merged.items] == ['Server copy']
    assert merged.pinned_ids == set()


def test_merge_drops_local_record_confirmed_under_server_id(issue_row):
    remote = [decode_row('issues', issue_row('srv', minute=10, title='Leak'))]
    local = record(issue_row, make_local_id('issues'), True, minute=10, title='Leak')

    merged = merge_fallback([local], remote, query())

    assert [e.id for e in merged.items] == ['srv']


def test_merge_drops_older_server_records_missing_from_page(issue_row):
    remote = [decode_row('issues', issue_row('srv-2', minute=10))]

    merged = merge_fallback(
        [record(issue_row, 'srv-1', minute=5), record(issue_row, 'srv-3', minute=15)],
        remote,
        query(),
    )

    assert [e.id for e in merged.items] == ['srv-3', 'srv-2']


def test_merge_respects_filter_and_page(issue_row):
    remote = [decode_row('issues', issue_row('srv', minute=10))]
    records = [
        record(issue_row, make_local_id('issues'), True, minute=20, status='Resolved'),
    ]

    assert [e.id for e in merge_fallback(records, remote, query(status='Pending')).items] == ['srv']
    assert [e.id for e in merge_fallback(records, remote, query(offset=20)).items] == ['srv']
