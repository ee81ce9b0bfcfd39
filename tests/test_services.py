from datetime import datetime, timedelta, timezone

import pytest

from campusfix.core.errors import EntityDecodeError, RegistrationClosedError, RemoteError
from campusfix.services import (
    Attachment,
    CommentService,
    EventRegistrationService,
    SubmissionService,
    get_issue_stats,
)
from campusfix.services.comment_service import COMMENTS_TABLE
from campusfix.services.event_registration_service import REGISTRATIONS_TABLE
from tests.fakes import at, network_error


@pytest.fixture
def submissions(remote_store, fallback_store, config) -> SubmissionService:
    return SubmissionService(remote_store, fallback_store, config)


@pytest.fixture
def registrations(remote_store) -> EventRegistrationService:
    return EventRegistrationService(remote_store)


@pytest.fixture
def comments(remote_store) -> CommentService:
    return CommentService(remote_store)


def event_row(event_id, days_until_start=7, deadline_days=None, capacity=None, status='Scheduled'):
    now = datetime.now(timezone.utc)
    row = {
        'id': event_id,
        'created_by': 'admin',
        'created_at': (now - timedelta(days=1)).isoformat(),
        'title': f'Event {event_id}',
        'status': status,
        'start_date': (now + timedelta(days=days_until_start)).isoformat(),
        'capacity': capacity,
    }
    if deadline_days is not None:
        row['registration_deadline'] = (now + timedelta(days=deadline_days)).isoformat()
    return row


async def test_submit_inserts_and_mirrors(submissions, remote_store, fallback_store):
    result = await submissions.submit('reports', 'u1', {'title': 'Broken bench', 'id': 'ignored'})

    assert result.entity.id.startswith('srv-')
    assert result.entity.status == 'Pending'
    assert not result.saved_locally
    assert result.notifications[0] == 'Report submitted successfully.'
    stored = remote_store.tables['reports'][0]
    assert stored['student_id'] == 'u1'
    assert stored['id'] != 'ignored'
    (mirrored,) = await fallback_store.list_for('reports', 'u1')
    assert mirrored.id == result.entity.id
    assert not mirrored.saved_locally


async def test_submit_uploads_attachment(submissions, remote_store):
    attachment = Attachment('Photo.JPG', b'jpeg-bytes', 'image/jpeg')

    result = await submissions.submit('issues', 'u1', {'title': 'Leak'}, attachment)

    (bucket, path, data) = remote_store.uploads[0]
    assert bucket == 'issue-images'
    assert path.startswith('u1-') and path.endswith('.jpg')
    assert data == b'jpeg-bytes'
    assert result.entity.image_url == f'https://storage.test/issue-images/{path}'
    assert not result.upload_failed


async def test_upload_failure_still_submits(submissions, remote_store):
    remote_store.fail_uploads = True

    result = await submissions.submit(
        'issues', 'u1', {'title': 'Leak'}, Attachment('a.png', b'png')
    )

    assert result.upload_failed
    assert result.entity.image_url is None
    assert result.entity.upload_pending
    assert not result.saved_locally
    assert len(result.notifications) == 2


async def test_insert_failure_saves_locally(submissions, remote_store, fallback_store):
    remote_store.fail_writes = network_error()

    result = await submissions.submit('reports', 'u1', {'title': 'Offline report'})

    assert result.saved_locally
    assert result.entity.is_local
    assert result.entity.id.startswith('local-reports-')
    (mirrored,) = await fallback_store.list_for('reports', 'u1')
    assert mirrored.saved_locally
    assert mirrored.entity.title == 'Offline report'


async def test_submit_rejects_unknown_status(submissions):
    with pytest.raises(EntityDecodeError):
        await submissions.submit('issues', 'u1', {'title': 'x', 'status': 'Exploded'})


async def test_retry_upload_clears_pending_flag(submissions, remote_store):
    remote_store.fail_uploads = True
    first = await submissions.submit('issues', 'u1', {'title': 'Leak'}, Attachment('a.png', b'png'))
    remote_store.fail_uploads = False

    result = await submissions.retry_upload('issues', first.entity.id, 'u1', Attachment('a.png', b'png'))

    stored = remote_store.tables['issues'][0]
    assert stored['image_url'].startswith('https://storage.test/issue-images/u1-')
    assert stored['upload_pending'] is False
    assert result.notifications == ['Attachment uploaded.']


async def test_update_status_patches_store_and_mirror(submissions, remote_store, fallback_store):
    created = (await submissions.submit('issues', 'u1', {'title': 'Leak'})).entity

    result = await submissions.update_status('issues', created.id, 'resolved', priority='High')

    stored = remote_store.tables['issues'][0]
    assert stored['status'] == 'Resolved'
    assert stored['priority'] == 'High'
    assert 'updated_at' in stored
    (mirrored,) = await fallback_store.list_for('issues')
    assert mirrored.entity.status == 'Resolved'
    assert result.notifications == ['Status updated.']


async def test_update_status_of_local_record_skips_store(submissions, remote_store, fallback_store):
    remote_store.fail_writes = network_error()
    local = (await submissions.submit('issues', 'u1', {'title': 'Leak'})).entity
    remote_store.fail_writes = None

    result = await submissions.update_status('issues', local.id, 'In Progress')

    assert result.saved_locally
    assert remote_store.tables.get('issues', []) == []
    (mirrored,) = await fallback_store.list_for('issues')
    assert mirrored.entity.status == 'In Progress'


async def test_update_status_unknown_local_record(submissions):
    result = await submissions.update_status('issues', 'local-issues-missing', 'Resolved')

    assert not result.found


async def test_update_status_failure_without_mirror_raises(submissions, remote_store, issue_row):
    remote_store.seed('issues', issue_row('i1'))
    remote_store.fail_writes = network_error()

    with pytest.raises(RemoteError):
        await submissions.update_status('issues', 'i1', 'Resolved')


async def test_delete_issue_removes_comments_first(submissions, remote_store, issue_row):
    remote_store.seed('issues', issue_row('i1'), issue_row('i2'))
    remote_store.seed('comments', {'id': 'c1', 'issue_id': 'i1'}, {'id': 'c2', 'issue_id': 'i2'})

    await submissions.delete('issues', 'i1')

    assert [r['id'] for r in remote_store.tables['comments']] == ['c2']
    assert [r['id'] for r in remote_store.tables['issues']] == ['i2']


async def test_delete_local_record_is_rejected(submissions):
    with pytest.raises(ValueError):
        await submissions.delete('issues', 'local-issues-abc')


async def test_register_for_event(registrations, remote_store):
    remote_store.seed('events', event_row('e1', capacity=2))

    assert await registrations.register('e1', 'u1')
    assert await registrations.register('e1', 'u1')

    assert len(remote_store.tables[REGISTRATIONS_TABLE]) == 1
    assert await registrations.registered_event_ids('u1') == ['e1']
    assert await registrations.registration_count('e1') == 1


async def test_register_for_missing_event(registrations):
    assert not await registrations.register('nope', 'u1')


@pytest.mark.parametrize(
    'row',
    [
        event_row('e1', deadline_days=-1),
        event_row('e1', days_until_start=-2),
        event_row('e1', status='Cancelled'),
    ],
)
async def test_register_when_closed(registrations, remote_store, row):
    remote_store.seed('events', row)

    with pytest.raises(RegistrationClosedError):
        await registrations.register('e1', 'u1')


async def test_register_when_full(registrations, remote_store):
    remote_store.seed('events', event_row('e1', capacity=1))
    await registrations.register('e1', 'u1')

    with pytest.raises(RegistrationClosedError, match='full'):
        await registrations.register('e1', 'u2')


async def test_cancel_registration(registrations, remote_store):
    remote_store.seed('events', event_row('e1'), event_row('e2'))
    await registrations.register('e1', 'u1')
    await registrations.register('e2', 'u1')

    assert await registrations.cancel('e1', 'u1')

    assert await registrations.registered_event_ids('u1') == ['e2']


async def test_cancel_for_past_event_is_rejected(registrations, remote_store):
    remote_store.seed('events', event_row('e1', days_until_start=-3))

    with pytest.raises(RegistrationClosedError):
        await registrations.cancel('e1', 'u1')


async def test_issue_stats(remote_store, issue_row):
    remote_store.seed(
        'issues',
        issue_row('a', status='Pending'),
        issue_row('b', status='In Progress'),
        issue_row('c', status='Resolved'),
        issue_row('d', status='Resolved', owner='u2'),
    )

    stats = await get_issue_stats(remote_store)
    mine = await get_issue_stats(remote_store, owner_id='u1')

    assert (stats.total, stats.open, stats.resolved, stats.resolution_rate) == (4, 2, 2, 50)
    assert (mine.total, mine.open, mine.resolved, mine.resolution_rate) == (3, 2, 1, 33)


async def test_issue_stats_empty(remote_store):
    stats = await get_issue_stats(remote_store)

    assert stats.resolution_rate == 0


async def test_delete_removes_mirrored_copy(submissions, fallback_store):
    created = (await submissions.submit('reports', 'u1', {'title': 'Broken bench'})).entity

    await submissions.delete('reports', created.id)

    assert await fallback_store.list_for('reports') == []


async def test_add_comment_returns_thread_oldest_first(comments, remote_store, issue_row):
    remote_store.seed('issues', issue_row('i1'))
    remote_store.seed(
        COMMENTS_TABLE,
        {'id': 'c1', 'issue_id': 'i1', 'user_id': 'admin', 'text': 'On it', 'created_at': at(5)},
        {'id': 'c0', 'issue_id': 'i1', 'user_id': 'u1', 'text': 'Any news?', 'created_at': at(1)},
        {'id': 'x', 'issue_id': 'i2', 'user_id': 'u1', 'text': 'Elsewhere', 'created_at': at(2)},
    )

    thread = await comments.add('i1', 'u1', '  Thanks!  ')

    assert [c.id for c in thread[:2]] == ['c0', 'c1']
    assert thread[-1].text == 'Thanks!'
    assert thread[-1].user_id == 'u1'
    assert len(thread) == 3


async def test_add_comment_to_missing_issue(comments):
    assert await comments.add('nope', 'u1', 'Hello') is None


async def test_empty_comment_is_rejected(comments, remote_store, issue_row):
    remote_store.seed('issues', issue_row('i1'))

    with pytest.raises(ValueError):
        await comments.add('i1', 'u1', '   ')


async def test_malformed_comment_rows_are_skipped(comments, remote_store):
    remote_store.seed(
        COMMENTS_TABLE,
        {'id': 'c1', 'issue_id': 'i1', 'user_id': 'u1', 'text': 'Ok', 'created_at': at(1)},
        {'id': 'c2', 'issue_id': 'i1', 'text': 'No author', 'created_at': at(2)},
    )

    assert [c.id for c in await comments.list_for_issue('i1')] == ['c1']


async def test_delete_issue_removes_its_comment_thread(submissions, remote_store, issue_row):
    remote_store.seed('issues', issue_row('i1'))
    remote_store.seed(COMMENTS_TABLE, {'id': 'c1', 'issue_id': 'i1', 'user_id': 'u1'})

    await submissions.delete('issues', 'i1')

    assert remote_store.tables[COMMENTS_TABLE] == []
