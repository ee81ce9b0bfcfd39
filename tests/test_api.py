import json
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from campusfix.server.app import create_app
from campusfix.server.shared import AppServices
from tests.fakes import network_error

ACTIVE = {'op': 'in', 'field': 'status', 'values': ['Pending', 'In Progress']}


@pytest.fixture
def services(config, remote_store, fallback_store, change_feed) -> AppServices:
    return AppServices(
        config=config,
        remote_store=remote_store,
        fallback_store=fallback_store,
        change_feed=change_feed,
    )


@pytest.fixture
def client(services):
    with TestClient(create_app(services)) as client:
        yield client


def mount(client, **body):
    payload = {'collection': 'issues', 'owner_id': 'u1', 'filters': [ACTIVE], **body}
    response = client.post('/api/views', json=payload)
    assert response.status_code == 201, response.text
    return response.json()


def item_ids(view):
    return [item['id'] for item in view['items']]


def test_mount_view(client, remote_store, issue_row):
    remote_store.seed(
        'issues',
        issue_row('i1', minute=1),
        issue_row('i2', minute=2, status='Resolved'),
        issue_row('i3', minute=3, owner='u2'),
    )

    view = mount(client)

    assert view['state'] == 'live'
    assert view['live'] is True
    assert item_ids(view) == ['i1']
    assert view['items'][0]['student_id'] == 'u1'
    assert {'op': 'eq', 'field': 'student_id', 'value': 'u1', 'fields': None, 'values': None} in view['query']['filters']


def test_status_change_removes_row_from_live_view(client, remote_store, issue_row):
    remote_store.seed('issues', issue_row('i1', minute=1), issue_row('i2', minute=2))
    view = mount(client)

    response = client.patch('/api/issues/i1/status', json={'status': 'Resolved'})

    assert response.status_code == 200
    assert response.json()['notifications'] == ['Status updated.']
    current = client.get(f'/api/views/{view["view_id"]}').json()
    assert item_ids(current) == ['i2']
    assert current['total_count'] == 1


def test_submission_appears_in_live_view(client, remote_store):
    view = mount(client)

    response = client.post(
        '/api/issues',
        data={'owner_id': 'u1', 'values': json.dumps({'title': 'Leaking tap', 'location': 'Block A'})},
        files={'attachment': ('leak.png', b'png-bytes', 'image/png')},
    )

    assert response.status_code == 201
    body = response.json()
    assert body['ok'] is True
    assert body['entity']['image_url'].startswith('https://storage.test/issue-images/u1-')
    current = client.get(f'/api/views/{view["view_id"]}').json()
    assert item_ids(current) == [body['entity']['id']]


def test_submission_saved_locally_when_store_is_down(client, remote_store):
    remote_store.fail_writes = network_error()

    response = client.post('/api/reports', data={'owner_id': 'u1', 'values': '{"title": "Noise"}'})

    assert response.status_code == 201
    body = response.json()
    assert body['saved_locally'] is True
    assert body['entity']['id'].startswith('local-reports-')


def test_submission_validation(client):
    assert client.post('/api/widgets', data={'owner_id': 'u1'}).status_code == 404
    assert client.post('/api/issues', data={'owner_id': 'u1', 'values': '[1]'}).status_code == 400
    assert client.post('/api/issues', data={'owner_id': 'u1', 'values': 'nope'}).status_code == 400
    response = client.post(
        '/api/issues', data={'owner_id': 'u1', 'values': '{"status": "Exploded"}'}
    )
    assert response.status_code == 400


def test_fallback_view_shows_local_submission(client, remote_store):
    remote_store.fail_writes = network_error()
    client.post('/api/reports', data={'owner_id': 'u1', 'values': '{"title": "Noise"}'})
    remote_store.fail_writes = None

    view = mount(client, collection='reports', filters=[], use_fallback=True)

    assert len(view['items']) == 1
    assert view['items'][0]['title'] == 'Noise'


def test_write_failure_is_a_notification(client, remote_store, issue_row):
    remote_store.seed('issues', issue_row('i1'))
    remote_store.fail_writes = network_error()

    response = client.patch('/api/issues/i1/status', json={'status': 'Resolved'})

    assert response.status_code == 502
    assert response.json()['ok'] is False
    assert response.json()['notifications']


def test_invalid_status_is_rejected(client, issue_row, remote_store):
    remote_store.seed('issues', issue_row('i1'))

    assert client.patch('/api/issues/i1/status', json={'status': 'Exploded'}).status_code == 400


def test_delete_issue(client, remote_store, issue_row):
    remote_store.seed('issues', issue_row('i1'))
    remote_store.seed('comments', {'id': 'c1', 'issue_id': 'i1'})

    response = client.delete('/api/issues/i1')

    assert response.status_code == 200
    assert remote_store.tables['issues'] == []
    assert remote_store.tables['comments'] == []
    assert client.delete('/api/issues/local-issues-x').status_code == 400


def test_view_not_found(client):
    assert client.get('/api/views/nope').status_code == 404
    assert client.post('/api/views/nope/refresh').status_code == 404
    assert client.post('/api/views/nope/retry').status_code == 404
    assert client.delete('/api/views/nope').status_code == 404


def test_invalid_view_request(client):
    assert client.post('/api/views', json={'collection': 'widgets'}).status_code == 400
    response = client.post('/api/views', json={'collection': 'issues', 'filters': [{'op': 'eq'}]})
    assert response.status_code == 400
    response = client.post('/api/views', json={'collection': 'issues', 'limit': 0})
    assert response.status_code == 422


def test_page_size_is_capped(client, config):
    view = mount(client, limit=10_000)

    assert view['query']['limit'] == config.max_page_size


def test_change_query_and_paging(client, remote_store, issue_row):
    remote_store.seed('issues', *(issue_row(f'i{n}', minute=n) for n in range(5)))
    view = mount(client, limit=2)
    assert item_ids(view) == ['i4', 'i3']
    assert view['total_count'] == 5

    response = client.patch(f'/api/views/{view["view_id"]}/query', json={'offset': 2})
    assert item_ids(response.json()) == ['i2', 'i1']

    response = client.patch(
        f'/api/views/{view["view_id"]}/query',
        json={'offset': 0, 'descending': False, 'filters': []},
    )
    assert item_ids(response.json()) == ['i0', 'i1']
    # The owner scope survives a filter change
    assert response.json()['query']['filters'][0]['field'] == 'student_id'


def test_error_then_retry(client, remote_store, issue_row):
    remote_store.seed('issues', issue_row('i1'))
    remote_store.fail_reads = network_error()

    view = mount(client)
    assert view['state'] == 'error'
    assert view['error']
    view_id = view['view_id']
    assert client.post(f'/api/views/{view_id}/refresh').status_code == 409
    assert client.patch(f'/api/views/{view_id}/query', json={'offset': 0}).status_code == 409

    remote_store.fail_reads = None
    retried = client.post(f'/api/views/{view_id}/retry').json()

    assert retried['state'] == 'live'
    assert item_ids(retried) == ['i1']


def test_unmount(client):
    view = mount(client)

    assert client.delete(f'/api/views/{view["view_id"]}').status_code == 200
    assert client.get(f'/api/views/{view["view_id"]}').status_code == 404


def test_get_entity(client, remote_store, issue_row):
    remote_store.seed('issues', issue_row('i1', title='Broken window'))

    response = client.get('/api/entities/issues/i1')

    assert response.status_code == 200
    assert response.json()['entity']['title'] == 'Broken window'
    assert client.get('/api/entities/issues/missing').status_code == 404
    assert client.get('/api/entities/widgets/i1').status_code == 404


def test_get_entity_store_down(client, remote_store):
    remote_store.fail_reads = network_error()

    assert client.get('/api/entities/issues/i1').status_code == 502


def test_event_registrations(client, remote_store):
    now = datetime.now(timezone.utc)
    remote_store.seed(
        'events',
        {
            'id': 'e1',
            'created_by': 'admin',
            'created_at': now.isoformat(),
            'title': 'Career fair',
            'start_date': (now + timedelta(days=3)).isoformat(),
            'capacity': 1,
        },
    )

    assert client.post('/api/events/e1/registrations', json={'user_id': 'u1'}).status_code == 200
    assert client.post('/api/events/e1/registrations', json={'user_id': 'u2'}).status_code == 409
    assert client.post('/api/events/e9/registrations', json={'user_id': 'u1'}).status_code == 404
    assert client.get('/api/users/u1/registrations').json()['event_ids'] == ['e1']

    response = client.delete('/api/events/e1/registrations', params={'user_id': 'u1'})
    assert response.status_code == 200
    assert client.get('/api/users/u1/registrations').json()['event_ids'] == []


def test_issue_stats(client, remote_store, issue_row):
    remote_store.seed('issues', issue_row('a'), issue_row('b', status='Resolved'))

    response = client.get('/api/stats/issues')

    assert response.json() == {'total': 2, 'open': 1, 'resolved': 1, 'resolution_rate': 50}


def test_websocket_streams_snapshots(client, remote_store, issue_row):
    remote_store.seed('issues', issue_row('i1', minute=1), issue_row('i2', minute=2))
    view = mount(client)

    with client.websocket_connect(f'/sockets/views/{view["view_id"]}') as websocket:
        first = websocket.receive_json()
        assert item_ids(first) == ['i2', 'i1']

        client.patch('/api/issues/i2/status', json={'status': 'Resolved'})
        update = websocket.receive_json()

    assert update['view_id'] == view['view_id']
    assert item_ids(update) == ['i1']


def test_websocket_unknown_view(client):
    with client.websocket_connect('/sockets/views/nope') as websocket:
        assert 'not found' in websocket.receive_json()['error']


def test_issue_comments(client, remote_store, issue_row):
    remote_store.seed('issues', issue_row('i1'))

    response = client.post('/api/issues/i1/comments', json={'user_id': 'u1', 'text': 'Any news?'})

    assert response.status_code == 201
    assert [c['text'] for c in response.json()] == ['Any news?']
    listed = client.get('/api/issues/i1/comments').json()
    assert listed[0]['user_id'] == 'u1'
    assert listed[0]['issue_id'] == 'i1'
    assert client.post('/api/issues/nope/comments', json={'user_id': 'u1', 'text': 'Hi'}).status_code == 404
    assert client.post('/api/issues/i1/comments', json={'user_id': 'u1', 'text': ' '}).status_code == 400


def test_issue_comments_store_down(client, remote_store):
    remote_store.fail_reads = network_error()

    assert client.get('/api/issues/i1/comments').status_code == 502


def test_deleted_issue_leaves_fallback_view(client, remote_store):
    created = client.post('/api/issues', data={'owner_id': 'u1', 'values': '{"title": "Leak"}'}).json()

    assert client.delete(f'/api/issues/{created["entity"]["id"]}').status_code == 200
    view = mount(client, filters=[], use_fallback=True)

    assert view['items'] == []
