import pytest
from models import Note, Notification


@pytest.fixture
def board(make_user, make_project):
    admin = make_user('admin')
    editor = make_user('editor')
    viewer = make_user('viewer')
    project = make_project(admin, members={editor: 'editor', viewer: 'viewer'})
    return project, admin, editor, viewer


def create_note(client, project, headers, **fields):
    body = {'title': 'Standup', 'content': 'notes', 'type': 'notice'}
    body.update(fields)
    return client.post(f'/api/projects/{project.id}/notes', json=body, headers=headers)


def test_editor_creates_note_and_tags_member(client, board, auth_headers):
    project, admin, editor, viewer = board
    resp = create_note(client, project, auth_headers(editor), tagged_users=[viewer.id])

    assert resp.status_code == 201
    note = resp.get_json()['note']
    assert [u['id'] for u in note['tagged_users']] == [viewer.id]
    assert Notification.query.filter_by(user_id=viewer.id, type='note_tagged').count() == 1
    assert Notification.query.filter_by(user_id=admin.id, type='note_created').count() == 1
    assert Notification.query.filter_by(user_id=editor.id).count() == 0


def test_viewer_can_read_but_not_write(client, board, auth_headers):
    project, admin, _, viewer = board
    create_note(client, project, auth_headers(admin))

    assert client.get(f'/api/projects/{project.id}/notes', headers=auth_headers(viewer)).status_code == 200
    resp = create_note(client, project, auth_headers(viewer))
    assert resp.status_code == 403
    assert resp.get_json()['reason'] == 'insufficient_role'


def test_type_is_validated(client, board, auth_headers):
    project, admin, *_ = board
    resp = create_note(client, project, auth_headers(admin), type='gossip')
    assert resp.status_code == 400
    assert Note.query.count() == 0


def test_referenced_task_must_belong_to_project(client, board, make_project, auth_headers):
    project, admin, *_ = board
    other = make_project(admin, name='Other')
    foreign = client.post(f'/api/projects/{other.id}/tasks', json={'title': 'x'},
                          headers=auth_headers(admin)).get_json()['task']

    resp = create_note(client, project, auth_headers(admin), referenced_tasks=[foreign['id']])
    assert resp.status_code == 400
    assert resp.get_json()['details'][0]['field'] == 'referenced_tasks'


def test_pinned_notes_come_first(client, board, auth_headers):
    project, admin, *_ = board
    headers = auth_headers(admin)
    first = create_note(client, project, headers, title='first').get_json()['note']
    create_note(client, project, headers, title='second')

    resp = client.put(f'/api/notes/{first["id"]}/pin', headers=headers)
    assert resp.get_json()['message'] == 'Note pinned successfully'

    titles = [n['title'] for n in client.get(f'/api/projects/{project.id}/notes', headers=headers).get_json()['notes']]
    assert titles == ['first', 'second']


def test_archive_unpins_and_restore(client, board, auth_headers):
    project, admin, editor, _ = board
    headers = auth_headers(editor)
    note = create_note(client, project, headers).get_json()['note']
    client.put(f'/api/notes/{note["id"]}/pin', headers=headers)

    archived = client.put(f'/api/notes/{note["id"]}/archive', headers=headers).get_json()['note']
    assert archived['is_archived'] is True
    assert archived['is_pinned'] is False

    listing = client.get(f'/api/projects/{project.id}/notes?archived=true', headers=headers).get_json()['notes']
    assert [n['id'] for n in listing] == [note['id']]

    restored = client.put(f'/api/notes/{note["id"]}/restore', headers=headers).get_json()['note']
    assert restored['is_archived'] is False


def test_update_and_delete(client, board, auth_headers):
    project, admin, editor, _ = board
    headers = auth_headers(editor)
    note = create_note(client, project, headers).get_json()['note']

    resp = client.put(f'/api/notes/{note["id"]}', json={'content': 'revised'}, headers=headers)
    assert resp.status_code == 200
    assert resp.get_json()['note']['content'] == 'revised'
    assert resp.get_json()['note']['title'] == 'Standup'

    assert client.delete(f'/api/notes/{note["id"]}', headers=headers).status_code == 200
    assert client.put(f'/api/notes/{note["id"]}/pin', headers=headers).status_code == 404


def test_only_author_or_admin_deletes(client, board, auth_headers):
    project, admin, editor, _ = board
    admins_note = create_note(client, project, auth_headers(admin), title='admin').get_json()['note']
    editors_note = create_note(client, project, auth_headers(editor), title='editor').get_json()['note']

    resp = client.delete(f'/api/notes/{admins_note["id"]}', headers=auth_headers(editor))
    assert resp.status_code == 403
    assert resp.get_json()['message'] == 'Editors can only delete their own notes.'
    assert Note.query.filter_by(id=admins_note['id']).count() == 1

    assert client.delete(f'/api/notes/{editors_note["id"]}', headers=auth_headers(editor)).status_code == 200

    other = create_note(client, project, auth_headers(editor), title='again').get_json()['note']
    assert client.delete(f'/api/notes/{other["id"]}', headers=auth_headers(admin)).status_code == 200


def test_author_cannot_tag_themselves(client, board, auth_headers):
    project, admin, editor, viewer = board
    headers = auth_headers(editor)
    note = create_note(client, project, headers, tagged_users=[editor.id, viewer.id]).get_json()['note']
    assert [u['id'] for u in note['tagged_users']] == [viewer.id]

    resp = client.put(f'/api/notes/{note["id"]}', json={'tagged_users': [editor.id]}, headers=headers)
    assert resp.get_json()['note']['tagged_users'] == []
