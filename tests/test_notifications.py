"""
通知測試: 擁有權、7 天保留、分頁、best-effort 寫入
"""
import pytest
from datetime import datetime, timedelta
from models import db, Notification
from notifications import (notify_users, purge_expired_notifications, purge_notifications_command,
                           record_notification, run_cleanup_cycle)


def add_notification(user, days_old=0, is_read=False, title='Hello'):
    notification = Notification(
        user_id=user.id,
        type='task_created',
        title=title,
        message='message',
        is_read=is_read,
        created_at=datetime.utcnow() - timedelta(days=days_old)
    )
    db.session.add(notification)
    db.session.commit()
    return notification


class TestOwnership:

    def test_cannot_touch_someone_elses_notification(self, client, make_user, auth_headers):
        owner = make_user('owner')
        other = make_user('other')
        notification = add_notification(owner)

        for method, url in [('put', f'/api/notifications/{notification.id}/read'),
                            ('delete', f'/api/notifications/{notification.id}')]:
            resp = getattr(client, method)(url, headers=auth_headers(other))
            assert resp.status_code == 403
            assert resp.get_json()['reason'] == 'not_owner'

        assert notification.is_read is False
        assert db.session.get(Notification, notification.id) is not None

    def test_missing_notification(self, client, make_user, auth_headers):
        user = make_user()
        resp = client.put('/api/notifications/999/read', headers=auth_headers(user))
        assert resp.status_code == 404

    def test_read_all_and_clear_only_affect_caller(self, client, make_user, auth_headers):
        me = make_user('me')
        other = make_user('other')
        add_notification(me)
        add_notification(me)
        theirs = add_notification(other)

        resp = client.put('/api/notifications/read-all', headers=auth_headers(me))
        assert resp.get_json()['updated'] == 2

        resp = client.delete('/api/notifications', headers=auth_headers(me))
        assert resp.get_json()['deleted'] == 2

        db.session.expire_all()
        assert db.session.get(Notification, theirs.id).is_read is False


class TestListing:

    def test_list_purges_expired_for_caller_only(self, client, make_user, auth_headers):
        me = make_user('me')
        other = make_user('other')
        add_notification(me, days_old=8, title='stale')
        add_notification(me, days_old=1, title='fresh')
        their_stale = add_notification(other, days_old=30)

        resp = client.get('/api/notifications', headers=auth_headers(me))
        titles = [n['title'] for n in resp.get_json()['notifications']]

        assert titles == ['fresh']
        assert Notification.query.filter_by(user_id=me.id).count() == 1
        assert db.session.get(Notification, their_stale.id) is not None

    def test_pagination_and_counts(self, client, make_user, auth_headers):
        me = make_user('me')
        for i in range(3):
            add_notification(me, is_read=(i == 0), title=f'n{i}')

        resp = client.get('/api/notifications?page=1&limit=2', headers=auth_headers(me))
        body = resp.get_json()
        assert len(body['notifications']) == 2
        assert body['pagination']['total'] == 3
        assert body['pagination']['pages'] == 2
        assert body['pagination']['unread_count'] == 2

        unread = client.get('/api/notifications?unread_only=true', headers=auth_headers(me)).get_json()
        assert all(not n['is_read'] for n in unread['notifications'])

        count = client.get('/api/notifications/unread-count', headers=auth_headers(me)).get_json()
        assert count == {'unread_count': 2}

    def test_mark_read(self, client, make_user, auth_headers):
        me = make_user('me')
        notification = add_notification(me)

        resp = client.put(f'/api/notifications/{notification.id}/read', headers=auth_headers(me))
        assert resp.status_code == 200
        assert resp.get_json()['notification']['is_read'] is True
        assert resp.get_json()['notification']['read_at'] is not None


class TestRetention:

    def test_sweep_removes_everyones_expired_notifications(self, app, make_user):
        a = make_user('a')
        b = make_user('b')
        add_notification(a, days_old=7, title='edge')
        add_notification(b, days_old=10)
        keep = add_notification(b, days_old=6)

        result = run_cleanup_cycle(app)

        assert result.ok
        assert result.value == 2
        assert [n.id for n in Notification.query.all()] == [keep.id]

    def test_purge_with_fixed_clock(self, make_user):
        user = make_user()
        add_notification(user, days_old=3)
        assert purge_expired_notifications(now=datetime.utcnow() + timedelta(days=5)) == 1

    def test_cli_command(self, app, make_user):
        user = make_user()
        add_notification(user, days_old=9)

        result = app.test_cli_runner().invoke(purge_notifications_command)
        assert 'Deleted 1 expired notifications' in result.output


class TestBestEffortWrites:

    def test_record_persists_even_when_user_offline(self, make_user):
        user = make_user()
        result = record_notification(user.id, 'role_changed', 'Role Updated', 'msg', {'project_id': 1})
        assert result.ok
        assert Notification.query.filter_by(user_id=user.id).one().data == {'project_id': 1}

    def test_excluded_and_duplicate_recipients(self, make_user):
        a = make_user('a')
        b = make_user('b')
        result = notify_users([a.id, b.id, a.id, None], 'task_created', 't', 'm', exclude_user_ids={b.id})
        assert [n.user_id for n in result.value] == [a.id]

    def test_failure_is_swallowed(self, make_user, monkeypatch):
        import notifications
        user = make_user()

        def broken(*args, **kwargs):
            raise RuntimeError('store unavailable')

        monkeypatch.setattr(notifications, '_write_notifications', broken)
        result = record_notification(user.id, 'role_changed', 'Role Updated', 'msg')

        assert result.ok is False
        assert isinstance(result.error, RuntimeError)
        assert Notification.query.count() == 0
