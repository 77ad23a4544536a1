"""
認證 API 測試
"""
import pytest
from models import db, User

REGISTER = {
    'email': 'ada@example.com',
    'password': 'secret123',
    'username': 'ada',
    'full_name': 'Ada Lovelace'
}


def register(client, **overrides):
    body = dict(REGISTER)
    body.update(overrides)
    return client.post('/api/auth/register', json=body)


class TestRegister:

    def test_register_success(self, client):
        resp = register(client)
        assert resp.status_code == 201

        user = resp.get_json()['user']
        assert user['username'] == 'ada'
        assert 'password_hash' not in user
        assert User.query.filter_by(email='ada@example.com').one().password_hash != 'secret123'

    def test_duplicate_email(self, client):
        register(client)
        resp = register(client, username='other')
        assert resp.status_code == 409
        assert resp.get_json()['message'] == 'Email already exists'

    def test_username_taken(self, client):
        register(client)
        resp = register(client, email='other@example.com')
        assert resp.status_code == 409
        assert resp.get_json()['message'] == 'Username is already taken'

    @pytest.mark.parametrize('field,value', [
        ('email', 'not-an-email'),
        ('password', '123'),
        ('username', 'no spaces'),
        ('full_name', ''),
    ])
    def test_invalid_fields(self, client, field, value):
        resp = register(client, **{field: value})
        assert resp.status_code == 400
        body = resp.get_json()
        assert body['error'] == 'validation_failed'
        assert [d['field'] for d in body['details']] == [field]
        assert User.query.count() == 0

    def test_non_json_body(self, client):
        resp = client.post('/api/auth/register', data='plain text')
        assert resp.status_code == 400
        assert resp.get_json()['message'] == 'Request body must be JSON'


class TestLogin:

    def test_login_returns_tokens(self, client, make_user):
        user = make_user('ada')
        resp = client.post('/api/auth/login', json={'email': user.email, 'password': 'secret123'})
        assert resp.status_code == 200

        body = resp.get_json()
        assert body['access_token'] and body['refresh_token']
        assert body['user']['id'] == user.id
        assert db.session.get(User, user.id).last_login is not None

    @pytest.mark.parametrize('email,password', [
        ('ada@example.com', 'wrong'),
        ('ghost@example.com', 'secret123'),
    ])
    def test_invalid_credentials_look_the_same(self, client, make_user, email, password):
        make_user('ada')
        resp = client.post('/api/auth/login', json={'email': email, 'password': password})
        assert resp.status_code == 401
        assert resp.get_json() == {'error': 'invalid_credentials', 'message': 'Invalid credentials'}

    def test_disabled_account(self, client, make_user):
        user = make_user('ada')
        user.is_active = False
        db.session.commit()

        resp = client.post('/api/auth/login', json={'email': user.email, 'password': 'secret123'})
        assert resp.status_code == 403

    def test_refresh(self, client, make_user):
        user = make_user('ada')
        tokens = client.post('/api/auth/login', json={'email': user.email, 'password': 'secret123'}).get_json()

        resp = client.post('/api/auth/refresh', headers={'Authorization': f'Bearer {tokens["refresh_token"]}'})
        assert resp.status_code == 200
        assert resp.get_json()['access_token']

        # access token 不能拿來換
        resp = client.post('/api/auth/refresh', headers={'Authorization': f'Bearer {tokens["access_token"]}'})
        assert resp.status_code == 401


class TestProfile:

    def test_me(self, client, make_user, auth_headers):
        user = make_user('ada')
        resp = client.get('/api/auth/me', headers=auth_headers(user))
        assert resp.status_code == 200
        assert resp.get_json()['email'] == 'ada@example.com'

    def test_deleted_user_token(self, client, make_user, auth_headers):
        user = make_user('ada')
        headers = auth_headers(user)
        db.session.delete(user)
        db.session.commit()

        resp = client.get('/api/auth/me', headers=headers)
        assert resp.status_code == 401

    def test_update_profile(self, client, make_user, auth_headers):
        user = make_user('ada')
        make_user('taken')

        resp = client.patch('/api/auth/me', json={'username': 'taken'}, headers=auth_headers(user))
        assert resp.status_code == 409

        resp = client.patch('/api/auth/me', json={'full_name': 'Ada King', 'bio': 'math'},
                            headers=auth_headers(user))
        assert resp.status_code == 200
        assert resp.get_json()['user']['full_name'] == 'Ada King'
        assert resp.get_json()['user']['bio'] == 'math'

    def test_change_password(self, client, make_user, auth_headers):
        user = make_user('ada')
        headers = auth_headers(user)

        resp = client.post('/api/auth/change-password',
                           json={'current_password': 'wrong', 'new_password': 'newsecret'}, headers=headers)
        assert resp.status_code == 400
        assert resp.get_json()['details'][0]['field'] == 'current_password'

        resp = client.post('/api/auth/change-password',
                           json={'current_password': 'secret123', 'new_password': 'newsecret'}, headers=headers)
        assert resp.status_code == 200

        resp = client.post('/api/auth/login', json={'email': user.email, 'password': 'newsecret'})
        assert resp.status_code == 200
