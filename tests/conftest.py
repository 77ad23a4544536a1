"""
共用 fixtures

每個測試都有自己的 app 和記憶體資料庫,整個測試期間保持同一個 app context,
所以測試程式和 request handler 共用同一個 db.session。
"""
import pytest
from flask_jwt_extended import create_access_token
from app import create_app
from config import TestingConfig
from models import db, User, Project, ProjectMember, Role
from auth import hash_password
from realtime import socketio


@pytest.fixture
def app():
    app = create_app(TestingConfig)
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(app):
    counter = {'n': 0}

    def _make_user(username=None, full_name=None, password='secret123'):
        counter['n'] += 1
        username = username or f'user{counter["n"]}'
        user = User(
            email=f'{username}@example.com',
            username=username,
            full_name=full_name or username.title(),
            password_hash=hash_password(password)
        )
        db.session.add(user)
        db.session.commit()
        return user

    return _make_user


@pytest.fixture
def token_for(app):
    def _token_for(user):
        return create_access_token(identity=str(user.id))
    return _token_for


@pytest.fixture
def auth_headers(token_for):
    def _auth_headers(user):
        return {'Authorization': f'Bearer {token_for(user)}'}
    return _auth_headers


@pytest.fixture
def make_project(app):
    def _make_project(creator, name='Board', members=None, doing_column_limit=5):
        """
        建立專案

        members: {user: role} 直接加為成員,不經過邀請流程
        """
        project = Project.create_with_creator(creator, name=name, doing_column_limit=doing_column_limit)
        for user, role in (members or {}).items():
            project.members.append(ProjectMember(user_id=user.id, role=Role.parse(role)))
        db.session.add(project)
        db.session.commit()
        return project

    return _make_project


@pytest.fixture
def socket_client(app, client, token_for):
    clients = []

    def _socket_client(user=None, auth=None):
        if auth is None and user is not None:
            auth = {'token': token_for(user)}
        sc = socketio.test_client(app, auth=auth, flask_test_client=client)
        clients.append(sc)
        return sc

    yield _socket_client

    for sc in clients:
        if sc.is_connected():
            sc.disconnect()


def event_names(received):
    return [packet['name'] for packet in received]
