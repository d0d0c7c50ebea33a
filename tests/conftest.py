import pytest

import fleetguard.app as app_module
from tests.fakes import FakeConnection


@pytest.fixture
def db(monkeypatch):
    conn = FakeConnection()
    monkeypatch.setattr(app_module, 'connect_db', lambda: conn)
    return conn


@pytest.fixture
def client(db):
    app_module.app.config['TESTING'] = True
    with app_module.app.test_client() as client:
        yield client


def _headers(user_id, username, role):
    token = app_module.create_token({'id': user_id, 'username': username, 'role': role})
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture
def admin_headers():
    return _headers(1, 'admin', 'admin')


@pytest.fixture
def manager_headers():
    return _headers(2, 'gestion', 'gestionnaire')


@pytest.fixture
def viewer_headers():
    return _headers(3, 'lecteur', 'consultant')
