import json
from urllib.parse import unquote

import pytest

from customforge import store, tokens
from customforge.app import app as flask_app


@pytest.fixture
def app():
    flask_app.config.update(TESTING=True, DEMO_USER_FALLBACK=True, REQUIRE_EMAIL_VERIFICATION=False)
    store.reset_data()
    yield flask_app


@pytest.fixture
def client(app):
    return app.test_client()


def bearer(user, app):
    return {'Authorization': f"Bearer {tokens.issue_access_token(user, app.config['SECRET_KEY'])}"}


@pytest.fixture
def admin_headers(app):
    return bearer(store.users['usr_admin'], app)


@pytest.fixture
def demo_headers(app):
    return bearer(store.users['usr_demo'], app)


def read_cookie(client, name):
    cookie = client.get_cookie(name)
    if cookie is None:
        return None
    return json.loads(unquote(cookie.value))


def login(client, email='demo@customforge.dev', password=store.DEMO_PASSWORD, **extra):
    return client.post('/api/v1/auth/login', json={'email': email, 'password': password, **extra})
