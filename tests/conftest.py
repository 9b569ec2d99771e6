import os

from werkzeug.security import generate_password_hash

# app.py reads its configuration at import time
os.environ['DATABASE_URL'] = 'sqlite://'
os.environ['SECRET_KEY'] = 'test-secret'
os.environ['ADMIN_USERNAME'] = 'admin'
os.environ['ADMIN_PASSWORD_HASH'] = generate_password_hash('letmein')

import pytest

from app import app as flask_app
from models import db


def _configure():
    flask_app.config.update(
        TESTING=True,
        STORE_RETRIES=3,
        STORE_RETRY_DELAY=0,
        RENEWAL_REPLAY_WINDOW=60,
    )


@pytest.fixture
def app():
    """App with an application context held open, for calling services directly."""
    _configure()
    with flask_app.app_context():
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def web_app():
    """App without a held context; every test request gets its own."""
    _configure()
    with flask_app.app_context():
        db.create_all()
    yield flask_app
    with flask_app.app_context():
        db.drop_all()


@pytest.fixture
def client(web_app):
    return web_app.test_client()


@pytest.fixture
def admin_client(web_app):
    client = web_app.test_client()
    response = client.post('/login', json={'username': 'admin', 'password': 'letmein'})
    assert response.status_code == 200
    return client


def registration(**overrides):
    data = {
        'fullName': 'Jane Doe',
        'email': 'jane@x.com',
        'phone': '08012345678',
        'address': '12 Allen Avenue, Ikeja',
        'dateOfBirth': '2006-04-12',
        'selectedPrograms': ['jamb'],
        'classTiming': 'morning',
    }
    data.update(overrides)
    return data


@pytest.fixture
def make_registration():
    return registration
