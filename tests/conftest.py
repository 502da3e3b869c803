"""Shared fixtures."""
from datetime import datetime, timedelta

import pytest
from flask_jwt_extended import create_access_token

from qr_attendance import create_app, db
from qr_attendance.services.session_manager import SessionManager
from qr_attendance.services.session_store import StoreUnavailable
from qr_attendance.utils.identity import Identity

SESSION_CONTEXT = {
    'school': 'School of Technology',
    'batch': '2024-A',
    'subject': 'Data Structures',
    'periods': 2,
}

class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime = datetime(2024, 1, 15, 9, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now

@pytest.fixture
def clock():
    return FakeClock()

@pytest.fixture
def app(tmp_path, clock):
    """Create test app on a temporary SQLite file."""
    app = create_app('testing', {
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'attendance.db'}",
        'UPLOAD_FOLDER': str(tmp_path / 'uploads'),
    })
    with app.app_context():
        db.create_all()

    app.extensions['qr_sessions'].shutdown()
    app.extensions['qr_sessions'] = SessionManager.from_app(app, clock=clock)

    yield app

    app.extensions['qr_sessions'].shutdown()
    with app.app_context():
        db.drop_all()
        db.engine.dispose()

@pytest.fixture
def client(app):
    """Create test client."""
    return app.test_client()

@pytest.fixture
def manager(app) -> SessionManager:
    return app.extensions['qr_sessions']

@pytest.fixture
def store(manager):
    return manager.store

@pytest.fixture
def tokens(manager):
    return manager.tokens

@pytest.fixture
def faculty():
    return Identity(subject='101', role='faculty', email='rao@example.edu', name='Prof. Rao')

@pytest.fixture
def other_faculty():
    return Identity(subject='102', role='faculty', email='iyer@example.edu', name='Prof. Iyer')

@pytest.fixture
def student():
    return Identity(subject='201', role='student', email='asha@pwioi.com', name='Asha')

@pytest.fixture
def other_student():
    return Identity(subject='202', role='student', email='ravi@pwioi.com', name='Ravi')

@pytest.fixture
def session_id(manager, faculty):
    """A freshly started session at the clock's current time."""
    return manager.start_session(faculty, dict(SESSION_CONTEXT))

@pytest.fixture
def auth_headers(app):
    """Build Authorization headers for an identity."""
    def _headers(identity: Identity) -> dict:
        with app.app_context():
            token = create_access_token(identity=identity.subject, additional_claims=identity.claims())
        return {'Authorization': f'Bearer {token}'}
    return _headers

class FlakyStore:
    """
    Wraps a SessionStore and fails chosen operations on demand.

    ``fail_on`` names operations that raise before they run. ``late_commit_on``
    maps operation names to a number of calls that run to completion and then
    raise anyway, like a store call that commits after its timeout.
    """

    def __init__(self, store, fail_on=()):
        self._store = store
        self.fail_on = set(fail_on)
        self.late_commit_on = {}
        self.calls = []

    def __getattr__(self, name):
        target = getattr(self._store, name)
        if not callable(target):
            return target

        def wrapper(*args, **kwargs):
            self.calls.append(name)
            if name in self.fail_on:
                raise StoreUnavailable(f"{name} unavailable")
            result = target(*args, **kwargs)
            if self.late_commit_on.get(name, 0) > 0:
                self.late_commit_on[name] -= 1
                raise StoreUnavailable(f"{name} timed out")
            return result
        return wrapper

@pytest.fixture
def flaky_store(store):
    return FlakyStore(store)
