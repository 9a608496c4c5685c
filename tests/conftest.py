"""
Pytest configuration for access grant tests
"""

import pytest
import sys
import os
from datetime import datetime, timedelta

# Set configuration BEFORE importing any medaccess modules
# Settings and the module-level engine are built at import time
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["QR_ENCRYPTION_KEY"] = "test-qr-encryption-key"
os.environ["SESSION_SECRET"] = "test-session-secret"
os.environ["ENVIRONMENT"] = "test"
os.environ["STORE_RETRY_BACKOFF_SECONDS"] = "0"

# Add parent directory to path to import medaccess modules
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from sqlalchemy.orm import sessionmaker

from medaccess.database import Base, create_store_engine
from medaccess.services.access_log_service import AccessLogService
from medaccess.services.doctor_session_manager import DoctorSessionManager
from medaccess.services.token_codec import TokenCodec
from medaccess.utils.security import create_access_token

# Configure pytest-asyncio
pytest_plugins = ('pytest_asyncio',)

TEST_CODEC_SECRET = "test-qr-encryption-key"


class FakeClock:
    """Controllable naive-UTC clock"""

    def __init__(self, start=None):
        self.now = start or datetime(2026, 1, 15, 12, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeJob:
    def __init__(self, func, trigger, args=None):
        self.func = func
        self.trigger = trigger
        self.args = args or []


class FakeScheduler:
    """Records jobs instead of running them; tests fire jobs explicitly"""

    def __init__(self):
        self.jobs = {}
        self.running = False
        self.shutdown_called = False

    def add_job(self, func, trigger, args=None, id=None, replace_existing=False, name=None):
        self.jobs[id] = FakeJob(func, trigger, args)
        return self.jobs[id]

    def get_job(self, job_id):
        return self.jobs.get(job_id)

    def remove_job(self, job_id):
        del self.jobs[job_id]

    def start(self):
        self.running = True

    def shutdown(self, wait=True):
        self.running = False
        self.shutdown_called = True

    def fire(self, job_id):
        job = self.jobs[job_id]
        return job.func(*job.args)


@pytest.fixture(scope="session")
def anyio_backend():
    """Use asyncio backend for async tests"""
    return 'asyncio'


@pytest.fixture(scope="function")
def engine():
    """Fresh in-memory database for each test"""
    test_engine = create_store_engine("sqlite://")
    Base.metadata.create_all(bind=test_engine)
    try:
        yield test_engine
    finally:
        Base.metadata.drop_all(bind=test_engine)
        test_engine.dispose()


@pytest.fixture(scope="function")
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="function")
def db_session(session_factory):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def audit(clock):
    return AccessLogService(clock=clock)


@pytest.fixture
def codec():
    return TokenCodec(secret=TEST_CODEC_SECRET)


@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
def session_manager(session_factory, clock):
    return DoctorSessionManager(
        session_factory=session_factory,
        clock=clock,
        max_sessions_per_doctor=3,
        session_minutes=30,
        idle_minutes=10,
        sweep_interval_seconds=60,
    )


@pytest.fixture
def auth_headers():
    """Bearer header as issued by the identity provider"""
    def _headers(user_id, role):
        token = create_access_token({"sub": user_id, "role": role})
        return {"Authorization": f"Bearer {token}"}
    return _headers
