from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from app.config import Settings
from app.database import Database
from app.main import create_app
from app.schemas.users import RegisterRequest
from app.services.notifications import DeliveryError, Notifier
from app.services.otp import OtpEngine
from app.services.otp_store import MAX_ATTEMPTS, OtpRecordStore, SqlOtpRecordStore
from app.services.users import UserStore


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class InMemoryOtpStore(OtpRecordStore):
    """Dict-backed store mirroring the SQL store's filters."""

    def __init__(self) -> None:
        self.records = {}
        self._next_id = 1

    def delete_unused_for(self, user_id, channel, purpose):
        doomed = [
            entry_id
            for entry_id, record in self.records.items()
            if (record.user_id, record.channel, record.purpose) == (user_id, channel, purpose)
            and not record.used
        ]
        for entry_id in doomed:
            del self.records[entry_id]
        return len(doomed)

    def insert(self, record):
        entry_id = self._next_id
        self._next_id += 1
        self.records[entry_id] = replace(record, id=entry_id)
        return entry_id

    def find_active(self, user_id, channel, purpose, now):
        candidates = [
            record
            for record in self.records.values()
            if (record.user_id, record.channel, record.purpose) == (user_id, channel, purpose)
            and not record.used
            and record.expires_at > now
            and record.attempts < MAX_ATTEMPTS
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda record: (record.created_at, record.id))

    def record_attempt(self, entry_id, expected_attempts, consume):
        record = self.records.get(entry_id)
        if record is None or record.used or record.attempts != expected_attempts:
            return False
        self.records[entry_id] = replace(
            record, attempts=expected_attempts + 1, used=record.used or consume
        )
        return True

    def delete_expired(self, now):
        doomed = [
            entry_id for entry_id, record in self.records.items() if record.expires_at <= now
        ]
        for entry_id in doomed:
            del self.records[entry_id]
        return len(doomed)


class RecordingNotifier(Notifier):
    def __init__(self) -> None:
        self.sent = []
        self.fail = False

    def send(self, address, channel, message):
        if self.fail:
            raise DeliveryError("gateway down")
        self.sent.append((address, channel, message))


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def memory_store():
    return InMemoryOtpStore()


@pytest.fixture
def engine(memory_store, clock):
    return OtpEngine(memory_store, ttl_seconds=300, clock=clock)


@pytest.fixture
def database():
    db = Database("sqlite://")
    db.init_db()
    yield db
    db.dispose()


@pytest.fixture
def user_id(database):
    users = UserStore(database)
    user = users.register(
        RegisterRequest(
            email="a@b.com",
            password="secret123",
            first_name="Ada",
            last_name="Lovelace",
        )
    )
    return user.id


@pytest.fixture
def sql_store(database):
    return SqlOtpRecordStore(database)


@pytest.fixture
def sql_engine(sql_store, clock):
    return OtpEngine(sql_store, ttl_seconds=300, clock=clock)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        jwt_secret="test-secret-key-with-enough-entropy-0123456789",
        otp_debug=True,
        otp_reaper_interval_seconds=0,
        notifier_backend="log",
        log_level="WARNING",
    )


@pytest.fixture
def client(settings, notifier, clock):
    app = create_app(settings, notifier=notifier, clock=clock)
    with TestClient(app) as test_client:
        yield test_client
