"""Shared fixtures: in-memory database, Redis double and model factories."""
import os
from datetime import datetime, timedelta, timezone

from cryptography.fernet import Fernet

# Settings are read at import time by several modules
os.environ["CALENDAR_ENCRYPTION_KEY"] = Fernet.generate_key().decode()
os.environ["OAUTH_STATE_KEY"] = Fernet.generate_key().decode()
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["GOOGLE_CLIENT_ID"] = "google-client-id"
os.environ["GOOGLE_CLIENT_SECRET"] = "google-client-secret"
os.environ["MICROSOFT_CLIENT_ID"] = "microsoft-client-id"
os.environ["MICROSOFT_CLIENT_SECRET"] = "microsoft-client-secret"

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from calsync.config.settings import get_settings
from calsync.models import Base, Booking, Business, CalendarConnection, StaffMember
from calsync.schemas.calendar_events import CalendarProvider, SyncAction
from calsync.services.calendar.base import DiscoveryResult, ImportResult, SyncResult
from calsync.services.calendar.sync_coordinator import provider_for_connection

get_settings.cache_clear()


class FakeLock:
    def __init__(self, redis, name):
        self.redis = redis
        self.name = name

    def acquire(self, blocking=None, blocking_timeout=None):
        if self.name in self.redis.locks:
            return False
        self.redis.locks.add(self.name)
        return True

    def release(self):
        self.redis.locks.discard(self.name)


class FakeRedis:
    """Just enough of redis.Redis for nonces and locks"""

    def __init__(self):
        self.store = {}
        self.locks = set()

    def setex(self, key, ttl, value):
        self.store[key] = value
        return True

    def set(self, key, value, **kwargs):
        self.store[key] = value
        return True

    def get(self, key):
        return self.store.get(key)

    def getdel(self, key):
        return self.store.pop(key, None)

    def delete(self, *keys):
        return sum(1 for key in keys if self.store.pop(key, None) is not None)

    def lock(self, name, timeout=None, blocking_timeout=None):
        return FakeLock(self, name)

    def ping(self):
        return True


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(bind=engine, autoflush=False)()
    yield session
    session.close()


@pytest.fixture
def business(db):
    business = Business(name="Harbor Street Salon", address="12 Harbor Street", time_zone="America/New_York")
    db.add(business)
    db.commit()
    return business


@pytest.fixture
def staff_member(db, business):
    staff_member = StaffMember(business_id=business.id, name="Robin Vale", email="robin@harborsalon.test")
    db.add(staff_member)
    db.commit()
    return staff_member


@pytest.fixture
def make_booking(db, business, staff_member):
    def factory(**overrides):
        values = dict(
            business_id=business.id,
            staff_member_id=staff_member.id,
            start_time=datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc),
            end_time=datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc),
            service_name="Haircut",
            customer_full_name="Sam Carter",
            customer_email="sam@example.com",
            customer_phone="+15550100",
        )
        values.update(overrides)
        booking = Booking(**values)
        db.add(booking)
        db.commit()
        return booking

    return factory


@pytest.fixture
def booking(make_booking):
    return make_booking()


@pytest.fixture
def make_connection(db, business, staff_member):
    def factory(provider=CalendarProvider.GOOGLE, **overrides):
        connection = CalendarConnection(
            business_id=business.id,
            staff_member_id=overrides.pop("staff_member_id", staff_member.id),
            provider=provider.value,
            active=overrides.pop("active", True),
            connected_at=datetime.now(timezone.utc),
        )
        if provider == CalendarProvider.CALDAV:
            connection.caldav_provider = overrides.pop("caldav_provider", "generic")
            connection.caldav_url = overrides.pop("caldav_url", "https://dav.example.com/cal/work/")
            connection.caldav_username = overrides.pop("caldav_username", "robin")
            connection.caldav_password = overrides.pop("caldav_password", "s3cret")
        else:
            connection.access_token = overrides.pop("access_token", "access-token")
            connection.refresh_token = overrides.pop("refresh_token", "refresh-token")
            connection.token_expires_at = overrides.pop(
                "token_expires_at", datetime.now(timezone.utc) + timedelta(hours=1)
            )
        for key, value in overrides.items():
            setattr(connection, key, value)
        db.add(connection)
        db.commit()
        return connection

    return factory


@pytest.fixture
def sleeps():
    """Records backoff delays instead of sleeping"""
    return []


class FakeProvider:
    """Scripted SyncProvider double; queued failures are consumed first"""

    def __init__(self, connection):
        self.connection = connection
        self.calls = []
        self.failures = []
        self.discover_calls = 0
        self.imported = []

    def discover(self):
        self.discover_calls += 1
        return DiscoveryResult(("primary",))

    def generate_event_uid(self, booking):
        return None

    def _outcome(self, action, event_id):
        if self.failures:
            failure = self.failures.pop(0)
            if isinstance(failure, Exception):
                raise failure
            return SyncResult.failed(action, failure)
        return SyncResult.ok(action, event_id, "primary")

    def create_event(self, booking, *, calendars=None, event_uid=None):
        self.calls.append(("create", booking.id))
        return self._outcome(SyncAction.CREATE, f"evt-{booking.id.hex[:8]}")

    def update_event(self, booking, external_event_id, *, calendars=None, calendar_id=None):
        self.calls.append(("update", external_event_id))
        return self._outcome(SyncAction.UPDATE, external_event_id)

    def delete_event(self, external_event_id, *, calendars=None, calendar_id=None):
        self.calls.append(("delete", external_event_id))
        return self._outcome(SyncAction.DELETE, external_event_id)

    def import_events(self, start_date, end_date, *, calendars=None):
        self.calls.append(("import", start_date, end_date))
        if self.failures:
            return ImportResult(error=self.failures.pop(0))
        return ImportResult(events=list(self.imported))


class Providers:
    """provider_factory that fakes OAuth connections and builds real CalDAV clients"""

    def __init__(self):
        self.fakes = {}

    def __call__(self, connection, **kwargs):
        if connection.provider == CalendarProvider.CALDAV.value:
            return provider_for_connection(connection, **kwargs)
        return self.fake(connection)

    def fake(self, connection):
        return self.fakes.setdefault(connection.id, FakeProvider(connection))


@pytest.fixture
def providers():
    return Providers()

