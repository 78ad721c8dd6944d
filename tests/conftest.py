from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from otp_utils import OtpIssuer, OtpVerifier, UserResolver
from user_store import MemoryUserStore


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class FakeMailer:
    def __init__(self):
        self.sent = []
        self.fail_with = None

    def send_otp(self, to_email, otp, ttl_minutes=5):
        if self.fail_with:
            return {"success": False, "error": self.fail_with}
        self.sent.append({"to": to_email, "otp": otp, "ttl_minutes": ttl_minutes})
        return {"success": True}


class FakeIdentityProvider:
    def __init__(self):
        self.calls = []
        self.error = None

    def set_email_verified(self, account_id, verified=True):
        self.calls.append((account_id, verified))
        if self.error is not None:
            raise self.error


class RecordingStore(MemoryUserStore):
    """Memory store that remembers every call made to it"""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.calls = []
        self.fail_writes = None

    def get_by_id(self, doc_id):
        self.calls.append(("get_by_id", doc_id))
        return super().get_by_id(doc_id)

    def query_equals(self, field_name, value, limit=1):
        self.calls.append(("query_equals", field_name, value))
        return super().query_equals(field_name, value, limit)

    def merge_fields(self, doc_id, fields):
        self.calls.append(("merge_fields", doc_id))
        if self.fail_writes:
            raise self.fail_writes
        super().merge_fields(doc_id, fields)

    def update_fields(self, doc_id, fields):
        self.calls.append(("update_fields", doc_id))
        if self.fail_writes:
            raise self.fail_writes
        super().update_fields(doc_id, fields)


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def store(clock):
    return RecordingStore(
        {"u1": {"email": "a@x.com", "displayName": "Ada"}},
        clock=clock,
    )


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def identity():
    return FakeIdentityProvider()


@pytest.fixture
def resolver(store):
    return UserResolver(store)


@pytest.fixture
def issuer(resolver, mailer, clock):
    return OtpIssuer(resolver, mailer, clock=clock)


@pytest.fixture
def verifier(resolver, identity, clock):
    return OtpVerifier(resolver, identity, clock=clock)


@pytest.fixture
def client(issuer, verifier):
    import main

    main.app.dependency_overrides[main.get_issuer] = lambda: issuer
    main.app.dependency_overrides[main.get_verifier] = lambda: verifier
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()
