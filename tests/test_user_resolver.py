from otp_utils import resolve_user, UserResolver
from user_store import MemoryUserStore


def test_primary_key_wins_over_field_and_email_matches():
    store = MemoryUserStore(
        {
            "u1": {"email": "first@x.com"},
            "legacy": {"accountId": "u1", "email": "second@x.com"},
            "other": {"email": "a@x.com"},
        }
    )

    user = resolve_user(store, account_id="u1", email="a@x.com")

    assert user.id == "u1"


def test_falls_back_to_account_id_field():
    store = MemoryUserStore(
        {
            "random-doc": {"accountId": "u1", "email": "legacy@x.com"},
            "other": {"email": "a@x.com"},
        }
    )

    user = resolve_user(store, account_id="u1", email="a@x.com")

    assert user.id == "random-doc"


def test_falls_back_to_email():
    store = MemoryUserStore({"doc9": {"email": "a@x.com"}})

    user = resolve_user(store, account_id="missing", email="a@x.com")

    assert user.id == "doc9"
    assert user.get("email") == "a@x.com"


def test_returns_none_when_nothing_matches():
    store = MemoryUserStore({"u1": {"email": "a@x.com"}})

    assert resolve_user(store, account_id="nope", email="b@x.com") is None
    assert resolve_user(store) is None


def test_email_only_lookup_skips_id_steps(store):
    user = UserResolver(store).resolve(email="a@x.com")

    assert user.id == "u1"
    assert store.calls == [("query_equals", "email", "a@x.com")]


def test_lookup_stops_at_first_hit(store):
    UserResolver(store).resolve(account_id="u1", email="a@x.com")

    assert store.calls == [("get_by_id", "u1")]
