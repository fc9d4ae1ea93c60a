import pytest

from sqlagent.graph.checkpoints import SessionStore, default_session_store
from sqlagent.graph.errors import SessionBusyError


class Clock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _store(tmp_path, clock=None, ttl=60, owner=None) -> SessionStore:
    return SessionStore(
        f"sqlite:///{tmp_path / 'sessions.db'}",
        lease_ttl_seconds=ttl,
        owner=owner,
        clock=clock or Clock(),
    )


def test_claim_is_exclusive(sessions):
    sessions.claim("s1")
    with pytest.raises(SessionBusyError):
        sessions.claim("s1")
    sessions.claim("s2")
    sessions.release("s1")
    sessions.claim("s1")


def test_lease_is_shared_across_instances(tmp_path):
    a, b = _store(tmp_path, owner="a"), _store(tmp_path, owner="b")
    a.claim("s1")
    with pytest.raises(SessionBusyError):
        b.claim("s1")
    a.release("s1")
    b.claim("s1")


def test_only_the_owner_releases(tmp_path):
    a, b = _store(tmp_path, owner="a"), _store(tmp_path, owner="b")
    a.claim("s1")
    b.release("s1")
    with pytest.raises(SessionBusyError):
        b.claim("s1")


def test_stale_lease_is_taken_over(tmp_path, caplog):
    crashed = _store(tmp_path, clock=Clock(1000.0), owner="crashed")
    crashed.claim("s1")

    within_ttl = _store(tmp_path, clock=Clock(1059.0), owner="other")
    with pytest.raises(SessionBusyError):
        within_ttl.claim("s1")

    later = _store(tmp_path, clock=Clock(1061.0), owner="other")
    later.claim("s1")
    assert "took over stale lease held by crashed" in caplog.text

    # the crashed owner no longer holds it and cannot release it
    crashed.release("s1")
    with pytest.raises(SessionBusyError):
        _store(tmp_path, clock=Clock(1062.0), owner="third").claim("s1")


def test_owner_tokens_differ_per_instance(tmp_path):
    assert SessionStore("sqlite://").owner != SessionStore("sqlite://").owner


def test_binding(sessions):
    assert sessions.database_url("s1") is None
    sessions.claim("s1")
    sessions.bind("s1", "sqlite:///scratch.db")
    assert sessions.database_url("s1") == "sqlite:///scratch.db"
    sessions.bind("s1", "sqlite:///other.db")
    assert sessions.database_url("s1") == "sqlite:///other.db"


def test_binding_survives_a_new_instance(tmp_path):
    _store(tmp_path).bind("s1", "sqlite:///scratch.db")
    assert _store(tmp_path).database_url("s1") == "sqlite:///scratch.db"


def test_default_session_store_uses_given_url(tmp_path):
    store = default_session_store(f"sqlite:///{tmp_path / 'nested' / 'sessions.db'}", lease_ttl_seconds=5)
    assert store.lease_ttl_seconds == 5
    store.claim("s1")
    with pytest.raises(SessionBusyError):
        store.claim("s1")
