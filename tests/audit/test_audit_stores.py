"""
Tests for the primary audit stores.

The SQL store runs against in-memory SQLite; both stores must behave the same.
"""
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from carebridge.audit.events import AuditEvent
from carebridge.audit.stores import AuditEventExistsError, MemoryAuditStore, SqlAuditStore
from carebridge.database import create_db_engine, init_db, make_session_factory

T0 = datetime(2025, 3, 14, 9, 30, tzinfo=timezone.utc)


def _event(audit_id, minutes=0, user="u1", **overrides) -> AuditEvent:
    fields = dict(
        audit_id=audit_id,
        event_timestamp=T0 + timedelta(minutes=minutes),
        event_type="authentication",
        event_subtype="login_success",
        user_id_hash=user,
        session_id="s-1",
        event_details={"n": minutes},
        retention_expires_at=T0 + timedelta(days=365),
    )
    fields.update(overrides)
    return AuditEvent(**fields).sealed()


@pytest.fixture(params=["memory", "sql"])
def store(request):
    if request.param == "memory":
        return MemoryAuditStore()
    engine = create_db_engine("sqlite://")
    init_db(engine)
    return SqlAuditStore(make_session_factory(engine))


class TestAuditStores:

    def test_put_and_get(self, store):
        event = _event("a-1")
        store.put(event)

        loaded = store.get("a-1")
        assert loaded == event
        assert loaded.compute_hash() == loaded.event_hash

    def test_existing_id_is_never_overwritten(self, store):
        store.put(_event("a-1"))

        with pytest.raises(AuditEventExistsError):
            store.put(_event("a-1", event_subtype="login_failure"))
        assert store.get("a-1").event_subtype == "login_success"

    def test_get_missing(self, store):
        assert store.get("nope") is None

    def test_query_newest_first_with_limit(self, store):
        for i in range(5):
            store.put(_event(f"a-{i}", minutes=i))

        results = store.query(limit=3)
        assert [e.audit_id for e in results] == ["a-4", "a-3", "a-2"]

    def test_query_filters(self, store):
        store.put(_event("a-1", minutes=0, user="u1"))
        store.put(_event("a-2", minutes=10, user="u2"))
        store.put(_event("a-3", minutes=20, user="u1", event_type="data_access", event_subtype="read"))

        assert [e.audit_id for e in store.query(user_id_hash="u1")] == ["a-3", "a-1"]
        assert [e.audit_id for e in store.query(event_type="data_access")] == ["a-3"]
        assert [e.audit_id for e in store.query(event_subtype="login_success")] == ["a-2", "a-1"]
        window = store.query(start_time=T0 + timedelta(minutes=5), end_time=T0 + timedelta(minutes=10))
        assert [e.audit_id for e in window] == ["a-2"]

    def test_in_range_oldest_first(self, store):
        for i in (3, 1, 2):
            store.put(_event(f"a-{i}", minutes=i))

        results = store.in_range(T0, T0 + timedelta(minutes=2))
        assert [e.audit_id for e in results] == ["a-1", "a-2"]

    def test_linked_to_matches_subject_and_admin(self, store):
        store.put(_event("a-1", user="u1"))
        store.put(_event("a-2", user="u2", admin_user_id_hash="u1"))
        store.put(_event("a-3", user="u3"))

        assert sorted(e.audit_id for e in store.linked_to("u1")) == ["a-1", "a-2"]

    def test_replace_many_only_overwrites_existing(self, store):
        event = _event("a-1")
        store.put(event)
        changed = replace(event, user_id_hash=None, anonymized=True).sealed()

        count = store.replace_many([changed, _event("a-unknown")])

        assert count == 1
        assert store.get("a-1").anonymized is True
        assert store.get("a-unknown") is None

    def test_delete_expired(self, store):
        store.put(_event("old", retention_expires_at=T0 - timedelta(days=1)))
        store.put(_event("current"))
        store.put(_event("forever", retention_expires_at=None))

        assert store.delete_expired(T0) == 1
        assert store.get("old") is None
        assert store.get("current") is not None
        assert store.get("forever") is not None
