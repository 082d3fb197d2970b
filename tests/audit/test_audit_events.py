"""
Tests for the audit event model and tamper-evidence hashing.
"""
import hashlib
from dataclasses import replace
from datetime import datetime, timedelta, timezone

from carebridge.audit.events import (
    AuditEvent,
    calculate_event_hash,
    canonical_json,
    format_timestamp,
)

FIXED_TS = datetime(2025, 3, 14, 9, 30, 0, tzinfo=timezone.utc)


def _event(**overrides) -> AuditEvent:
    fields = dict(
        audit_id="a-1",
        event_timestamp=FIXED_TS,
        event_type="authentication",
        event_subtype="login_success",
        user_id_hash="u" * 64,
        session_id="s-1",
        event_details={"b": 2, "a": 1},
    )
    fields.update(overrides)
    return AuditEvent(**fields).sealed()


class TestEventHash:

    def test_hash_is_deterministic(self):
        assert _event().event_hash == _event().event_hash

    def test_hash_matches_documented_layout(self):
        expected_input = "|".join([
            "2025-03-14T09:30:00.000000+00:00",
            "authentication",
            "login_success",
            "u" * 64,
            "s-1",
            '{"a":1,"b":2}',
        ])
        expected = hashlib.sha256(expected_input.encode("utf-8")).hexdigest()
        assert _event().event_hash == expected

    def test_timestamp_changes_hash(self):
        later = _event(event_timestamp=FIXED_TS + timedelta(microseconds=1))
        assert later.event_hash != _event().event_hash

    def test_detail_key_order_does_not_matter(self):
        assert _event(event_details={"a": 1, "b": 2}).event_hash == _event().event_hash

    def test_missing_user_and_session_hash_as_empty(self):
        digest = calculate_event_hash(FIXED_TS, "t", "s", None, None, {})
        expected = hashlib.sha256(
            f"{format_timestamp(FIXED_TS)}|t|s|||{{}}".encode("utf-8")
        ).hexdigest()
        assert digest == expected

    def test_tampered_field_detected(self):
        event = _event()
        tampered = replace(event, event_subtype="login_failure")
        assert tampered.compute_hash() != tampered.event_hash

    def test_naive_timestamp_treated_as_utc(self):
        naive = _event(event_timestamp=FIXED_TS.replace(tzinfo=None))
        assert naive.event_hash == _event().event_hash


class TestSerialization:

    def test_dict_round_trip_keeps_hash_valid(self):
        event = _event(retention_expires_at=FIXED_TS + timedelta(days=365 * 7))
        restored = AuditEvent.from_dict(event.to_dict())

        assert restored == event
        assert restored.compute_hash() == restored.event_hash

    def test_canonical_json_is_compact_and_sorted(self):
        assert canonical_json({"z": [1, 2], "a": {"y": 1, "x": 2}}) == '{"a":{"x":2,"y":1},"z":[1,2]}'
