"""Compliance reports, statistics and daily rollups over audit events.

Pure functions over already-fetched events; the ledger does the fetching.
Reports contain only hashes, counts and timestamps.
"""

from __future__ import annotations

from collections import Counter, defaultdict
from datetime import date, datetime
from typing import Any, Iterable

from carebridge.audit.events import AuditEvent, format_timestamp


def build_compliance_report(
    events: Iterable[AuditEvent],
    user_id_hash: str | None,
    start: datetime,
    end: datetime,
    generated_at: datetime,
) -> dict[str, Any]:
    """Bucket one user's events by lawful basis and data classification."""
    events = list(events)
    by_basis: dict[str, Counter] = defaultdict(Counter)
    for event in events:
        by_basis[event.gdpr_lawful_basis][event.data_classification] += 1

    return {
        "user_id_hash": user_id_hash,
        "report_generated_at": format_timestamp(generated_at),
        "period": {
            "start": format_timestamp(start),
            "end": format_timestamp(end),
        },
        "total_events": len(events),
        "events_by_type": dict(Counter(e.event_type for e in events)),
        "events_by_lawful_basis": dict(Counter(e.gdpr_lawful_basis for e in events)),
        "events_by_classification": dict(Counter(e.data_classification for e in events)),
        "lawful_basis_by_classification": {
            basis: dict(counts) for basis, counts in sorted(by_basis.items())
        },
    }


def build_compliance_stats(
    events: Iterable[AuditEvent],
    start: datetime,
    end: datetime,
) -> dict[str, Any]:
    """Per (classification, lawful basis) counts, active days and extent."""
    groups: dict[tuple[str, str], list[AuditEvent]] = defaultdict(list)
    for event in events:
        groups[(event.data_classification, event.gdpr_lawful_basis)].append(event)

    statistics = []
    for (classification, basis), group in sorted(groups.items()):
        timestamps = [e.event_timestamp for e in group]
        statistics.append({
            "data_classification": classification,
            "gdpr_lawful_basis": basis,
            "event_count": len(group),
            "active_days": len({ts.date() for ts in timestamps}),
            "earliest_event": format_timestamp(min(timestamps)),
            "latest_event": format_timestamp(max(timestamps)),
        })

    return {
        "period": {
            "start": format_timestamp(start),
            "end": format_timestamp(end),
        },
        "statistics": statistics,
        "total_events": sum(row["event_count"] for row in statistics),
    }


def build_daily_rollup(events: Iterable[AuditEvent], day: date) -> dict[str, Any]:
    """Event counts for one day by type, subtype and classification."""
    groups: dict[tuple[str, str, str], list[AuditEvent]] = defaultdict(list)
    for event in events:
        groups[(event.event_type, event.event_subtype, event.data_classification)].append(event)

    rows = [
        {
            "event_type": event_type,
            "event_subtype": event_subtype,
            "data_classification": classification,
            "event_count": len(group),
            "unique_users": len({e.user_id_hash for e in group if e.user_id_hash}),
        }
        for (event_type, event_subtype, classification), group in sorted(groups.items())
    ]
    return {
        "summary_date": day.isoformat(),
        "total_events": sum(row["event_count"] for row in rows),
        "summaries": rows,
    }
