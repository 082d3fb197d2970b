"""Audit event model and tamper-evidence hashing.

Features:
- Event types, data classifications and GDPR lawful bases
- Canonical JSON for event details
- SHA-256 event hash over timestamp, type, subtype, user hash,
  session id and details, recomputable from the stored fields
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class AuditError(Exception):
    """Base exception for audit errors."""

    pass


class AuditEventType(str, Enum):
    AUTHENTICATION = "authentication"
    SECURITY_EVENT = "security_event"
    DATA_ACCESS = "data_access"
    CONSENT_MANAGEMENT = "consent_management"
    FINANCIAL_TRANSACTION = "financial_transaction"
    DOCUMENT_PROCESSING = "document_processing"
    DATA_ERASURE = "data_erasure"
    DATA_MANAGEMENT = "data_management"


class DataClassification(str, Enum):
    """Sensitivity of an event's details.

    medical_phi and restricted details are encrypted at rest;
    medical_phi and security_event records are also archived.
    """

    INTERNAL = "internal"
    CONFIDENTIAL = "confidential"
    RESTRICTED = "restricted"
    MEDICAL_PHI = "medical_phi"
    SECURITY_EVENT = "security_event"
    GDPR_COMPLIANCE = "gdpr_compliance"


class LawfulBasis(str, Enum):
    """GDPR Article 6 lawful bases for processing."""

    CONSENT = "consent"
    CONTRACT = "contract"
    LEGAL_OBLIGATION = "legal_obligation"
    VITAL_INTERESTS = "vital_interests"
    PUBLIC_TASK = "public_task"
    LEGITIMATE_INTERESTS = "legitimate_interests"


ENCRYPTED_CLASSIFICATIONS = frozenset({
    DataClassification.MEDICAL_PHI.value,
    DataClassification.RESTRICTED.value,
})

ARCHIVED_CLASSIFICATIONS = frozenset({
    DataClassification.MEDICAL_PHI.value,
    DataClassification.SECURITY_EVENT.value,
})


def enum_value(value: Any) -> Any:
    """Plain value of an enum member; other values pass through."""
    return value.value if isinstance(value, Enum) else value


def ensure_utc(ts: datetime) -> datetime:
    """Aware UTC datetime; naive values are taken to be UTC."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def format_timestamp(ts: datetime) -> str:
    """Fixed-width UTC ISO 8601 so stored timestamps sort as strings."""
    return ensure_utc(ts).isoformat(timespec="microseconds")


def parse_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value)


def canonical_json(data: Any) -> str:
    """Deterministic JSON: sorted keys, no whitespace."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)


def calculate_event_hash(
    event_timestamp: datetime,
    event_type: str,
    event_subtype: str,
    user_id_hash: str | None,
    session_id: str | None,
    event_details: dict[str, Any],
) -> str:
    """Compute the tamper-evidence hash of an event.

    Fields are joined with "|"; missing user hash and session id hash as
    empty strings.
    """
    hash_input = "|".join([
        format_timestamp(event_timestamp),
        event_type,
        event_subtype,
        user_id_hash or "",
        session_id or "",
        canonical_json(event_details),
    ])
    return hashlib.sha256(hash_input.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class AuditEvent:
    """A stored audit event.

    Attributes:
        audit_id: Unique identifier.
        event_timestamp: When the event occurred (UTC). Authoritative for ordering.
        event_type: Event type, e.g. "authentication".
        event_subtype: Event subtype, e.g. "login_success".
        user_id_hash: Keyed hash of the subject's user id.
        session_id: Session identifier.
        admin_user_id_hash: Keyed hash of the acting administrator.
        source_ip_hash: Keyed hash of the truncated source address.
        user_agent_hash: Keyed hash of the simplified user agent.
        request_id: Request correlation id.
        event_details: Details as stored; an encryption envelope for
            encrypted classifications.
        gdpr_lawful_basis: Lawful basis for processing.
        data_classification: Sensitivity classification.
        retention_years: Retention period.
        retention_expires_at: When the record may be purged.
        event_hash: Tamper-evidence hash.
        environment: Deployment environment.
        anonymized: True once the subject's linkage has been erased.
    """

    audit_id: str
    event_timestamp: datetime
    event_type: str
    event_subtype: str
    user_id_hash: str | None = None
    session_id: str | None = None
    admin_user_id_hash: str | None = None
    source_ip_hash: str | None = None
    user_agent_hash: str | None = None
    request_id: str | None = None
    event_details: dict[str, Any] = field(default_factory=dict)
    gdpr_lawful_basis: str = LawfulBasis.LEGITIMATE_INTERESTS.value
    data_classification: str = DataClassification.INTERNAL.value
    retention_years: int = 7
    retention_expires_at: datetime | None = None
    event_hash: str = ""
    environment: str = "dev"
    anonymized: bool = False

    def compute_hash(self) -> str:
        """Recompute the hash from the stored fields."""
        return calculate_event_hash(
            self.event_timestamp,
            self.event_type,
            self.event_subtype,
            self.user_id_hash,
            self.session_id,
            self.event_details,
        )

    def sealed(self) -> AuditEvent:
        """Copy with event_hash set from the current fields."""
        return replace(self, event_hash=self.compute_hash())

    @property
    def is_encrypted(self) -> bool:
        return bool(self.event_details.get("encrypted"))

    def to_dict(self) -> dict[str, Any]:
        """Convert event to dictionary for serialization."""
        return {
            "audit_id": self.audit_id,
            "event_timestamp": format_timestamp(self.event_timestamp),
            "event_type": self.event_type,
            "event_subtype": self.event_subtype,
            "user_id_hash": self.user_id_hash,
            "session_id": self.session_id,
            "admin_user_id_hash": self.admin_user_id_hash,
            "source_ip_hash": self.source_ip_hash,
            "user_agent_hash": self.user_agent_hash,
            "request_id": self.request_id,
            "event_details": self.event_details,
            "gdpr_lawful_basis": self.gdpr_lawful_basis,
            "data_classification": self.data_classification,
            "retention_years": self.retention_years,
            "retention_expires_at": (
                format_timestamp(self.retention_expires_at)
                if self.retention_expires_at
                else None
            ),
            "event_hash": self.event_hash,
            "environment": self.environment,
            "anonymized": self.anonymized,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AuditEvent:
        expires = data.get("retention_expires_at")
        return cls(
            audit_id=data["audit_id"],
            event_timestamp=parse_timestamp(data["event_timestamp"]),
            event_type=data["event_type"],
            event_subtype=data["event_subtype"],
            user_id_hash=data.get("user_id_hash"),
            session_id=data.get("session_id"),
            admin_user_id_hash=data.get("admin_user_id_hash"),
            source_ip_hash=data.get("source_ip_hash"),
            user_agent_hash=data.get("user_agent_hash"),
            request_id=data.get("request_id"),
            event_details=data.get("event_details") or {},
            gdpr_lawful_basis=data.get("gdpr_lawful_basis", LawfulBasis.LEGITIMATE_INTERESTS.value),
            data_classification=data.get("data_classification", DataClassification.INTERNAL.value),
            retention_years=data.get("retention_years", 7),
            retention_expires_at=parse_timestamp(expires) if expires else None,
            event_hash=data.get("event_hash", ""),
            environment=data.get("environment", "dev"),
            anonymized=data.get("anonymized", False),
        )


@dataclass(frozen=True)
class IntegrityReport:
    """Result of recomputing one event's hash."""

    audit_id: str
    valid: bool
    reason: str
    stored_hash: str | None = None
    calculated_hash: str | None = None


@dataclass(frozen=True)
class AuditWriteResult:
    """Outcome of an audit write. Writes never raise; check success."""

    success: bool
    audit_id: str | None = None
    event_hash: str | None = None
    archived: bool = False
    error: str | None = None


@dataclass(frozen=True)
class ErasureResult:
    """Outcome of an erasure.

    success is False when the rows were anonymized but the data_erasure
    summary event could not be stored.
    """

    success: bool
    records_anonymized: int
    summary_audit_id: str | None = None
    error: str | None = None
