"""SQLAlchemy model for the primary audit store.

The table has no foreign keys to user tables; rows carry only keyed
hashes of identifiers and outlive the accounts they describe.
Timestamps are stored as fixed-width UTC ISO strings so the value read
back is exactly the value that was hashed.
"""

from sqlalchemy import JSON, Boolean, Column, Index, Integer, String

from carebridge.database import Base


class AuditEventModel(Base):
    __tablename__ = "audit_events"

    audit_id = Column(String(36), primary_key=True)
    event_timestamp = Column(String(32), nullable=False, index=True)
    event_type = Column(String(64), nullable=False)
    event_subtype = Column(String(128), nullable=False)
    user_id_hash = Column(String(64), nullable=True, index=True)
    session_id = Column(String(128), nullable=True)
    admin_user_id_hash = Column(String(64), nullable=True)
    source_ip_hash = Column(String(64), nullable=True)
    user_agent_hash = Column(String(64), nullable=True)
    request_id = Column(String(128), nullable=True)
    event_details = Column(JSON, nullable=False, default=dict)
    gdpr_lawful_basis = Column(String(32), nullable=False)
    data_classification = Column(String(32), nullable=False, index=True)
    retention_years = Column(Integer, nullable=False, default=7)
    retention_expires_at = Column(String(32), nullable=True, index=True)
    event_hash = Column(String(64), nullable=False)
    environment = Column(String(32), nullable=False)
    anonymized = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        Index("idx_audit_events_type_timestamp", "event_type", "event_timestamp"),
    )
