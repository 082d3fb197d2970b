"""Privacy-preserving, tamper-evident audit ledger."""
from carebridge.audit.archive import (
    AuditArchive,
    AuditArchiveConflictError,
    FileSystemAuditArchive,
    MemoryAuditArchive,
    S3AuditArchive,
    archive_key,
)
from carebridge.audit.encryption import (
    AuditDecryptionError,
    DetailsProtector,
    EnvelopeEncryptedDetails,
    KeyProvider,
    KmsKeyProvider,
    LocalKeyProvider,
    PlaintextDetails,
    select_details_protector,
)
from carebridge.audit.events import (
    AuditError,
    AuditEvent,
    AuditEventType,
    AuditWriteResult,
    DataClassification,
    ErasureResult,
    IntegrityReport,
    LawfulBasis,
    calculate_event_hash,
)
from carebridge.audit.ledger import AuditLedger
from carebridge.audit.privacy import PrivacyHasher, simplify_user_agent, truncate_ip
from carebridge.audit.stores import AuditEventExistsError, AuditStore, MemoryAuditStore, SqlAuditStore

__all__ = [
    "AuditArchive",
    "AuditArchiveConflictError",
    "AuditDecryptionError",
    "AuditError",
    "AuditEvent",
    "AuditEventExistsError",
    "AuditEventType",
    "AuditLedger",
    "AuditStore",
    "AuditWriteResult",
    "DataClassification",
    "DetailsProtector",
    "EnvelopeEncryptedDetails",
    "ErasureResult",
    "FileSystemAuditArchive",
    "IntegrityReport",
    "KeyProvider",
    "KmsKeyProvider",
    "LawfulBasis",
    "LocalKeyProvider",
    "MemoryAuditArchive",
    "MemoryAuditStore",
    "PlaintextDetails",
    "PrivacyHasher",
    "S3AuditArchive",
    "SqlAuditStore",
    "archive_key",
    "calculate_event_hash",
    "select_details_protector",
    "simplify_user_agent",
    "truncate_ip",
]
