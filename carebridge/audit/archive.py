"""
Write-once compliance archive for high-sensitivity audit events.

medical_phi and security_event records are copied to a date-partitioned
archive in addition to the primary store:

    compliance-logs/YYYY/MM/DD/<audit_id>.json

Objects are never overwritten. Archive copies contain only keyed hashes of
identifiers, and encrypted details stay encrypted.
"""

import json
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional

from opentelemetry import trace

from carebridge.audit.events import AuditError, AuditEvent, ensure_utc
from carebridge.errors.types import ObjectStoreError

tracer = trace.get_tracer(__name__)

ARCHIVE_PREFIX = "compliance-logs"


class AuditArchiveConflictError(AuditError):
    """Raised when an archive object for the event already exists."""

    pass


def archive_key(event: AuditEvent) -> str:
    """Date-partitioned object key for an event (UTC date)."""
    ts = ensure_utc(event.event_timestamp)
    return f"{ARCHIVE_PREFIX}/{ts:%Y}/{ts:%m}/{ts:%d}/{event.audit_id}.json"


def _serialize(event: AuditEvent) -> str:
    return json.dumps(event.to_dict(), indent=2, sort_keys=True)


class AuditArchive(ABC):
    """Abstract base for archive backends."""

    @abstractmethod
    def write(self, event: AuditEvent) -> str:
        """Write the event once. Returns the object key."""

    @abstractmethod
    def read(self, key: str) -> Optional[Dict[str, Any]]:
        """Read an archived record, or None if absent."""


class S3AuditArchive(AuditArchive):
    """Archive in an S3 bucket with server-side encryption."""

    def __init__(self, bucket: str, region: str = "eu-west-1", client: Any = None):
        """
        Args:
            bucket: Compliance bucket name
            region: AWS region for the default client
            client: Preconfigured boto3 S3 client (created lazily if not provided)
        """
        self.bucket = bucket
        self.region = region
        self._client = client

    def _get_client(self):
        if self._client is not None:
            return self._client

        import boto3

        self._client = boto3.client("s3", region_name=self.region)
        return self._client

    def write(self, event: AuditEvent) -> str:
        from botocore.exceptions import BotoCoreError, ClientError

        key = archive_key(event)
        with tracer.start_as_current_span("audit_archive.s3_put") as span:
            span.set_attribute("s3.bucket", self.bucket)
            span.set_attribute("s3.key", key)
            try:
                self._get_client().put_object(
                    Bucket=self.bucket,
                    Key=key,
                    Body=_serialize(event).encode("utf-8"),
                    ContentType="application/json",
                    ServerSideEncryption="AES256",
                    IfNoneMatch="*",
                    Metadata={
                        "event-type": event.event_type,
                        "data-classification": event.data_classification,
                        "retention-years": str(event.retention_years),
                    },
                )
            except ClientError as e:
                if e.response.get("Error", {}).get("Code") in ("PreconditionFailed", "412"):
                    raise AuditArchiveConflictError(f"Archive object already exists: {key}") from e
                raise ObjectStoreError(f"Archive write failed: {e}", dependency="object_store") from e
            except BotoCoreError as e:
                raise ObjectStoreError(f"Archive write failed: {e}", dependency="object_store") from e
        return key

    def read(self, key: str) -> Optional[Dict[str, Any]]:
        from botocore.exceptions import ClientError

        try:
            response = self._get_client().get_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("404", "NoSuchKey"):
                return None
            raise ObjectStoreError(f"Archive read failed: {e}", dependency="object_store") from e
        return json.loads(response["Body"].read().decode("utf-8"))


class FileSystemAuditArchive(AuditArchive):
    """Archive under a local directory, for development and on-premise use."""

    def __init__(self, root: str):
        self.root = Path(root)

    def write(self, event: AuditEvent) -> str:
        key = archive_key(event)
        path = self.root / key
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            # Exclusive create: an existing record is never replaced
            with open(path, "x", encoding="utf-8") as f:
                f.write(_serialize(event))
        except FileExistsError as e:
            raise AuditArchiveConflictError(f"Archive object already exists: {key}") from e
        return key

    def read(self, key: str) -> Optional[Dict[str, Any]]:
        path = self.root / key
        if not path.exists():
            return None
        return json.loads(path.read_text(encoding="utf-8"))


class MemoryAuditArchive(AuditArchive):
    """In-memory archive for testing."""

    def __init__(self):
        self.objects: Dict[str, str] = {}
        self._lock = threading.Lock()

    def write(self, event: AuditEvent) -> str:
        key = archive_key(event)
        with self._lock:
            if key in self.objects:
                raise AuditArchiveConflictError(f"Archive object already exists: {key}")
            self.objects[key] = _serialize(event)
        return key

    def read(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            data = self.objects.get(key)
        return json.loads(data) if data is not None else None
