"""
Tamper-evident audit ledger.

Write path (log_audit_event):
1. Generate audit id and timestamp
2. Replace user id, admin id, source address and user agent with keyed hashes
3. Protect details with the strategy chosen for the data classification
4. Seal the event hash over timestamp, type, subtype, user hash, session
   id and the stored details
5. Store the primary record; archive medical_phi and security_event
   records with their own timeout

Writing never raises. A failed write logs an AUDIT_FALLBACK line, bumps a
metric and returns AuditWriteResult(success=False).

Erasure anonymizes in place: the subject's hashes, session and network
hashes are cleared, the row is re-sealed and kept for legal retention,
and one summary event records how many rows were anonymized.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from dataclasses import replace
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Callable, Mapping

from opentelemetry import trace

from carebridge.audit.archive import AuditArchive
from carebridge.audit.encryption import DetailsProtector, KeyProvider, build_protectors
from carebridge.audit.events import (
    ARCHIVED_CLASSIFICATIONS,
    AuditError,
    AuditEvent,
    AuditEventType,
    AuditWriteResult,
    DataClassification,
    ErasureResult,
    IntegrityReport,
    LawfulBasis,
    canonical_json,
    ensure_utc,
    enum_value,
    format_timestamp,
)
from carebridge.audit.privacy import PrivacyHasher
from carebridge.audit.reports import (
    build_compliance_report,
    build_compliance_stats,
    build_daily_rollup,
)
from carebridge.audit.stores import MAX_QUERY_LIMIT, AuditStore
from carebridge.observability.metrics import record_audit_write, record_integrity_failure

logger = logging.getLogger(__name__)

tracer = trace.get_tracer(__name__)

DETAILS_PURPOSE = "audit_event_details"

KNOWN_CLASSIFICATIONS = frozenset(c.value for c in DataClassification)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class AuditLedger:
    """
    Privacy-preserving, tamper-evident audit log.

    Usage:
        ledger = AuditLedger(store, PrivacyHasher(secret), archive=archive,
                             key_provider=LocalKeyProvider.from_secret(secret))
        result = await ledger.log_audit_event(
            event_type="authentication",
            event_subtype="login_success",
            user_id="u1",
            session_id="s1",
        )
    """

    def __init__(
        self,
        store: AuditStore,
        hasher: PrivacyHasher,
        archive: AuditArchive | None = None,
        key_provider: KeyProvider | None = None,
        environment: str = "dev",
        retention_years: int = 7,
        archive_timeout: float = 5.0,
        clock: Callable[[], datetime] = _utc_now,
    ):
        """Initialize the ledger.

        Args:
            store: Primary store.
            hasher: Keyed hasher for identifiers.
            archive: Write-once archive for high-sensitivity records.
            key_provider: Data key source for encrypted classifications.
                Without one, writes of those classifications fail.
            environment: Deployment environment recorded on each event.
            retention_years: Default retention period.
            archive_timeout: Seconds allowed for one archive write.
            clock: Returns the current aware datetime.
        """
        self.store = store
        self.hasher = hasher
        self.archive = archive
        self.environment = environment
        self.retention_years = retention_years
        self.archive_timeout = archive_timeout
        self._clock = clock
        self._protectors: Mapping[str, DetailsProtector] = build_protectors(key_provider)
        self._pending: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    def _protector_for(self, classification: str) -> DetailsProtector:
        if classification not in KNOWN_CLASSIFICATIONS:
            raise AuditError(f"Unknown data classification: {classification}")
        protector = self._protectors.get(classification)
        if protector is None:
            raise AuditError(f"No key provider configured for {classification} details")
        return protector

    def build_event(
        self,
        *,
        event_type: str | AuditEventType,
        event_subtype: str,
        user_id: str | None = None,
        session_id: str | None = None,
        admin_user_id: str | None = None,
        source_ip: str | None = None,
        user_agent: str | None = None,
        request_id: str | None = None,
        event_details: dict[str, Any] | None = None,
        gdpr_lawful_basis: str | LawfulBasis = LawfulBasis.LEGITIMATE_INTERESTS,
        data_classification: str | DataClassification = DataClassification.INTERNAL,
        retention_years: int | None = None,
        event_timestamp: datetime | None = None,
        audit_id: str | None = None,
    ) -> AuditEvent:
        """Build and seal an event without storing it.

        Raises:
            AuditError: Unknown classification or missing key provider
        """
        timestamp = ensure_utc(event_timestamp or self._clock())
        audit_id = audit_id or str(uuid.uuid4())
        classification = enum_value(data_classification)
        retention = self.retention_years if retention_years is None else retention_years

        # Round-trip through canonical JSON so the stored details equal the hashed ones
        details = json.loads(canonical_json(event_details or {}))
        context = {
            "audit_id": audit_id,
            "data_classification": classification,
            "purpose": DETAILS_PURPOSE,
        }
        stored_details = self._protector_for(classification).protect(details, context)

        event = AuditEvent(
            audit_id=audit_id,
            event_timestamp=timestamp,
            event_type=enum_value(event_type),
            event_subtype=event_subtype,
            user_id_hash=self.hasher.hash_user_id(user_id),
            session_id=str(session_id) if session_id is not None else None,
            admin_user_id_hash=self.hasher.hash_user_id(admin_user_id),
            source_ip_hash=self.hasher.hash_ip(source_ip),
            user_agent_hash=self.hasher.hash_user_agent(user_agent),
            request_id=request_id,
            event_details=stored_details,
            gdpr_lawful_basis=enum_value(gdpr_lawful_basis),
            data_classification=classification,
            retention_years=retention,
            retention_expires_at=timestamp + timedelta(days=365 * retention) if retention > 0 else None,
            environment=self.environment,
        )
        return event.sealed()

    async def log_audit_event(self, **fields: Any) -> AuditWriteResult:
        """
        Write an audit event. Never raises.

        Accepts the keyword arguments of build_event.

        Returns:
            AuditWriteResult; success is False if the primary write failed
        """
        classification = str(enum_value(fields.get("data_classification", DataClassification.INTERNAL)))
        with tracer.start_as_current_span("audit.log_event") as span:
            span.set_attribute("audit.data_classification", classification)
            try:
                event = self.build_event(**fields)
                await asyncio.to_thread(self.store.put, event)
            except Exception as e:
                record_audit_write(classification, "failed")
                span.record_exception(e)
                logger.error(
                    "AUDIT_FALLBACK: audit event could not be stored",
                    extra={
                        "event_type": str(enum_value(fields.get("event_type"))),
                        "event_subtype": fields.get("event_subtype"),
                        "data_classification": classification,
                        "error_type": type(e).__name__,
                    },
                )
                return AuditWriteResult(success=False, error=type(e).__name__)

            record_audit_write(classification, "stored")
            span.set_attribute("audit.id", event.audit_id)

            archived = False
            error = None
            if classification in ARCHIVED_CLASSIFICATIONS and self.archive is not None:
                archived = await self._archive(event)
                if not archived:
                    error = "archive_failed"

        return AuditWriteResult(
            success=True,
            audit_id=event.audit_id,
            event_hash=event.event_hash,
            archived=archived,
            error=error,
        )

    async def _archive(self, event: AuditEvent) -> bool:
        try:
            await asyncio.wait_for(
                asyncio.to_thread(self.archive.write, event),
                timeout=self.archive_timeout,
            )
        except Exception as e:
            record_audit_write(event.data_classification, "archive_failed")
            logger.error(
                "AUDIT_ARCHIVE_FALLBACK: compliance copy could not be written",
                extra={
                    "audit_id": event.audit_id,
                    "data_classification": event.data_classification,
                    "error_type": type(e).__name__,
                },
            )
            return False
        record_audit_write(event.data_classification, "archived")
        return True

    def submit_audit_event(self, **fields: Any) -> asyncio.Task:
        """Schedule a write without waiting for it. Use drain() to wait."""
        task = asyncio.create_task(self.log_audit_event(**fields))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> list[AuditWriteResult]:
        """Wait for every scheduled write."""
        if not self._pending:
            return []
        return list(await asyncio.gather(*list(self._pending)))

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    async def query_audit_events(
        self,
        event_type: str | AuditEventType | None = None,
        event_subtype: str | None = None,
        user_id: str | None = None,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Query events, newest first. At most 1000 are returned."""
        return await asyncio.to_thread(
            self.store.query,
            enum_value(event_type) if event_type else None,
            event_subtype,
            self.hasher.hash_user_id(user_id),
            ensure_utc(start_time) if start_time else None,
            ensure_utc(end_time) if end_time else None,
            max(1, min(limit, MAX_QUERY_LIMIT)),
        )

    async def reveal_details(self, event: AuditEvent) -> dict[str, Any]:
        """Original details of an event, decrypting if needed."""
        if not event.is_encrypted:
            return event.event_details
        protector = self._protector_for(event.data_classification)
        return await asyncio.to_thread(protector.reveal, event.event_details)

    async def generate_compliance_report(
        self,
        user_id: str,
        start: datetime,
        end: datetime,
    ) -> dict[str, Any]:
        """Bucket a user's events by lawful basis and classification."""
        events = await self.query_audit_events(
            user_id=user_id,
            start_time=start,
            end_time=end,
            limit=MAX_QUERY_LIMIT,
        )
        return build_compliance_report(
            events,
            self.hasher.hash_user_id(user_id),
            ensure_utc(start),
            ensure_utc(end),
            self._clock(),
        )

    async def compliance_stats(self, start: datetime, end: datetime) -> dict[str, Any]:
        """Counts per classification and lawful basis over a period."""
        start, end = ensure_utc(start), ensure_utc(end)
        events = await asyncio.to_thread(self.store.in_range, start, end)
        return build_compliance_stats(events, start, end)

    async def daily_rollup(self, day: date) -> dict[str, Any]:
        """Event counts for one UTC day."""
        start = datetime.combine(day, time.min, tzinfo=timezone.utc)
        end = start + timedelta(days=1) - timedelta(microseconds=1)
        events = await asyncio.to_thread(self.store.in_range, start, end)
        return build_daily_rollup(events, day)

    # ------------------------------------------------------------------
    # Integrity
    # ------------------------------------------------------------------

    async def verify_audit_integrity(self, audit_id: str) -> IntegrityReport:
        """
        Recompute an event's hash and compare it with the stored one.

        A mismatch is reported, never corrected.
        """
        try:
            event = await asyncio.to_thread(self.store.get, audit_id)
        except Exception as e:
            logger.exception("Failed to load audit event for verification", extra={"audit_id": audit_id})
            return IntegrityReport(
                audit_id=audit_id,
                valid=False,
                reason=f"Verification failed: {type(e).__name__}",
            )

        if event is None:
            return IntegrityReport(audit_id=audit_id, valid=False, reason="Audit record not found")

        calculated = event.compute_hash()
        valid = calculated == event.event_hash
        if not valid:
            record_integrity_failure()
            logger.warning(
                "Audit record hash mismatch",
                extra={"audit_id": audit_id, "event_type": event.event_type},
            )
        return IntegrityReport(
            audit_id=audit_id,
            valid=valid,
            reason="Audit record integrity verified" if valid else "Hash mismatch - potential tampering detected",
            stored_hash=event.event_hash,
            calculated_hash=calculated,
        )

    # ------------------------------------------------------------------
    # Erasure and retention
    # ------------------------------------------------------------------

    @staticmethod
    def _anonymize(event: AuditEvent, user_id_hash: str) -> AuditEvent:
        """Remove the user's linkage from one event.

        Session, IP and user agent are cleared only when the erased user is
        the event's subject.
        """
        changes: dict[str, Any] = {"anonymized": True}
        if event.user_id_hash == user_id_hash:
            changes.update(
                user_id_hash=None,
                session_id=None,
                source_ip_hash=None,
                user_agent_hash=None,
            )
        if event.admin_user_id_hash == user_id_hash:
            changes["admin_user_id_hash"] = None
        return replace(event, **changes).sealed()

    async def delete_user_audit_data(self, user_id: str) -> ErasureResult:
        """
        Right to erasure: anonymize every event linked to a user.

        Rows are kept for legal retention with the user linkage removed and
        their hash re-sealed. One data_erasure event records the count and
        time only.

        Raises:
            AuditError: The rows could not be anonymized
        """
        user_id_hash = self.hasher.hash_user_id(user_id)
        if user_id_hash is None:
            raise AuditError("A user id is required for erasure")

        with tracer.start_as_current_span("audit.erase_user"):
            try:
                linked = await asyncio.to_thread(self.store.linked_to, user_id_hash)
                anonymized = [self._anonymize(e, user_id_hash) for e in linked]
                count = await asyncio.to_thread(self.store.replace_many, anonymized)
            except Exception as e:
                logger.exception("Audit erasure failed")
                raise AuditError("Audit erasure failed") from e

        summary = await self.log_audit_event(
            event_type=AuditEventType.DATA_ERASURE,
            event_subtype="user_audit_data_anonymized",
            event_details={
                "records_anonymized": count,
                "erasure_timestamp": format_timestamp(self._clock()),
            },
            gdpr_lawful_basis=LawfulBasis.LEGAL_OBLIGATION,
            data_classification=DataClassification.GDPR_COMPLIANCE,
        )
        if not summary.success:
            logger.error(
                "Audit erasure summary could not be stored",
                extra={"records_anonymized": count, "error_type": summary.error},
            )
            return ErasureResult(
                success=False,
                records_anonymized=count,
                error="summary_write_failed",
            )
        logger.info("Audit erasure completed", extra={"records_anonymized": count})
        return ErasureResult(
            success=True,
            records_anonymized=count,
            summary_audit_id=summary.audit_id,
        )

    async def purge_expired_events(self, now: datetime | None = None) -> int:
        """Delete events past retention and record the cleanup."""
        now = ensure_utc(now or self._clock())
        try:
            deleted = await asyncio.to_thread(self.store.delete_expired, now)
        except Exception as e:
            logger.exception("Audit cleanup failed")
            raise AuditError("Audit cleanup failed") from e

        if deleted > 0:
            logger.info(f"Cleaned up {deleted} expired audit events")
            await self.log_audit_event(
                event_type=AuditEventType.DATA_MANAGEMENT,
                event_subtype="audit_cleanup",
                event_details={
                    "deleted_count": deleted,
                    "cleanup_date": format_timestamp(now),
                },
                gdpr_lawful_basis=LawfulBasis.LEGAL_OBLIGATION,
                data_classification=DataClassification.INTERNAL,
            )
        return deleted

    # ------------------------------------------------------------------
    # Convenience writers
    # ------------------------------------------------------------------

    async def log_authentication(
        self,
        success: bool,
        user_id: str | None,
        session_id: str | None = None,
        source_ip: str | None = None,
        user_agent: str | None = None,
        provider: str | None = None,
        request_id: str | None = None,
        device_id: str | None = None,
    ) -> AuditWriteResult:
        """Log a sign-in attempt."""
        return await self.log_audit_event(
            event_type=AuditEventType.AUTHENTICATION,
            event_subtype="login_success" if success else "login_failure",
            user_id=user_id,
            session_id=session_id,
            source_ip=source_ip,
            user_agent=user_agent,
            request_id=request_id,
            event_details={
                "success": success,
                "auth_provider": provider,
                "device_id": device_id,
            },
            gdpr_lawful_basis=LawfulBasis.CONSENT,
            data_classification=DataClassification.CONFIDENTIAL,
        )

    async def log_biometric_auth(
        self,
        success: bool,
        user_id: str | None,
        session_id: str | None = None,
        biometric_type: str | None = None,
        device_id: str | None = None,
        source_ip: str | None = None,
        request_id: str | None = None,
    ) -> AuditWriteResult:
        return await self.log_audit_event(
            event_type=AuditEventType.SECURITY_EVENT,
            event_subtype="biometric_auth_success" if success else "biometric_auth_failure",
            user_id=user_id,
            session_id=session_id,
            source_ip=source_ip,
            request_id=request_id,
            event_details={
                "success": success,
                "biometric_type": biometric_type,
                "device_id": device_id,
            },
            gdpr_lawful_basis=LawfulBasis.LEGITIMATE_INTERESTS,
            data_classification=DataClassification.RESTRICTED,
        )

    async def log_data_access(
        self,
        user_id: str | None,
        data_type: str,
        operation: str,
        session_id: str | None = None,
        source_ip: str | None = None,
        user_agent: str | None = None,
        request_id: str | None = None,
        success: bool = True,
    ) -> AuditWriteResult:
        """Log a read or write of user data; medical data is classified as PHI."""
        return await self.log_audit_event(
            event_type=AuditEventType.DATA_ACCESS,
            event_subtype=f"{data_type}_{operation}",
            user_id=user_id,
            session_id=session_id,
            source_ip=source_ip,
            user_agent=user_agent,
            request_id=request_id,
            event_details={
                "data_type": data_type,
                "operation": operation,
                "success": success,
            },
            gdpr_lawful_basis=LawfulBasis.CONSENT,
            data_classification=(
                DataClassification.MEDICAL_PHI
                if "medical" in data_type
                else DataClassification.CONFIDENTIAL
            ),
        )

    async def log_consent_change(
        self,
        user_id: str | None,
        consent_types: list[str],
        granted: bool,
        version: str,
        session_id: str | None = None,
        source_ip: str | None = None,
        user_agent: str | None = None,
        request_id: str | None = None,
    ) -> AuditWriteResult:
        return await self.log_audit_event(
            event_type=AuditEventType.CONSENT_MANAGEMENT,
            event_subtype="consent_granted" if granted else "consent_withdrawn",
            user_id=user_id,
            session_id=session_id,
            source_ip=source_ip,
            user_agent=user_agent,
            request_id=request_id,
            event_details={
                "consent_types": list(consent_types),
                "consent_granted": granted,
                "consent_version": version,
            },
            gdpr_lawful_basis=LawfulBasis.CONSENT,
            data_classification=DataClassification.MEDICAL_PHI,
        )

    async def log_payment(
        self,
        user_id: str | None,
        payment_id: str,
        amount: float,
        currency: str,
        status: str,
        provider: str,
        session_id: str | None = None,
        source_ip: str | None = None,
        request_id: str | None = None,
    ) -> AuditWriteResult:
        return await self.log_audit_event(
            event_type=AuditEventType.FINANCIAL_TRANSACTION,
            event_subtype="payment_processed",
            user_id=user_id,
            session_id=session_id,
            source_ip=source_ip,
            request_id=request_id,
            event_details={
                "payment_id": payment_id,
                "amount": float(amount),
                "currency": currency,
                "payment_status": status,
                "payment_provider": provider,
            },
            gdpr_lawful_basis=LawfulBasis.CONTRACT,
            data_classification=DataClassification.RESTRICTED,
        )

    async def log_security_event(
        self,
        event_subtype: str,
        user_id: str | None = None,
        session_id: str | None = None,
        source_ip: str | None = None,
        user_agent: str | None = None,
        request_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> AuditWriteResult:
        """Log a security event; these are always archived."""
        return await self.log_audit_event(
            event_type=AuditEventType.SECURITY_EVENT,
            event_subtype=event_subtype,
            user_id=user_id,
            session_id=session_id,
            source_ip=source_ip,
            user_agent=user_agent,
            request_id=request_id,
            event_details=dict(details or {}),
            gdpr_lawful_basis=LawfulBasis.LEGITIMATE_INTERESTS,
            data_classification=DataClassification.SECURITY_EVENT,
        )
