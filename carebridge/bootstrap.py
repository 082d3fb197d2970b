"""
Builds the wired resilience and audit core from Settings.

One CoreServices instance is created per process. Its registry is shared
by every guarded call and by the error classifier, so handlers and
breakers agree on dependency health.
"""
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

from fastapi import FastAPI, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest
from sqlalchemy import text
from sqlalchemy.engine import Engine
from starlette.middleware.base import BaseHTTPMiddleware

from carebridge.audit import (
    AuditArchive,
    AuditLedger,
    FileSystemAuditArchive,
    KeyProvider,
    KmsKeyProvider,
    LocalKeyProvider,
    PrivacyHasher,
    S3AuditArchive,
    SqlAuditStore,
)
from carebridge.database import create_db_engine, init_db, make_session_factory
from carebridge.errors import ErrorClassifier, register_error_handlers
from carebridge.errors.classifier import generate_correlation_id
from carebridge.observability.logging import (
    clear_request_context,
    set_request_context,
    setup_logging,
)
from carebridge.resilience import (
    CircuitBreakerRegistry,
    CircuitStateStore,
    HealthChecker,
    MemoryCircuitStateStore,
    RetryCoordinator,
    RetryPolicy,
    ValkeyCircuitStateStore,
    get_valkey_circuit_state_store,
)
from carebridge.settings import Settings, get_settings

logger = logging.getLogger(__name__)


@dataclass
class CoreServices:
    """Everything a request handler needs from the core."""

    settings: Settings
    registry: CircuitBreakerRegistry
    coordinator: RetryCoordinator
    retry_policy: RetryPolicy
    classifier: ErrorClassifier
    ledger: AuditLedger
    engine: Engine
    health: HealthChecker


def build_circuit_state_store(settings: Settings) -> CircuitStateStore:
    """Valkey store when configured and reachable, in-memory otherwise."""
    if settings.circuit_state_backend == "valkey":
        store = get_valkey_circuit_state_store(settings.valkey_url)
        if store is not None:
            return store
        logger.warning(
            "Valkey unavailable, circuit state is local to this process",
            extra={"valkey_url": settings.valkey_url},
        )
    return MemoryCircuitStateStore()


def build_archive(settings: Settings) -> AuditArchive:
    if settings.audit_archive_backend == "s3":
        if not settings.compliance_bucket:
            raise ValueError("COMPLIANCE_BUCKET is required for the s3 archive backend")
        return S3AuditArchive(settings.compliance_bucket, region=settings.aws_region)
    return FileSystemAuditArchive(settings.audit_archive_path)


def build_key_provider(settings: Settings) -> KeyProvider:
    """KMS when a key id is configured, otherwise a locally derived master key."""
    if settings.kms_key_id:
        return KmsKeyProvider(settings.kms_key_id, region=settings.aws_region)
    return LocalKeyProvider.from_secret(settings.local_master_key or settings.audit_hash_secret)


def _ping_database(engine: Engine) -> None:
    with engine.connect() as connection:
        connection.execute(text("SELECT 1"))


def build_health_checker(engine: Engine, circuit_store: CircuitStateStore) -> HealthChecker:
    """Health checks for the audit database and, when shared, the circuit state store."""
    checker = HealthChecker()
    checker.register_service("audit_database", lambda: _ping_database(engine))
    if isinstance(circuit_store, ValkeyCircuitStateStore):
        checker.register_service("circuit_state", circuit_store.client.ping)
    return checker


def build_core(settings: Optional[Settings] = None) -> CoreServices:
    """
    Build the core from Settings.

    Args:
        settings: Settings to use (the singleton if not provided)

    Returns:
        CoreServices with a shared registry and a ready audit ledger
    """
    settings = settings or get_settings()

    circuit_store = build_circuit_state_store(settings)
    registry = CircuitBreakerRegistry.from_settings(settings, store=circuit_store)

    engine = create_db_engine(settings.database_url)
    init_db(engine)

    ledger = AuditLedger(
        store=SqlAuditStore(make_session_factory(engine)),
        hasher=PrivacyHasher(settings.audit_hash_secret),
        archive=build_archive(settings),
        key_provider=build_key_provider(settings),
        environment=settings.environment,
        retention_years=settings.audit_retention_years,
        archive_timeout=settings.audit_archive_timeout,
    )

    logger.info(
        "Core services ready",
        extra={
            "environment": settings.environment,
            "circuit_state_backend": settings.circuit_state_backend,
            "audit_archive_backend": settings.audit_archive_backend,
        },
    )
    return CoreServices(
        settings=settings,
        registry=registry,
        coordinator=RetryCoordinator(),
        retry_policy=RetryPolicy.from_settings(settings),
        classifier=ErrorClassifier(registry, default_retry_after=settings.base_delay),
        ledger=ledger,
        engine=engine,
        health=build_health_checker(engine, circuit_store),
    )


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Binds the request's correlation id to the logging context.

    Uses the caller's X-Correlation-ID header when present and echoes the
    id back on the response.
    """

    async def dispatch(self, request: Request, call_next):
        correlation_id = request.headers.get("X-Correlation-ID") or generate_correlation_id()
        set_request_context(correlation_id)
        try:
            response = await call_next(request)
        finally:
            clear_request_context()
        response.headers.setdefault("X-Correlation-ID", correlation_id)
        return response


def create_app(core: Optional[CoreServices] = None) -> FastAPI:
    """
    FastAPI app with the core's error handlers, correlation ids and
    operational endpoints. Feature routers are mounted by the caller.
    """
    core = core or build_core()
    setup_logging(core.settings.log_level, core.settings.log_json)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        # Scheduled audit writes finish before the process exits
        results = await core.ledger.drain()
        logger.info("Application shutting down", extra={"drained_audit_writes": len(results)})

    app = FastAPI(title="CareBridge", lifespan=lifespan)
    app.state.core = core

    app.add_middleware(CorrelationIdMiddleware)
    register_error_handlers(app, core.classifier, core.settings)

    @app.get("/metrics")
    async def metrics():
        """Prometheus metrics endpoint."""
        return Response(content=generate_latest(REGISTRY), media_type=CONTENT_TYPE_LATEST)

    @app.get("/health")
    async def health(response: Response):
        """Runs every dependency check; 503 when any of them fails."""
        await core.health.check_all()
        status = core.health.get_health_status()
        if status["status"] != "healthy":
            response.status_code = 503
        return status

    @app.get("/health/circuits")
    async def circuit_health():
        """Breaker state per dependency."""
        return {
            name: breaker_metrics.to_dict()
            for name, breaker_metrics in core.registry.all_metrics().items()
        }

    return app
