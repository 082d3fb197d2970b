"""
Tests for building the wired core and the FastAPI app.
"""
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from carebridge.audit import FileSystemAuditArchive, KmsKeyProvider, LocalKeyProvider, SqlAuditStore
from carebridge.bootstrap import (
    build_archive,
    build_circuit_state_store,
    build_core,
    build_health_checker,
    build_key_provider,
    create_app,
)
from carebridge.errors.types import CircuitOpenError
from carebridge.resilience import MemoryCircuitStateStore, ValkeyCircuitStateStore
from carebridge.settings import Settings


@pytest.fixture
def settings(test_env):
    return Settings(_env_file=None)


@pytest.fixture
def core(settings):
    return build_core(settings)


class TestBuildCore:

    def test_classifier_shares_registry(self, core):
        assert core.classifier.registry is core.registry
        assert isinstance(core.registry.store, MemoryCircuitStateStore)

    def test_ledger_uses_sql_store_and_local_keys(self, core, settings):
        assert isinstance(core.ledger.store, SqlAuditStore)
        assert isinstance(core.ledger.archive, FileSystemAuditArchive)
        assert core.ledger.environment == "test"
        assert core.ledger.archive_timeout == settings.audit_archive_timeout

    def test_health_checks_registered(self, core):
        assert list(core.health.services) == ["audit_database"]

    def test_retry_policy_from_settings(self, core):
        assert core.retry_policy.max_retries == 3
        assert core.retry_policy.base_delay == 1.0

    @pytest.mark.asyncio
    async def test_ledger_round_trip_on_sqlite(self, core):
        result = await core.ledger.log_data_access("user-1", "medical_records", "read")

        assert result.success is True
        assert result.archived is True
        report = await core.ledger.verify_audit_integrity(result.audit_id)
        assert report.valid is True

        events = await core.ledger.query_audit_events(user_id="user-1")
        assert await core.ledger.reveal_details(events[0]) == {
            "data_type": "medical_records",
            "operation": "read",
            "success": True,
        }


class TestBackendSelection:

    def test_unreachable_valkey_falls_back_to_memory(self, settings):
        settings.circuit_state_backend = "valkey"
        with patch("carebridge.bootstrap.get_valkey_circuit_state_store", return_value=None):
            assert isinstance(build_circuit_state_store(settings), MemoryCircuitStateStore)

    def test_reachable_valkey_used(self, settings, fake_valkey):
        settings.circuit_state_backend = "valkey"
        store = ValkeyCircuitStateStore(fake_valkey)
        with patch("carebridge.bootstrap.get_valkey_circuit_state_store", return_value=store):
            assert build_circuit_state_store(settings) is store

    @pytest.mark.asyncio
    async def test_valkey_store_gets_health_check(self, core, fake_valkey):
        checker = build_health_checker(core.engine, ValkeyCircuitStateStore(fake_valkey))

        assert sorted(checker.services) == ["audit_database", "circuit_state"]
        assert await checker.check_all() == {"audit_database": True, "circuit_state": True}

    def test_s3_archive_requires_bucket(self, settings):
        settings.audit_archive_backend = "s3"
        with pytest.raises(ValueError):
            build_archive(settings)

    def test_kms_used_when_key_id_set(self, settings):
        settings.kms_key_id = "alias/carebridge-audit"
        provider = build_key_provider(settings)
        assert isinstance(provider, KmsKeyProvider)
        assert provider.key_id == "alias/carebridge-audit"

    def test_local_key_provider_by_default(self, settings):
        assert isinstance(build_key_provider(settings), LocalKeyProvider)


class TestApp:

    @pytest.fixture
    def client(self, core):
        app = create_app(core)

        @app.get("/inference")
        async def inference():
            raise CircuitOpenError("inference", 5, None, 20)

        @app.get("/ok")
        async def ok():
            return {"status": "ok"}

        with TestClient(app, raise_server_exceptions=False) as client:
            yield client

    def test_correlation_id_echoed(self, client):
        response = client.get("/ok", headers={"X-Correlation-ID": "req-7"})
        assert response.headers["X-Correlation-ID"] == "req-7"

    def test_correlation_id_generated(self, client):
        response = client.get("/ok")
        assert response.headers["X-Correlation-ID"].startswith("carebridge-")

    def test_error_uses_request_correlation_id(self, client):
        response = client.get("/inference")

        assert response.status_code == 503
        assert response.headers["Retry-After"] == "20"
        assert response.json()["correlation_id"] == response.headers["X-Correlation-ID"]

    def test_metrics_endpoint(self, client):
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "carebridge_" in response.text

    def test_circuit_health(self, core):
        core.registry.report_outcome("object_store", True)
        with TestClient(create_app(core)) as client:
            body = client.get("/health/circuits").json()

        assert body["object_store"]["state"] == "closed"
        assert body["object_store"]["successful_requests"] == 1

    def test_health_reports_database(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["services"]["audit_database"]["healthy"] is True

    def test_failing_check_returns_503(self, core):
        def unreachable():
            raise ConnectionError("refused")

        core.health.register_service("object_store", unreachable)
        with TestClient(create_app(core)) as client:
            response = client.get("/health")

        assert response.status_code == 503
        assert response.json()["status"] == "degraded"
        assert response.json()["services"]["object_store"]["last_error"] == "ConnectionError"
