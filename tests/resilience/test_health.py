"""
Tests for dependency health checks.
"""
import asyncio
from datetime import datetime, timezone

import pytest

from carebridge.errors.types import CircuitOpenError
from carebridge.resilience.health import HealthCheckOptions, HealthChecker
from carebridge.resilience.state import CircuitState


class FlakyCheck:
    """Health check that counts calls and fails on demand."""

    def __init__(self):
        self.calls = 0
        self.fail_with = None

    async def __call__(self):
        self.calls += 1
        if self.fail_with is not None:
            raise self.fail_with
        return True


@pytest.fixture
def checker(clock):
    return HealthChecker(clock=clock)


class TestHealthChecker:

    @pytest.mark.asyncio
    async def test_all_passing_is_healthy(self, checker):
        checker.register_service("audit_database", FlakyCheck())
        checker.register_service("object_store", lambda: None)

        results = await checker.check_all()
        status = checker.get_health_status()

        assert results == {"audit_database": True, "object_store": True}
        assert status["status"] == "healthy"
        assert status["services"]["audit_database"]["healthy"] is True
        assert status["services"]["audit_database"]["last_error"] is None
        assert status["services"]["audit_database"]["circuit_breaker"]["state"] == "closed"

    @pytest.mark.asyncio
    async def test_one_failure_degrades_overall_status(self, checker):
        failing = FlakyCheck()
        failing.fail_with = ConnectionError("refused")
        checker.register_service("audit_database", FlakyCheck())
        checker.register_service("object_store", failing)

        await checker.check_all()
        status = checker.get_health_status()

        assert status["status"] == "degraded"
        assert status["services"]["object_store"]["healthy"] is False
        assert status["services"]["object_store"]["last_error"] == "ConnectionError"
        assert checker.is_service_healthy("audit_database") is True
        assert checker.is_service_healthy("object_store") is False

    @pytest.mark.asyncio
    async def test_error_text_not_reported(self, checker):
        failing = FlakyCheck()
        failing.fail_with = RuntimeError("password authentication failed for user carebridge")
        checker.register_service("audit_database", failing)

        await checker.check_service_health("audit_database")

        assert "password" not in str(checker.get_health_status())

    @pytest.mark.asyncio
    async def test_repeated_failures_open_check_breaker(self, checker):
        failing = FlakyCheck()
        failing.fail_with = ConnectionError("refused")
        checker.register_service("inference", failing, HealthCheckOptions(failure_threshold=2))

        for _ in range(3):
            assert await checker.check_service_health("inference") is False

        service = checker.services["inference"]
        assert failing.calls == 2
        assert service.breaker.state == CircuitState.OPEN
        assert service.last_error == CircuitOpenError.__name__

    @pytest.mark.asyncio
    async def test_recovers_after_recovery_timeout(self, checker, clock):
        check = FlakyCheck()
        check.fail_with = ConnectionError("refused")
        checker.register_service(
            "inference", check, HealthCheckOptions(failure_threshold=1, recovery_timeout=30)
        )
        await checker.check_service_health("inference")

        check.fail_with = None
        clock.advance(31)

        assert await checker.check_service_health("inference") is True
        assert checker.get_health_status()["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_slow_check_times_out(self, checker):
        async def hangs():
            await asyncio.sleep(1)

        checker.register_service("secret_vault", hangs, HealthCheckOptions(timeout=0.05))

        assert await checker.check_service_health("secret_vault") is False
        assert checker.services["secret_vault"].last_error == "CircuitTimeoutError"

    @pytest.mark.asyncio
    async def test_unregistered_service(self, checker):
        with pytest.raises(KeyError):
            await checker.check_service_health("payments")
        assert checker.is_service_healthy("payments") is False

    @pytest.mark.asyncio
    async def test_last_check_recorded_from_clock(self, checker, clock):
        checker.register_service("audit_database", FlakyCheck())
        assert checker.get_health_status()["services"]["audit_database"]["last_check"] is None

        await checker.check_service_health("audit_database")

        expected = datetime.fromtimestamp(clock.now, tz=timezone.utc).isoformat()
        assert checker.get_health_status()["services"]["audit_database"]["last_check"] == expected

    def test_check_breakers_use_their_own_keys(self, checker):
        checker.register_service("inference", FlakyCheck())
        assert checker.services["inference"].breaker.name == "health.inference"
