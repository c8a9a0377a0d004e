"""
Tests for Circuit Breaker Pattern
"""
import asyncio

import pytest

from freight.core.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    get_gateway_circuit_breaker,
)
from freight.core.exceptions import CircuitBreakerOpenError, GatewayError


class TestCircuitBreaker:
    """Tests for circuit breaker functionality"""

    @pytest.fixture
    def config(self) -> CircuitBreakerConfig:
        """Create test configuration with fast timeouts"""
        return CircuitBreakerConfig(
            failure_threshold=3,
            success_threshold=2,
            timeout_seconds=0.1,  # Fast timeout for tests
            half_open_max_calls=2
        )

    @pytest.fixture
    def breaker(self, config: CircuitBreakerConfig) -> CircuitBreaker:
        return CircuitBreaker("test-gateway", config)

    @staticmethod
    async def _outage():
        raise GatewayError("test-gateway", "upstream 503", retryable=True)

    @staticmethod
    async def _decline():
        raise GatewayError("test-gateway", "card declined", retryable=False, gateway_code=-9)

    @pytest.mark.unit
    async def test_initial_state_is_closed(self, breaker: CircuitBreaker):
        assert breaker.is_closed
        assert not breaker.is_open
        assert not breaker.is_half_open

    @pytest.mark.unit
    async def test_successful_execution_keeps_closed(self, breaker: CircuitBreaker):
        async def ok():
            return "paid"

        assert await breaker.execute(ok) == "paid"
        assert breaker.is_closed

    @pytest.mark.unit
    async def test_outages_open_circuit(self, breaker: CircuitBreaker):
        for _ in range(3):
            with pytest.raises(GatewayError):
                await breaker.execute(self._outage)

        assert breaker.is_open

    @pytest.mark.unit
    async def test_open_circuit_blocks_requests(self, breaker: CircuitBreaker):
        for _ in range(3):
            with pytest.raises(GatewayError):
                await breaker.execute(self._outage)

        async def ok():
            return "paid"

        with pytest.raises(CircuitBreakerOpenError) as exc_info:
            await breaker.execute(ok)
        assert exc_info.value.retryable
        assert exc_info.value.details["service"] == "test-gateway"

    @pytest.mark.unit
    async def test_declines_do_not_trip_the_breaker(self, breaker: CircuitBreaker):
        """תשובה עסקית (דחייה) אינה תקלה"""
        for _ in range(10):
            with pytest.raises(GatewayError):
                await breaker.execute(self._decline)

        assert breaker.is_closed

    @pytest.mark.unit
    async def test_half_open_after_timeout_and_recovery(self, breaker: CircuitBreaker):
        for _ in range(3):
            with pytest.raises(GatewayError):
                await breaker.execute(self._outage)
        assert breaker.is_open

        await asyncio.sleep(0.15)

        async def ok():
            return "ok"

        await breaker.execute(ok)
        assert breaker.is_half_open
        await breaker.execute(ok)
        assert breaker.is_closed

    @pytest.mark.unit
    async def test_failure_in_half_open_reopens(self, breaker: CircuitBreaker):
        for _ in range(3):
            with pytest.raises(GatewayError):
                await breaker.execute(self._outage)
        await asyncio.sleep(0.15)

        with pytest.raises(GatewayError):
            await breaker.execute(self._outage)
        assert breaker.is_open

    @pytest.mark.unit
    async def test_success_resets_failure_count(self, breaker: CircuitBreaker):
        async def ok():
            return "ok"

        for _ in range(2):
            with pytest.raises(GatewayError):
                await breaker.execute(self._outage)
        await breaker.execute(ok)
        for _ in range(2):
            with pytest.raises(GatewayError):
                await breaker.execute(self._outage)

        assert breaker.is_closed


class TestGatewayBreakerRegistry:
    @pytest.mark.unit
    def test_one_breaker_per_gateway(self):
        assert get_gateway_circuit_breaker("zarinpal") is get_gateway_circuit_breaker("zarinpal")
        assert get_gateway_circuit_breaker("zarinpal") is not get_gateway_circuit_breaker("mellat")

    @pytest.mark.unit
    def test_reset_all_drops_instances(self):
        first = get_gateway_circuit_breaker("nextpay")
        CircuitBreaker.reset_all()
        assert get_gateway_circuit_breaker("nextpay") is not first
