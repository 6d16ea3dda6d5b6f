"""
BuzzSync Backend — Identity Service Tests
===========================================

What we test:
    ✅ credentials are forwarded unmodified and the user is read back
    ✅ missing or rejected credentials are Unauthorized, never retried
    ✅ transport errors and 5xx responses are retried, then surfaced
    ✅ circuit breaker state transitions
    ✅ retry backoff is built without deprecated tenacity arguments
"""

import warnings

import httpx
import pytest

from buzzsync.exceptions import CircuitBreakerOpenError, IdentityServiceError, Unauthorized
from buzzsync.services.identity_service import CircuitBreaker, IdentityService


def make_service(handler, **kwargs):
    client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler),
        base_url="http://auth.test",
    )
    kwargs.setdefault("max_attempts", 3)
    return IdentityService(
        base_url="http://auth.test",
        min_wait=0,
        max_wait=0,
        client=client,
        **kwargs,
    )


class Recorder:
    """MockTransport handler that replays a list of responses."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        outcome = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


SESSION = {"session": {"id": "s1"}, "user": {"id": "user-1", "role": "admin"}}


class TestResolve:

    @pytest.mark.asyncio
    async def test_no_credentials_makes_no_call(self):
        recorder = Recorder(httpx.Response(200, json=SESSION))
        service = make_service(recorder)

        with pytest.raises(Unauthorized):
            await service.resolve()

        assert recorder.requests == []
        await service.aclose()

    @pytest.mark.asyncio
    async def test_forwards_headers_and_reads_user(self):
        recorder = Recorder(httpx.Response(200, json=SESSION))
        service = make_service(recorder)

        identity = await service.resolve(cookie="session=abc", authorization="Bearer tok")

        assert identity.user_id == "user-1"
        assert identity.has_role("admin")
        request = recorder.requests[0]
        assert request.url.path == "/api/auth/get-session"
        assert request.headers["cookie"] == "session=abc"
        assert request.headers["authorization"] == "Bearer tok"
        await service.aclose()

    @pytest.mark.asyncio
    async def test_user_without_role(self):
        service = make_service(Recorder(httpx.Response(200, json={"user": {"id": 42}})))

        identity = await service.resolve(authorization="Bearer tok")

        assert identity.user_id == "42"
        assert identity.role is None
        assert not identity.has_role("admin")
        await service.aclose()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(401),
            httpx.Response(403),
            httpx.Response(200, content=b"null"),
            httpx.Response(200, json={"session": None}),
            httpx.Response(200, json={"user": {"name": "no id"}}),
        ],
    )
    async def test_rejected_sessions_are_unauthorized(self, response):
        recorder = Recorder(response)
        service = make_service(recorder)

        with pytest.raises(Unauthorized):
            await service.resolve(cookie="session=stale")

        assert len(recorder.requests) == 1
        assert service.circuit_breaker.failure_count == 0
        await service.aclose()

    @pytest.mark.asyncio
    async def test_non_json_body_is_a_provider_error(self):
        service = make_service(Recorder(httpx.Response(200, text="<html>")))
        with pytest.raises(IdentityServiceError):
            await service.resolve(cookie="session=abc")
        await service.aclose()

    @pytest.mark.asyncio
    async def test_unexpected_client_error(self):
        recorder = Recorder(httpx.Response(404))
        service = make_service(recorder)

        with pytest.raises(IdentityServiceError):
            await service.resolve(cookie="session=abc")

        assert len(recorder.requests) == 1
        await service.aclose()


class TestRetries:

    @pytest.mark.asyncio
    async def test_5xx_retried_until_exhausted(self):
        recorder = Recorder(httpx.Response(503))
        service = make_service(recorder)

        with pytest.raises(IdentityServiceError) as exc_info:
            await service.resolve(cookie="session=abc")

        assert len(recorder.requests) == 3
        assert exc_info.value.retry_after == service.circuit_breaker.recovery_timeout
        assert service.circuit_breaker.failure_count == 1
        await service.aclose()

    @pytest.mark.asyncio
    async def test_transport_error_retried(self):
        recorder = Recorder(httpx.ConnectError("refused"))
        service = make_service(recorder, max_attempts=2)

        with pytest.raises(IdentityServiceError):
            await service.resolve(cookie="session=abc")

        assert len(recorder.requests) == 2
        await service.aclose()

    @pytest.mark.asyncio
    async def test_recovers_within_retry_budget(self):
        recorder = Recorder(httpx.Response(502), httpx.Response(200, json=SESSION))
        service = make_service(recorder)

        identity = await service.resolve(cookie="session=abc")

        assert identity.user_id == "user-1"
        assert len(recorder.requests) == 2
        await service.aclose()

    @pytest.mark.asyncio
    async def test_backoff_configuration_is_not_deprecated(self):
        recorder = Recorder(httpx.Response(502), httpx.Response(200, json=SESSION))
        service = make_service(recorder)

        with warnings.catch_warnings():
            warnings.simplefilter("error", DeprecationWarning)
            identity = await service.resolve(cookie="session=abc")

        assert identity.user_id == "user-1"
        assert len(recorder.requests) == 2
        await service.aclose()

    @pytest.mark.asyncio
    async def test_breaker_opens_and_fails_fast(self):
        recorder = Recorder(httpx.Response(500))
        service = make_service(recorder, max_attempts=1, failure_threshold=2)

        for _ in range(2):
            with pytest.raises(IdentityServiceError):
                await service.resolve(cookie="session=abc")
        with pytest.raises(CircuitBreakerOpenError):
            await service.resolve(cookie="session=abc")

        assert len(recorder.requests) == 2
        await service.aclose()


class TestCircuitBreaker:

    def test_starts_closed(self):
        cb = CircuitBreaker()
        assert cb.state == CircuitBreaker.CLOSED
        assert cb.can_execute() is True

    def test_opens_at_threshold(self):
        cb = CircuitBreaker(failure_threshold=3)
        cb.record_failure()
        cb.record_failure()
        assert cb.state == CircuitBreaker.CLOSED
        cb.record_failure()
        assert cb.state == CircuitBreaker.OPEN

    def test_open_rejects_with_recovery_time(self):
        cb = CircuitBreaker(failure_threshold=2, recovery_timeout=30)
        cb.record_failure()
        cb.record_failure()

        with pytest.raises(CircuitBreakerOpenError) as exc_info:
            cb.can_execute()
        assert 1 <= exc_info.value.recovery_time <= 30

    def test_half_open_after_timeout_then_closes(self):
        cb = CircuitBreaker(failure_threshold=2, recovery_timeout=10)
        cb.record_failure()
        cb.record_failure()
        cb.last_failure_time -= 11

        assert cb.can_execute() is True
        assert cb.state == CircuitBreaker.HALF_OPEN

        cb.record_success()
        assert cb.state == CircuitBreaker.CLOSED
        assert cb.failure_count == 0

    def test_half_open_failure_reopens(self):
        cb = CircuitBreaker(failure_threshold=5)
        cb.state = CircuitBreaker.HALF_OPEN
        cb.record_failure()
        assert cb.state == CircuitBreaker.OPEN
