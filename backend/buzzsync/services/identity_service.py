"""
BuzzSync Backend — Identity Service (External Auth Provider Client)
=====================================================================

What:  Resolves the caller's forwarded session cookie or bearer token into an
       Identity (user id + role) by asking the external auth provider.
Why:   Credential issuance lives elsewhere; this service only needs to know
       who is calling and whether they are an admin.
How:   GET {auth_base_url}{auth_session_path} with the caller's Cookie and
       Authorization headers forwarded unmodified, via httpx.

Resilience Strategy:
    1. Tenacity retry with exponential backoff + jitter for transport errors
       and 5xx responses
    2. Circuit breaker so a dead provider fails requests instantly instead of
       holding them through every retry
    3. 401/403 and "no user" bodies are answers, not failures: they are never
       retried and never count against the breaker

Error Handling Chain:
    no credentials              → Unauthorized (no network call)
    provider says no            → Unauthorized
    retries exhausted           → IdentityServiceError + breaker failure
    breaker OPEN                → CircuitBreakerOpenError (instant)
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    RetryError,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from buzzsync.exceptions import CircuitBreakerOpenError, IdentityServiceError, Unauthorized

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    user_id: str
    role: Optional[str] = None

    def has_role(self, role: str) -> bool:
        return self.role == role


# ══════════════════════════════════════════════════════════════════════════
# Circuit Breaker Implementation
# ══════════════════════════════════════════════════════════════════════════

class CircuitBreaker:
    """
    Circuit breaker guarding calls to the auth provider.

    State Machine:
        CLOSED (normal operation)
            → On failure: increment failure_count
            → When failure_count >= threshold: transition to OPEN

        OPEN (rejecting all requests)
            → All calls raise CircuitBreakerOpenError immediately
            → After recovery_timeout seconds: transition to HALF_OPEN

        HALF_OPEN (testing recovery)
            → Allow ONE request through
            → On success: transition to CLOSED (reset failure_count)
            → On failure: transition back to OPEN (reset timer)

    Not thread-safe; uvicorn async workers share one event loop per process.
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(self, failure_threshold: int = 5, recovery_timeout: int = 30):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.failure_count = 0
        self.state = self.CLOSED
        self.last_failure_time: Optional[float] = None

    def can_execute(self) -> bool:
        """
        Returns True when a call may proceed.

        Raises:
            CircuitBreakerOpenError if OPEN and the recovery timeout hasn't elapsed.
        """
        if self.state == self.CLOSED:
            return True

        if self.state == self.OPEN:
            elapsed = time.monotonic() - (self.last_failure_time or 0)
            if elapsed >= self.recovery_timeout:
                logger.info("Identity circuit breaker HALF_OPEN after %.1fs", elapsed)
                self.state = self.HALF_OPEN
                return True
            remaining = max(1, int(self.recovery_timeout - elapsed))
            raise CircuitBreakerOpenError(recovery_time=remaining)

        return True

    def record_success(self) -> None:
        if self.state == self.HALF_OPEN:
            logger.info("Identity circuit breaker CLOSED (provider recovered)")
        self.failure_count = 0
        self.state = self.CLOSED
        self.last_failure_time = None

    def record_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = time.monotonic()

        if self.state == self.HALF_OPEN:
            logger.warning("Identity circuit breaker returning to OPEN (trial call failed)")
            self.state = self.OPEN
        elif self.failure_count >= self.failure_threshold:
            logger.warning(
                "Identity circuit breaker OPENING after %d consecutive failures",
                self.failure_count,
            )
            self.state = self.OPEN


class _ProviderUnavailable(Exception):
    """5xx from the provider; retryable."""

    def __init__(self, status_code: int):
        super().__init__(f"auth provider returned HTTP {status_code}")
        self.status_code = status_code


# ══════════════════════════════════════════════════════════════════════════
# Identity Service
# ══════════════════════════════════════════════════════════════════════════

class IdentityService:
    """
    Client for the external session endpoint.

    One instance per application (created by the factory, closed in the
    lifespan). The httpx client may be injected, which is how tests plug in
    an httpx.MockTransport.
    """

    def __init__(
        self,
        base_url: str,
        session_path: str = "/api/auth/get-session",
        timeout_seconds: float = 5.0,
        max_attempts: int = 3,
        min_wait: float = 0.5,
        max_wait: float = 4.0,
        failure_threshold: int = 5,
        recovery_timeout: int = 30,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.session_path = session_path
        self.max_attempts = max_attempts
        self.min_wait = min_wait
        self.max_wait = max_wait
        self.circuit_breaker = CircuitBreaker(
            failure_threshold=failure_threshold,
            recovery_timeout=recovery_timeout,
        )
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout_seconds)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def resolve(
        self,
        cookie: Optional[str] = None,
        authorization: Optional[str] = None,
    ) -> Identity:
        """
        Resolve forwarded credentials into an Identity.

        Raises:
            Unauthorized:            no credentials, or the provider rejected them
            IdentityServiceError:    provider unreachable after retries
            CircuitBreakerOpenError: too many recent provider failures
        """
        if not cookie and not authorization:
            raise Unauthorized()

        self.circuit_breaker.can_execute()

        headers: Dict[str, str] = {}
        if cookie:
            headers["Cookie"] = cookie
        if authorization:
            headers["Authorization"] = authorization

        start = time.perf_counter()
        try:
            response = await self._fetch_session(headers)
        except RetryError as e:
            self.circuit_breaker.record_failure()
            cause = e.last_attempt.exception() if e.last_attempt else None
            logger.error(
                "Auth provider unreachable after %d attempt(s): %s",
                self.max_attempts,
                type(cause).__name__ if cause else "unknown",
            )
            raise IdentityServiceError(
                retry_after=self.circuit_breaker.recovery_timeout,
                context={"attempts": self.max_attempts},
            ) from e

        self.circuit_breaker.record_success()
        logger.debug(
            "Auth provider answered %d in %.0fms",
            response.status_code,
            (time.perf_counter() - start) * 1000,
        )

        if response.status_code in (401, 403):
            raise Unauthorized(message="Session is invalid or has expired")
        if response.status_code >= 400:
            logger.error("Auth provider returned unexpected HTTP %d", response.status_code)
            raise IdentityServiceError(context={"status_code": response.status_code})

        try:
            body: Any = response.json()
        except ValueError:
            logger.error("Auth provider returned a non-JSON session body")
            raise IdentityServiceError(message="The identity service returned an invalid response")

        user = body.get("user") if isinstance(body, dict) else None
        if not isinstance(user, dict) or not user.get("id"):
            raise Unauthorized(message="Session is invalid or has expired")

        return Identity(user_id=str(user["id"]), role=user.get("role"))

    async def _fetch_session(self, headers: Dict[str, str]) -> httpx.Response:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type((httpx.TransportError, _ProviderUnavailable)),
            stop=stop_after_attempt(self.max_attempts),
            wait=(
                wait_exponential(multiplier=self.min_wait, max=self.max_wait)
                + wait_random(0, self.min_wait)
            ),
            before_sleep=before_sleep_log(logger, logging.WARNING),
        ):
            with attempt:
                response = await self._client.get(self.session_path, headers=headers)
                if response.status_code >= 500:
                    raise _ProviderUnavailable(response.status_code)
                return response
