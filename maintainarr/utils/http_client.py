"""Async HTTP plumbing for the *arr APIs: retries on transport errors + circuit breaker."""
import time
from typing import Any, Callable, Dict, Optional

import httpx
import structlog
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = structlog.get_logger(__name__)

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half_open"


class CircuitOpenError(httpx.HTTPError):
    """Le disjoncteur du service est ouvert, aucun appel n'est tenté."""

    def __init__(self, service_name: str):
        super().__init__(f"Circuit breaker open for {service_name}")
        self.service_name = service_name


class CircuitBreaker:
    """Opens after ``failure_threshold`` consecutive failures.

    Once ``reset_after`` seconds have passed, a single trial call is let
    through (half-open); its outcome closes or re-opens the circuit. Other
    callers are refused while that trial is in flight.
    """

    def __init__(
        self,
        service_name: str,
        failure_threshold: int = 5,
        reset_after: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.service_name = service_name
        self.failure_threshold = failure_threshold
        self.reset_after = reset_after
        self.clock = clock
        self.failure_count = 0
        self.opened_at: Optional[float] = None
        self.state = CLOSED
        self.trial_in_flight = False

    def allow_request(self) -> bool:
        if self.state == CLOSED:
            return True
        if self.state == HALF_OPEN:
            if self.trial_in_flight:
                return False
            self.trial_in_flight = True
            return True
        if self.clock() - self.opened_at >= self.reset_after:
            self.state = HALF_OPEN
            self.trial_in_flight = True
            logger.info("circuit_breaker_half_open", service=self.service_name)
            return True
        return False

    def release_trial(self) -> None:
        """L'appel d'essai s'est terminé sans verdict (annulé): le suivant pourra réessayer."""
        self.trial_in_flight = False

    def record_success(self) -> None:
        self.trial_in_flight = False
        if self.state != CLOSED:
            logger.info("circuit_breaker_closed", service=self.service_name)
        self.failure_count = 0
        self.opened_at = None
        self.state = CLOSED

    def record_failure(self) -> None:
        self.trial_in_flight = False
        self.failure_count += 1
        if self.state == HALF_OPEN or self.failure_count >= self.failure_threshold:
            if self.state != OPEN:
                logger.warning(
                    "circuit_breaker_opened",
                    service=self.service_name,
                    failure_count=self.failure_count,
                )
            self.state = OPEN
            self.opened_at = self.clock()


def _log_retry(retry_state: RetryCallState):
    logger.warning(
        "http_retry_attempt",
        attempt=retry_state.attempt_number,
        exception=str(retry_state.outcome.exception()),
    )


class RobustHTTPClient:
    """Client partagé par les services Radarr/Sonarr.

    Only transport failures (connection refused, read timeouts...) are
    retried. Responses come back whatever their status: the caller knows
    what a 404 means on its endpoint. 5xx answers still count against the
    service's circuit.
    """

    def __init__(
        self,
        default_timeout: float = 30.0,
        failure_threshold: int = 5,
        reset_after: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.default_timeout = default_timeout
        self.failure_threshold = failure_threshold
        self.reset_after = reset_after
        self.transport = transport
        self.circuit_breakers: Dict[str, CircuitBreaker] = {}

    def breaker(self, service_name: str) -> CircuitBreaker:
        if service_name not in self.circuit_breakers:
            self.circuit_breakers[service_name] = CircuitBreaker(
                service_name, self.failure_threshold, self.reset_after
            )
        return self.circuit_breakers[service_name]

    @retry(
        stop=stop_after_attempt(4),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(httpx.TransportError),
        before_sleep=_log_retry,
        reraise=True,
    )
    async def send(
        self,
        method: str,
        url: str,
        service_name: str,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        timeout: Optional[float] = None,
    ) -> httpx.Response:
        breaker = self.breaker(service_name)
        if not breaker.allow_request():
            raise CircuitOpenError(service_name)

        try:
            async with httpx.AsyncClient(timeout=timeout or self.default_timeout, transport=self.transport) as client:
                response = await client.request(method, url, headers=headers, params=params, json=json)
        except httpx.TransportError as e:
            breaker.record_failure()
            logger.error(
                "http_request_failed",
                service=service_name,
                method=method,
                url=url,
                error=str(e),
                circuit_state=breaker.state,
            )
            raise
        except BaseException:
            # annulé (wait_for du deleter): pas de verdict sur le service
            breaker.release_trial()
            raise

        if response.status_code >= 500:
            breaker.record_failure()
        else:
            breaker.record_success()
        logger.debug("http_response", service=service_name, method=method, url=url, status=response.status_code)
        return response


_http_client: Optional[RobustHTTPClient] = None


def get_http_client() -> RobustHTTPClient:
    """Instance partagée (un disjoncteur par service pour tout le process)."""
    global _http_client
    if _http_client is None:
        _http_client = RobustHTTPClient()
    return _http_client
