"""Retry with exponential backoff and circuit breaking for vector store calls."""

import threading
import time
from enum import Enum
from typing import Any, Callable, TypeVar

import httpx

from ..logger import logger
from .errors import CircuitOpenError, StoreUnavailable, VectorStoreRequestError

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY_SECONDS = 0.5
DEFAULT_FAILURE_THRESHOLD = 5
DEFAULT_RESET_TIMEOUT_SECONDS = 30.0


def is_transient(error: Exception) -> bool:
    """Return True for failures worth retrying: transport errors, 5xx and 429."""
    if isinstance(error, httpx.HTTPStatusError):
        status_code = error.response.status_code
        return status_code >= 500 or status_code == 429
    return isinstance(error, httpx.TransportError)


def _response_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        return str(body.get("error") or body.get("message") or body.get("detail") or body)
    return str(body)


class ConnectionManager:
    """Runs an operation, retrying transient failures with exponential backoff.

    The first attempt is followed by at most ``max_retries`` retries, waiting
    ``base_delay_seconds * 2**attempt`` between them.
    """

    def __init__(
        self,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_delay_seconds: float = DEFAULT_BASE_DELAY_SECONDS,
    ):
        if max_retries < 0:
            raise ValueError("max_retries must be non-negative")
        if base_delay_seconds < 0:
            raise ValueError("base_delay_seconds must be non-negative")
        self.max_retries = max_retries
        self.base_delay_seconds = base_delay_seconds

    def execute(self, operation: Callable[[], T], description: str = "vector store call") -> T:
        """Run operation with bounded retries.

        Raises:
            VectorStoreRequestError: The store rejected the request (4xx other than 429).
            StoreUnavailable: Every attempt failed with a transient error.
        """
        attempts = self.max_retries + 1
        last_error: Exception | None = None

        for attempt in range(attempts):
            try:
                return operation()
            except httpx.HTTPStatusError as e:
                if not is_transient(e):
                    status_code = e.response.status_code
                    raise VectorStoreRequestError(
                        f"{description} rejected with status {status_code}: "
                        f"{_response_detail(e.response)}",
                        status_code=status_code,
                    ) from e
                last_error = e
            except httpx.TransportError as e:
                last_error = e

            if attempt < attempts - 1:
                delay = self.base_delay_seconds * (2**attempt)
                logger.warn(
                    "vector store call failed, retrying",
                    operation=description,
                    attempt=attempt + 1,
                    max_retries=self.max_retries,
                    delay_seconds=delay,
                    error=str(last_error),
                )
                time.sleep(delay)

        logger.error(
            "vector store unavailable after retries",
            operation=description,
            attempts=attempts,
            error=str(last_error),
        )
        raise StoreUnavailable(
            f"{description} failed after {attempts} attempts: {last_error}"
        ) from last_error


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Fails fast while a remote dependency is degraded.

    CLOSED counts consecutive failures and opens at ``failure_threshold``.
    OPEN rejects every call with CircuitOpenError until ``reset_timeout_seconds``
    have elapsed, then moves to HALF_OPEN. HALF_OPEN lets one trial call
    through: success closes the circuit, failure opens it again with a fresh
    cooldown. Exceptions listed in ``excluded_exceptions`` mean the dependency
    answered, so they count as successes.
    """

    def __init__(
        self,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        reset_timeout_seconds: float = DEFAULT_RESET_TIMEOUT_SECONDS,
        name: str = "vector_store",
        excluded_exceptions: tuple[type[BaseException], ...] = (VectorStoreRequestError,),
        clock: Callable[[], float] = time.monotonic,
    ):
        if failure_threshold <= 0:
            raise ValueError("failure_threshold must be positive")
        if reset_timeout_seconds < 0:
            raise ValueError("reset_timeout_seconds must be non-negative")
        self.failure_threshold = failure_threshold
        self.reset_timeout_seconds = reset_timeout_seconds
        self.name = name
        self.excluded_exceptions = excluded_exceptions
        self._clock = clock

        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at: float | None = None
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._current_state()

    @property
    def failure_count(self) -> int:
        with self._lock:
            return self._failure_count

    def _current_state(self) -> CircuitState:
        # Caller holds the lock
        if (
            self._state is CircuitState.OPEN
            and self._clock() - self._opened_at >= self.reset_timeout_seconds
        ):
            self._state = CircuitState.HALF_OPEN
            self._trial_in_flight = False
            logger.info("circuit half-open", breaker=self.name)
        return self._state

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._trial_in_flight = False

    def call(self, func: Callable[[], T]) -> T:
        """Run func through the breaker.

        Raises:
            CircuitOpenError: If the circuit is open or a half-open trial is in flight.
        """
        self._before_call()
        try:
            result = func()
        except self.excluded_exceptions:
            self._record_success()
            raise
        except Exception as e:
            self._record_failure(e)
            raise
        except BaseException:
            self._release_trial()
            raise
        self._record_success()
        return result

    def _before_call(self) -> None:
        with self._lock:
            state = self._current_state()
            if state is CircuitState.OPEN:
                remaining = self.reset_timeout_seconds - (self._clock() - self._opened_at)
                raise CircuitOpenError(
                    f"circuit '{self.name}' is open, retry in {max(remaining, 0):.1f}s"
                )
            if state is CircuitState.HALF_OPEN:
                if self._trial_in_flight:
                    raise CircuitOpenError(
                        f"circuit '{self.name}' is half-open with a trial call in flight"
                    )
                self._trial_in_flight = True

    def _release_trial(self) -> None:
        # The state is left unchanged, only the half-open slot is freed
        with self._lock:
            self._trial_in_flight = False

    def _record_success(self) -> None:
        with self._lock:
            if self._state is not CircuitState.CLOSED:
                logger.info("circuit closed", breaker=self.name)
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._opened_at = None
            self._trial_in_flight = False

    def _record_failure(self, error: Exception) -> None:
        with self._lock:
            if self._state is CircuitState.HALF_OPEN:
                self._open()
                logger.warn(
                    "circuit re-opened after failed trial call",
                    breaker=self.name,
                    error=str(error),
                )
                return

            self._failure_count += 1
            if (
                self._state is CircuitState.CLOSED
                and self._failure_count >= self.failure_threshold
            ):
                self._open()
                logger.warn(
                    "circuit opened",
                    breaker=self.name,
                    failure_count=self._failure_count,
                    reset_timeout_seconds=self.reset_timeout_seconds,
                    error=str(error),
                )

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._opened_at = None
            self._trial_in_flight = False

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "name": self.name,
                "state": self._current_state().value,
                "failure_count": self._failure_count,
                "failure_threshold": self.failure_threshold,
                "reset_timeout_seconds": self.reset_timeout_seconds,
            }
