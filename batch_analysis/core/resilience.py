"""Resilience for the two things this service depends on: PostgreSQL and the PBS head node.

Database calls are retried with exponential backoff on transient failures.
Both services sit behind a circuit breaker: after enough consecutive
failures calls are refused until a reset timeout passes, then one call is
let through to probe the service.

Usage:
    from batch_analysis.core.resilience import remote_queue_circuit, with_db_retry

    row = await with_db_retry(pool, lambda conn: conn.fetchrow(query))

    async with remote_queue_circuit():
        output = await run_ssh_command(...)
"""

import asyncio
import random
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Callable, Optional

import asyncpg
import structlog

from batch_analysis.errors import RemoteQueueTimeoutError, TransportError

logger = structlog.get_logger(__name__)

DB_SERVICE = "postgres"
REMOTE_QUEUE_SERVICE = "pbs"


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_attempts: int = 3
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 10.0
    exponential_base: float = 2.0
    jitter_factor: float = 0.25  # Add up to 25% random jitter


@dataclass
class CircuitState:
    """Consecutive failure count and open window for one service."""

    failure_threshold: int = 5
    reset_timeout_seconds: float = 30.0

    failures: int = 0
    last_failure: Optional[datetime] = None
    open_until: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.open_until is not None

    def allows(self, service_name: str) -> bool:
        """True if a call may proceed. A lapsed open window lets one probe through."""
        if self.open_until is None:
            return True
        if datetime.now(timezone.utc) >= self.open_until:
            logger.info("circuit_half_open", service=service_name, failures=self.failures)
            return True
        return False

    def record_success(self, service_name: str) -> None:
        if self.failures or self.is_open:
            logger.info("circuit_closed", service=service_name, previous_failures=self.failures)
        self.failures = 0
        self.last_failure = None
        self.open_until = None

    def record_failure(self, service_name: str) -> None:
        now = datetime.now(timezone.utc)
        self.failures += 1
        self.last_failure = now

        if self.failures >= self.failure_threshold:
            self.open_until = now + timedelta(seconds=self.reset_timeout_seconds)
            logger.warning(
                "circuit_opened",
                service=service_name,
                failures=self.failures,
                reset_at=self.open_until.isoformat(),
            )


def _new_circuits() -> dict[str, CircuitState]:
    # ssh failures are slow, so the head node circuit trips sooner and stays open longer
    return {
        DB_SERVICE: CircuitState(),
        REMOTE_QUEUE_SERVICE: CircuitState(failure_threshold=3, reset_timeout_seconds=60.0),
    }


_circuits = _new_circuits()


class CircuitOpenError(RuntimeError):
    """Raised instead of calling a service whose circuit is open."""


def _calculate_backoff(attempt: int, config: RetryConfig) -> float:
    """Delay before retry ``attempt`` (0-indexed), with jitter."""
    delay = min(
        config.base_delay_seconds * (config.exponential_base**attempt),
        config.max_delay_seconds,
    )
    return delay + delay * config.jitter_factor * random.random()


# Connection loss, server shutdown, serialization failure, deadlock
TRANSIENT_SQLSTATES = {
    "08000",
    "08001",
    "08003",
    "08004",
    "08006",
    "57P01",
    "57P02",
    "57P03",
    "40001",
    "40P01",
}


def _is_transient_db_error(error: Exception) -> bool:
    """True for connection, timeout and pool errors plus retryable SQLSTATEs.

    Constraint violations and query errors are never transient.
    """
    if isinstance(
        error,
        (
            asyncpg.InterfaceError,
            asyncpg.InternalClientError,
            asyncpg.TooManyConnectionsError,
            ConnectionError,
            TimeoutError,
            asyncio.TimeoutError,
            OSError,
        ),
    ):
        return True

    if isinstance(error, asyncpg.PostgresError):
        return getattr(error, "sqlstate", None) in TRANSIENT_SQLSTATES

    return False


async def with_db_retry(
    pool: asyncpg.Pool,
    operation: Callable[[asyncpg.Connection], Any],
    config: Optional[RetryConfig] = None,
) -> Any:
    """Execute database operation with retry on transient failures.

    Args:
        pool: asyncpg connection pool
        operation: Async callable that takes a connection and returns result
        config: Optional retry configuration

    Returns:
        Result of the operation

    Raises:
        CircuitOpenError: If the database circuit is open
        Exception: If all retries exhausted or non-transient error
    """
    config = config or RetryConfig()
    circuit = _circuits[DB_SERVICE]

    if not circuit.allows(DB_SERVICE):
        raise CircuitOpenError(
            "Database circuit breaker is open - service recovering from outage"
        )

    last_error: Optional[Exception] = None

    for attempt in range(config.max_attempts):
        try:
            async with pool.acquire() as conn:
                result = await operation(conn)
            circuit.record_success(DB_SERVICE)
            return result

        except Exception as e:
            last_error = e

            if not _is_transient_db_error(e):
                logger.warning(
                    "db_non_transient_error",
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise

            delay = _calculate_backoff(attempt, config)
            logger.warning(
                "db_retry_attempt",
                attempt=attempt + 1,
                max_attempts=config.max_attempts,
                delay_seconds=round(delay, 2),
                error=str(e),
                error_type=type(e).__name__,
            )

            if attempt < config.max_attempts - 1:
                await asyncio.sleep(delay)

    circuit.record_failure(DB_SERVICE)
    logger.error("db_retries_exhausted", attempts=config.max_attempts, error=str(last_error))
    raise last_error  # type: ignore


@asynccontextmanager
async def remote_queue_circuit() -> AsyncIterator[None]:
    """Guard one call to the PBS head node.

    Only unreachable host and timeout errors count as failures; a command
    that ran and exited non-zero means the head node is up. While open,
    calls fail fast with a transient ``TransportError`` so callers back off
    the same way they do for a real connection failure. No retries here:
    the worker loop owns backoff for remote calls.
    """
    circuit = _circuits[REMOTE_QUEUE_SERVICE]
    if not circuit.allows(REMOTE_QUEUE_SERVICE):
        raise TransportError(
            f"PBS head node circuit open until {circuit.open_until.isoformat()}"
        )

    try:
        yield
    except (TransportError, RemoteQueueTimeoutError):
        circuit.record_failure(REMOTE_QUEUE_SERVICE)
        raise
    circuit.record_success(REMOTE_QUEUE_SERVICE)


def get_circuit_status() -> dict:
    """Get current circuit breaker status for health checks."""
    return {
        name: {
            "failures": circuit.failures,
            "is_open": circuit.is_open,
            "last_failure": circuit.last_failure.isoformat() if circuit.last_failure else None,
        }
        for name, circuit in _circuits.items()
    }


def reset_circuits() -> None:
    """Reset all circuit breakers. Used for testing."""
    global _circuits
    _circuits = _new_circuits()
