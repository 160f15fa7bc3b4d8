"""
Collaborator call wrapper with timeout, retry, circuit breaker and telemetry.
Every outbound call to the bot-inference and agent-assignment services goes
through a :class:`GuardedCall`.
"""
import asyncio
import logging
import time
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, Awaitable, Callable, Optional, Tuple, TypeVar

from aiobreaker import CircuitBreaker, CircuitBreakerError
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..errors import AuthExpiredError, CollaboratorUnavailableError, TransientNetworkError
from ..utils import track_collaborator

logger = logging.getLogger(__name__)

T = TypeVar('T')


# ===========================
# Configuration
# ===========================

class CircuitBreakerConfig:
    """Configuration for a collaborator circuit breaker."""

    def __init__(
        self,
        fail_max: int = 5,
        reset_timeout: float = 60.0,
        exclude: Tuple[type, ...] = (AuthExpiredError,),
        name: Optional[str] = None
    ):
        """
        Args:
            fail_max: Consecutive failures before the circuit opens
            reset_timeout: Seconds before a half-open trial call
            exclude: Exception types that never count as failures
            name: Breaker name
        """
        self.fail_max = fail_max
        self.reset_timeout = reset_timeout
        self.exclude = exclude
        self.name = name or "default"


class RetryConfig:
    """Configuration for retrying transient collaborator failures."""

    def __init__(
        self,
        max_attempts: int = 2,
        wait_multiplier: float = 1.0,
        wait_min: float = 0.5,
        wait_max: float = 5.0,
        retry_exceptions: Tuple[type, ...] = (TransientNetworkError,)
    ):
        self.max_attempts = max_attempts
        self.wait_multiplier = wait_multiplier
        self.wait_min = wait_min
        self.wait_max = wait_max
        self.retry_exceptions = retry_exceptions


# ===========================
# Logging context
# ===========================

@asynccontextmanager
async def collaborator_call_context(
    service: str,
    operation: str,
    ticket_id: Optional[str] = None,
    **metadata
):
    """
    Log and count one collaborator call.

    Example:
        async with collaborator_call_context('support_bot', 'infer', ticket_id='t1'):
            result = await client.infer('t1', 'hello')
    """
    start_time = time.monotonic()
    log_context = {
        "service": service,
        "operation": operation,
        "ticket_id": ticket_id,
        **metadata
    }

    logger.debug(f"Collaborator call started: {service}.{operation}", extra=log_context)

    try:
        yield log_context

    except Exception as e:
        duration = time.monotonic() - start_time
        outcome = "unavailable" if isinstance(e, CollaboratorUnavailableError) else "error"
        track_collaborator(service, operation, outcome)
        logger.warning(
            f"Collaborator call failed: {service}.{operation} "
            f"(duration: {duration:.3f}s, error: {e})",
            extra={
                **log_context,
                "duration_seconds": duration,
                "status": outcome,
                "error_type": type(e).__name__
            }
        )
        raise

    else:
        duration = time.monotonic() - start_time
        track_collaborator(service, operation, "success")
        logger.info(
            f"Collaborator call completed: {service}.{operation} "
            f"(duration: {duration:.3f}s)",
            extra={**log_context, "duration_seconds": duration, "status": "success"}
        )


# ===========================
# Guarded call
# ===========================

class GuardedCall:
    """
    Timeout, optional retry and a circuit breaker around one collaborator.

    Each collaborator instance owns its breaker, so two clients (or two
    tests) never share failure counts.
    """

    def __init__(
        self,
        service: str,
        timeout: Optional[float] = None,
        retry_config: Optional[RetryConfig] = None,
        breaker_config: Optional[CircuitBreakerConfig] = None
    ):
        self.service = service
        self.timeout = timeout
        self.retry_config = retry_config

        config = breaker_config or CircuitBreakerConfig(name=service)
        self.breaker = CircuitBreaker(
            fail_max=config.fail_max,
            timeout_duration=timedelta(seconds=config.reset_timeout),
            exclude=list(config.exclude),
            name=config.name
        )
        logger.debug(
            f"Created circuit breaker for '{service}': "
            f"fail_max={config.fail_max}, reset_timeout={config.reset_timeout}s"
        )

    @property
    def state(self) -> str:
        return str(self.breaker.current_state)

    async def __call__(
        self,
        operation: str,
        func: Callable[..., Awaitable[T]],
        *args: Any,
        ticket_id: Optional[str] = None,
        **kwargs: Any
    ) -> T:
        """
        Run ``func(*args, **kwargs)`` under the guard.

        Raises:
            CollaboratorUnavailableError: Circuit open or call timed out
            AuthExpiredError: Collaborator rejected the credentials
            TransientNetworkError: Transport failure after retries
        """
        async with collaborator_call_context(self.service, operation, ticket_id=ticket_id):
            try:
                if self.retry_config is None:
                    return await self._attempt(func, *args, **kwargs)

                async for attempt in AsyncRetrying(
                    stop=stop_after_attempt(self.retry_config.max_attempts),
                    wait=wait_exponential(
                        multiplier=self.retry_config.wait_multiplier,
                        min=self.retry_config.wait_min,
                        max=self.retry_config.wait_max
                    ),
                    retry=retry_if_exception_type(self.retry_config.retry_exceptions),
                    before_sleep=before_sleep_log(logger, logging.WARNING),
                    reraise=True
                ):
                    with attempt:
                        return await self._attempt(func, *args, **kwargs)

            except CircuitBreakerError as e:
                logger.warning(
                    f"Circuit breaker open for '{self.service}': {e}",
                    extra={"service": self.service, "operation": operation, "breaker_state": self.state}
                )
                raise CollaboratorUnavailableError(
                    f"{self.service} temporarily unavailable"
                ) from e

    async def _attempt(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        return await self.breaker.call_async(self._with_timeout, func, *args, **kwargs)

    async def _with_timeout(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        if not self.timeout:
            return await func(*args, **kwargs)
        try:
            return await asyncio.wait_for(func(*args, **kwargs), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise CollaboratorUnavailableError(
                f"{self.service} timed out after {self.timeout}s"
            )


__all__ = [
    'CircuitBreakerConfig',
    'RetryConfig',
    'GuardedCall',
    'collaborator_call_context',
]
