"""
Retry/Timeout Executor

One generic wrapper for every remote call in the pipeline. Call sites pick a
RetryPolicy (data) instead of re-implementing retry loops:

    result = await executor.execute(
        lambda attempt: client.enrich(blob, mime, name, report=attempt.report),
        ENRICHMENT_POLICY,
        label="enrichment",
    )

Per attempt:
  1. Race the operation against policy.timeout (asyncio.wait_for).
     A breach raises OperationTimeoutError tagged with the attempt number
     and the last sub-stage the operation reported via attempt.report().
  2. On error, ask the FaultClassifier:
        permanent → raise immediately (remaining budget is not consumed)
        transient → sleep min(base * attempt, cap) + jitter, retry
        unknown   → like transient, but only unknown_retry_allowance retries
  3. After max_retries attempts, raise RetryExhaustedError carrying the
     last underlying error and the number of attempts made.

The operation runs at most policy.max_retries times.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from app.core.config import Settings, settings
from app.core.exceptions import (
    DocumentNotFoundError,
    OperationTimeoutError,
    PermanentServiceError,
    RetryExhaustedError,
    ValidationError,
)
from app.resilience.faults import FaultClass, FaultClassifier, FaultTracker

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RetryPolicy:
    name:        str
    timeout:     float    # seconds per attempt
    max_retries: int      # total attempts, including the first
    base_delay:  float    # seconds; multiplied by the attempt number
    cap_delay:   float
    jitter:      float = 0.25

    def backoff(self, attempt: int) -> float:
        """Delay before the attempt that follows `attempt` (jitter excluded)."""
        return min(self.base_delay * attempt, self.cap_delay)

    @classmethod
    def from_settings(cls, name: str, config: Settings) -> RetryPolicy:
        """Read `<name>_timeout`, `<name>_max_retries`, `<name>_base_delay`, `<name>_cap_delay`."""
        return cls(
            name=name,
            timeout=getattr(config, f"{name}_timeout"),
            max_retries=getattr(config, f"{name}_max_retries"),
            base_delay=getattr(config, f"{name}_base_delay"),
            cap_delay=getattr(config, f"{name}_cap_delay"),
        )


def policies(config: Settings) -> tuple[RetryPolicy, RetryPolicy]:
    """(enrichment, persistence) policies for one Settings instance."""
    return RetryPolicy.from_settings("enrichment", config), RetryPolicy.from_settings("persistence", config)


ENRICHMENT_POLICY, PERSISTENCE_POLICY = policies(settings)


# ---------------------------------------------------------------------------
# Attempt context
# ---------------------------------------------------------------------------

@dataclass
class Attempt:
    """Handed to the operation so it can report its current sub-stage."""
    number:      int
    max_retries: int
    stage:       str | None = None

    def report(self, stage: str) -> None:
        self.stage = stage


ProgressCallback = Callable[[Attempt], None]


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------

class RetryExecutor:
    """
    Stateless between calls: every execute() gets its own FaultTracker, so
    concurrent pipelines never share failure counts.
    """

    def __init__(
        self,
        classifier: FaultClassifier | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self._classifier = classifier or FaultClassifier()
        self._sleep = sleep
        self._rng = rng

    async def execute(
        self,
        operation: Callable[[Attempt], Awaitable[T]],
        policy: RetryPolicy,
        on_progress: ProgressCallback | None = None,
        label: str = "operation",
    ) -> T:
        tracker = FaultTracker(max_failures=policy.max_retries)
        last_error: BaseException | None = None
        attempt = 0

        while attempt < policy.max_retries:
            attempt += 1
            ctx = Attempt(number=attempt, max_retries=policy.max_retries)
            if on_progress is not None:
                on_progress(ctx)

            try:
                result = await asyncio.wait_for(operation(ctx), timeout=policy.timeout)
            except asyncio.TimeoutError:
                last_error = OperationTimeoutError(
                    f"{label} timed out after {policy.timeout}s "
                    f"(attempt {attempt}, stage={ctx.stage or 'unknown'})",
                    attempt=attempt,
                    stage=ctx.stage,
                )
                fault = FaultClass.TRANSIENT
            except Exception as exc:
                last_error = exc
                fault = self._classifier.classify(exc)
            else:
                tracker.record_success()
                if attempt > 1:
                    logger.info("Retry ok | op=%s attempt=%d/%d", label, attempt, policy.max_retries)
                return result

            tracker.record_failure(fault)
            logger.warning(
                "Attempt failed | op=%s policy=%s attempt=%d/%d fault=%s stage=%s error=%s",
                label, policy.name, attempt, policy.max_retries,
                fault.value, ctx.stage, last_error,
            )

            if fault is FaultClass.PERMANENT:
                if isinstance(last_error, (PermanentServiceError, ValidationError, DocumentNotFoundError)):
                    raise last_error
                raise PermanentServiceError(str(last_error), service=label) from last_error

            if (
                fault is FaultClass.UNKNOWN
                and tracker.unknown_failures > self._classifier.unknown_retry_allowance
            ):
                break

            if attempt < policy.max_retries:
                delay = policy.backoff(attempt) + self._rng() * policy.jitter
                await self._sleep(delay)

        raise RetryExhaustedError(
            f"{label} failed after {attempt} attempt(s): {last_error}",
            attempts=attempt,
            last_error=last_error,
        ) from last_error
