"""
Retry coordinator - bounded retry around dispatch for transient failures.

Policy (configurable via settings):
- WEBHOOK_RETRY_ATTEMPTS total attempts (default 3)
- WEBHOOK_RETRY_DELAYS between attempts, index clamped (default 1s, 5s, 15s)
- WEBHOOK_RETRY_DEADLINE_SECONDS overall budget per event (default 60s); the
  loop stops early when the next sleep would cross it, and each attempt is
  cancelled once the remaining budget runs out

Only TransientError failures are retried. Exhaustion writes one
webhook_retries_exhausted entry at high severity.
"""
import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional, Sequence

from billing_sentinel.schemas.audit import AuditEvent, Severity
from billing_sentinel.schemas.stripe_events import WebhookEvent
from billing_sentinel.services.dispatcher import DispatchResult, EventDispatcher

logger = logging.getLogger(__name__)

DEFAULT_ATTEMPTS = 3
DEFAULT_DELAYS = (1.0, 5.0, 15.0)
DEFAULT_DEADLINE_SECONDS = 60.0
MIN_ATTEMPT_TIMEOUT = 0.05


class RetryCoordinator:
    def __init__(
        self,
        dispatcher: EventDispatcher,
        audit,
        max_attempts: int = DEFAULT_ATTEMPTS,
        delays: Sequence[float] = DEFAULT_DELAYS,
        deadline_seconds: float = DEFAULT_DEADLINE_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.dispatcher = dispatcher
        self.audit = audit
        self.max_attempts = max_attempts
        self.delays = list(delays) or [0.0]
        self.deadline_seconds = deadline_seconds
        self._sleep = sleep
        self._clock = clock

    @classmethod
    def from_settings(cls, dispatcher: EventDispatcher, audit, settings) -> "RetryCoordinator":
        return cls(
            dispatcher,
            audit,
            max_attempts=settings.webhook_retry_attempts,
            delays=settings.webhook_retry_delays,
            deadline_seconds=settings.webhook_retry_deadline_seconds,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay after the given (1-based) failed attempt."""
        return self.delays[min(attempt - 1, len(self.delays) - 1)]

    async def process_with_retry(self, event: WebhookEvent) -> DispatchResult:
        started = self._clock()
        attempt = 0
        result: Optional[DispatchResult] = None

        while attempt < self.max_attempts:
            attempt += 1
            remaining = self.deadline_seconds - (self._clock() - started)
            result = await self.dispatcher.dispatch(
                event, attempt=attempt, timeout=max(remaining, MIN_ATTEMPT_TIMEOUT),
            )
            if not (result.is_failure and result.is_transient):
                return result
            if attempt >= self.max_attempts:
                break

            delay = self.delay_for(attempt)
            elapsed = self._clock() - started
            if elapsed + delay > self.deadline_seconds:
                logger.warning(
                    "Retry deadline reached for %s after %d attempts (%.1fs elapsed)",
                    event.id, attempt, elapsed,
                    extra={"event_id": event.id, "event_type": event.type},
                )
                break

            logger.info(
                "Retrying %s in %.1fs (attempt %d/%d)",
                event.id, delay, attempt + 1, self.max_attempts,
                extra={"event_id": event.id, "event_type": event.type},
            )
            await self._sleep(delay)

        await self.audit.log(
            AuditEvent.WEBHOOK_RETRIES_EXHAUSTED,
            {
                "event_id": event.id,
                "event_type": event.type,
                "attempts": attempt,
                "error": str(result.error) if result else None,
            },
            Severity.HIGH,
        )
        logger.error(
            "Retries exhausted for %s after %d attempts: %s",
            event.id, attempt, result.message if result else "-",
            extra={"event_id": event.id, "event_type": event.type},
        )
        return result
