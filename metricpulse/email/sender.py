"""Notification delivery with fixed-step backoff."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime

from metricpulse.utils.dates import utc_now
from metricpulse.utils.esp import EmailMessage, EmailProvider

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3
RETRY_DELAYS = (60.0, 300.0, 900.0)


@dataclass(frozen=True, slots=True)
class SendAttempt:
    attempt: int
    success: bool
    at: datetime
    message_id: str | None = None
    error: str | None = None


@dataclass(slots=True)
class SendOutcome:
    success: bool
    message_id: str | None = None
    error: str | None = None
    attempts: list[SendAttempt] = field(default_factory=list)


AttemptHook = Callable[[SendAttempt], Awaitable[None]]


class NotificationSender:
    """Sends one message, retrying up to ``max_attempts`` times.

    The wait before attempt ``n + 1`` is ``delays[n - 1]``. Waiting suspends
    only the calling task.
    """

    def __init__(
        self,
        provider: EmailProvider,
        *,
        max_attempts: int = MAX_ATTEMPTS,
        delays: Sequence[float] = RETRY_DELAYS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.provider = provider
        self.max_attempts = max_attempts
        self.delays = tuple(delays)
        self._sleep = sleep
        self._clock = clock

    def delay_after(self, attempt: int) -> float:
        if not self.delays:
            return 0.0
        return self.delays[min(attempt - 1, len(self.delays) - 1)]

    async def send_with_retry(self, message: EmailMessage, *, on_attempt: AttemptHook | None = None) -> SendOutcome:
        outcome = SendOutcome(success=False)
        for attempt in range(1, self.max_attempts + 1):
            try:
                message_id = await self.provider.send(message)
            except Exception as exc:
                record = SendAttempt(attempt=attempt, success=False, at=self._clock(), error=str(exc) or type(exc).__name__)
                logger.warning("Send to %s failed (attempt %s/%s): %s", message.to, attempt, self.max_attempts, record.error)
            else:
                record = SendAttempt(attempt=attempt, success=True, at=self._clock(), message_id=message_id)
            outcome.attempts.append(record)
            if on_attempt is not None:
                await on_attempt(record)
            if record.success:
                outcome.success = True
                outcome.message_id = record.message_id
                outcome.error = None
                return outcome
            outcome.error = record.error
            if attempt < self.max_attempts:
                await self._sleep(self.delay_after(attempt))
        logger.error("Giving up on %s after %s attempts: %s", message.to, self.max_attempts, outcome.error)
        return outcome
