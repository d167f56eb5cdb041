from __future__ import annotations

import random
from dataclasses import dataclass

from .classifier import (
    AuthError,
    Classification,
    ConcurrentLimit,
    DailyLimit,
    OtherFailure,
    UnknownRateLimit,
)
from .models import ItemStatus, QueueItem

CREDENTIAL_NEEDED_MESSAGE = "credential needed"
MAX_RETRIES_MESSAGE = "rate limit (max retries)"


@dataclass(frozen=True, slots=True)
class Decision:
    """What the scheduler must do after one failed submission."""

    reason: str
    item_status: ItemStatus
    error_message: str | None = None
    count_retry: bool = False
    retry_after: float | None = None
    pause_for_daily_limit: bool = False
    resume_at: float | None = None
    active_task_count: int | None = None
    invalidate_credential: bool = False


class BackoffController:
    def __init__(
        self,
        *,
        concurrency_limit: int = 3,
        base_seconds: float = 10.0,
        jitter_seconds: float = 5.0,
        max_unknown_retries: int = 3,
        rng: random.Random | None = None,
    ) -> None:
        self.concurrency_limit = concurrency_limit
        self.base_seconds = base_seconds
        self.jitter_seconds = jitter_seconds
        self.max_unknown_retries = max_unknown_retries
        self.rng = rng or random.Random()

    def backoff_delay(self) -> float:
        return self.base_seconds + self.rng.uniform(0, self.jitter_seconds)

    def decide(self, classification: Classification, item: QueueItem) -> Decision:
        if isinstance(classification, ConcurrentLimit):
            return Decision(
                reason="concurrent_limit",
                item_status=ItemStatus.QUEUED,
                retry_after=self.backoff_delay(),
                active_task_count=self.concurrency_limit,
            )
        if isinstance(classification, DailyLimit):
            return Decision(
                reason="daily_limit",
                item_status=ItemStatus.QUEUED,
                pause_for_daily_limit=True,
                resume_at=classification.reset_time,
            )
        if isinstance(classification, AuthError):
            return Decision(
                reason="auth_error",
                item_status=ItemStatus.ERROR,
                error_message=CREDENTIAL_NEEDED_MESSAGE,
                invalidate_credential=True,
            )
        if isinstance(classification, UnknownRateLimit):
            if item.retry_count < self.max_unknown_retries:
                return Decision(
                    reason="unknown_rate_limit",
                    item_status=ItemStatus.QUEUED,
                    count_retry=True,
                    retry_after=self.backoff_delay(),
                )
            return Decision(
                reason="unknown_rate_limit_exhausted",
                item_status=ItemStatus.ERROR,
                error_message=MAX_RETRIES_MESSAGE,
            )
        if isinstance(classification, OtherFailure):
            return Decision(
                reason="other",
                item_status=ItemStatus.ERROR,
                error_message=classification.message,
            )
        raise TypeError(f"Unhandled classification: {classification!r}")

    def decide_network_error(self, message: str) -> Decision:
        return Decision(reason="network_error", item_status=ItemStatus.QUEUED, error_message=message)
