from __future__ import annotations

import logging
import random
from typing import Callable

from genqueue.clock import ManualClock
from genqueue.config import DEFAULT_REMOTE_TIMEOUT_SECONDS, LeaderConfig, SchedulerConfig
from genqueue.core import QueueCore
from genqueue.models import CredentialRecord, PollResult, QueueItem, SubmitResult
from genqueue.remote import RemoteService
from genqueue.store import KeyValueStore, MemoryStore


def quiet_logger() -> logging.Logger:
    logger = logging.getLogger("test_genqueue")
    logger.handlers.clear()
    logger.addHandler(logging.NullHandler())
    logger.propagate = False
    return logger


class FakeRemote:
    def __init__(self, active: int = 0) -> None:
        self.active = active
        self.poll_error: Exception | None = None
        self.responses: list[SubmitResult | Exception] = []
        self.submitted: list[QueueItem] = []
        self.credentials: list[CredentialRecord] = []
        self.polls = 0
        self.on_submit: Callable[[QueueItem], None] | None = None

    def poll_active(self) -> PollResult:
        self.polls += 1
        if self.poll_error is not None:
            raise self.poll_error
        return PollResult(active_count=self.active, total_count=self.active)

    def submit(self, item: QueueItem, credential: CredentialRecord) -> SubmitResult:
        self.submitted.append(item)
        self.credentials.append(credential)
        if self.on_submit is not None:
            self.on_submit(item)
        outcome = self.responses.pop(0) if self.responses else SubmitResult(ok=True, status_code=200, body={})
        if isinstance(outcome, Exception):
            raise outcome
        if outcome.ok:
            self.active += 1
        return outcome


def rate_limited(body: object) -> SubmitResult:
    return SubmitResult(ok=False, status_code=429, body=body)


def make_core(
    *,
    store: KeyValueStore | None = None,
    clock: ManualClock | None = None,
    remote: RemoteService | None = None,
    instance_id: str = "tab-a",
    scheduler_config: SchedulerConfig | None = None,
    leader_config: LeaderConfig | None = None,
    submit_timeout_seconds: float = DEFAULT_REMOTE_TIMEOUT_SECONDS,
) -> QueueCore:
    return QueueCore(
        store if store is not None else MemoryStore(),
        remote if remote is not None else FakeRemote(),
        clock=clock if clock is not None else ManualClock(),
        scheduler_config=scheduler_config,
        leader_config=leader_config,
        instance_id=instance_id,
        logger=quiet_logger(),
        rng=random.Random(7),
        submit_timeout_seconds=submit_timeout_seconds,
    )
