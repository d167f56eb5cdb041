from __future__ import annotations

import logging
import random
from collections.abc import Mapping
from typing import Any, Callable

from .app_logging import LOGGER_NAME, log_with_fields
from .backoff import BackoffController
from .clock import Clock, SystemClock, Timer, TimerLoop
from .config import DEFAULT_REMOTE_TIMEOUT_SECONDS, LeaderConfig, SchedulerConfig
from .credentials import CREDENTIAL_KEY, CredentialLifecycle
from .errors import ValidationError
from .events import (
    AUTOMATION_STATE_CHANGED,
    CREDENTIAL_STATE_CHANGED,
    ITEM_STATUS_CHANGED,
    EventBus,
)
from .leader import LEASE_KEY, LeaderElection
from .models import AutomationState, CaptureEvent, CredentialRecord, ItemStatus, PauseReason, Snapshot
from .queue_store import AUTOMATION_KEY, QUEUE_KEY, QueueStore, parse_queue
from .remote import RemoteService
from .scheduler import SubmissionScheduler
from .store import KeyValueStore
from .utils import new_instance_id

STORE_SYNC_SECONDS = 1.0
# Automation fields whose change can open the admission gate.
_GATE_FIELDS = ("enabled", "paused", "daily_limit_resume_at", "active_task_count")


class QueueCore:
    """One running front-end instance: the operations users call plus its scheduler."""

    def __init__(
        self,
        store: KeyValueStore,
        remote: RemoteService,
        *,
        clock: Clock | None = None,
        scheduler_config: SchedulerConfig | None = None,
        leader_config: LeaderConfig | None = None,
        default_options: Mapping[str, Any] | None = None,
        instance_id: str | None = None,
        logger: logging.Logger | None = None,
        rng: random.Random | None = None,
        is_alive: Callable[[str], bool] | None = None,
        submit_timeout_seconds: float = DEFAULT_REMOTE_TIMEOUT_SECONDS,
    ) -> None:
        self.store = store
        self.clock = clock or SystemClock()
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        self.instance_id = instance_id or new_instance_id()
        self.scheduler_config = scheduler_config or SchedulerConfig()
        self.leader_config = leader_config or LeaderConfig()
        self.events = EventBus()
        self.loop = TimerLoop(self.clock, self.logger)

        self.queue = QueueStore(store, self.clock, self.logger, default_options)
        self.credentials = CredentialLifecycle(store, self.clock, self.logger)
        self.leader = LeaderElection(
            store,
            self.clock,
            self.logger,
            lease_seconds=self.leader_config.lease_seconds,
            is_alive=is_alive,
        )
        self.backoff = BackoffController(
            concurrency_limit=self.scheduler_config.concurrency_limit,
            base_seconds=self.scheduler_config.backoff_base_seconds,
            jitter_seconds=self.scheduler_config.backoff_jitter_seconds,
            max_unknown_retries=self.scheduler_config.max_unknown_retries,
            rng=rng,
        )
        self.scheduler = SubmissionScheduler(
            instance_id=self.instance_id,
            queue=self.queue,
            credentials=self.credentials,
            leader=self.leader,
            remote=remote,
            backoff=self.backoff,
            loop=self.loop,
            clock=self.clock,
            events=self.events,
            logger=self.logger,
            config=self.scheduler_config,
            heartbeat_seconds=self.leader_config.heartbeat_seconds,
            submit_timeout_seconds=submit_timeout_seconds,
        )
        self._requested_tick: Timer | None = None
        self._sync_timer: Timer | None = None
        self._started = False
        store.on_change(self._on_store_change)

    @property
    def is_leader(self) -> bool:
        return self.scheduler.is_leader

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        self.scheduler.start()
        sync = getattr(self.store, "sync", None)
        if sync is not None:
            self._sync_timer = self.loop.call_every(STORE_SYNC_SECONDS, sync, "store_sync")
        log_with_fields(
            self.logger,
            logging.INFO,
            "instance_started",
            instance_id=self.instance_id,
            leader=self.is_leader,
            queued=self.queue.count_by_status()[ItemStatus.QUEUED.value],
        )

    def close(self) -> None:
        if not self._started:
            return
        self._started = False
        self.scheduler.stop()
        self.loop.cancel_all()
        self.loop.stop()
        self._sync_timer = None
        self._requested_tick = None
        log_with_fields(self.logger, logging.INFO, "instance_closed", instance_id=self.instance_id)

    def run_forever(self) -> None:
        self.start()
        self.loop.run_forever()

    def run_once(self) -> None:
        self.scheduler.run_once()

    def enqueue(self, content: str, options: Mapping[str, Any] | None = None) -> str:
        return self.queue.enqueue(content, options).id

    def remove(self, item_id: str) -> None:
        self.queue.remove(item_id)

    def reorder(self, item_id: str, direction: str) -> bool:
        return self.queue.reorder(item_id, direction)

    def clear_errors(self) -> int:
        return self.queue.clear_errors()

    def clear_queue(self) -> int:
        return self.queue.clear()

    def set_automation_enabled(self, enabled: bool) -> None:
        if not isinstance(enabled, bool):
            raise ValidationError("enabled must be a boolean")
        self.queue.update_automation(enabled=enabled)
        log_with_fields(self.logger, logging.INFO, "automation_toggled", enabled=enabled)

    def toggle_automation(self) -> AutomationState:
        state = self.queue.automation()
        if state.paused:
            return self.resume()
        self.set_automation_enabled(not state.enabled)
        return self.queue.automation()

    def pause(self) -> AutomationState:
        state = self.queue.update_automation(paused=True, pause_reason=PauseReason.MANUAL)
        log_with_fields(self.logger, logging.INFO, "automation_paused", reason=PauseReason.MANUAL.value)
        return state

    def resume(self) -> AutomationState:
        self.queue.update_automation(
            paused=False,
            pause_reason=PauseReason.NONE,
            daily_limit_resume_at=None,
        )
        log_with_fields(self.logger, logging.INFO, "automation_resumed")
        self.scheduler.submit_tick()
        return self.queue.automation()

    def set_credential(
        self,
        value: str,
        *,
        device_id: str | None = None,
        language: str | None = None,
    ) -> None:
        self.credentials.set(value, device_id=device_id, language=language, source="manual")

    def capture_credential(self, event: CaptureEvent) -> None:
        self.credentials.capture(event)

    def clear_credential(self) -> None:
        self.credentials.clear()

    def get_snapshot(self) -> Snapshot:
        credential = self.credentials.get()
        lease = self.leader.current()
        return Snapshot(
            queue=self.queue.items(),
            automation=self.queue.automation(),
            credential_present=credential.present,
            credential_captured_at=credential.captured_at if credential.present else None,
            is_leader=self.is_leader,
            leader_id=lease.owner_id if lease else None,
            instance_id=self.instance_id,
        )

    def request_submit_tick(self) -> None:
        if not self._started or not self.is_leader:
            return
        if self._requested_tick is not None and not self._requested_tick.cancelled:
            return
        self._requested_tick = self.loop.call_later(0, self._run_requested_tick, "submit_requested")

    def _run_requested_tick(self) -> None:
        if self._requested_tick is not None:
            self._requested_tick.cancel()
        self._requested_tick = None
        self.scheduler.submit_tick()

    def _on_store_change(self, key: str, old: Any, new: Any) -> None:
        if key == QUEUE_KEY:
            self._emit_item_changes(old, new)
            self.request_submit_tick()
        elif key == AUTOMATION_KEY:
            before = AutomationState.from_dict(old)
            after = AutomationState.from_dict(new)
            self.events.emit(AUTOMATION_STATE_CHANGED, after)
            if any(getattr(before, name) != getattr(after, name) for name in _GATE_FIELDS):
                self.request_submit_tick()
        elif key == CREDENTIAL_KEY:
            is_present = CredentialRecord.from_dict(new).present
            self.events.emit(CREDENTIAL_STATE_CHANGED, is_present)
            if is_present:
                self.request_submit_tick()
        elif key == LEASE_KEY:
            owner = new.get("owner_id") if isinstance(new, dict) else None
            if self.is_leader and owner != self.instance_id:
                self.scheduler.demote()

    def _emit_item_changes(self, old: Any, new: Any) -> None:
        before = {item.id: item.status for item in parse_queue(old)}
        after = {item.id: item.status for item in parse_queue(new)}
        for item_id, status in after.items():
            previous = before.get(item_id)
            if previous is not status:
                self.events.emit(ITEM_STATUS_CHANGED, item_id, previous, status)
        for item_id, status in before.items():
            if item_id not in after and status is not ItemStatus.SUBMITTED:
                self.events.emit(ITEM_STATUS_CHANGED, item_id, status, None)
