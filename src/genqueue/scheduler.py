from __future__ import annotations

import logging

from .app_logging import log_with_fields
from .backoff import BackoffController, Decision
from .classifier import OtherFailure, classify_failure
from .clock import Clock, Timer, TimerLoop
from .config import DEFAULT_REMOTE_TIMEOUT_SECONDS, SchedulerConfig
from .credentials import CredentialLifecycle
from .errors import NetworkError, RemoteCallError
from .events import LEADER_STATUS_CHANGED, EventBus
from .leader import LeaderElection
from .models import AutomationState, ItemStatus, PauseReason, QueueItem, SubmitResult
from .queue_store import QueueStore
from .remote import RemoteService
from .utils import format_duration, truncate_prompt

BLOCK_DISABLED = "disabled"
BLOCK_PAUSED = "paused"
BLOCK_SUBMITTING = "submitting"
BLOCK_NO_CREDENTIAL = "no_credential"
BLOCK_NOT_LEADER = "not_leader"
BLOCK_AT_CONCURRENCY_LIMIT = "at_concurrency_limit"
BLOCK_DAILY_LIMIT = "daily_limit"
BLOCK_COOLDOWN = "cooldown"


class SubmissionScheduler:
    """Leader-only loop that polls the remote service and submits the queue head."""

    def __init__(
        self,
        *,
        instance_id: str,
        queue: QueueStore,
        credentials: CredentialLifecycle,
        leader: LeaderElection,
        remote: RemoteService,
        backoff: BackoffController,
        loop: TimerLoop,
        clock: Clock,
        events: EventBus,
        logger: logging.Logger,
        config: SchedulerConfig,
        heartbeat_seconds: float = 5.0,
        submit_timeout_seconds: float = DEFAULT_REMOTE_TIMEOUT_SECONDS,
    ) -> None:
        self.instance_id = instance_id
        self.queue = queue
        self.credentials = credentials
        self.leader = leader
        self.remote = remote
        self.backoff = backoff
        self.loop = loop
        self.clock = clock
        self.events = events
        self.logger = logger
        self.config = config
        self.heartbeat_seconds = heartbeat_seconds
        self.submit_timeout_seconds = submit_timeout_seconds
        self.is_leader = False
        self._timers: list[Timer] = []
        self._retry_timer: Timer | None = None
        self._recovery_timer: Timer | None = None

    def start(self) -> None:
        self._set_leader(self.leader.register(self.instance_id))
        self._timers = [
            self.loop.call_every(self.heartbeat_seconds, self.heartbeat_tick, "heartbeat"),
            self.loop.call_every(self.config.poll_interval_seconds, self.poll_tick, "poll"),
            self.loop.call_every(self.config.submit_interval_seconds, self.submit_tick, "submit"),
            self.loop.call_every(self.config.daily_limit_check_seconds, self.sweep_daily_limit, "daily_limit_sweep"),
        ]

    def stop(self) -> None:
        for timer in self._timers:
            timer.cancel()
        self._timers = []
        self._cancel_retry()
        if self.is_leader:
            self.leader.release(self.instance_id)
        self._set_leader(False)

    def run_once(self) -> None:
        was_leader = self.is_leader
        self._set_leader(self.leader.register(self.instance_id))
        if was_leader:
            self.sweep_daily_limit()
            self.poll_tick()

    def heartbeat_tick(self) -> None:
        self._set_leader(self.leader.heartbeat(self.instance_id))

    def demote(self) -> None:
        self._set_leader(False)

    def poll_tick(self) -> None:
        if not self.is_leader:
            return
        try:
            result = self.remote.poll_active()
        except (NetworkError, RemoteCallError) as exc:
            log_with_fields(self.logger, logging.WARNING, "poll_failed", error=str(exc))
            if self.queue.automation().channel_verified:
                self.queue.update_automation(channel_verified=False)
            return

        self.queue.update_automation(
            active_task_count=result.active_count,
            last_poll_at=self.clock.now(),
            channel_verified=True,
        )
        log_with_fields(
            self.logger,
            logging.DEBUG,
            "poll_ok",
            active=result.active_count,
            total=result.total_count,
            limit=self.config.concurrency_limit,
        )
        self.submit_tick()

    def blocked_by(self, state: AutomationState | None = None) -> str | None:
        """Name of the first admission check that fails, or None when submission may proceed."""
        state = state or self.queue.automation()
        now = self.clock.now()
        if not state.enabled:
            return BLOCK_DISABLED
        if state.paused:
            return BLOCK_PAUSED
        if state.is_submitting:
            return BLOCK_SUBMITTING
        if not self.credentials.has_valid():
            return BLOCK_NO_CREDENTIAL
        if not self.is_leader:
            return BLOCK_NOT_LEADER
        if state.active_task_count >= self.config.concurrency_limit:
            return BLOCK_AT_CONCURRENCY_LIMIT
        if state.daily_limit_resume_at is not None and now < state.daily_limit_resume_at:
            return BLOCK_DAILY_LIMIT
        if state.last_submit_at is not None and now - state.last_submit_at < self.config.cooldown_seconds:
            return BLOCK_COOLDOWN
        if state.retry_not_before is not None and now < state.retry_not_before:
            return BLOCK_COOLDOWN
        return None

    def submit_tick(self) -> bool:
        if self.blocked_by() is not None:
            return False
        item = self.queue.head_queued()
        if item is None:
            return False
        # The call can take up to the remote timeout, so it starts on a fresh lease.
        self.heartbeat_tick()
        if not self.is_leader:
            return False
        self._submit(item)
        return True

    def sweep_daily_limit(self) -> None:
        if not self.is_leader:
            return
        state = self.queue.automation()
        if state.daily_limit_resume_at is None or self.clock.now() < state.daily_limit_resume_at:
            return
        changes: dict[str, object] = {"daily_limit_resume_at": None}
        if state.pause_reason is PauseReason.DAILY_LIMIT:
            changes.update(paused=False, pause_reason=PauseReason.NONE)
        self.queue.update_automation(**changes)
        log_with_fields(self.logger, logging.INFO, "daily_limit_reset", resumed=state.paused)
        self.submit_tick()

    def _submit(self, item: QueueItem) -> None:
        now = self.clock.now()
        self.queue.update_automation(is_submitting=True, last_submit_at=now)
        try:
            sending = self.queue.update_status(item.id, ItemStatus.SENDING)
            if sending is None:
                return
            log_with_fields(
                self.logger,
                logging.INFO,
                "item_sending",
                item_id=item.id,
                prompt=truncate_prompt(item.content),
            )
            self._call_remote(sending)
        finally:
            if self.is_leader and self.queue.automation().is_submitting:
                self.queue.update_automation(is_submitting=False)

    def _call_remote(self, item: QueueItem) -> None:
        result: SubmitResult | None = None
        decision: Decision | None = None
        try:
            result = self.remote.submit(item, self.credentials.get())
        except NetworkError as exc:
            decision = self.backoff.decide_network_error(str(exc))
        except RemoteCallError as exc:
            decision = self.backoff.decide(OtherFailure(status_code=exc.status_code, message=str(exc)), item)
        except Exception as exc:
            log_with_fields(self.logger, logging.ERROR, "submit_crashed", item_id=item.id, error=repr(exc))
            decision = self.backoff.decide(OtherFailure(message=f"unexpected error: {exc}"), item)

        leading = self._confirm_leadership()
        if result is not None and result.ok:
            self._record_success(item, leading)
            return
        if decision is None:
            classification = classify_failure(
                result.status_code,
                result.body,
                now=self.clock.now(),
                concurrency_limit=self.config.concurrency_limit,
            )
            log_with_fields(
                self.logger,
                logging.WARNING,
                "submit_rejected",
                item_id=item.id,
                status_code=result.status_code,
                classification=classification.kind,
                matched_rule=getattr(classification, "matched_rule", None),
            )
            decision = self.backoff.decide(classification, item)
        self._apply(item, decision, leading)

    def _confirm_leadership(self) -> bool:
        """Whether the lease is still ours once a remote call returns."""
        lease = self.leader.current()
        if lease is None or lease.owner_id != self.instance_id:
            self.demote()
        return self.is_leader

    def _still_sending(self, item_id: str) -> bool:
        current = self.queue.get(item_id)
        if current is not None and current.status is ItemStatus.SENDING:
            return True
        log_with_fields(
            self.logger,
            logging.WARNING,
            "item_changed_during_submit",
            item_id=item_id,
            status=current.status.value if current else None,
        )
        return False

    def _record_success(self, item: QueueItem, leading: bool) -> None:
        if self._still_sending(item.id):
            self.queue.update_status(item.id, ItemStatus.SUBMITTED)
            self.queue.discard(item.id)
        if not leading:
            log_with_fields(self.logger, logging.INFO, "item_submitted", item_id=item.id, leader=False)
            return
        active = self.queue.automation().active_task_count + 1
        self.queue.update_automation(active_task_count=active, is_submitting=False, retry_not_before=None)
        log_with_fields(
            self.logger,
            logging.INFO,
            "item_submitted",
            item_id=item.id,
            active=active,
            limit=self.config.concurrency_limit,
        )

    def _apply(self, item: QueueItem, decision: Decision, leading: bool = True) -> None:
        if decision.invalidate_credential:
            self.credentials.invalidate()

        if self._still_sending(item.id):
            self.queue.update_status(
                item.id,
                decision.item_status,
                decision.error_message,
                count_retry=decision.count_retry,
            )

        fields: dict[str, object] = {
            "item_id": item.id,
            "reason": decision.reason,
            "status": decision.item_status.value,
        }
        if decision.error_message:
            fields["error"] = decision.error_message
        level = logging.ERROR if decision.item_status is ItemStatus.ERROR else logging.WARNING
        if not leading:
            # Automation fields belong to the instance holding the lease.
            log_with_fields(self.logger, level, "submit_failed", leader=False, **fields)
            return

        changes: dict[str, object] = {"is_submitting": False}
        if decision.active_task_count is not None:
            changes["active_task_count"] = decision.active_task_count
        if decision.retry_after is not None:
            changes["retry_not_before"] = self.clock.now() + decision.retry_after
        if decision.pause_for_daily_limit:
            changes.update(
                paused=True,
                pause_reason=PauseReason.DAILY_LIMIT,
                daily_limit_resume_at=decision.resume_at,
            )
        self.queue.update_automation(**changes)

        if decision.pause_for_daily_limit:
            fields["resets_in"] = (
                format_duration(decision.resume_at - self.clock.now()) if decision.resume_at else "unknown"
            )
        if decision.retry_after is not None:
            fields["retry_after"] = round(decision.retry_after, 3)
            self._schedule_retry(decision.retry_after)
        log_with_fields(self.logger, level, "submit_failed", **fields)

    def _schedule_retry(self, delay: float) -> None:
        self._cancel_retry()
        self._retry_timer = self.loop.call_later(delay, self.submit_tick, "backoff_retry")

    def _cancel_retry(self) -> None:
        if self._retry_timer is not None:
            self._retry_timer.cancel()
            self._retry_timer = None

    def _recover_stale_submission(self) -> None:
        self._recovery_timer = None
        if not self.is_leader:
            return
        state = self.queue.automation()
        if not state.is_submitting and not self.queue.count_by_status()[ItemStatus.SENDING.value]:
            return
        if state.last_submit_at is not None:
            remaining = state.last_submit_at + self.submit_timeout_seconds - self.clock.now()
            if remaining > 0:
                # The previous leader's call may still be in flight.
                log_with_fields(self.logger, logging.INFO, "stale_submission_pending", wait=round(remaining, 3))
                self._recovery_timer = self.loop.call_later(
                    remaining, self._recover_stale_submission, "stale_submission_check"
                )
                return
        self.queue.recover_sending()
        if self.queue.automation().is_submitting:
            self.queue.update_automation(is_submitting=False)

    def _set_leader(self, is_leader: bool) -> None:
        if is_leader == self.is_leader:
            return
        self.is_leader = is_leader
        log_with_fields(
            self.logger,
            logging.INFO,
            "leader_gained" if is_leader else "leader_lost",
            instance_id=self.instance_id,
        )
        self.events.emit(LEADER_STATUS_CHANGED, is_leader)
        if not is_leader:
            self._cancel_retry()
            if self._recovery_timer is not None:
                self._recovery_timer.cancel()
                self._recovery_timer = None
            return
        self._recover_stale_submission()
        self.sweep_daily_limit()
        self.poll_tick()
