from pathlib import Path
from tempfile import TemporaryDirectory
import unittest

from genqueue.clock import ManualClock
from genqueue.errors import ValidationError
from genqueue.events import (
    AUTOMATION_STATE_CHANGED,
    CREDENTIAL_STATE_CHANGED,
    ITEM_STATUS_CHANGED,
    LEADER_STATUS_CHANGED,
)
from genqueue.models import CaptureEvent, ItemStatus, PauseReason, SubmitResult
from genqueue.scheduler import BLOCK_NOT_LEADER, BLOCK_SUBMITTING
from genqueue.store import MemoryStore, SqliteStore

from support import FakeRemote, make_core


class QueueCoreTest(unittest.TestCase):
    def test_snapshot_round_trip(self) -> None:
        core = make_core()
        item_id = core.enqueue("make a sunset video", {"orientation": "landscape"})
        snapshot = core.get_snapshot()
        self.assertEqual(len(snapshot.queue), 1)
        item = snapshot.queue[0]
        self.assertEqual(item.id, item_id)
        self.assertEqual(item.status, ItemStatus.QUEUED)
        self.assertEqual(item.options["orientation"], "landscape")
        self.assertEqual(item.options["size"], "small")
        self.assertEqual(snapshot.instance_id, "tab-a")
        self.assertFalse(snapshot.credential_present)

        core.remove(item_id)
        self.assertEqual(core.get_snapshot().queue, [])

    def test_snapshot_never_exposes_credential(self) -> None:
        core = make_core()
        core.capture_credential(CaptureEvent(value="very-secret-token", device_id="dev-secret"))
        snapshot = core.get_snapshot()
        self.assertTrue(snapshot.credential_present)
        self.assertEqual(snapshot.credential_captured_at, core.clock.now())
        self.assertNotIn("very-secret-token", repr(snapshot))
        self.assertFalse(hasattr(snapshot, "value"))

    def test_events(self) -> None:
        core = make_core()
        events: list[tuple] = []
        for name in (ITEM_STATUS_CHANGED, AUTOMATION_STATE_CHANGED, CREDENTIAL_STATE_CHANGED, LEADER_STATUS_CHANGED):
            core.events.subscribe(name, lambda *args, name=name: events.append((name, *args)))

        item_id = core.enqueue("a")
        core.remove(item_id)
        core.set_automation_enabled(False)
        core.set_credential("abc")
        core.start()
        self.addCleanup(core.close)

        self.assertIn((ITEM_STATUS_CHANGED, item_id, None, ItemStatus.QUEUED), events)
        self.assertIn((ITEM_STATUS_CHANGED, item_id, ItemStatus.QUEUED, None), events)
        self.assertIn((CREDENTIAL_STATE_CHANGED, True), events)
        self.assertIn((LEADER_STATUS_CHANGED, True), events)
        automation = [args[1] for args in events if args[0] == AUTOMATION_STATE_CHANGED]
        self.assertFalse(automation[0].enabled)

    def test_submission_events_seen_by_other_instances(self) -> None:
        store = MemoryStore()
        clock = ManualClock()
        leader = make_core(store=store, clock=clock, instance_id="tab-a")
        follower = make_core(store=store, clock=clock, instance_id="tab-b")
        statuses: list[tuple] = []
        follower.events.subscribe(ITEM_STATUS_CHANGED, lambda *args: statuses.append(args))

        leader.set_credential("abc")
        item_id = leader.enqueue("a")
        leader.start()
        self.addCleanup(leader.close)

        self.assertEqual(
            statuses,
            [
                (item_id, None, ItemStatus.QUEUED),
                (item_id, ItemStatus.QUEUED, ItemStatus.SENDING),
                (item_id, ItemStatus.SENDING, ItemStatus.SUBMITTED),
            ],
        )

    def test_validation(self) -> None:
        core = make_core()
        with self.assertRaises(ValidationError):
            core.enqueue("   ")
        with self.assertRaises(ValidationError):
            core.remove("q_missing")
        with self.assertRaises(ValidationError):
            core.set_automation_enabled("yes")
        with self.assertRaises(ValidationError):
            core.set_credential("")
        self.assertEqual(core.get_snapshot().queue, [])

    def test_toggle_resumes_before_disabling(self) -> None:
        core = make_core()
        core.pause()
        state = core.toggle_automation()
        self.assertFalse(state.paused)
        self.assertEqual(state.pause_reason, PauseReason.NONE)
        self.assertTrue(state.enabled)
        self.assertFalse(core.toggle_automation().enabled)
        self.assertTrue(core.toggle_automation().enabled)

    def test_clear_errors_and_queue(self) -> None:
        remote = FakeRemote()
        remote.responses = [SubmitResult(ok=False, status_code=500, body="boom")]
        core = make_core(remote=remote)
        core.set_automation_enabled(False)
        core.set_credential("abc")
        core.enqueue("a")
        core.enqueue("b")
        core.start()
        self.addCleanup(core.close)
        core.set_automation_enabled(True)
        core.loop.run_due()

        self.assertEqual(core.queue.count_by_status()[ItemStatus.ERROR.value], 1)
        self.assertEqual(core.clear_errors(), 1)
        self.assertEqual(core.clear_queue(), 1)
        self.assertEqual(core.get_snapshot().queue, [])

    def test_close_cancels_pending_timers(self) -> None:
        core = make_core()
        core.start()
        self.assertIsNotNone(core.loop.next_due())
        core.close()
        self.assertIsNone(core.loop.next_due())
        self.assertIsNone(core.leader.current())

    def test_leader_recovers_items_left_sending(self) -> None:
        store = MemoryStore()
        crashed = make_core(store=store, instance_id="tab-old")
        item_id = crashed.enqueue("a")
        crashed.queue.update_status(item_id, ItemStatus.SENDING)
        crashed.queue.update_automation(is_submitting=True, enabled=False)

        core = make_core(store=store)
        core.start()
        self.addCleanup(core.close)
        self.assertEqual(core.queue.get(item_id).status, ItemStatus.QUEUED)
        self.assertFalse(core.queue.automation().is_submitting)


class FailoverTest(unittest.TestCase):
    def setUp(self) -> None:
        self.store = MemoryStore()
        self.clock = ManualClock()
        self.remote_a = FakeRemote()
        self.remote_b = FakeRemote()
        self.a = make_core(store=self.store, clock=self.clock, remote=self.remote_a, instance_id="tab-a")
        self.b = make_core(store=self.store, clock=self.clock, remote=self.remote_b, instance_id="tab-b")
        self.a.set_credential("abc")
        self.a.start()
        self.b.start()
        self.addCleanup(self.b.close)
        self.addCleanup(self.a.close)

    def test_only_one_leader(self) -> None:
        self.assertTrue(self.a.is_leader)
        self.assertFalse(self.b.is_leader)
        self.assertEqual(self.b.scheduler.blocked_by(), BLOCK_NOT_LEADER)
        self.assertEqual(self.b.get_snapshot().leader_id, "tab-a")

        self.b.enqueue("from b")
        self.a.loop.run_due()
        self.assertEqual(len(self.remote_a.submitted), 1)
        self.assertEqual(self.remote_b.submitted, [])
        self.assertEqual(self.remote_b.polls, 0)

    def test_follower_takes_over_expired_lease(self) -> None:
        leader_events: list[bool] = []
        self.a.events.subscribe(LEADER_STATUS_CHANGED, leader_events.append)

        self.clock.advance(11)
        self.b.loop.run_due()

        self.assertTrue(self.b.is_leader)
        self.assertFalse(self.a.is_leader)
        self.assertEqual(leader_events, [False])
        self.assertEqual(self.a.get_snapshot().leader_id, "tab-b")

        item_id = self.a.enqueue("after failover")
        self.b.loop.run_due()
        self.assertEqual([item.id for item in self.remote_b.submitted], [item_id])
        self.assertEqual(self.remote_a.submitted, [])

    def test_live_leader_keeps_lease(self) -> None:
        for _ in range(6):
            self.clock.advance(5)
            self.a.loop.run_due()
            self.b.loop.run_due()
        self.assertTrue(self.a.is_leader)
        self.assertFalse(self.b.is_leader)

    def test_lease_is_renewed_before_each_submit(self) -> None:
        def slow_call(item) -> None:
            self.clock.advance(3)
            self.b.scheduler.heartbeat_tick()

        self.remote_a.on_submit = slow_call
        self.clock.advance(9)
        self.b.enqueue("slow call")
        self.assertTrue(self.a.scheduler.submit_tick())

        self.assertTrue(self.a.is_leader)
        self.assertFalse(self.b.is_leader)
        self.b.loop.run_for(5)
        self.assertEqual(len(self.remote_a.submitted), 1)
        self.assertEqual(self.remote_b.submitted, [])
        self.assertEqual(self.a.queue.items(), [])

    def test_takeover_during_slow_submit_does_not_resubmit(self) -> None:
        store = MemoryStore()
        clock = ManualClock()
        remote_a = FakeRemote()
        remote_b = FakeRemote()
        a = make_core(store=store, clock=clock, remote=remote_a, instance_id="slow-a", submit_timeout_seconds=20)
        b = make_core(store=store, clock=clock, remote=remote_b, instance_id="slow-b", submit_timeout_seconds=20)
        a.set_credential("abc")
        a.start()
        b.start()
        self.addCleanup(b.close)
        self.addCleanup(a.close)

        def stall(item) -> None:
            clock.advance(15)
            b.scheduler.heartbeat_tick()

        remote_a.on_submit = stall
        a.enqueue("slow one")
        a.scheduler.submit_tick()

        self.assertTrue(b.is_leader)
        self.assertFalse(a.is_leader)
        self.assertEqual(b.queue.items(), [])
        self.assertEqual(b.queue.automation().active_task_count, 0)
        self.assertEqual(b.scheduler.blocked_by(), BLOCK_SUBMITTING)

        b.loop.run_for(10)
        self.assertEqual(len(remote_a.submitted) + len(remote_b.submitted), 1)
        self.assertFalse(b.queue.automation().is_submitting)
        self.assertIsNone(b.scheduler.blocked_by())

    def test_stale_sending_item_is_requeued_after_timeout(self) -> None:
        item_id = self.a.enqueue("left behind")
        self.a.queue.update_automation(enabled=False)
        self.a.queue.update_status(item_id, ItemStatus.SENDING)
        self.clock.advance(9)
        self.a.queue.update_automation(is_submitting=True, last_submit_at=self.clock.now())

        self.clock.advance(2)
        self.b.loop.run_due()
        self.assertTrue(self.b.is_leader)
        self.assertEqual(self.b.queue.get(item_id).status, ItemStatus.SENDING)

        self.b.loop.run_for(5)
        self.assertEqual(self.b.queue.get(item_id).status, ItemStatus.QUEUED)
        self.assertFalse(self.b.queue.automation().is_submitting)

    def test_release_on_close_hands_over(self) -> None:
        self.a.close()
        self.assertFalse(self.a.is_leader)
        self.clock.advance(5)
        self.b.loop.run_due()
        self.assertTrue(self.b.is_leader)


class SharedFileTest(unittest.TestCase):
    def test_processes_share_state_through_sqlite(self) -> None:
        with TemporaryDirectory() as temp_dir:
            db_path = Path(temp_dir) / "genqueue.db"
            stores = [SqliteStore(db_path), SqliteStore(db_path)]
            for store in stores:
                store.init_schema()
            clock = ManualClock()
            remote = FakeRemote()
            leader = make_core(store=stores[0], clock=clock, remote=remote, instance_id="proc-a")
            other = make_core(store=stores[1], clock=clock, instance_id="proc-b")
            try:
                leader.start()
                other.start()
                self.assertFalse(other.is_leader)
                seen: list[tuple] = []
                leader.events.subscribe(ITEM_STATUS_CHANGED, lambda *args: seen.append(args))

                other.set_credential("abc")
                item_id = other.enqueue("from another process")
                clock.advance(1)
                leader.loop.run_due()
                leader.loop.run_due()

                self.assertEqual([item.id for item in remote.submitted], [item_id])
                self.assertIn((item_id, None, ItemStatus.QUEUED), seen)
            finally:
                other.close()
                leader.close()
                for store in stores:
                    store.close()


if __name__ == "__main__":
    unittest.main()
