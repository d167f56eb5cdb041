import unittest

from genqueue.clock import ManualClock
from genqueue.errors import InvalidTransitionError, ValidationError
from genqueue.models import ItemStatus
from genqueue.queue_store import QueueStore
from genqueue.store import MemoryStore

from support import quiet_logger


class QueueStoreTest(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = ManualClock()
        self.queue = QueueStore(MemoryStore(), self.clock, quiet_logger())

    def _add(self, *prompts: str) -> list[str]:
        ids = []
        for prompt in prompts:
            ids.append(self.queue.enqueue(prompt).id)
            self.clock.advance(1)
        return ids

    def test_enqueue_merges_default_options(self) -> None:
        item = self.queue.enqueue("  make a sunset video ", {"orientation": "landscape", "size": None})
        self.assertEqual(item.content, "make a sunset video")
        self.assertEqual(item.status, ItemStatus.QUEUED)
        self.assertEqual(item.retry_count, 0)
        self.assertEqual(
            item.options,
            {"orientation": "landscape", "size": "small", "n_frames": 300, "model": "sy_8"},
        )
        self.assertEqual(self.queue.items(), [item])

    def test_enqueue_rejects_empty_prompt(self) -> None:
        for prompt in ("", "   ", None):
            with self.subTest(prompt=prompt):
                with self.assertRaises(ValidationError):
                    self.queue.enqueue(prompt)
        with self.assertRaises(ValidationError):
            self.queue.enqueue("ok", ["not", "a", "mapping"])
        self.assertEqual(self.queue.items(), [])

    def test_head_is_first_queued_in_order(self) -> None:
        first, second, _ = self._add("a", "b", "c")
        self.assertEqual(self.queue.head_queued().id, first)
        self.queue.update_status(first, ItemStatus.SENDING)
        self.assertEqual(self.queue.head_queued().id, second)

    def test_reorder(self) -> None:
        first, second, third = self._add("a", "b", "c")
        self.assertTrue(self.queue.reorder(third, "up"))
        self.assertEqual([item.id for item in self.queue.items()], [first, third, second])
        self.assertFalse(self.queue.reorder(first, "up"))
        self.assertFalse(self.queue.reorder(second, "down"))
        with self.assertRaises(ValidationError):
            self.queue.reorder(first, "sideways")
        with self.assertRaises(ValidationError):
            self.queue.reorder("q_missing", "up")

    def test_remove(self) -> None:
        first, second = self._add("a", "b")
        removed = self.queue.remove(first)
        self.assertEqual(removed.id, first)
        self.assertEqual([item.id for item in self.queue.items()], [second])
        with self.assertRaises(ValidationError):
            self.queue.remove(first)

    def test_status_transitions(self) -> None:
        (item_id,) = self._add("a")
        with self.assertRaises(InvalidTransitionError):
            self.queue.update_status(item_id, ItemStatus.SUBMITTED)
        self.queue.update_status(item_id, ItemStatus.SENDING)
        failed = self.queue.update_status(item_id, ItemStatus.ERROR, "boom")
        self.assertEqual(failed.error_message, "boom")
        self.assertEqual(failed.retry_count, 1)
        with self.assertRaises(InvalidTransitionError):
            self.queue.update_status(item_id, ItemStatus.QUEUED)
        self.assertIsNone(self.queue.update_status("q_missing", ItemStatus.SENDING))

    def test_requeue_counts_retry_only_when_asked(self) -> None:
        (item_id,) = self._add("a")
        self.queue.update_status(item_id, ItemStatus.SENDING)
        self.assertEqual(self.queue.update_status(item_id, ItemStatus.QUEUED).retry_count, 0)
        self.queue.update_status(item_id, ItemStatus.SENDING)
        self.assertEqual(self.queue.update_status(item_id, ItemStatus.QUEUED, count_retry=True).retry_count, 1)

    def test_clear_errors_and_clear(self) -> None:
        first, second, third = self._add("a", "b", "c")
        self.queue.update_status(second, ItemStatus.SENDING)
        self.queue.update_status(second, ItemStatus.ERROR, "bad")
        self.assertEqual(self.queue.clear_errors(), 1)
        self.assertEqual([item.id for item in self.queue.items()], [first, third])
        self.assertEqual(self.queue.clear_errors(), 0)
        self.assertEqual(self.queue.clear(), 2)
        self.assertEqual(self.queue.items(), [])

    def test_recover_sending(self) -> None:
        first, second = self._add("a", "b")
        self.queue.update_status(first, ItemStatus.SENDING)
        self.assertEqual(self.queue.recover_sending(), [first])
        self.assertEqual(self.queue.get(first).status, ItemStatus.QUEUED)
        self.assertEqual(self.queue.count_by_status()["queued"], 2)

    def test_automation_updates(self) -> None:
        self.assertTrue(self.queue.automation().enabled)
        state = self.queue.update_automation(enabled=False, active_task_count=2)
        self.assertFalse(state.enabled)
        self.assertEqual(self.queue.automation().active_task_count, 2)
        with self.assertRaises(AttributeError):
            self.queue.update_automation(bogus=True)


if __name__ == "__main__":
    unittest.main()
