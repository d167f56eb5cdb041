from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from .app_logging import log_with_fields
from .clock import Clock
from .errors import InvalidTransitionError, ValidationError
from .models import AutomationState, ItemStatus, QueueItem
from .store import KeyValueStore
from .utils import new_item_id, truncate_prompt

QUEUE_KEY = "queue"
AUTOMATION_KEY = "automation"

DEFAULT_OPTIONS: dict[str, Any] = {
    "orientation": "portrait",
    "size": "small",
    "n_frames": 300,
    "model": "sy_8",
}

ALLOWED_TRANSITIONS: dict[ItemStatus, frozenset[ItemStatus]] = {
    ItemStatus.QUEUED: frozenset({ItemStatus.SENDING}),
    ItemStatus.SENDING: frozenset({ItemStatus.QUEUED, ItemStatus.ERROR, ItemStatus.SUBMITTED}),
    ItemStatus.ERROR: frozenset(),
    ItemStatus.SUBMITTED: frozenset(),
}

DIRECTIONS = ("up", "down")


def parse_queue(raw: Any) -> list[QueueItem]:
    if not isinstance(raw, dict):
        return []
    return [QueueItem.from_dict(item) for item in raw.get("items", [])]


class QueueStore:
    """Ordered queue items and the automation record, both kept in the shared store.

    Every mutation reads the whole record, changes it and writes it back.
    """

    def __init__(
        self,
        store: KeyValueStore,
        clock: Clock,
        logger: logging.Logger,
        default_options: Mapping[str, Any] | None = None,
    ) -> None:
        self.store = store
        self.clock = clock
        self.logger = logger
        self.default_options = dict(DEFAULT_OPTIONS if default_options is None else default_options)

    def items(self) -> list[QueueItem]:
        return parse_queue(self.store.get(QUEUE_KEY))

    def get(self, item_id: str) -> QueueItem | None:
        for item in self.items():
            if item.id == item_id:
                return item
        return None

    def head_queued(self) -> QueueItem | None:
        for item in self.items():
            if item.status is ItemStatus.QUEUED:
                return item
        return None

    def count_by_status(self) -> dict[str, int]:
        output = {status.value: 0 for status in ItemStatus}
        for item in self.items():
            output[item.status.value] += 1
        return output

    def enqueue(self, content: str, options: Mapping[str, Any] | None = None) -> QueueItem:
        if not isinstance(content, str) or not content.strip():
            raise ValidationError("prompt must be a non-empty string")
        if options is not None and not isinstance(options, Mapping):
            raise ValidationError("options must be a mapping")
        merged = dict(self.default_options)
        merged.update({key: value for key, value in (options or {}).items() if value is not None})

        now = self.clock.now()
        item = QueueItem(
            id=new_item_id(now),
            content=content.strip(),
            options=merged,
            status=ItemStatus.QUEUED,
            created_at=now,
            updated_at=now,
        )
        items = self.items()
        items.append(item)
        self._save(items)
        log_with_fields(
            self.logger,
            logging.INFO,
            "item_queued",
            item_id=item.id,
            prompt=truncate_prompt(item.content),
        )
        return item

    def remove(self, item_id: str) -> QueueItem:
        items = self.items()
        index = self._index_of(items, item_id)
        removed = items.pop(index)
        self._save(items)
        log_with_fields(self.logger, logging.INFO, "item_removed", item_id=item_id, status=removed.status.value)
        return removed

    def reorder(self, item_id: str, direction: str) -> bool:
        if direction not in DIRECTIONS:
            raise ValidationError(f"direction must be one of {', '.join(DIRECTIONS)}")
        items = self.items()
        index = self._index_of(items, item_id)
        target = index - 1 if direction == "up" else index + 1
        if target < 0 or target >= len(items):
            return False
        items[index], items[target] = items[target], items[index]
        self._save(items)
        return True

    def update_status(
        self,
        item_id: str,
        status: ItemStatus,
        error_message: str | None = None,
        *,
        count_retry: bool = False,
    ) -> QueueItem | None:
        items = self.items()
        for item in items:
            if item.id != item_id:
                continue
            if status is not item.status and status not in ALLOWED_TRANSITIONS[item.status]:
                raise InvalidTransitionError(f"{item_id}: {item.status.value} -> {status.value} is not allowed")
            if item.status is ItemStatus.SENDING and status is ItemStatus.ERROR:
                item.retry_count += 1
            elif count_retry:
                item.retry_count += 1
            item.status = status
            item.error_message = error_message
            item.updated_at = self.clock.now()
            self._save(items)
            return item
        return None

    def discard(self, item_id: str) -> bool:
        items = self.items()
        remaining = [item for item in items if item.id != item_id]
        if len(remaining) == len(items):
            return False
        self._save(remaining)
        return True

    def clear_errors(self) -> int:
        items = self.items()
        remaining = [item for item in items if item.status is not ItemStatus.ERROR]
        removed = len(items) - len(remaining)
        if removed:
            self._save(remaining)
            log_with_fields(self.logger, logging.INFO, "errors_cleared", count=removed)
        return removed

    def clear(self) -> int:
        items = self.items()
        if items:
            self._save([])
            log_with_fields(self.logger, logging.INFO, "queue_cleared", count=len(items))
        return len(items)

    def recover_sending(self) -> list[str]:
        """Requeue items left in `sending` by an instance that stopped mid-call."""
        items = self.items()
        recovered: list[str] = []
        for item in items:
            if item.status is ItemStatus.SENDING:
                item.status = ItemStatus.QUEUED
                item.updated_at = self.clock.now()
                recovered.append(item.id)
        if recovered:
            self._save(items)
            log_with_fields(self.logger, logging.INFO, "recovered_sending_items", item_ids=recovered)
        return recovered

    def automation(self) -> AutomationState:
        return AutomationState.from_dict(self.store.get(AUTOMATION_KEY))

    def update_automation(self, **changes: Any) -> AutomationState:
        state = self.automation()
        for name, value in changes.items():
            if not hasattr(state, name):
                raise AttributeError(f"AutomationState has no field `{name}`")
            setattr(state, name, value)
        self.store.set(AUTOMATION_KEY, state.to_dict())
        return state

    def _save(self, items: list[QueueItem]) -> None:
        self.store.set(QUEUE_KEY, {"items": [item.to_dict() for item in items]})

    @staticmethod
    def _index_of(items: list[QueueItem], item_id: str) -> int:
        for index, item in enumerate(items):
            if item.id == item_id:
                return index
        raise ValidationError(f"queue item not found: {item_id}")
