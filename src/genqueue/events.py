from __future__ import annotations

from collections import defaultdict
from typing import Any, Callable

ITEM_STATUS_CHANGED = "item_status_changed"
AUTOMATION_STATE_CHANGED = "automation_state_changed"
CREDENTIAL_STATE_CHANGED = "credential_state_changed"
LEADER_STATUS_CHANGED = "leader_status_changed"

EVENT_NAMES = frozenset(
    {
        ITEM_STATUS_CHANGED,
        AUTOMATION_STATE_CHANGED,
        CREDENTIAL_STATE_CHANGED,
        LEADER_STATUS_CHANGED,
    }
)


class EventBus:
    def __init__(self) -> None:
        self._subscribers: dict[str, list[Callable[..., None]]] = defaultdict(list)

    def subscribe(self, name: str, callback: Callable[..., None]) -> None:
        if name not in EVENT_NAMES:
            raise ValueError(f"Unknown event: {name}")
        self._subscribers[name].append(callback)

    def emit(self, name: str, *args: Any) -> None:
        for callback in list(self._subscribers.get(name, ())):
            callback(*args)
