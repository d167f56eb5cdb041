"""Leader election among instances sharing one store.

A lease record names the owner and when its claim runs out. An instance may
take the lease when there is none, when it has expired, or when the optional
liveness check says the owner is gone. Claims go through the store's
`compare_and_set` when it has one, so two instances racing for an expired
lease cannot both win. A store without it falls back to last-write-wins
followed by a read-back; in that mode two instances can briefly both
believe they lead, which is accepted rather than prevented.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from .app_logging import log_with_fields
from .clock import Clock
from .models import LeaderLease
from .store import KeyValueStore

LEASE_KEY = "leader_lease"
DEFAULT_LEASE_SECONDS = 10.0


class LeaderElection:
    def __init__(
        self,
        store: KeyValueStore,
        clock: Clock,
        logger: logging.Logger,
        *,
        lease_seconds: float = DEFAULT_LEASE_SECONDS,
        is_alive: Callable[[str], bool] | None = None,
    ) -> None:
        if lease_seconds <= 0:
            raise ValueError("lease_seconds must be > 0")
        self.store = store
        self.clock = clock
        self.logger = logger
        self.lease_seconds = lease_seconds
        self.is_alive = is_alive

    def current(self) -> LeaderLease | None:
        raw = self.store.get(LEASE_KEY)
        if not raw:
            return None
        return LeaderLease.from_dict(raw)

    def register(self, instance_id: str) -> bool:
        return self._acquire(instance_id)

    def heartbeat(self, instance_id: str) -> bool:
        return self._acquire(instance_id)

    def release(self, instance_id: str) -> bool:
        raw = self.store.get(LEASE_KEY)
        if not raw or raw.get("owner_id") != instance_id:
            return False
        released = self._write(raw, None)
        if released:
            log_with_fields(self.logger, logging.INFO, "leader_released", instance_id=instance_id)
        return released

    def _acquire(self, instance_id: str) -> bool:
        raw = self.store.get(LEASE_KEY)
        now = self.clock.now()
        lease = LeaderLease.from_dict(raw) if raw else None

        if lease is not None and lease.owner_id == instance_id:
            if self._write(raw, self._lease_for(instance_id, now)):
                return True
            return self._owns(instance_id)

        if lease is not None and not lease.expired(now) and not self._owner_gone(lease.owner_id):
            return False

        if not self._write(raw, self._lease_for(instance_id, now)):
            return False
        log_with_fields(
            self.logger,
            logging.INFO,
            "leader_claimed",
            instance_id=instance_id,
            previous_owner=lease.owner_id if lease else None,
        )
        return True

    def _owner_gone(self, owner_id: str) -> bool:
        if self.is_alive is None:
            return False
        return not self.is_alive(owner_id)

    def _lease_for(self, instance_id: str, now: float) -> dict[str, Any]:
        return LeaderLease(owner_id=instance_id, heartbeat_at=now, expires_at=now + self.lease_seconds).to_dict()

    def _owns(self, instance_id: str) -> bool:
        lease = self.current()
        return lease is not None and lease.owner_id == instance_id

    def _write(self, expected: Any, value: dict[str, Any] | None) -> bool:
        compare_and_set = getattr(self.store, "compare_and_set", None)
        if compare_and_set is not None:
            return bool(compare_and_set(LEASE_KEY, expected, value))
        if value is None:
            self.store.remove(LEASE_KEY)
            return True
        self.store.set(LEASE_KEY, value)
        return self.store.get(LEASE_KEY) == value
