from __future__ import annotations

import logging

from .app_logging import log_with_fields
from .clock import Clock
from .errors import ValidationError
from .models import CaptureEvent, CredentialRecord, CredentialState
from .store import KeyValueStore

CREDENTIAL_KEY = "credential"


class CredentialLifecycle:
    """Presence and validity of the submission credential.

    The record lives in the shared store so every instance agrees on it.
    `invalidate()` writes synchronously, so the admission check that follows
    an auth failure already sees the credential as missing.
    """

    def __init__(self, store: KeyValueStore, clock: Clock, logger: logging.Logger) -> None:
        self.store = store
        self.clock = clock
        self.logger = logger

    def get(self) -> CredentialRecord:
        return CredentialRecord.from_dict(self.store.get(CREDENTIAL_KEY))

    def state(self) -> CredentialState:
        return self.get().state

    def has_valid(self) -> bool:
        return self.get().present

    def set(
        self,
        value: str,
        *,
        device_id: str | None = None,
        language: str | None = None,
        source: str = "manual",
        captured_at: float | None = None,
    ) -> CredentialRecord:
        if not isinstance(value, str) or not value.strip():
            raise ValidationError("credential value must be a non-empty string")
        record = CredentialRecord(
            state=CredentialState.CAPTURED,
            value=value.strip(),
            captured_at=captured_at if captured_at is not None else self.clock.now(),
            device_id=device_id or None,
            language=language or None,
            source=source,
        )
        self.store.set(CREDENTIAL_KEY, record.to_dict())
        log_with_fields(
            self.logger,
            logging.INFO,
            "credential_set",
            source=source,
            length=len(record.value or ""),
            has_device_id=record.device_id is not None,
        )
        return record

    def capture(self, event: CaptureEvent) -> CredentialRecord:
        return self.set(
            event.value,
            device_id=event.device_id,
            language=event.language,
            source="capture",
            captured_at=event.captured_at,
        )

    def invalidate(self) -> None:
        if self.state() is CredentialState.INVALIDATED:
            return
        self.store.set(CREDENTIAL_KEY, CredentialRecord(state=CredentialState.INVALIDATED).to_dict())
        log_with_fields(self.logger, logging.WARNING, "credential_invalidated")

    def clear(self) -> None:
        self.store.set(CREDENTIAL_KEY, CredentialRecord(state=CredentialState.INVALIDATED).to_dict())
        log_with_fields(self.logger, logging.INFO, "credential_cleared")
