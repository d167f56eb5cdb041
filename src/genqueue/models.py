from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class ItemStatus(str, Enum):
    QUEUED = "queued"
    SENDING = "sending"
    ERROR = "error"
    SUBMITTED = "submitted"


class PauseReason(str, Enum):
    NONE = "none"
    DAILY_LIMIT = "daily_limit"
    MANUAL = "manual"


class CredentialState(str, Enum):
    NOT_CAPTURED = "not_captured"
    CAPTURED = "captured"
    INVALIDATED = "invalidated"


@dataclass(slots=True)
class QueueItem:
    id: str
    content: str
    options: dict[str, Any]
    status: ItemStatus
    created_at: float
    updated_at: float
    error_message: str | None = None
    retry_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "options": dict(self.options),
            "status": self.status.value,
            "error_message": self.error_message,
            "retry_count": self.retry_count,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> QueueItem:
        return cls(
            id=str(raw["id"]),
            content=str(raw["content"]),
            options=dict(raw.get("options") or {}),
            status=ItemStatus(raw.get("status", ItemStatus.QUEUED.value)),
            error_message=raw.get("error_message"),
            retry_count=int(raw.get("retry_count", 0)),
            created_at=float(raw.get("created_at", 0.0)),
            updated_at=float(raw.get("updated_at", 0.0)),
        )


@dataclass(slots=True)
class AutomationState:
    enabled: bool = True
    paused: bool = False
    pause_reason: PauseReason = PauseReason.NONE
    daily_limit_resume_at: float | None = None
    active_task_count: int = 0
    is_submitting: bool = False
    last_poll_at: float | None = None
    last_submit_at: float | None = None
    retry_not_before: float | None = None
    channel_verified: bool = False

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["pause_reason"] = self.pause_reason.value
        return payload

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> AutomationState:
        if not raw:
            return cls()
        return cls(
            enabled=bool(raw.get("enabled", True)),
            paused=bool(raw.get("paused", False)),
            pause_reason=PauseReason(raw.get("pause_reason") or PauseReason.NONE.value),
            daily_limit_resume_at=raw.get("daily_limit_resume_at"),
            active_task_count=int(raw.get("active_task_count", 0)),
            is_submitting=bool(raw.get("is_submitting", False)),
            last_poll_at=raw.get("last_poll_at"),
            last_submit_at=raw.get("last_submit_at"),
            retry_not_before=raw.get("retry_not_before"),
            channel_verified=bool(raw.get("channel_verified", False)),
        )


@dataclass(slots=True)
class LeaderLease:
    owner_id: str
    heartbeat_at: float
    expires_at: float

    def expired(self, now: float) -> bool:
        return now > self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> LeaderLease:
        return cls(
            owner_id=str(raw["owner_id"]),
            heartbeat_at=float(raw["heartbeat_at"]),
            expires_at=float(raw["expires_at"]),
        )


@dataclass(slots=True)
class CredentialRecord:
    state: CredentialState = CredentialState.NOT_CAPTURED
    value: str | None = field(default=None, repr=False)
    captured_at: float | None = None
    device_id: str | None = field(default=None, repr=False)
    language: str | None = None
    source: str | None = None

    @property
    def present(self) -> bool:
        return self.state is CredentialState.CAPTURED and bool(self.value)

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "value": self.value,
            "captured_at": self.captured_at,
            "device_id": self.device_id,
            "language": self.language,
            "source": self.source,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> CredentialRecord:
        if not raw:
            return cls()
        return cls(
            state=CredentialState(raw.get("state", CredentialState.NOT_CAPTURED.value)),
            value=raw.get("value"),
            captured_at=raw.get("captured_at"),
            device_id=raw.get("device_id"),
            language=raw.get("language"),
            source=raw.get("source"),
        )


@dataclass(slots=True)
class CaptureEvent:
    value: str = field(repr=False)
    captured_at: float | None = None
    device_id: str | None = field(default=None, repr=False)
    language: str | None = None


@dataclass(slots=True)
class PollResult:
    active_count: int
    total_count: int


@dataclass(slots=True)
class SubmitResult:
    ok: bool
    status_code: int
    body: Any = None


@dataclass(slots=True)
class Snapshot:
    queue: list[QueueItem]
    automation: AutomationState
    credential_present: bool
    credential_captured_at: float | None
    is_leader: bool
    leader_id: str | None
    instance_id: str
