from __future__ import annotations

from typing import Any, Protocol

import httpx

from .config import RemoteConfig
from .errors import NetworkError, RemoteCallError
from .models import CredentialRecord, PollResult, QueueItem, SubmitResult

PENDING_PATH = "/backend/nf/pending/v2"
CREATE_PATH = "/backend/nf/create"
ACTIVE_STATUSES = frozenset({"queued", "processing", "running"})
DEFAULT_LANGUAGE = "en-US"

CREDENTIAL_HEADER = "openai-sentinel-token"
DEVICE_ID_HEADER = "oai-device-id"
LANGUAGE_HEADER = "oai-language"

_OPTIONAL_BODY_FIELDS = (
    "title",
    "remix_target_id",
    "metadata",
    "cameo_ids",
    "cameo_replacements",
    "style_id",
    "audio_caption",
    "audio_transcript",
    "video_caption",
    "storyboard_id",
)


class RemoteService(Protocol):
    def poll_active(self) -> PollResult: ...

    def submit(self, item: QueueItem, credential: CredentialRecord) -> SubmitResult: ...


def count_active(tasks: Any) -> PollResult:
    if not isinstance(tasks, list):
        raise RemoteCallError("Invalid pending response (expected a list)")
    active = 0
    for task in tasks:
        status = task.get("status") if isinstance(task, dict) else None
        if isinstance(status, str) and status.lower() in ACTIVE_STATUSES:
            active += 1
    return PollResult(active_count=active, total_count=len(tasks))


def build_submit_body(item: QueueItem) -> dict[str, Any]:
    options = item.options
    body: dict[str, Any] = {
        "kind": options.get("kind") or "video",
        "prompt": item.content,
        "orientation": options.get("orientation") or "portrait",
        "size": options.get("size") or "small",
        "n_frames": options.get("n_frames") or 300,
        "inpaint_items": options.get("inpaint_items") or [],
        "model": options.get("model") or "sy_8",
    }
    for name in _OPTIONAL_BODY_FIELDS:
        body[name] = options.get(name) or None
    return body


def build_submit_headers(credential: CredentialRecord) -> dict[str, str]:
    if not credential.value:
        raise RemoteCallError("No credential available for submission")
    headers = {
        "Content-Type": "application/json",
        "Accept": "application/json",
        CREDENTIAL_HEADER: credential.value,
        LANGUAGE_HEADER: credential.language or DEFAULT_LANGUAGE,
    }
    if credential.device_id:
        headers[DEVICE_ID_HEADER] = credential.device_id
    return headers


class HttpRemoteService:
    """Talks to the generation service over HTTP with the ambient session cookies."""

    def __init__(self, config: RemoteConfig, *, transport: httpx.BaseTransport | None = None) -> None:
        self.config = config
        self._client = httpx.Client(
            base_url=config.base_url,
            timeout=httpx.Timeout(config.timeout_seconds),
            cookies=config.cookies,
            headers={"Accept": "application/json"},
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def poll_active(self) -> PollResult:
        try:
            response = self._client.get(PENDING_PATH)
        except httpx.HTTPError as exc:
            raise NetworkError(f"poll failed: {exc}") from exc
        if not response.is_success:
            raise RemoteCallError(f"poll failed: HTTP {response.status_code}", status_code=response.status_code)
        try:
            data = response.json()
        except ValueError as exc:
            raise RemoteCallError("poll failed: response is not JSON", status_code=response.status_code) from exc
        return count_active(data)

    def submit(self, item: QueueItem, credential: CredentialRecord) -> SubmitResult:
        try:
            response = self._client.post(
                CREATE_PATH,
                json=build_submit_body(item),
                headers=build_submit_headers(credential),
            )
        except httpx.HTTPError as exc:
            raise NetworkError(f"submit failed: {exc}") from exc
        try:
            body = response.json()
        except ValueError:
            body = response.text or None
        return SubmitResult(ok=response.is_success, status_code=response.status_code, body=body)
