from __future__ import annotations

import secrets
import string
from datetime import UTC, datetime

PROMPT_PREVIEW_LENGTH = 80
_ID_ALPHABET = string.ascii_lowercase + string.digits


def new_item_id(now: float) -> str:
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"q_{int(now * 1000)}_{suffix}"


def new_instance_id() -> str:
    return f"inst_{secrets.token_hex(6)}"


def iso_from_epoch(value: float | None) -> str | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value, UTC).isoformat()


def format_duration(seconds: float) -> str:
    total_minutes = int(max(seconds, 0) // 60)
    hours, minutes = divmod(total_minutes, 60)
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


def truncate_prompt(prompt: str, limit: int = PROMPT_PREVIEW_LENGTH) -> str:
    if len(prompt) <= limit:
        return prompt
    return prompt[:limit] + "..."
