"""Deterministic classification of failed submissions for the backoff policy."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, ClassVar, Union

CONCURRENT_LIMIT_RULES_VERSION = 1
DEFAULT_CONCURRENCY_LIMIT = 3

DAILY_LIMIT_TYPES: tuple[str, ...] = ("rate_limit_exhausted",)
CONCURRENT_ERROR_CODES: tuple[str, ...] = ("too_many_concurrent_tasks",)
CONCURRENT_MESSAGE_RULES: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("generations_in_progress", re.compile(r"you already have \d+ generations? in progress", re.IGNORECASE)),
    ("videos_at_a_time", re.compile(r"you can only generate \d+ videos? at a time", re.IGNORECASE)),
    ("too_many_concurrent", re.compile(r"too many concurrent", re.IGNORECASE)),
    ("maximum_concurrent_generations", re.compile(r"maximum.*concurrent.*generations", re.IGNORECASE)),
)
AUTH_STATUS_CODES = frozenset({401, 403})
RATE_LIMIT_STATUS_CODE = 429


@dataclass(frozen=True, slots=True)
class DailyLimit:
    kind: ClassVar[str] = "daily_limit"

    reset_seconds: float = 0
    reset_time: float | None = None
    credit_remaining: float | None = None
    matched_rule: str = "exhausted_type"


@dataclass(frozen=True, slots=True)
class ConcurrentLimit:
    kind: ClassVar[str] = "concurrent_limit"

    num_tasks: int = DEFAULT_CONCURRENCY_LIMIT
    message: str = ""
    matched_rule: str = "error_code"


@dataclass(frozen=True, slots=True)
class UnknownRateLimit:
    kind: ClassVar[str] = "unknown_rate_limit"

    message: str = "Rate limit reached."
    raw: Any = field(default=None, compare=False)


@dataclass(frozen=True, slots=True)
class AuthError:
    kind: ClassVar[str] = "auth_error"

    status_code: int = 401
    message: str = "Authentication failed; a fresh credential is needed."


@dataclass(frozen=True, slots=True)
class OtherFailure:
    kind: ClassVar[str] = "other"

    status_code: int | None = None
    message: str = "Unknown error"


Classification = Union[DailyLimit, ConcurrentLimit, UnknownRateLimit, AuthError, OtherFailure]


def classify_failure(
    status_code: int,
    body: Any,
    *,
    now: float,
    concurrency_limit: int = DEFAULT_CONCURRENCY_LIMIT,
) -> Classification:
    """Classify a non-2xx submit response."""

    if status_code == RATE_LIMIT_STATUS_CODE:
        return classify_rate_limit(body, now=now, concurrency_limit=concurrency_limit)
    if status_code in AUTH_STATUS_CODES:
        return AuthError(status_code=status_code)
    return OtherFailure(status_code=status_code, message=failure_message(body) or f"HTTP {status_code}")


def classify_rate_limit(
    body: Any,
    *,
    now: float,
    concurrency_limit: int = DEFAULT_CONCURRENCY_LIMIT,
) -> Classification:
    """Classify a "too many requests" body; daily quota wins over concurrency."""

    if not isinstance(body, dict):
        return UnknownRateLimit(message="Rate limit reached (unknown type).", raw=body)

    daily = _match_daily_limit(body, now)
    if daily is not None:
        return daily

    concurrent = _match_concurrent_limit(body, concurrency_limit)
    if concurrent is not None:
        return concurrent

    return UnknownRateLimit(message=failure_message(body) or "Rate limit reached.", raw=body)


def failure_message(body: Any) -> str | None:
    if isinstance(body, str):
        return body.strip() or None
    if not isinstance(body, dict):
        return None
    error = body.get("error")
    if isinstance(error, dict) and isinstance(error.get("message"), str):
        return error["message"]
    if isinstance(error, str) and error:
        return error
    for key in ("detail", "message"):
        value = body.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def _match_daily_limit(body: dict[str, Any], now: float) -> DailyLimit | None:
    balance = body.get("rate_limit_and_credit_balance")
    if not isinstance(balance, dict):
        balance = {}
    credit_remaining = _number(balance.get("credit_remaining"))

    if body.get("type") in DAILY_LIMIT_TYPES:
        rule = "exhausted_type"
    elif balance.get("rate_limit_reached") is True and credit_remaining == 0:
        rule = "no_credit_remaining"
    else:
        return None

    reset_seconds = _number(balance.get("access_resets_in_seconds"))
    if reset_seconds is None:
        reset_seconds = _number(body.get("reset_seconds", body.get("resetSeconds")))
    reset_seconds = reset_seconds if reset_seconds is not None and reset_seconds > 0 else 0
    return DailyLimit(
        reset_seconds=reset_seconds,
        reset_time=now + reset_seconds if reset_seconds > 0 else None,
        credit_remaining=credit_remaining,
        matched_rule=rule,
    )


def _match_concurrent_limit(body: dict[str, Any], concurrency_limit: int) -> ConcurrentLimit | None:
    error = body.get("error")
    if not isinstance(error, dict):
        error = {}
    code = error.get("code")
    message = error.get("message") if isinstance(error.get("message"), str) else ""
    details = error.get("details") if isinstance(error.get("details"), dict) else {}
    num_tasks = _number(details.get("num_tasks"))

    rule: str | None = None
    if code in CONCURRENT_ERROR_CODES:
        rule = "error_code"
    elif num_tasks is not None and num_tasks == concurrency_limit:
        rule = "num_tasks"
    else:
        for name, pattern in CONCURRENT_MESSAGE_RULES:
            if pattern.search(message):
                rule = name
                break
    if rule is None:
        return None

    return ConcurrentLimit(
        num_tasks=int(num_tasks) if num_tasks else concurrency_limit,
        message=message or f"Maximum concurrent generations reached ({concurrency_limit}).",
        matched_rule=rule,
    )


def _number(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value
