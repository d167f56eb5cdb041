from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .queue_store import DEFAULT_OPTIONS

DEFAULT_REMOTE_TIMEOUT_SECONDS = 4.0


@dataclass(slots=True)
class PathsConfig:
    db: Path
    log: Path


@dataclass(slots=True)
class RemoteConfig:
    base_url: str = "https://sora.chatgpt.com"
    timeout_seconds: float = DEFAULT_REMOTE_TIMEOUT_SECONDS
    cookies: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class SchedulerConfig:
    concurrency_limit: int = 3
    poll_interval_seconds: float = 5.0
    submit_interval_seconds: float = 2.0
    cooldown_seconds: float = 2.0
    backoff_base_seconds: float = 10.0
    backoff_jitter_seconds: float = 5.0
    daily_limit_check_seconds: float = 30.0
    max_unknown_retries: int = 3


@dataclass(slots=True)
class LeaderConfig:
    lease_seconds: float = 10.0
    heartbeat_seconds: float = 5.0


@dataclass(slots=True)
class AppConfig:
    paths: PathsConfig
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    leader: LeaderConfig = field(default_factory=LeaderConfig)
    defaults: dict[str, Any] = field(default_factory=lambda: dict(DEFAULT_OPTIONS))


def _section(raw: dict, key: str) -> dict:
    value = raw.get(key, {}) or {}
    if not isinstance(value, dict):
        raise ValueError(f"`{key}` must be a mapping")
    return value


def _positive(value: float, name: str) -> float:
    if value <= 0:
        raise ValueError(f"`{name}` must be > 0")
    return value


def _non_negative(value: float, name: str) -> float:
    if value < 0:
        raise ValueError(f"`{name}` must be >= 0")
    return value


def load_config(path: str | Path) -> AppConfig:
    config_path = Path(path).expanduser().resolve()
    raw = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ValueError("Config root must be a mapping")

    paths_raw = _section(raw, "paths")
    remote_raw = _section(raw, "remote")
    scheduler_raw = _section(raw, "scheduler")
    leader_raw = _section(raw, "leader")
    defaults_raw = _section(raw, "defaults")

    def to_path(key: str, default: str) -> Path:
        output = Path(str(paths_raw.get(key, default))).expanduser()
        if not output.is_absolute():
            output = config_path.parent / output
        return output

    paths = PathsConfig(db=to_path("db", "genqueue.db"), log=to_path("log", "genqueue.log"))

    cookies_raw = remote_raw.get("cookies", {}) or {}
    if not isinstance(cookies_raw, dict):
        raise ValueError("`remote.cookies` must be a mapping")
    remote = RemoteConfig(
        base_url=str(remote_raw.get("base_url", "https://sora.chatgpt.com")).rstrip("/"),
        timeout_seconds=_positive(
            float(remote_raw.get("timeout_seconds", DEFAULT_REMOTE_TIMEOUT_SECONDS)), "remote.timeout_seconds"
        ),
        cookies={str(key): str(value) for key, value in cookies_raw.items()},
    )
    if not remote.base_url.startswith(("http://", "https://")):
        raise ValueError("`remote.base_url` must be an http(s) URL")

    scheduler = SchedulerConfig(
        concurrency_limit=int(scheduler_raw.get("concurrency_limit", 3)),
        poll_interval_seconds=_positive(
            float(scheduler_raw.get("poll_interval_seconds", 5.0)), "scheduler.poll_interval_seconds"
        ),
        submit_interval_seconds=_positive(
            float(scheduler_raw.get("submit_interval_seconds", 2.0)), "scheduler.submit_interval_seconds"
        ),
        cooldown_seconds=_non_negative(
            float(scheduler_raw.get("cooldown_seconds", 2.0)), "scheduler.cooldown_seconds"
        ),
        backoff_base_seconds=_non_negative(
            float(scheduler_raw.get("backoff_base_seconds", 10.0)), "scheduler.backoff_base_seconds"
        ),
        backoff_jitter_seconds=_non_negative(
            float(scheduler_raw.get("backoff_jitter_seconds", 5.0)), "scheduler.backoff_jitter_seconds"
        ),
        daily_limit_check_seconds=_positive(
            float(scheduler_raw.get("daily_limit_check_seconds", 30.0)), "scheduler.daily_limit_check_seconds"
        ),
        max_unknown_retries=int(scheduler_raw.get("max_unknown_retries", 3)),
    )
    if scheduler.concurrency_limit < 1:
        raise ValueError("`scheduler.concurrency_limit` must be >= 1")
    if scheduler.max_unknown_retries < 0:
        raise ValueError("`scheduler.max_unknown_retries` must be >= 0")

    leader = LeaderConfig(
        lease_seconds=_positive(float(leader_raw.get("lease_seconds", 10.0)), "leader.lease_seconds"),
        heartbeat_seconds=_positive(float(leader_raw.get("heartbeat_seconds", 5.0)), "leader.heartbeat_seconds"),
    )
    if leader.heartbeat_seconds >= leader.lease_seconds:
        raise ValueError("`leader.heartbeat_seconds` must be shorter than `leader.lease_seconds`")
    # A submit must finish before a lease renewed just ahead of it can expire.
    if remote.timeout_seconds >= leader.lease_seconds - leader.heartbeat_seconds:
        raise ValueError(
            "`remote.timeout_seconds` must be shorter than `leader.lease_seconds` - `leader.heartbeat_seconds`"
        )

    defaults = dict(DEFAULT_OPTIONS)
    defaults.update(defaults_raw)

    return AppConfig(paths=paths, remote=remote, scheduler=scheduler, leader=leader, defaults=defaults)


def default_config(root: Path) -> AppConfig:
    return AppConfig(paths=PathsConfig(db=root / "genqueue.db", log=root / "genqueue.log"))


def ensure_local_paths(config: AppConfig) -> None:
    config.paths.db.parent.mkdir(parents=True, exist_ok=True)
    config.paths.log.parent.mkdir(parents=True, exist_ok=True)
