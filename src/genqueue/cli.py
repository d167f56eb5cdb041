from __future__ import annotations

import argparse
import logging
import sys

from .app_logging import LOGGER_NAME, log_with_fields, setup_logger
from .config import AppConfig, ensure_local_paths, load_config
from .core import QueueCore
from .errors import ValidationError
from .models import ItemStatus
from .remote import HttpRemoteService
from .store import SqliteStore
from .utils import format_duration, iso_from_epoch, truncate_prompt


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="genqueue",
        description="Queue generation prompts and submit them as slots free up",
    )
    parser.add_argument("--config", required=True, help="Path to genqueue YAML config")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run the instance loop (leader election, polling, submission)")
    run_parser.add_argument("--once", action="store_true", help="Register, poll and submit at most once, then exit")
    run_parser.add_argument("--instance-id", default=None, help="Stable id for this instance")

    subparsers.add_parser("status", help="Show queue, automation and leader status")

    add = subparsers.add_parser("add", help="Add a prompt to the queue")
    add.add_argument("prompt", help="Prompt text")
    add.add_argument("--orientation", choices=["portrait", "landscape", "square"], default=None)
    add.add_argument("--size", default=None)
    add.add_argument("--n-frames", type=int, default=None)
    add.add_argument("--model", default=None)

    remove = subparsers.add_parser("remove", help="Remove a queue item")
    remove.add_argument("item_id")

    move = subparsers.add_parser("move", help="Move a queue item up or down")
    move.add_argument("item_id")
    move.add_argument("direction", choices=["up", "down"])

    subparsers.add_parser("enable", help="Enable automation")
    subparsers.add_parser("disable", help="Disable automation")
    subparsers.add_parser("toggle", help="Resume when paused, otherwise flip automation on/off")
    subparsers.add_parser("pause", help="Pause automation manually")
    subparsers.add_parser("resume", help="Clear any pause, including a daily-limit pause")
    subparsers.add_parser("clear-errors", help="Drop items in error state")
    subparsers.add_parser("clear", help="Drop every queued item")

    token = subparsers.add_parser("token", help="Manage the submission credential")
    token_sub = token.add_subparsers(dest="token_command", required=True)
    token_set = token_sub.add_parser("set", help="Set the credential manually")
    token_set.add_argument("value")
    token_set.add_argument("--device-id", default=None)
    token_set.add_argument("--language", default=None)
    token_sub.add_parser("clear", help="Forget the credential")
    return parser


def _open_core(
    config: AppConfig,
    *,
    instance_id: str | None = None,
    with_logging: bool = True,
) -> tuple[SqliteStore, HttpRemoteService, QueueCore]:
    ensure_local_paths(config)
    logger = setup_logger(config.paths.log) if with_logging else logging.getLogger(LOGGER_NAME)
    store = SqliteStore(config.paths.db)
    store.init_schema()
    remote = HttpRemoteService(config.remote)
    core = QueueCore(
        store,
        remote,
        scheduler_config=config.scheduler,
        leader_config=config.leader,
        default_options=config.defaults,
        instance_id=instance_id,
        submit_timeout_seconds=config.remote.timeout_seconds,
        logger=logger,
    )
    return store, remote, core


def cmd_run(config: AppConfig, *, once: bool = False, instance_id: str | None = None) -> int:
    store, remote, core = _open_core(config, instance_id=instance_id)
    try:
        if once:
            core.run_once()
            if core.is_leader:
                core.leader.release(core.instance_id)
            return 0
        core.run_forever()
    except KeyboardInterrupt:
        log_with_fields(logging.getLogger(LOGGER_NAME), logging.INFO, "shutdown", reason="keyboard_interrupt")
        return 0
    finally:
        core.close()
        remote.close()
        store.close()
    return 0


def cmd_status(config: AppConfig) -> int:
    store, remote, core = _open_core(config, with_logging=False)
    try:
        snapshot = core.get_snapshot()
        counts = core.queue.count_by_status()
        print("Queue:")
        for status in ItemStatus:
            print(f"  {status.value:10} {counts.get(status.value, 0)}")
        for index, item in enumerate(snapshot.queue, start=1):
            error = f" error={item.error_message}" if item.error_message else ""
            print(f"  {index:>3}. {item.id} [{item.status.value}] {truncate_prompt(item.content)}{error}")

        state = snapshot.automation
        print("\nAutomation:")
        print(f"  enabled      {state.enabled}")
        pause = state.pause_reason.value if state.paused else "-"
        print(f"  paused       {state.paused} ({pause})")
        if state.daily_limit_resume_at is not None:
            remaining = state.daily_limit_resume_at - core.clock.now()
            print(f"  resumes_at   {iso_from_epoch(state.daily_limit_resume_at)} (in {format_duration(remaining)})")
        print(f"  active       {state.active_task_count}/{config.scheduler.concurrency_limit}")
        print(f"  last_poll    {iso_from_epoch(state.last_poll_at) or '-'}")
        print(f"  channel_ok   {state.channel_verified}")

        print("\nCredential:")
        captured = iso_from_epoch(snapshot.credential_captured_at) or "-"
        print(f"  present      {snapshot.credential_present} (captured {captured})")

        lease = core.leader.current()
        print("\nLeader:")
        if lease is None:
            print("  (no leader)")
        else:
            print(f"  {lease.owner_id} expires={iso_from_epoch(lease.expires_at)}")
        return 0
    finally:
        remote.close()
        store.close()


def cmd_mutate(config: AppConfig, args: argparse.Namespace) -> int:
    store, remote, core = _open_core(config, with_logging=False)
    try:
        if args.command == "add":
            options = {
                "orientation": args.orientation,
                "size": args.size,
                "n_frames": args.n_frames,
                "model": args.model,
            }
            print(core.enqueue(args.prompt, options))
        elif args.command == "remove":
            core.remove(args.item_id)
        elif args.command == "move":
            if not core.reorder(args.item_id, args.direction):
                print(f"{args.item_id} is already at the {'top' if args.direction == 'up' else 'bottom'}")
        elif args.command in {"enable", "disable"}:
            core.set_automation_enabled(args.command == "enable")
        elif args.command == "toggle":
            state = core.toggle_automation()
            print(f"enabled={state.enabled} paused={state.paused}")
        elif args.command == "pause":
            core.pause()
        elif args.command == "resume":
            core.resume()
        elif args.command == "clear-errors":
            print(f"removed {core.clear_errors()} item(s)")
        elif args.command == "clear":
            print(f"removed {core.clear_queue()} item(s)")
        elif args.command == "token":
            if args.token_command == "set":
                core.set_credential(args.value, device_id=args.device_id, language=args.language)
            else:
                core.clear_credential()
        return 0
    except ValidationError as exc:
        print(str(exc), file=sys.stderr)
        return 2
    finally:
        remote.close()
        store.close()


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    config = load_config(args.config)

    if args.command == "run":
        return cmd_run(config, once=bool(args.once), instance_id=args.instance_id)
    if args.command == "status":
        return cmd_status(config)
    return cmd_mutate(config, args)


if __name__ == "__main__":
    raise SystemExit(main())
