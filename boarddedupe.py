#!/usr/bin/env python3
"""Delete adjacent duplicate comments in a VK board topic.

Requirements:
- user access token able to read the topic (USER_TOKEN)
- community token with moderation rights (GROUP_TOKEN)

Only strict neighbours are treated as duplicates: same author, same text
after normalization and (unless --ignore-atts) the same attachments.
"""

from __future__ import annotations

import argparse
import json
import os
import signal
import sys
import threading
from dataclasses import dataclass
from typing import Any

from boarddedupe_api import (
    DEFAULT_API_VERSION,
    DEFAULT_RETRY_POLICY,
    RemoteCallError,
    RetryPolicy,
    VkClient,
    call_with_retries,
)
from boarddedupe_delete import RunOptions, RunReport, run_dedupe

EXIT_OK = 0
EXIT_RUNTIME = 1
EXIT_SETUP = 3
EXIT_SIGNAL = 130

SHUTDOWN_GRACE_SECONDS = 1.5


@dataclass
class AuthConfig:
    user_token: str
    group_token: str


def clamp(value: int, low: int, high: int) -> int:
    return min(high, max(low, value))


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Delete adjacent duplicate comments in a VK board topic.")
    p.add_argument("group_id", type=int, help="Community id (sign is ignored).")
    p.add_argument("topic_id", type=int, help="Board topic id.")
    p.add_argument("--full", action="store_true", help="Scan the whole topic instead of the tail.")
    p.add_argument("--tail", type=int, default=300, help="Number of latest comments to scan (default: 300).")
    p.add_argument(
        "--ignore-atts",
        action="store_true",
        help="Compare text and author only; attachments never distinguish duplicates.",
    )
    p.add_argument("--dry-run", action="store_true", help="Print the plan only, do not delete.")
    p.add_argument("--concurrency", type=int, default=2, help="Parallel delete calls, 1..8 (default: 2).")
    p.add_argument(
        "--max-retries",
        type=int,
        default=DEFAULT_RETRY_POLICY.max_retries,
        help="Retries per delete call on rate limits and server errors (default: 6).",
    )
    p.add_argument(
        "--backoff-ms",
        type=int,
        default=DEFAULT_RETRY_POLICY.base_delay_ms,
        help="Base backoff delay in milliseconds (default: 300).",
    )
    p.add_argument(
        "--max-backoff-ms",
        type=int,
        default=DEFAULT_RETRY_POLICY.max_delay_ms,
        help="Backoff ceiling in milliseconds (default: 3000).",
    )
    p.add_argument("--preview", type=int, default=20, help="Ids shown from each end in dry-run (default: 20).")
    p.add_argument("--user-token", help="User access token for reading.")
    p.add_argument("--group-token", help="Community access token for deleting.")
    p.add_argument("--auth-file", default="auth.json", help="Path to auth file (default: auth.json).")
    p.add_argument("--api-version", default=DEFAULT_API_VERSION, help=f"VK API version (default: {DEFAULT_API_VERSION}).")
    p.add_argument("--timeout", type=float, default=20.0, help="HTTP timeout seconds.")
    p.add_argument("--skip-token-check", action="store_true", help="Do not check both tokens before scanning.")
    return p.parse_args(argv)


def build_options(args: argparse.Namespace) -> RunOptions:
    base = clamp(args.backoff_ms, 50, 10000)
    policy = RetryPolicy(
        max_retries=clamp(args.max_retries, 0, 20),
        base_delay_ms=base,
        max_delay_ms=clamp(args.max_backoff_ms, base, 60000),
    )
    return RunOptions(
        full_scan=args.full,
        tail_size=clamp(args.tail, 1, 1_000_000),
        ignore_attachments=args.ignore_atts,
        dry_run=args.dry_run,
        concurrency=clamp(args.concurrency, 1, 8),
        retry_policy=policy,
        preview_size=clamp(args.preview, 1, 1000),
    )


def load_auth(args: argparse.Namespace) -> AuthConfig:
    file_values: dict[str, str] = {}
    if os.path.exists(args.auth_file):
        with open(args.auth_file, encoding="utf-8") as fp:
            obj = json.load(fp)
        if isinstance(obj, dict):
            file_values = {k: str(v) for k, v in obj.items() if v is not None}

    user_token = (
        args.user_token
        or os.getenv("USER_TOKEN")
        or os.getenv("VK_USER_TOKEN")
        or file_values.get("user_token", "")
    )
    group_token = (
        args.group_token
        or os.getenv("GROUP_TOKEN")
        or os.getenv("VK_GROUP_TOKEN")
        or file_values.get("group_token", "")
    )
    if not user_token:
        raise ValueError("Missing user token. Set --user-token, USER_TOKEN, or auth.json user_token.")
    if not group_token:
        raise ValueError("Missing community token. Set --group-token, GROUP_TOKEN, or auth.json group_token.")
    return AuthConfig(user_token=user_token.strip(), group_token=group_token.strip())


def check_tokens(reader: VkClient, moderator: VkClient) -> None:
    # A cheap call per token surfaces revoked or mistyped tokens before the scan.
    call_with_retries(reader.get_server_time, label="utils.getServerTime (user token)")
    call_with_retries(moderator.get_server_time, label="utils.getServerTime (community token)")


def install_signal_handlers(stop_event: threading.Event) -> None:
    def handler(signum: int, _frame: Any) -> None:
        if stop_event.is_set():
            return
        stop_event.set()
        print(f"[WARN] Got {signal.Signals(signum).name}. Finishing in-flight calls and stopping.", flush=True)
        timer = threading.Timer(SHUTDOWN_GRACE_SECONDS, os._exit, args=(EXIT_SIGNAL,))
        timer.daemon = True
        timer.start()

    signal.signal(signal.SIGINT, handler)
    signal.signal(signal.SIGTERM, handler)


def print_summary(report: RunReport) -> None:
    print("")
    print("========== SUMMARY ==========")
    if report.total_comments is not None:
        print(f"total      : {report.total_comments}")
    print(f"offset     : {report.start_offset}")
    print(f"planned    : {len(report.plan)}")
    if report.dry_run:
        print("mode       : DRY-RUN")
    if report.deletion is not None:
        print(f"deleted    : {report.deletion.deleted}/{report.deletion.total}")
        print(f"failed     : {len(report.deletion.failed)}")
        if report.deletion.cancelled:
            print(f"cancelled  : {report.deletion.cancelled}")
    print(f"took       : {report.elapsed:.1f}s")


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    options = build_options(args)
    group_id = abs(args.group_id)

    try:
        auth = load_auth(args)
    except Exception as exc:
        print(f"[ERROR] Failed to load auth: {exc}", file=sys.stderr)
        return EXIT_SETUP

    # Each client keeps one requests.Session per thread; deletions run on several threads.
    reader = VkClient(auth.user_token, api_version=args.api_version, timeout=args.timeout)
    moderator = VkClient(auth.group_token, api_version=args.api_version, timeout=args.timeout)

    if not args.skip_token_check:
        try:
            check_tokens(reader, moderator)
        except RemoteCallError as exc:
            print(f"[ERROR] Token check failed: {exc}", file=sys.stderr)
            return EXIT_SETUP

    stop_event = threading.Event()
    install_signal_handlers(stop_event)

    print(f"[INFO] Topic: group={group_id} topic={args.topic_id}")
    print(f"[INFO] Mode: {'DRY-RUN' if options.dry_run else 'DELETE'}")
    if options.ignore_attachments:
        print("[INFO] Attachments are ignored when comparing comments")

    try:
        report = run_dedupe(reader, moderator, group_id, args.topic_id, options, stop_event=stop_event)
    except RemoteCallError as exc:
        print(f"[ERROR] Failed to read topic: {exc}", file=sys.stderr)
        return EXIT_RUNTIME

    print_summary(report)
    if stop_event.is_set():
        return EXIT_SIGNAL
    return EXIT_OK if report.ok else EXIT_RUNTIME


if __name__ == "__main__":
    raise SystemExit(main())
