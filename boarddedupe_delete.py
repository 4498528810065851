"""Applying a deletion plan to a board topic."""

from __future__ import annotations

import sys
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, Sequence, TypeVar

from boarddedupe_api import (
    DEFAULT_RETRY_POLICY,
    ErrorKind,
    RemoteCallError,
    RetryPolicy,
    call_with_retries,
)
from boarddedupe_scan import iter_comments, plan_deletions

T = TypeVar("T")

PROGRESS_EVERY = 20


@dataclass
class ItemOutcome(Generic[T]):
    item: T
    ok: bool
    result: Any = None
    error: BaseException | None = None
    started: bool = True


def run_bounded(
    items: Sequence[T],
    worker: Callable[[T], Any],
    concurrency: int,
    *,
    stop_event: threading.Event | None = None,
    on_done: Callable[[ItemOutcome[T]], None] | None = None,
) -> list[ItemOutcome[T]]:
    """Run ``worker`` over ``items`` with at most ``concurrency`` calls in flight.

    A fixed pool of threads takes items from a shared cursor, so every item is
    started at most once. Worker exceptions are stored in the item's outcome.
    Once ``stop_event`` is set no further items are started; those come back
    with ``started=False``. Outcomes are returned in item order.
    """
    pending = list(items)
    outcomes: list[ItemOutcome[T] | None] = [None] * len(pending)
    lock = threading.Lock()
    cursor = 0

    def take() -> int | None:
        nonlocal cursor
        with lock:
            if stop_event is not None and stop_event.is_set():
                return None
            if cursor >= len(pending):
                return None
            idx = cursor
            cursor += 1
            return idx

    def loop() -> None:
        while True:
            idx = take()
            if idx is None:
                return
            item = pending[idx]
            try:
                outcome = ItemOutcome(item, True, result=worker(item))
            except Exception as exc:
                outcome = ItemOutcome(item, False, error=exc)
            with lock:
                outcomes[idx] = outcome
            if on_done is not None:
                on_done(outcome)

    size = min(max(1, int(concurrency)), len(pending))
    threads = [threading.Thread(target=loop, name=f"worker-{n}", daemon=True) for n in range(size)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    return [
        outcome if outcome is not None else ItemOutcome(item, False, started=False)
        for item, outcome in zip(pending, outcomes)
    ]


class ProgressReporter:
    def __init__(
        self,
        total: int,
        *,
        every: int = PROGRESS_EVERY,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.total = total
        self.every = max(1, every)
        self.clock = clock
        self.started_at = clock()
        self.processed = 0
        self.succeeded = 0
        self._lock = threading.Lock()

    def elapsed(self) -> float:
        return self.clock() - self.started_at

    def record(self, ok: bool) -> None:
        with self._lock:
            self.processed += 1
            if ok:
                self.succeeded += 1
            if self.processed % self.every == 0 or self.processed == self.total:
                print(
                    f"[INFO] Progress: {self.processed}/{self.total}, "
                    f"deleted={self.succeeded}, elapsed={self.elapsed():.1f}s",
                    flush=True,
                )


@dataclass
class DeletionReport:
    total: int
    deleted: int = 0
    failed: list[tuple[int, BaseException]] = field(default_factory=list)
    cancelled: int = 0
    elapsed: float = 0.0

    @property
    def complete(self) -> bool:
        return self.deleted == self.total


def describe_error(exc: BaseException) -> tuple[str, str]:
    if isinstance(exc, RemoteCallError):
        return exc.kind.value, f"{exc.message} (attempts={exc.attempts})"
    return ErrorKind.FATAL.value, str(exc) or type(exc).__name__


def delete_comments(
    client: Any,
    group_id: int,
    topic_id: int,
    ids: Sequence[int],
    *,
    concurrency: int = 2,
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    stop_event: threading.Event | None = None,
    progress_every: int = PROGRESS_EVERY,
    **retry_kwargs: Any,
) -> DeletionReport:
    progress = ProgressReporter(len(ids), every=progress_every)

    def delete_one(comment_id: int) -> bool:
        return call_with_retries(
            lambda: client.delete_comment(group_id, topic_id, comment_id),
            policy,
            label=f"board.deleteComment {comment_id}",
            **retry_kwargs,
        )

    def on_done(outcome: ItemOutcome[int]) -> None:
        if not outcome.ok and outcome.error is not None:
            kind, message = describe_error(outcome.error)
            print(f"[FAILED] {outcome.item} | {kind} | {message}", file=sys.stderr, flush=True)
        progress.record(outcome.ok)

    outcomes = run_bounded(ids, delete_one, concurrency, stop_event=stop_event, on_done=on_done)

    report = DeletionReport(total=len(ids), elapsed=progress.elapsed())
    for outcome in outcomes:
        if outcome.ok:
            report.deleted += 1
        elif not outcome.started:
            report.cancelled += 1
        elif outcome.error is not None:
            report.failed.append((outcome.item, outcome.error))
    return report


def preview_plan(plan: Sequence[int], size: int) -> tuple[list[int], list[int]]:
    size = max(0, size)
    head = list(plan[:size])
    if len(plan) <= size:
        return head, []
    return head, list(plan[-size:]) if size else []


def report_dry_run(plan: Sequence[int], size: int) -> None:
    print(f"DRY-RUN: would delete {len(plan)} comments")
    head, tail = preview_plan(plan, size)
    if head:
        print(f"First {len(head)}: {head}")
    if tail:
        print(f"Last {len(tail)}: {tail}")


def tail_start_offset(total: int, tail_size: int) -> int:
    # One extra comment on the left so a duplicate on the window edge is seen.
    return max(0, total - (tail_size + 1))


@dataclass
class RunOptions:
    full_scan: bool = False
    tail_size: int = 300
    ignore_attachments: bool = False
    dry_run: bool = False
    concurrency: int = 2
    retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY
    read_policy: RetryPolicy = DEFAULT_RETRY_POLICY
    preview_size: int = 20


@dataclass
class RunReport:
    total_comments: int | None
    start_offset: int
    plan: list[int]
    dry_run: bool
    deletion: DeletionReport | None = None
    elapsed: float = 0.0

    @property
    def deleted(self) -> int:
        return self.deletion.deleted if self.deletion is not None else 0

    @property
    def ok(self) -> bool:
        if self.dry_run or not self.plan:
            return True
        return self.deletion is not None and self.deletion.complete


def run_dedupe(
    reader: Any,
    moderator: Any,
    group_id: int,
    topic_id: int,
    options: RunOptions,
    *,
    stop_event: threading.Event | None = None,
    **retry_kwargs: Any,
) -> RunReport:
    """Scan the topic, build the plan, then either preview it or apply it.

    Failures of the size query or of a page fetch propagate: a plan built
    from a partially read topic is not applied.
    """
    t0 = time.monotonic()
    total: int | None = None
    start_offset = 0
    if options.full_scan:
        print("[INFO] Scanning FULL topic (ascending)")
    else:
        total = call_with_retries(
            lambda: reader.get_thread_size(group_id, topic_id),
            options.read_policy,
            label="board.getComments count",
            **retry_kwargs,
        )
        start_offset = tail_start_offset(total, options.tail_size)
        print(f"[INFO] Total={total}, scanning tail from offset {start_offset}")

    comments = iter_comments(
        reader,
        group_id,
        topic_id,
        start_offset=start_offset,
        policy=options.read_policy,
        **retry_kwargs,
    )
    plan = plan_deletions(comments, options.ignore_attachments)
    report = RunReport(total_comments=total, start_offset=start_offset, plan=plan, dry_run=options.dry_run)

    if options.dry_run:
        report_dry_run(plan, options.preview_size)
    elif not plan:
        print("[INFO] Nothing to delete.")
    elif stop_event is not None and stop_event.is_set():
        print(f"[WARN] Stop requested before deleting; {len(plan)} planned comments left untouched.")
        report.deletion = DeletionReport(total=len(plan), cancelled=len(plan))
    else:
        print(f"[INFO] Deleting {len(plan)} comments with concurrency={options.concurrency}")
        report.deletion = delete_comments(
            moderator,
            group_id,
            topic_id,
            plan,
            concurrency=options.concurrency,
            policy=options.retry_policy,
            stop_event=stop_event,
            **retry_kwargs,
        )

    report.elapsed = time.monotonic() - t0
    return report
