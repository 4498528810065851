"""VK API access with retries.

Every remote call of the tool goes through ``call_with_retries``; the client
converts VK error payloads into an ``ErrorKind`` once, so callers never look
at raw error codes.

References:
- https://dev.vk.com/method/board.getComments
- https://dev.vk.com/method/board.deleteComment
- https://dev.vk.com/reference/errors
"""

from __future__ import annotations

import enum
import random
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

import requests

API_BASE = "https://api.vk.com/method"
DEFAULT_API_VERSION = "5.199"

T = TypeVar("T")


class ErrorKind(str, enum.Enum):
    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"
    FATAL = "fatal"

    @property
    def retriable(self) -> bool:
        return self is not ErrorKind.FATAL


# 6: too many requests per second, 9: flood control, 29: method rate limit reached
RATE_LIMIT_CODES = frozenset({6, 9, 29})
# 10: internal server error
TRANSIENT_CODES = frozenset({10})


def classify_error_code(code: int | None) -> ErrorKind:
    if code is None:
        return ErrorKind.FATAL
    if code in RATE_LIMIT_CODES:
        return ErrorKind.RATE_LIMITED
    if code in TRANSIENT_CODES:
        return ErrorKind.TRANSIENT
    return ErrorKind.FATAL


def classify_http_status(status: int) -> ErrorKind:
    if status == 429:
        return ErrorKind.RATE_LIMITED
    if 500 <= status < 600:
        return ErrorKind.TRANSIENT
    return ErrorKind.FATAL


class VkApiError(Exception):
    """Error reported by the VK API or the HTTP layer in front of it."""

    def __init__(self, code: int | None, message: str, kind: ErrorKind | None = None) -> None:
        super().__init__(f"code={code}, msg={message}")
        self.code = code
        self.message = message
        self.kind = kind if kind is not None else classify_error_code(code)


def classify_exception(exc: BaseException) -> ErrorKind:
    if isinstance(exc, VkApiError):
        return exc.kind
    if isinstance(exc, (requests.ConnectionError, requests.Timeout)):
        return ErrorKind.TRANSIENT
    # Unknown failures are never assumed to be retriable.
    return ErrorKind.FATAL


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 6
    base_delay_ms: int = 300
    max_delay_ms: int = 3000


DEFAULT_RETRY_POLICY = RetryPolicy()


class RemoteCallError(Exception):
    """A remote call that failed for good."""

    def __init__(
        self,
        label: str,
        kind: ErrorKind,
        message: str,
        attempts: int,
        code: int | None = None,
    ) -> None:
        super().__init__(f"{label} failed: kind={kind.value}, code={code}, msg={message}, attempts={attempts}")
        self.label = label
        self.kind = kind
        self.message = message
        self.attempts = attempts
        self.code = code


class RetriesExhausted(RemoteCallError):
    """A retriable failure that outlived the retry budget."""


def delay_for(
    attempt: int,
    base_ms: float,
    max_ms: float,
    rand: Callable[[], float] = random.random,
) -> float:
    """Full jitter delay in milliseconds: uniform in [0, min(max, base * 2**attempt))."""
    exp = min(max_ms, base_ms * (2 ** max(0, attempt)))
    return max(0.0, rand() * max(0.0, exp))


def backoff(
    attempt: int,
    base_ms: float,
    max_ms: float,
    *,
    sleep: Callable[[float], Any] = time.sleep,
    rand: Callable[[], float] = random.random,
) -> float:
    delay_ms = delay_for(attempt, base_ms, max_ms, rand)
    sleep(delay_ms / 1000.0)
    return delay_ms


def call_with_retries(
    operation: Callable[[], T],
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    *,
    label: str = "VK API call",
    sleep: Callable[[float], Any] = time.sleep,
    rand: Callable[[], float] = random.random,
) -> T:
    attempt = 0
    max_retries = max(0, policy.max_retries)

    while True:
        try:
            return operation()
        except Exception as exc:
            kind = classify_exception(exc)
            code = exc.code if isinstance(exc, VkApiError) else None
            message = exc.message if isinstance(exc, VkApiError) else (str(exc) or type(exc).__name__)
            attempts = attempt + 1
            if not kind.retriable:
                raise RemoteCallError(label, kind, message, attempts, code) from exc
            if attempt >= max_retries:
                raise RetriesExhausted(label, kind, message, attempts, code) from exc

            attempt += 1
            waited = backoff(attempt, policy.base_delay_ms, policy.max_delay_ms, sleep=sleep, rand=rand)
            print(
                f"[WARN] {label} {kind.value} (code={code}). "
                f"Waiting {waited / 1000.0:.2f}s before retry {attempt}/{max_retries}."
            )


def preview_response(resp: requests.Response) -> str:
    return resp.text[:260].replace("\n", " ")


class VkClient:
    def __init__(
        self,
        access_token: str,
        *,
        session: requests.Session | None = None,
        api_version: str = DEFAULT_API_VERSION,
        timeout: float = 20.0,
    ) -> None:
        self.access_token = access_token
        self._shared_session = session
        self._local = threading.local()
        self.api_version = api_version
        self.timeout = timeout

    @property
    def session(self) -> requests.Session:
        """The injected session, or one session per calling thread."""
        if self._shared_session is not None:
            return self._shared_session
        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            self._local.session = session
        return session

    def call(self, method: str, params: dict[str, Any] | None = None) -> Any:
        data: dict[str, Any] = {k: v for k, v in (params or {}).items() if v is not None}
        data["access_token"] = self.access_token
        data["v"] = self.api_version

        resp = self.session.post(f"{API_BASE}/{method}", data=data, timeout=self.timeout)
        if not 200 <= resp.status_code < 300:
            raise VkApiError(
                resp.status_code,
                f"{method} HTTP {resp.status_code}: {preview_response(resp)}",
                kind=classify_http_status(resp.status_code),
            )

        try:
            payload = resp.json()
        except ValueError:
            raise VkApiError(None, f"{method} INVALID_JSON: {preview_response(resp)}") from None

        if not isinstance(payload, dict):
            raise VkApiError(None, f"{method} UNKNOWN_RESPONSE: {payload}")

        error = payload.get("error")
        if isinstance(error, dict):
            code = error.get("error_code")
            raise VkApiError(
                code if isinstance(code, int) else None,
                str(error.get("error_msg") or "unknown error"),
            )

        if "response" not in payload:
            raise VkApiError(None, f"{method} UNKNOWN_RESPONSE: {payload}")
        return payload["response"]

    def get_server_time(self) -> int:
        return int(self.call("utils.getServerTime"))

    def get_comments(
        self,
        group_id: int,
        topic_id: int,
        *,
        offset: int,
        count: int,
        sort: str = "asc",
    ) -> dict[str, Any]:
        response = self.call(
            "board.getComments",
            {
                "group_id": group_id,
                "topic_id": topic_id,
                "offset": offset,
                "count": count,
                "sort": sort,
            },
        )
        return response if isinstance(response, dict) else {}

    def get_thread_size(self, group_id: int, topic_id: int) -> int:
        response = self.get_comments(group_id, topic_id, offset=0, count=1, sort="desc")
        count = response.get("count", 0)
        return int(count) if isinstance(count, int) else 0

    def delete_comment(self, group_id: int, topic_id: int, comment_id: int) -> bool:
        response = self.call(
            "board.deleteComment",
            {"group_id": group_id, "topic_id": topic_id, "comment_id": comment_id},
        )
        if response != 1:
            raise VkApiError(None, f"board.deleteComment unexpected response: {response}")
        return True
