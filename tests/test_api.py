import threading

import pytest
import requests

from boarddedupe_api import (
    ErrorKind,
    RemoteCallError,
    RetriesExhausted,
    RetryPolicy,
    VkApiError,
    VkClient,
    backoff,
    call_with_retries,
    classify_error_code,
    classify_exception,
    classify_http_status,
    delay_for,
)


def no_sleep(_seconds):
    return None


class FlakyOperation:
    def __init__(self, errors, result="ok"):
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


def test_delay_is_full_jitter_below_cap():
    assert delay_for(1, 300, 3000, rand=lambda: 0.0) == 0.0
    assert delay_for(1, 300, 3000, rand=lambda: 0.5) == pytest.approx(300.0)
    assert delay_for(10, 300, 3000, rand=lambda: 0.999) < 3000
    assert delay_for(0, 300, 3000, rand=lambda: 0.5) == pytest.approx(150.0)


def test_backoff_sleeps_for_computed_delay():
    slept = []

    waited = backoff(2, 100, 3000, sleep=slept.append, rand=lambda: 0.5)

    assert waited == pytest.approx(200.0)
    assert slept == [pytest.approx(0.2)]


@pytest.mark.parametrize(
    "code, kind",
    [
        (6, ErrorKind.RATE_LIMITED),
        (9, ErrorKind.RATE_LIMITED),
        (29, ErrorKind.RATE_LIMITED),
        (10, ErrorKind.TRANSIENT),
        (500, ErrorKind.FATAL),
        (15, ErrorKind.FATAL),
        (100, ErrorKind.FATAL),
        (None, ErrorKind.FATAL),
    ],
)
def test_error_codes_are_classified(code, kind):
    assert classify_error_code(code) is kind


def test_unknown_exceptions_fail_closed():
    assert classify_exception(RuntimeError("boom")) is ErrorKind.FATAL
    assert classify_exception(requests.ConnectionError("reset")) is ErrorKind.TRANSIENT
    assert classify_exception(requests.Timeout("slow")) is ErrorKind.TRANSIENT


@pytest.mark.parametrize("max_retries", [0, 1, 5])
def test_fatal_error_is_attempted_once(max_retries):
    op = FlakyOperation([VkApiError(15, "Access denied")] * 10)

    with pytest.raises(RemoteCallError) as excinfo:
        call_with_retries(op, RetryPolicy(max_retries=max_retries), sleep=no_sleep)

    assert op.calls == 1
    assert not isinstance(excinfo.value, RetriesExhausted)
    assert excinfo.value.kind is ErrorKind.FATAL
    assert excinfo.value.code == 15
    assert excinfo.value.attempts == 1


@pytest.mark.parametrize("max_retries", [0, 1, 3])
def test_retriable_error_exhausts_budget(max_retries):
    op = FlakyOperation([VkApiError(6, "Too many requests per second")] * 10)
    slept = []

    with pytest.raises(RetriesExhausted) as excinfo:
        call_with_retries(op, RetryPolicy(max_retries=max_retries), sleep=slept.append)

    assert op.calls == max_retries + 1
    assert len(slept) == max_retries
    assert excinfo.value.kind is ErrorKind.RATE_LIMITED
    assert excinfo.value.attempts == max_retries + 1


def test_retriable_error_then_success_returns_result(capsys):
    op = FlakyOperation([VkApiError(10, "Internal server error"), requests.Timeout("slow")], result=42)

    assert call_with_retries(op, RetryPolicy(max_retries=3), sleep=no_sleep, label="utils.getServerTime") == 42
    assert op.calls == 3
    assert "[WARN] utils.getServerTime transient" in capsys.readouterr().out


def test_unclassified_exception_is_not_retried():
    op = FlakyOperation([KeyError("items")] * 3)

    with pytest.raises(RemoteCallError) as excinfo:
        call_with_retries(op, RetryPolicy(max_retries=3), sleep=no_sleep)

    assert op.calls == 1
    assert excinfo.value.kind is ErrorKind.FATAL


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class FakeSession:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def post(self, url, data=None, timeout=None):
        self.requests.append((url, data, timeout))
        return self.responses.pop(0)


def test_client_returns_response_body():
    session = FakeSession(FakeResponse(payload={"response": {"count": 7, "items": []}}))
    client = VkClient("tok", session=session, api_version="5.199", timeout=5)

    assert client.get_thread_size(1, 2) == 7
    url, data, timeout = session.requests[0]
    assert url.endswith("/board.getComments")
    assert data["sort"] == "desc"
    assert data["count"] == 1
    assert data["access_token"] == "tok"
    assert data["v"] == "5.199"
    assert timeout == 5


def test_client_raises_classified_api_error():
    session = FakeSession(FakeResponse(payload={"error": {"error_code": 6, "error_msg": "Too many requests"}}))
    client = VkClient("tok", session=session)

    with pytest.raises(VkApiError) as excinfo:
        client.delete_comment(1, 2, 3)

    assert excinfo.value.kind is ErrorKind.RATE_LIMITED
    assert excinfo.value.message == "Too many requests"


def test_client_maps_http_5xx_to_transient():
    client = VkClient("tok", session=FakeSession(FakeResponse(status_code=503, text="busy")))

    with pytest.raises(VkApiError) as excinfo:
        client.get_server_time()

    assert excinfo.value.code == 503
    assert excinfo.value.kind is ErrorKind.TRANSIENT


def test_client_rejects_invalid_json_as_fatal():
    client = VkClient("tok", session=FakeSession(FakeResponse(text="<html>")))

    with pytest.raises(VkApiError) as excinfo:
        client.get_server_time()

    assert excinfo.value.kind is ErrorKind.FATAL


def test_delete_comment_requires_confirmation():
    client = VkClient("tok", session=FakeSession(FakeResponse(payload={"response": 1})))
    assert client.delete_comment(1, 2, 3) is True

    client = VkClient("tok", session=FakeSession(FakeResponse(payload={"response": 0})))
    with pytest.raises(VkApiError):
        client.delete_comment(1, 2, 3)


@pytest.mark.parametrize(
    "status, kind",
    [
        (429, ErrorKind.RATE_LIMITED),
        (500, ErrorKind.TRANSIENT),
        (503, ErrorKind.TRANSIENT),
        (400, ErrorKind.FATAL),
        (403, ErrorKind.FATAL),
        (404, ErrorKind.FATAL),
    ],
)
def test_http_statuses_are_classified(status, kind):
    assert classify_http_status(status) is kind


def test_http_429_is_retried_until_budget_runs_out():
    session = FakeSession(*[FakeResponse(status_code=429, text="Too Many Requests") for _ in range(4)])
    client = VkClient("tok", session=session)

    with pytest.raises(RetriesExhausted) as excinfo:
        call_with_retries(client.get_server_time, RetryPolicy(max_retries=3), sleep=no_sleep)

    assert len(session.requests) == 4
    assert excinfo.value.kind is ErrorKind.RATE_LIMITED
    assert excinfo.value.code == 429


def test_http_429_then_success():
    session = FakeSession(
        FakeResponse(status_code=429, text="Too Many Requests"),
        FakeResponse(payload={"response": 1700000000}),
    )
    client = VkClient("tok", session=session)

    assert call_with_retries(client.get_server_time, RetryPolicy(max_retries=2), sleep=no_sleep) == 1700000000
    assert len(session.requests) == 2


def test_vk_rate_limit_code_29_is_retried():
    session = FakeSession(
        FakeResponse(payload={"error": {"error_code": 29, "error_msg": "Rate limit reached"}}),
        FakeResponse(payload={"response": 1}),
    )
    client = VkClient("tok", session=session)

    assert call_with_retries(lambda: client.delete_comment(1, 2, 3), RetryPolicy(max_retries=1), sleep=no_sleep)
    assert len(session.requests) == 2


def test_client_without_injected_session_uses_one_per_thread():
    client = VkClient("tok")
    sessions = {}

    def grab(name):
        sessions[name] = (client.session, client.session)

    workers = [threading.Thread(target=grab, args=(n,)) for n in range(2)]
    for t in workers:
        t.start()
    for t in workers:
        t.join()

    first, again = sessions[0]
    assert first is again
    assert sessions[0][0] is not sessions[1][0]
    assert client.session is not sessions[0][0]
