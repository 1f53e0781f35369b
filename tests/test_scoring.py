from __future__ import annotations

import json
import threading
import time

import httpx
import pytest

from review_rubric import CATEGORIES
from review_scoring import (
    CancellationToken,
    MissingCredential,
    MissingImageReference,
    NoContent,
    ResponseParseError,
    ScoringCancelled,
    ScoringClient,
    ScoringHTTPError,
    ScoringRequestError,
    TEMPERATURE,
)

BASE_URL = "https://llm.example.test/v1"


def _completion(content) -> dict:
    return {
        "id": "chatcmpl-test",
        "object": "chat.completion",
        "created": 1700000000,
        "model": "gpt-4o-mini",
        "choices": [
            {
                "index": 0,
                "finish_reason": "stop",
                "message": {"role": "assistant", "content": content},
            }
        ],
    }


def _rubric_json() -> str:
    payload = {c.key: {"score": 7, "notes": ""} for c in CATEGORIES}
    payload["compositionLayout"] = {"score": 8, "notes": "balanced"}
    return json.dumps(payload)


def _client(handler, api_key: str = "sk-test") -> ScoringClient:
    http_client = httpx.Client(transport=httpx.MockTransport(handler))
    return ScoringClient(api_key, base_url=BASE_URL, http_client=http_client)


def test_score_success_sends_expected_request() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["auth"] = request.headers.get("authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=_completion(_rubric_json()))

    result = _client(handler).score("https://img.example.test/pic.jpg", "poster for sale")

    assert result.get("compositionLayout").score == 8
    assert result.get("compositionLayout").notes == "balanced"
    assert result.get("overallClarity").score == 7
    assert result.raw == _rubric_json()

    assert seen["path"] == "/v1/chat/completions"
    assert seen["auth"] == "Bearer sk-test"
    body = seen["body"]
    assert body["temperature"] == TEMPERATURE
    assert body["response_format"] == {"type": "json_object"}
    assert body["model"] == "gpt-4o-mini"
    parts = body["messages"][0]["content"]
    assert parts[0]["type"] == "text"
    assert "Design brief/context: poster for sale" in parts[0]["text"]
    assert parts[1] == {"type": "image_url", "image_url": {"url": "https://img.example.test/pic.jpg"}}


def test_preconditions_fail_without_network() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json=_completion(_rubric_json()))

    with pytest.raises(MissingCredential):
        _client(handler, api_key="").score("https://img.example.test/a.png")
    with pytest.raises(MissingImageReference):
        _client(handler).score("")
    assert calls == []


def test_http_error_carries_status_and_body() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, text='{"error": {"message": "bad key"}}')

    with pytest.raises(ScoringHTTPError) as info:
        _client(handler).score("https://img.example.test/a.png")

    assert info.value.status == 401
    assert "bad key" in info.value.body
    assert str(info.value).startswith("Scoring service error 401:")


def test_single_attempt_on_server_error() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(500, text="boom")

    with pytest.raises(ScoringHTTPError):
        _client(handler).score("https://img.example.test/a.png")
    assert len(calls) == 1


def test_connection_failure_is_request_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("unreachable", request=request)

    with pytest.raises(ScoringRequestError) as info:
        _client(handler).score("https://img.example.test/a.png")
    assert str(info.value).startswith("Scoring request failed")


@pytest.mark.parametrize("content", [None, "", "   "])
def test_empty_content(content) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=_completion(content))

    with pytest.raises(NoContent):
        _client(handler).score("https://img.example.test/a.png")


@pytest.mark.parametrize("content", ["not json", "[1, 2]"])
def test_unparseable_content(content) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=_completion(content))

    with pytest.raises(ResponseParseError):
        _client(handler).score("https://img.example.test/a.png")


def test_cancellation_interrupts_outstanding_request() -> None:
    release = threading.Event()

    def handler(request: httpx.Request) -> httpx.Response:
        release.wait(5)
        return httpx.Response(200, json=_completion(_rubric_json()))

    token = CancellationToken()
    timer = threading.Timer(0.2, token.cancel)
    timer.start()
    started = time.monotonic()
    try:
        with pytest.raises(ScoringCancelled):
            _client(handler).score("https://img.example.test/a.png", cancel_token=token)
        assert time.monotonic() - started < 2.0
    finally:
        timer.cancel()
        release.set()


def test_already_cancelled_token_skips_request() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json=_completion(_rubric_json()))

    token = CancellationToken()
    token.cancel()
    with pytest.raises(ScoringCancelled):
        _client(handler).score("https://img.example.test/a.png", cancel_token=token)
    assert calls == []


def test_empty_200_body_is_no_content() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="")

    with pytest.raises(NoContent):
        _client(handler).score("https://img.example.test/a.png")


def test_html_200_body_is_parse_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html><body>Bad gateway</body></html>",
                              headers={"Content-Type": "text/html"})

    with pytest.raises(ResponseParseError) as info:
        _client(handler).score("https://img.example.test/a.png")
    assert str(info.value).startswith("Could not parse scoring response")


def test_request_runs_on_daemon_thread() -> None:
    names = []

    def handler(request: httpx.Request) -> httpx.Response:
        current = threading.current_thread()
        names.append((current.name, current.daemon))
        return httpx.Response(200, json=_completion(_rubric_json()))

    _client(handler).score("https://img.example.test/a.png", cancel_token=CancellationToken())
    assert names == [("scoring", True)]
