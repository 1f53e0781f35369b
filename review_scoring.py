#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Scoring client: one chat-completion call per image against an
OpenAI-compatible endpoint, returning a typed rubric result.

The call runs on a worker thread so the caller can give up on it as soon
as the run's cancellation token fires.
"""
from __future__ import annotations

import json
import logging
import threading
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Callable, Dict, List

import httpx
import openai
from openai import OpenAI
from openai.types.chat import ChatCompletion

from review_rubric import build_prompt, parse_rubric, RubricResult

OPENAI_BASE_URL = "https://api.openai.com/v1"
DEFAULT_MODEL = "gpt-4o-mini"
DEFAULT_TIMEOUT = 90.0
TEMPERATURE = 0.2

# How often the waiting thread looks at the cancellation token.
CANCEL_POLL_SECONDS = 0.05


###############################################################################
# Errors                                                                      #
###############################################################################

class ScoringError(Exception):
    pass


class MissingCredential(ScoringError):
    def __init__(self) -> None:
        super().__init__("Missing OpenAI API key")


class MissingImageReference(ScoringError):
    def __init__(self) -> None:
        super().__init__("Missing image URL/data URL")


class ScoringHTTPError(ScoringError):
    def __init__(self, status: int, body: str) -> None:
        self.status = status
        self.body = body
        super().__init__(f"Scoring service error {status}: {body}")


class ScoringRequestError(ScoringError):
    pass


class NoContent(ScoringError):
    def __init__(self) -> None:
        super().__init__("No content returned from scoring service")


class ResponseParseError(ScoringError):
    pass


class ScoringCancelled(ScoringError):
    def __init__(self) -> None:
        super().__init__("Scoring request cancelled")


###############################################################################
# Cancellation                                                                #
###############################################################################

class CancellationToken:
    """Shared stop flag for one run. Setting it is permanent."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)


###############################################################################
# Message builder & API call                                                  #
###############################################################################

def build_messages(image_url: str, brief: str = "") -> List[Dict[str, object]]:
    return [
        {"role": "user", "content": [
            {"type": "text", "text": build_prompt(brief)},
            {"type": "image_url", "image_url": {"url": image_url}},
        ]},
    ]


def _message_text(content: Any) -> str:
    # json_object mode gives a string; some compatible servers send parts.
    if isinstance(content, str):
        return content
    if isinstance(content, list) and content:
        first = content[0]
        if isinstance(first, dict):
            return str(first.get("text") or "")
        return str(getattr(first, "text", "") or "")
    return ""


def _run_in_daemon(fn: Callable[..., str], *args: Any) -> "Future[str]":
    """
    Run one call on a daemon thread. An abandoned call (after cancellation)
    never holds up interpreter exit.
    """
    future: "Future[str]" = Future()

    def _target() -> None:
        if not future.set_running_or_notify_cancel():
            return
        try:
            future.set_result(fn(*args))
        except Exception as exc:  # noqa: BLE001
            future.set_exception(exc)

    threading.Thread(target=_target, name="scoring", daemon=True).start()
    return future


class ScoringClient:
    """
    Thin wrapper over the OpenAI SDK for rubric scoring.

    `http_client` lets callers supply their own httpx client (proxies,
    test transports); when omitted the SDK builds one and this class owns it.
    """

    def __init__(
        self,
        api_key: str,
        *,
        model: str = DEFAULT_MODEL,
        base_url: str = OPENAI_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT,
        http_client: httpx.Client | None = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url
        self.timeout = timeout
        self._http_client = http_client
        self._client: OpenAI | None = None

    def _get_client(self) -> OpenAI:
        if self._client is None:
            self._client = OpenAI(
                api_key=self.api_key,
                base_url=self.base_url,
                timeout=self.timeout,
                max_retries=0,
                http_client=self._http_client,
            )
        return self._client

    def _drop_client(self) -> None:
        client, self._client = self._client, None
        if client is not None and self._http_client is None:
            client.close()

    def close(self) -> None:
        self._drop_client()

    def _request(self, client: OpenAI, image_url: str, brief: str) -> str:
        try:
            completion = client.chat.completions.create(
                model=self.model,
                messages=build_messages(image_url, brief),  # type: ignore[arg-type]
                temperature=TEMPERATURE,
                response_format={"type": "json_object"},
            )
        except openai.APIStatusError as exc:
            raise ScoringHTTPError(exc.status_code, exc.response.text) from exc
        except openai.APIConnectionError as exc:
            raise ScoringRequestError(f"Scoring request failed: {exc}") from exc
        except openai.OpenAIError as exc:
            raise ScoringRequestError(f"Scoring request failed: {exc}") from exc

        # A 200 with a non-JSON body (gateway HTML, empty) comes back as a str.
        if not isinstance(completion, ChatCompletion):
            if not str(completion or "").strip():
                raise NoContent()
            raise ResponseParseError(
                f"Could not parse scoring response: unexpected body {str(completion)[:200]!r}"
            )
        choices = completion.choices or []
        if not choices or choices[0].message is None:
            raise NoContent()
        text = _message_text(choices[0].message.content).strip()
        if not text:
            raise NoContent()
        return text

    def _wait(self, future: "Future[str]", cancel_token: CancellationToken | None) -> str:
        if cancel_token is None:
            return future.result()
        while True:
            if cancel_token.cancelled:
                self._drop_client()
                raise ScoringCancelled()
            try:
                return future.result(timeout=CANCEL_POLL_SECONDS)
            except FutureTimeout:
                continue

    def score(
        self,
        image_url: str,
        brief: str = "",
        cancel_token: CancellationToken | None = None,
    ) -> RubricResult:
        """
        Score one image. A single attempt: any failure raises a ScoringError
        subclass and nothing is retried.
        """
        if not self.api_key:
            raise MissingCredential()
        if not image_url:
            raise MissingImageReference()
        if cancel_token is not None and cancel_token.cancelled:
            raise ScoringCancelled()

        client = self._get_client()
        future = _run_in_daemon(self._request, client, image_url, brief)
        text = self._wait(future, cancel_token)

        logging.debug("%s -> %s", self.model, text[:160].replace("\n", " "))

        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ResponseParseError(f"Could not parse scoring response: {exc}") from exc
        if not isinstance(payload, dict):
            raise ResponseParseError(
                f"Could not parse scoring response: expected a JSON object, "
                f"got {type(payload).__name__}"
            )

        result = parse_rubric(payload, raw=text)
        for warning in result.warnings:
            logging.warning("Discarded rubric field – %s", warning)
        return result
