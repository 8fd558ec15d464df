"""Provider base class: one-shot completions with bounded retry, plus turn streaming."""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from typing import Iterator

import httpx

from ..types import AgentRequest, LLMProviderError, Message, StreamEvent

MAX_RETRIES = 3
RETRY_BACKOFF = [1.0, 2.0, 4.0]


def _is_transient(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


class BaseProvider(ABC):
    """Abstract base for LLM providers.

    Subclasses supply the endpoint, headers, payload and text extraction;
    ``complete()`` owns the HTTP exchange. Memory callers pass
    ``retries=1`` and let their own queue retry on the next cycle.
    ``stream()`` never retries: a failed turn is the orchestrator's call.
    """

    _timeout: float = 60.0

    def __init__(self) -> None:
        self.last_usage: dict = {}

    @abstractmethod
    def _provider_name(self) -> str: ...

    @abstractmethod
    def _get_url(self) -> str: ...

    @abstractmethod
    def _get_headers(self) -> dict: ...

    @abstractmethod
    def _build_payload(self, system: str, user: str, max_tokens: int) -> dict: ...

    @abstractmethod
    def _extract_text(self, data: dict) -> str: ...

    @abstractmethod
    def stream(self, messages: list[Message], agent: AgentRequest) -> Iterator[StreamEvent]: ...

    def _error(self, message: str, status_code: int | None = None) -> LLMProviderError:
        return LLMProviderError(message, provider=self._provider_name(), status_code=status_code)

    def _post(self, payload: dict) -> str:
        """One HTTP attempt. Raises ``LLMProviderError``; transient ones carry
        a 429/5xx status or none at all (transport failure)."""
        try:
            with httpx.Client(timeout=self._timeout) as client:
                response = client.post(self._get_url(), headers=self._get_headers(), json=payload)
        except httpx.HTTPError as e:
            raise self._error(f"HTTP error: {e}") from e

        if response.status_code != 200:
            raise self._error(f"HTTP {response.status_code}: {response.text}", response.status_code)
        data = response.json()
        self.last_usage = data.get("usage", {})
        return self._extract_text(data)

    def complete(self, system: str, user: str, max_tokens: int, retries: int = MAX_RETRIES) -> str:
        """Send a completion request.

        Transport errors, 429 and 5xx responses are retried up to
        ``retries`` attempts in total with exponential backoff; any other
        status fails at once.
        """
        payload = self._build_payload(system, user, max_tokens)
        attempts = max(1, retries)
        for attempt in range(attempts):
            try:
                return self._post(payload)
            except LLMProviderError as e:
                transient = e.status_code is None or _is_transient(e.status_code)
                if not transient or attempt == attempts - 1:
                    raise
                delay = RETRY_BACKOFF[min(attempt, len(RETRY_BACKOFF) - 1)]
                time.sleep(delay)
        raise self._error("No attempts made")
