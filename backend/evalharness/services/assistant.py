"""Client for the assistant under test."""
from __future__ import annotations

import time
from typing import Optional

import httpx
import structlog

from evalharness.config import get_settings

logger = structlog.get_logger(__name__)


class AssistantError(RuntimeError):
    def __init__(self, message: str, *, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


class AssistantHTTPError(AssistantError):
    def __init__(self, status_code: int) -> None:
        super().__init__(
            f"assistant returned {status_code}",
            retryable=status_code == 429 or status_code >= 500,
        )
        self.status_code = status_code


class AssistantResponseError(AssistantError):
    pass


class AssistantTransportError(AssistantError):
    def __init__(self, message: str) -> None:
        super().__init__(message, retryable=True)


class AssistantClient:
    def __init__(
        self,
        authorization: Optional[str] = None,
        *,
        url: Optional[str] = None,
        answer_field: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        max_attempts: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        settings = get_settings()
        self.url = url or settings.assistant_url
        self.answer_field = answer_field or settings.assistant_answer_field
        self.max_attempts = max(1, int(max_attempts if max_attempts is not None else settings.assistant_retry_max_attempts))
        self.backoff_seconds = max(
            0.0, float(backoff_seconds if backoff_seconds is not None else settings.assistant_retry_backoff_seconds)
        )
        headers = {"Content-Type": "application/json"}
        # Forwarded unmodified; queue-driven batches fall back to the service token.
        credential = authorization or (f"Bearer {settings.assistant_service_token}" if settings.assistant_service_token else None)
        if credential:
            headers["Authorization"] = credential
        self._client = httpx.Client(
            timeout=timeout_seconds or settings.assistant_timeout_seconds,
            headers=headers,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "AssistantClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _ask_once(self, question_text: str) -> str:
        try:
            resp = self._client.post(self.url, json={"prompt": question_text})
        except httpx.TimeoutException as exc:
            raise AssistantTransportError(f"assistant timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise AssistantTransportError(f"assistant unreachable: {exc}") from exc

        if not resp.is_success:
            raise AssistantHTTPError(resp.status_code)
        try:
            data = resp.json()
        except ValueError as exc:
            raise AssistantResponseError("assistant returned a non-JSON body") from exc
        if not isinstance(data, dict) or self.answer_field not in data:
            raise AssistantResponseError(f"assistant response is missing '{self.answer_field}'")
        answer = data[self.answer_field]
        if answer is None:
            return ""
        if not isinstance(answer, str):
            raise AssistantResponseError(f"assistant '{self.answer_field}' is not text")
        return answer

    def ask(self, question_text: str) -> str:
        attempt = 0
        while True:
            try:
                return self._ask_once(question_text)
            except AssistantError as exc:
                attempt += 1
                if not exc.retryable or attempt >= self.max_attempts:
                    raise
                logger.warning("eval.assistant.retry", attempt=attempt, error=str(exc))
                if self.backoff_seconds > 0:
                    time.sleep(self.backoff_seconds * attempt)
