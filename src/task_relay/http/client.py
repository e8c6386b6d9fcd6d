"""Small JSON-over-HTTP client used for worker probes and chat callbacks."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 5.0
DEFAULT_USER_AGENT = "task-relay/0.4"


@dataclass(slots=True)
class JsonResult:
    """Result of one JSON request.

    ``status_code`` is 0 when no response was received; ``timed_out``
    separates a timeout from other transport failures.
    """

    url: str
    status_code: int
    payload: dict[str, Any] | None
    is_success: bool
    timed_out: bool = False
    error: str | None = None

    @property
    def reached(self) -> bool:
        return self.status_code != 0


class JsonHttpClient:
    """httpx wrapper with a fixed per-request timeout and no retries."""

    def __init__(
        self,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        user_agent: str = DEFAULT_USER_AGENT,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._client = httpx.Client(
            timeout=httpx.Timeout(timeout_seconds),
            headers={"User-Agent": user_agent, "Accept": "application/json"},
            transport=transport,
        )

    def get_json(self, url: str) -> JsonResult:
        return self._send("GET", url)

    def post_json(self, url: str, payload: dict[str, Any]) -> JsonResult:
        return self._send("POST", url, json=payload)

    def _send(self, method: str, url: str, **kwargs: Any) -> JsonResult:
        try:
            response = self._client.request(method, url, **kwargs)
        except httpx.TimeoutException:
            logger.warning("Timeout on %s %s", method, url)
            return JsonResult(
                url=url,
                status_code=0,
                payload=None,
                is_success=False,
                timed_out=True,
                error="timeout",
            )
        except httpx.HTTPError as exc:
            logger.warning("HTTP error on %s %s: %s", method, url, exc)
            return JsonResult(
                url=url,
                status_code=0,
                payload=None,
                is_success=False,
                error=str(exc) or type(exc).__name__,
            )

        payload: dict[str, Any] | None = None
        try:
            parsed = response.json()
        except ValueError:
            parsed = None
        if isinstance(parsed, dict):
            payload = parsed
        return JsonResult(
            url=url,
            status_code=response.status_code,
            payload=payload,
            is_success=response.is_success,
            error=None if response.is_success else f"HTTP {response.status_code}",
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> JsonHttpClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()
