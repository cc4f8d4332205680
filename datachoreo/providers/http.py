"""Generic outbound HTTP provider."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import requests

from ..errors import ActionFailed, ValidationError

logger = logging.getLogger(__name__)

_TOKEN_FIELDS = ("access_token", "token", "api_key", "secret_key")


def _bearer(credentials: dict[str, Any]) -> str | None:
    for field in _TOKEN_FIELDS:
        if credentials.get(field):
            return str(credentials[field])
    return None


class HttpRequestAction:
    """Perform an HTTP request with bearer credentials from the vault."""

    def __init__(self, session: requests.Session | None = None, timeout: float = 30.0) -> None:
        self.session = session or requests.Session()
        self.timeout = timeout

    def _send(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        return self.session.request(method, url, timeout=self.timeout, **kwargs)

    async def invoke(self, params: dict[str, Any], credentials: dict[str, Any]) -> dict[str, Any]:
        url = params.get("url")
        if not url:
            raise ValidationError("http.request requires a url")
        method = str(params.get("method", "GET")).upper()
        headers = dict(params.get("headers") or {})
        token = _bearer(credentials or {})
        if token:
            headers["Authorization"] = f"Bearer {token}"

        try:
            resp = await asyncio.to_thread(
                self._send,
                method,
                url,
                headers=headers,
                params=params.get("query"),
                json=params.get("body"),
            )
        except requests.RequestException as exc:
            raise ActionFailed(f"HTTP {method} {url} failed: {exc}", retryable=True) from exc

        if resp.status_code >= 400:
            raise ActionFailed(
                f"HTTP {method} {url} returned {resp.status_code}",
                retryable=resp.status_code >= 500 or resp.status_code == 429,
            )
        try:
            body: Any = resp.json()
        except ValueError:
            body = resp.text
        logger.debug(f"HTTP {method} {url} -> {resp.status_code}")
        return {"status_code": resp.status_code, "body": body}
