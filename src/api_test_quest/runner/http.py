"""HTTP exchange runner: builds one request from a test case and captures the response."""

import json
import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from api_test_quest.errors import TransportError
from api_test_quest.parser.base import TestCase

logger = logging.getLogger(__name__)

JSON_CONTENT_TYPE = "application/json"


@dataclass(frozen=True)
class HttpResponse:
    """A fully read response. Header lookups are case-insensitive."""

    status: int
    headers: httpx.Headers = field(default_factory=httpx.Headers)
    body: bytes = b""

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def json(self) -> Any:
        """Parse the body as JSON. Raises ValueError if it is not JSON."""
        return json.loads(self.body)


def resolve_url(base_url: str, url: str, query: str | None = None) -> str:
    """Join a test url onto base_url. Absolute URLs pass through unchanged."""
    if url.startswith(("http://", "https://")):
        full = url
    else:
        full = f"{base_url.rstrip('/')}{url}"
    if query:
        if not query.startswith(("?", "&")):
            query = ("&" if "?" in full else "?") + query
        full = f"{full}{query}"
    return full


class ExchangeRunner:
    """Sends test requests against one base URL."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        headers: dict[str, str] | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = base_url
        self.timeout = timeout
        self.default_headers = dict(headers or {})
        self.client = httpx.Client(timeout=timeout, transport=transport)

    def close(self) -> None:
        self.client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def url_for(self, test: TestCase) -> str:
        return resolve_url(self.base_url, test.url, test.query)

    def send(self, test: TestCase, timeout: float | None = None) -> HttpResponse:
        """Send the request declared by test.

        Raises TransportError on connection failures, timeouts and bodies that
        cannot be encoded; partial responses are never returned.
        """
        url = self.url_for(test)
        headers = httpx.Headers(self.default_headers)
        headers.update(test.headers)
        try:
            content = self._encode_body(test.body, headers)
        except (TypeError, ValueError) as e:
            raise TransportError(test.method, url, f"cannot encode request body: {e}") from e

        logger.debug("%s %s", test.method, url)
        try:
            resp = self.client.request(
                test.method,
                url,
                headers=headers,
                content=content,
                timeout=timeout if timeout is not None else self.timeout,
            )
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise TransportError(test.method, url, str(e) or type(e).__name__) from e

        logger.debug("%s %s -> %d (%d bytes)", test.method, url, resp.status_code, len(resp.content))
        return HttpResponse(status=resp.status_code, headers=resp.headers, body=resp.content)

    def _encode_body(self, body: Any, headers: httpx.Headers) -> bytes | None:
        if body is None:
            return None
        declared = headers.get("content-type")
        if declared and JSON_CONTENT_TYPE not in declared.lower():
            # The test picked its own content type; strings go out as written
            if isinstance(body, str):
                return body.encode("utf-8")
            if isinstance(body, bytes):
                return body
        elif not declared:
            headers["Content-Type"] = JSON_CONTENT_TYPE
        return json.dumps(body).encode("utf-8")
