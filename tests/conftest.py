"""Shared fixtures: an instrumented stand-in for aiohttp.ClientSession."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from typing import Any, Union

import pytest

from portrait_fetch import ArchiveEndpoint

GRAPHQL_URL = "https://index.test/graphql"
ARCHIVE_GATEWAY = "https://archive.test"


class FakeResponse:
    def __init__(self, status: int = 200, body: bytes = b"") -> None:
        self.status = status
        self.body = body

    async def read(self) -> bytes:
        return self.body


Handler = Union[FakeResponse, BaseException, Callable[[Any], Awaitable[FakeResponse]]]


def json_response(obj: Any, status: int = 200) -> FakeResponse:
    return FakeResponse(status, json.dumps(obj).encode("utf-8"))


def index_page(tx_ids: list[str]) -> FakeResponse:
    """A GraphQL transactions page whose cursors are ``cursor-<tx id>``."""
    edges = [{"cursor": f"cursor-{tx_id}", "node": {"id": tx_id, "tags": []}} for tx_id in tx_ids]
    return json_response({"data": {"transactions": {"edges": edges}}})


def delayed(response: Handler, delay: float) -> Callable[[Any], Awaitable[FakeResponse]]:
    async def handler(_payload: Any) -> FakeResponse:
        await asyncio.sleep(delay)
        if isinstance(response, BaseException):
            raise response
        return response

    return handler


class Blocker:
    """Handler that never answers and records whether it got cancelled."""

    def __init__(self) -> None:
        self.entered = 0
        self.cancelled = 0

    async def __call__(self, _payload: Any) -> FakeResponse:
        self.entered += 1
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancelled += 1
            raise
        raise AssertionError("unreachable")


class _RequestContext:
    def __init__(self, handler: Handler | None, payload: Any) -> None:
        self._handler = handler
        self._payload = payload

    async def __aenter__(self) -> FakeResponse:
        handler = self._handler
        if handler is None:
            return FakeResponse(404)
        if isinstance(handler, FakeResponse):
            return handler
        if isinstance(handler, BaseException):
            raise handler
        return await handler(self._payload)

    async def __aexit__(self, *exc_info: Any) -> bool:
        return False


class FakeSession:
    """Routes requests by (method, url) and records every request issued."""

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], Handler] = {}
        self.requests: list[tuple[str, str, Any]] = []

    def route(self, method: str, url: str, handler: Handler) -> None:
        self.routes[(method, url)] = handler

    def get(self, url: str, **kwargs: Any) -> _RequestContext:
        return self._request("GET", url, None)

    def post(self, url: str, json: Any = None, **kwargs: Any) -> _RequestContext:
        return self._request("POST", url, json)

    def _request(self, method: str, url: str, payload: Any) -> _RequestContext:
        self.requests.append((method, url, payload))
        return _RequestContext(self.routes.get((method, url)), payload)

    def count(self, method: str, prefix: str = "") -> int:
        return sum(1 for m, url, _ in self.requests if m == method and url.startswith(prefix))

    def index_queries(self) -> list[dict[str, Any]]:
        return [payload for m, url, payload in self.requests if m == "POST" and url == GRAPHQL_URL]


@pytest.fixture
def session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def archive() -> ArchiveEndpoint:
    return ArchiveEndpoint(GRAPHQL_URL, ARCHIVE_GATEWAY)
