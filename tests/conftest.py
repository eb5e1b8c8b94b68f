from __future__ import annotations

import logging
from typing import Optional

import httpx
import pytest

from page_bundler import Config


class FakeSite:
    """In-memory web server for ``httpx.MockTransport``; unknown URLs answer 404."""

    def __init__(self) -> None:
        self.routes: dict[str, object] = {}
        self.requests: list[httpx.Request] = []

    def add(self, url: str, body, content_type: Optional[str] = None, status: int = 200) -> "FakeSite":
        if isinstance(body, str):
            body = body.encode("utf-8")
        headers = {"Content-Type": content_type} if content_type else {}
        self.routes[url] = (status, headers, body)
        return self

    def fail(self, url: str, exc_type: type = httpx.ConnectError) -> "FakeSite":
        self.routes[url] = exc_type
        return self

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get(str(request.url))
        if route is None:
            return httpx.Response(404)
        if isinstance(route, type):
            raise route(f"cannot reach {request.url}", request=request)
        status, headers, body = route
        return httpx.Response(status, headers=headers, content=body)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def hits(self, url: str) -> int:
        return sum(1 for r in self.requests if str(r.url) == url)


@pytest.fixture
def site() -> FakeSite:
    return FakeSite()


@pytest.fixture
def cfg(tmp_path) -> Config:
    return Config(results_dir=str(tmp_path / "results"), max_attempts=1, backoff_factor=0.0)


@pytest.fixture(autouse=True)
def reset_bundler_logger():
    yield
    logger = logging.getLogger("page_bundler")
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)
