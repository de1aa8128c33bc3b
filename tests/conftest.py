from __future__ import annotations

import json
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import pytest

from shop_monitor.db import StateStore
from shop_monitor.models import ProductSnapshot, Variant
from shop_monitor.utils import HTTPError


class FakeResponse:
    def __init__(self, status_code: int = 200, body: Any = "", url: str = "") -> None:
        self.status_code = status_code
        self.text = body if isinstance(body, str) else json.dumps(body)
        self.url = url

    def json(self) -> Any:
        return json.loads(self.text)


Route = Union[FakeResponse, Exception, Callable[[Dict[str, Any]], Any]]


class FakeSession:
    """requests.Session stand-in answering from a url -> response table.

    Unknown URLs answer 404.  A route may be a FakeResponse, an exception
    instance to raise, or a callable receiving the query params.
    """

    def __init__(self, routes: Optional[Dict[str, Route]] = None) -> None:
        self.routes: Dict[str, Route] = dict(routes or {})
        self.calls: List[Tuple[str, str, Dict[str, Any]]] = []
        self.headers: Dict[str, str] = {}

    def _answer(self, method: str, url: str, kwargs: Dict[str, Any]) -> FakeResponse:
        self.calls.append((method, url, kwargs))
        route = self.routes.get(url)
        if route is None:
            return FakeResponse(404, "not found", url)
        if isinstance(route, Exception):
            raise route
        if callable(route) and not isinstance(route, FakeResponse):
            route = route(kwargs.get("params") or {})
            if not isinstance(route, FakeResponse):
                route = FakeResponse(200, route, url)
        if not route.url:
            route.url = url
        return route

    def get(self, url: str, **kwargs: Any) -> FakeResponse:
        return self._answer("GET", url, kwargs)

    def post(self, url: str, **kwargs: Any) -> FakeResponse:
        return self._answer("POST", url, kwargs)

    def patch(self, url: str, **kwargs: Any) -> FakeResponse:
        return self._answer("PATCH", url, kwargs)

    def close(self) -> None:
        pass

    def urls(self, method: str = "GET") -> List[str]:
        return [u for m, u, _ in self.calls if m == method]


class RecordingSink:
    """Notification sink that records every call."""

    def __init__(self) -> None:
        self.sent: List[Tuple[str, Any]] = []
        self.edits: List[Tuple[str, str, Any]] = []
        self.missing: set[str] = set()
        self.fail_sends = False
        self.fail_edits = False
        self._next = 1000

    def send(self, destination: str, message: Any) -> str:
        if self.fail_sends:
            raise HTTPError("sink down", status_code=503)
        self._next += 1
        self.sent.append((destination, message))
        return str(self._next)

    def edit(self, destination: str, message_id: str, message: Any) -> bool:
        if self.fail_edits:
            raise HTTPError("sink down", status_code=503)
        if message_id in self.missing:
            return False
        self.edits.append((destination, message_id, message))
        return True

    @property
    def calls(self) -> int:
        return len(self.sent) + len(self.edits)


def make_product(
    handle: str = "x",
    *,
    title: Optional[str] = None,
    variants: Optional[List[Tuple[str, str, bool]]] = None,
    images: Tuple[str, ...] = ("https://cdn.example/x.jpg",),
    product_type: str = "Vinyl",
    tags: Tuple[str, ...] = (),
) -> ProductSnapshot:
    variants = variants if variants is not None else [("1", "10.00", True)]
    return ProductSnapshot(
        id=f"id-{handle}",
        title=title or f"Record {handle}",
        handle=handle,
        images=images,
        variants=tuple(Variant(id=i, title="Default Title", price=p, available=a) for i, p, a in variants),
        product_type=product_type,
        tags=tags,
    )


@pytest.fixture()
def store(tmp_path):
    s = StateStore(str(tmp_path / "state.db"))
    s.load()
    try:
        yield s
    finally:
        s.close()


@pytest.fixture()
def sink():
    return RecordingSink()
