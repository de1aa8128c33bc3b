from __future__ import annotations

import requests

from shop_monitor.discovery import (
    CatalogDiscovery,
    handles_from_html,
    handles_from_suggest,
    sitemap_locs,
)

from conftest import FakeResponse, FakeSession

O = "https://shop.example"


def _product(handle: str, available: bool = True) -> dict:
    return {
        "product": {
            "id": abs(hash(handle)) % 10_000,
            "title": handle.replace("-", " ").title(),
            "handle": handle,
            "images": [{"src": f"https://cdn.example/{handle}.jpg"}],
            "variants": [{"id": 1, "title": "Default Title", "price": "9.99", "available": available}],
        }
    }


def _urlset(*paths: str) -> str:
    locs = "".join(f"<url><loc>{O}{p}</loc></url>" for p in paths)
    return f'<?xml version="1.0" encoding="UTF-8"?><urlset>{locs}</urlset>'


def _discovery(routes, **kw) -> tuple[CatalogDiscovery, FakeSession]:
    session = FakeSession(routes)
    kw.setdefault("locale_prefixes", ("en", "nl"))
    return CatalogDiscovery(session, concurrency=2, **kw), session


def test_bulk_listing_wins_and_stops_cascade() -> None:
    bulk = {"products": [_product("a")["product"], _product("b")["product"]]}
    d, session = _discovery({f"{O}/products.json": FakeResponse(200, bulk)})
    products = d.discover(O)
    assert [p.handle for p in products] == ["a", "b"]
    assert session.urls() == [f"{O}/products.json"]
    assert session.calls[0][2]["params"] == {"limit": 250}


def test_sitemap_nested_product_maps_are_capped() -> None:
    index = (
        "<sitemapindex>"
        f"<sitemap><loc>{O}/sitemap_pages_1.xml</loc></sitemap>"
        f"<sitemap><loc>{O}/sitemap_products_1.xml?from=1&amp;to=2</loc></sitemap>"
        f"<sitemap><loc>{O}/sitemap_products_2.xml</loc></sitemap>"
        f"<sitemap><loc>{O}/sitemap_products_3.xml</loc></sitemap>"
        "</sitemapindex>"
    )
    routes = {
        f"{O}/products.json": FakeResponse(200, {"products": []}),
        f"{O}/sitemap.xml": FakeResponse(200, index),
        f"{O}/sitemap_products_1.xml?from=1&to=2": FakeResponse(200, _urlset("/products/One", "/products/two")),
        f"{O}/sitemap_products_2.xml": FakeResponse(200, _urlset("/products/two", "/products/three")),
        f"{O}/sitemap_products_3.xml": FakeResponse(200, _urlset("/products/never")),
        f"{O}/products/one.json": FakeResponse(200, _product("one")),
        f"{O}/products/two.json": FakeResponse(200, _product("two", available=False)),
        f"{O}/products/three.json": FakeResponse(200, _product("three")),
    }
    d, session = _discovery(routes)
    products = d.discover(O)
    assert sorted(p.handle for p in products) == ["one", "three", "two"]
    assert f"{O}/sitemap_products_3.xml" not in session.urls()


def test_sitemap_falls_back_to_conventional_names_and_js_endpoint() -> None:
    js_product = {"id": 3, "title": "Only JS", "handle": "only-js", "variants": [{"id": 5, "price": 1250, "available": True}]}
    routes = {
        f"{O}/products.json": requests.ConnectionError("refused"),
        f"{O}/sitemap_products_1.xml": FakeResponse(200, _urlset("/products/only-js")),
        f"{O}/products/only-js.js": FakeResponse(200, js_product),
    }
    d, _ = _discovery(routes)
    products = d.discover(O)
    assert [p.handle for p in products] == ["only-js"]
    assert products[0].variants[0].price == "12.50"


def test_locale_prefixed_sitemap_retry() -> None:
    routes = {
        f"{O}/nl/sitemap.xml": FakeResponse(
            200, f"<sitemapindex><sitemap><loc>{O}/nl/sitemap_products_1.xml</loc></sitemap></sitemapindex>"
        ),
        f"{O}/nl/sitemap_products_1.xml": FakeResponse(200, _urlset("/nl/products/plaat")),
        f"{O}/products/plaat.json": FakeResponse(200, _product("plaat")),
    }
    d, session = _discovery(routes)
    assert [p.handle for p in d.discover(O)] == ["plaat"]
    assert f"{O}/en/sitemap.xml" in session.urls()


def test_search_suggest_probe_per_keyword() -> None:
    def suggest(params):
        if params.get("q") == "vinyl":
            return {"resources": {"results": {"products": [{"handle": "Blue-LP", "url": "/products/blue-lp"}]}}}
        return {"resources": {"results": {"products": [{"url": "/products/live-cd?_pos=1"}]}}}

    routes = {
        f"{O}/search/suggest.json": suggest,
        f"{O}/products/blue-lp.json": FakeResponse(200, _product("blue-lp")),
        f"{O}/products/live-cd.json": FakeResponse(200, _product("live-cd")),
    }
    d, session = _discovery(routes, keywords=["vinyl", "cd"])
    assert sorted(p.handle for p in d.discover(O)) == ["blue-lp", "live-cd"]
    suggest_calls = [c for c in session.calls if c[1].endswith("suggest.json")]
    assert suggest_calls[0][2]["params"]["resources[type]"] == "product"


def test_collection_page_scrape() -> None:
    html = (
        '<html><body><a href="/collections/all/products/Grid-Item">x</a>'
        '<script>var p = "/products/script-item";</script></body></html>'
    )
    routes = {
        f"{O}/collections/all": FakeResponse(200, html),
        f"{O}/products/grid-item.json": FakeResponse(200, _product("grid-item")),
        f"{O}/products/script-item.json": FakeResponse(200, _product("script-item")),
    }
    d, _ = _discovery(routes, keywords=["nothing"])
    assert [p.handle for p in d.discover(O)] == ["grid-item", "script-item"]


def test_unreachable_shop_yields_empty_catalog() -> None:
    d, session = _discovery({}, keywords=["vinyl"])
    assert d.discover(O) == []
    assert f"{O}/en/collections/all" in session.urls()


def test_crashing_strategy_does_not_abort_cascade(monkeypatch) -> None:
    bulk = {"products": [_product("a")["product"]]}
    d, _ = _discovery({f"{O}/products.json": FakeResponse(200, bulk)})

    def boom(origin):
        raise RuntimeError("bug")

    strategies = d.strategies()
    monkeypatch.setattr(d, "strategies", lambda: [("boom", boom)] + strategies)
    assert [p.handle for p in d.discover(O)] == ["a"]


def test_parsers_tolerate_empty_input() -> None:
    assert sitemap_locs(None) == []
    assert handles_from_html("") == []
    assert handles_from_suggest(None) == []
    assert handles_from_suggest({"products": [{"id": 1, "title": "no link"}]}) == []
