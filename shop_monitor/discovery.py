"""Catalog discovery for a single storefront origin.

Strategies are tried in a fixed order and the first one that yields any
products wins:

  1) bulk listing      /products.json
  2) sitemap crawl     /sitemap.xml -> nested product sitemaps -> handles
  3) locale sitemaps   strategy 2 under /<locale>/
  4) search suggest    /search/suggest.json per keyword
  5) collection page   /collections/all (and locale variants), href scrape

Handles found by strategies 2-5 are resolved one by one against the
per-product JSON endpoint.  Any failing request counts as an empty result
for that step only; discovery never raises for an unreachable shop.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Iterable, List, Optional, Sequence, Tuple
from urllib.parse import quote

import requests
from bs4 import BeautifulSoup

from .config import (
    BULK_PAGE_LIMIT,
    FETCH_CONCURRENCY,
    LOCALE_PREFIXES,
    SITEMAP_MAX_NESTED,
)
from .models import ProductSnapshot
from .normalize import (
    dedupe,
    handle_from_url,
    normalize_handle,
    product_paths,
    snapshot_from_json,
)
from .utils import HTTPError, get_http_session, retryable_request

logger = logging.getLogger(__name__)


# Probes are best-effort: at most two attempts each.
@retryable_request(attempts=2)
def _get(session: requests.Session, url: str, **kwargs: Any) -> requests.Response:
    """Thin wrapper around session.get with the discovery retry policy."""
    return session.get(url, **kwargs)


def _iter_dicts(o):
    """Yield all dicts inside arbitrary JSON (list/dict scalars)."""
    if isinstance(o, dict):
        yield o
        for v in o.values():
            yield from _iter_dicts(v)
    elif isinstance(o, list):
        for v in o:
            yield from _iter_dicts(v)


def _unique(handles: Iterable[Optional[str]]) -> List[str]:
    out: List[str] = []
    seen: set[str] = set()
    for h in handles:
        if h and h not in seen:
            seen.add(h)
            out.append(h)
    return out


def sitemap_locs(xml: Optional[str]) -> List[str]:
    """Return the text of every <loc> element in a sitemap document."""
    if not xml:
        return []
    soup = BeautifulSoup(xml, "html.parser")
    return [loc.get_text(strip=True) for loc in soup.find_all("loc") if loc.get_text(strip=True)]


def handles_from_html(html: Optional[str]) -> List[str]:
    """Product handles linked from an HTML page (anchors first, then raw text)."""
    if not html:
        return []
    soup = BeautifulSoup(html, "html.parser")
    found = [handle_from_url(a.get("href") or "") for a in soup.select('a[href*="/products/"]')]
    # Client-rendered grids only carry product paths in inline scripts.
    found.extend(handle_from_url(m) for m in product_paths(html))
    return _unique(found)


def handles_from_suggest(data: Any) -> List[str]:
    """Collect handles from a search-suggest payload of any shape."""
    found: List[Optional[str]] = []
    for d in _iter_dicts(data):
        if d.get("handle"):
            found.append(normalize_handle(d["handle"]))
        elif d.get("url"):
            found.append(handle_from_url(str(d["url"])))
    return _unique(found)


class CatalogDiscovery:
    """Enumerate a storefront's catalog through the fallback cascade."""

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        *,
        keywords: Sequence[str] = (),
        locale_prefixes: Sequence[str] = tuple(LOCALE_PREFIXES),
        bulk_limit: int = BULK_PAGE_LIMIT,
        max_nested_sitemaps: int = SITEMAP_MAX_NESTED,
        concurrency: int = FETCH_CONCURRENCY,
    ) -> None:
        self._own_session = session is None
        self.session = session or get_http_session()
        self.keywords = [k for k in keywords if k]
        self.locale_prefixes = [p.strip("/") for p in locale_prefixes if p.strip("/")]
        self.bulk_limit = bulk_limit
        self.max_nested_sitemaps = max_nested_sitemaps
        self.concurrency = max(1, concurrency)

    def close(self) -> None:
        if self._own_session:
            self.session.close()

    # ---- cascade ---------------------------------------------------------

    def strategies(self) -> List[Tuple[str, Callable[[str], List[ProductSnapshot]]]]:
        return [
            ("bulk", self.bulk_listing),
            ("sitemap", self.sitemap_crawl),
            ("locale-sitemap", self.locale_sitemap_crawl),
            ("search-suggest", self.search_suggest),
            ("collection", self.collection_scrape),
        ]

    def discover(self, origin: str) -> List[ProductSnapshot]:
        for name, strategy in self.strategies():
            try:
                products = dedupe(strategy(origin))
            except Exception:
                # Strategy errors count as an empty result.
                logger.warning("Discovery strategy %s crashed for %s", name, origin, exc_info=True)
                continue
            if products:
                logger.info("Discovered %d products on %s via %s", len(products), origin, name)
                return products
            logger.debug("Strategy %s found nothing on %s", name, origin)
        logger.info("No products discovered on %s this cycle", origin)
        return []

    # ---- HTTP helpers ----------------------------------------------------

    def _fetch(self, url: str, **kwargs: Any) -> Optional[requests.Response]:
        try:
            return _get(self.session, url, **kwargs)
        except (HTTPError, requests.RequestException) as e:
            logger.debug("Fetch failed for %s: %s", url, e)
            return None

    def _fetch_text(self, url: str, **kwargs: Any) -> Optional[str]:
        resp = self._fetch(url, **kwargs)
        return resp.text if resp is not None else None

    def _fetch_json(self, url: str, **kwargs: Any) -> Any:
        resp = self._fetch(url, **kwargs)
        if resp is None:
            return None
        try:
            return resp.json()
        except ValueError:
            logger.debug("Invalid JSON from %s", url)
            return None

    # ---- per-handle resolution -------------------------------------------

    def fetch_product(self, origin: str, handle: str) -> Optional[ProductSnapshot]:
        path = f"{origin}/products/{quote(handle, safe='')}"
        for suffix in (".json", ".js"):
            snap = snapshot_from_json(self._fetch_json(path + suffix))
            if snap is not None:
                return snap
        return None

    def resolve_handles(self, origin: str, handles: Sequence[str]) -> List[ProductSnapshot]:
        if not handles:
            return []
        logger.debug("Resolving %d handles on %s", len(handles), origin)
        with ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="fetch") as pool:
            results = list(pool.map(lambda h: self.fetch_product(origin, h), handles))
        return [p for p in results if p is not None]

    # ---- strategies ------------------------------------------------------

    def bulk_listing(self, origin: str) -> List[ProductSnapshot]:
        data = self._fetch_json(f"{origin}/products.json", params={"limit": self.bulk_limit})
        items = data.get("products") if isinstance(data, dict) else None
        if not isinstance(items, list):
            return []
        return [p for p in (snapshot_from_json(it) for it in items) if p is not None]

    def sitemap_handles(self, origin: str, prefix: str = "") -> List[str]:
        base = origin + (f"/{prefix}" if prefix else "")
        nested = [u for u in sitemap_locs(self._fetch_text(f"{base}/sitemap.xml")) if "sitemap_products" in u]
        handles: List[Optional[str]] = []
        if nested:
            for url in nested[: self.max_nested_sitemaps]:
                handles.extend(handle_from_url(u) for u in sitemap_locs(self._fetch_text(url)))
            return _unique(handles)

        for url in (
            f"{base}/sitemap_products_1.xml",
            f"{base}/sitemap_products_1.xml?from=1&to=9999999999",
        ):
            found = _unique(handle_from_url(u) for u in sitemap_locs(self._fetch_text(url)))
            if found:
                return found
        return []

    def sitemap_crawl(self, origin: str, prefix: str = "") -> List[ProductSnapshot]:
        return self.resolve_handles(origin, self.sitemap_handles(origin, prefix))

    def locale_sitemap_crawl(self, origin: str) -> List[ProductSnapshot]:
        for prefix in self.locale_prefixes:
            products = self.sitemap_crawl(origin, prefix)
            if products:
                logger.debug("Locale sitemap /%s worked for %s", prefix, origin)
                return products
        return []

    def search_suggest(self, origin: str) -> List[ProductSnapshot]:
        handles: List[str] = []
        for kw in self.keywords:
            data = self._fetch_json(
                f"{origin}/search/suggest.json",
                params={"q": kw, "resources[type]": "product", "resources[limit]": 10},
            )
            handles.extend(handles_from_suggest(data))
        return self.resolve_handles(origin, _unique(handles))

    def collection_scrape(self, origin: str) -> List[ProductSnapshot]:
        pages = [f"{origin}/collections/all"]
        pages.extend(f"{origin}/{p}/collections/all" for p in self.locale_prefixes)
        for url in pages:
            handles = handles_from_html(self._fetch_text(url))
            if handles:
                return self.resolve_handles(origin, handles)
        return []


def discover(origin: str, keywords: Sequence[str] = (), session: Optional[requests.Session] = None) -> List[ProductSnapshot]:
    """One-shot discovery with a temporary session unless one is given."""
    d = CatalogDiscovery(session, keywords=keywords)
    try:
        return d.discover(origin)
    finally:
        d.close()


__all__ = [
    "CatalogDiscovery",
    "discover",
    "sitemap_locs",
    "handles_from_html",
    "handles_from_suggest",
]
