"""Identifier and product-shape normalization.

Storefront endpoints return the same product in several shapes (bulk
listing, ``/products/<handle>.json``, ``/products/<handle>.js``).  Everything
is funnelled through :func:`snapshot_from_json`, which applies these
precedence rules:

* handle: ``handle`` -> slug of ``url`` / ``product_url`` -> ``str(id)``
* title: ``title`` -> ``name``
* images: ``images`` (strings or dicts with ``src``/``url``) ->
  ``featured_image`` -> ``image``; protocol-relative URLs become https
* price: strings and floats are major units, integers are minor units
  (divided by 100); always rendered with two decimals
* variant availability: ``available`` -> ``inventory_quantity > 0``
* product type: ``product_type`` -> ``type``
* tags: list, or a comma-separated string
"""

from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, List, Optional
from urllib.parse import unquote, urlparse

from bs4 import BeautifulSoup

from .models import ProductSnapshot, Variant

_PRODUCT_PATH_RE = re.compile(r"/products/([^/?#\"'\s<>]+)", re.IGNORECASE)

_DESCRIPTION_MAX = 300


def normalize_origin(url: str) -> str:
    """Return ``scheme://host`` for a configured shop URL."""
    raw = (url or "").strip()
    if not raw:
        raise ValueError("empty shop URL")
    if "://" not in raw:
        raw = "https://" + raw
    parsed = urlparse(raw)
    if not parsed.netloc:
        raise ValueError(f"cannot derive origin from {url!r}")
    return f"{parsed.scheme.lower()}://{parsed.netloc.lower()}"


def normalize_handle(handle: Any) -> str:
    return unquote(str(handle or "")).strip().lower()


def handle_from_url(url: str) -> Optional[str]:
    """Extract the product handle from a ``/products/<handle>`` URL or path."""
    m = _PRODUCT_PATH_RE.search(url or "")
    if not m:
        return None
    slug = m.group(1)
    if slug.endswith(".json") or slug.endswith(".js"):
        slug = slug.rsplit(".", 1)[0]
    handle = normalize_handle(slug)
    return handle or None


def product_paths(text: Optional[str]) -> List[str]:
    """Every ``/products/<slug>`` path occurring anywhere in ``text``."""
    return [m.group(0) for m in _PRODUCT_PATH_RE.finditer(text or "")]


def format_price(value: Any) -> str:
    if value is None or isinstance(value, bool):
        return "0.00"
    if isinstance(value, int):
        amount = Decimal(value) / 100
    else:
        s = str(value).strip()
        s = s.replace(",", "") if "." in s else s.replace(",", ".")
        try:
            amount = Decimal(s)
        except InvalidOperation:
            return "0.00"
        if not amount.is_finite():
            return "0.00"
    return f"{amount.quantize(Decimal('0.01')):.2f}"


def _absolute_image(src: Any) -> Optional[str]:
    if isinstance(src, dict):
        src = src.get("src") or src.get("url")
    if not src:
        return None
    s = str(src).strip()
    if s.startswith("//"):
        return "https:" + s
    return s or None


def _images_from(data: dict) -> List[str]:
    images: List[str] = []
    for img in data.get("images") or ():
        u = _absolute_image(img)
        if u and u not in images:
            images.append(u)
    if not images:
        for name in ("featured_image", "image"):
            u = _absolute_image(data.get(name))
            if u:
                images.append(u)
                break
    return images


def _tags_from(raw: Any) -> List[str]:
    if isinstance(raw, str):
        return [t.strip() for t in raw.split(",") if t.strip()]
    if isinstance(raw, (list, tuple)):
        return [str(t).strip() for t in raw if str(t).strip()]
    return []


def _variant_available(v: dict) -> bool:
    if "available" in v and v["available"] is not None:
        return bool(v["available"])
    try:
        return int(v.get("inventory_quantity") or 0) > 0
    except (TypeError, ValueError):
        return False


def _plain_text(html: Optional[str]) -> str:
    if not html:
        return ""
    text = BeautifulSoup(html, "html.parser").get_text(" ", strip=True)
    if len(text) > _DESCRIPTION_MAX:
        text = text[: _DESCRIPTION_MAX - 1].rstrip() + "…"
    return text


def snapshot_from_json(data: Any) -> Optional[ProductSnapshot]:
    """Map any plausible upstream product object onto a ProductSnapshot."""
    if not isinstance(data, dict):
        return None
    if isinstance(data.get("product"), dict):
        data = data["product"]

    pid = data.get("id")
    handle = normalize_handle(data.get("handle")) if data.get("handle") else None
    if not handle:
        handle = handle_from_url(str(data.get("url") or data.get("product_url") or ""))
    if not handle and pid is not None:
        handle = str(pid)
    if not handle:
        return None

    variants = tuple(
        Variant(
            id=str(v.get("id", "")),
            title=str(v.get("title") or v.get("name") or ""),
            price=format_price(v.get("price")),
            available=_variant_available(v),
        )
        for v in data.get("variants") or ()
        if isinstance(v, dict)
    )

    return ProductSnapshot(
        id=str(pid if pid is not None else handle),
        title=str(data.get("title") or data.get("name") or ""),
        handle=handle,
        images=tuple(_images_from(data)),
        variants=variants,
        product_type=str(data.get("product_type") or data.get("type") or ""),
        tags=tuple(_tags_from(data.get("tags"))),
        published_at=data.get("published_at"),
        description=_plain_text(data.get("body_html") or data.get("description")),
    )


def dedupe(products: Iterable[ProductSnapshot]) -> List[ProductSnapshot]:
    """Drop repeated handles, keeping the first occurrence."""
    out: List[ProductSnapshot] = []
    seen: set[str] = set()
    for p in products:
        if p.handle in seen:
            continue
        seen.add(p.handle)
        out.append(p)
    return out


__all__ = [
    "normalize_origin",
    "normalize_handle",
    "handle_from_url",
    "product_paths",
    "format_price",
    "snapshot_from_json",
    "dedupe",
]
