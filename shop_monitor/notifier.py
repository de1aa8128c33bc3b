"""Discord webhook notifier.

Sends product and access-state messages to a Discord channel via webhook
and edits them in place later.  Sending uses ``?wait=true`` so Discord
returns the created message, whose id is kept in state for later edits.
"""
from __future__ import annotations

import datetime as _dt
import hashlib
import logging
import re
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import requests

from .config import CURRENCY_LABEL, DATETIME_FORMAT, DISPLAY_TIMEZONE
from .models import ProductSnapshot
from .utils import NotFoundError, get_http_session, retryable_request

logger = logging.getLogger(__name__)

COLOR_AVAILABLE = 0x2ECC71
COLOR_SOLD_OUT = 0xE74C3C
COLOR_REMOVED = 0x95A5A6
COLOR_PROTECTED = 0xF1C40F

_STATUS_LABELS = {
    "new": "New product",
    "restock": "Back in stock",
    "sold_out": "Sold out",
    "update": "Updated",
    "removed": "Removed from store",
    "available": "Available",
}

# Cart quantities offered per available variant.
CART_QUANTITIES = (1, 2, 4)

_WEBHOOK_RE = re.compile(r"/webhooks/(\d+)/")


@retryable_request()
def _post(session: requests.Session, url: str, **kwargs) -> requests.Response:
    return session.post(url, **kwargs)


@retryable_request()
def _patch(session: requests.Session, url: str, **kwargs) -> requests.Response:
    return session.patch(url, **kwargs)


@dataclass
class Message:
    """Channel-agnostic notification content."""

    title: str
    url: str
    description: str = ""
    thumbnail: Optional[str] = None
    fields: List[Tuple[str, str]] = field(default_factory=list)
    links: List[Tuple[str, str]] = field(default_factory=list)
    color: int = COLOR_AVAILABLE
    footer: Optional[str] = None


def destination_id(webhook_url: str) -> str:
    """Stable, secret-free identifier of a webhook, used in state keys."""
    m = _WEBHOOK_RE.search(webhook_url or "")
    if m:
        return m.group(1)
    return hashlib.sha1((webhook_url or "").encode("utf-8")).hexdigest()[:16]


def format_timestamp(when: Optional[_dt.datetime] = None) -> str:
    when = when or _dt.datetime.now(_dt.timezone.utc)
    try:
        tz = ZoneInfo(DISPLAY_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError):
        tz = _dt.timezone.utc
    return when.astimezone(tz).strftime(DATETIME_FORMAT)


def format_price_range(product: ProductSnapshot, currency: str = CURRENCY_LABEL) -> str:
    prices = sorted({Decimal(v.price) for v in product.variants})
    if not prices:
        return "n/a"
    if prices[0] == prices[-1]:
        return f"{currency}{prices[0]:.2f}"
    return f"{currency}{prices[0]:.2f} - {currency}{prices[-1]:.2f}"


def cart_links(product: ProductSnapshot, origin: str, currency: str = CURRENCY_LABEL) -> List[Tuple[str, str]]:
    links: List[Tuple[str, str]] = []
    for v in product.variants[:2]:
        if not v.available:
            continue
        name = v.title if v.title and v.title != "Default Title" else "Add"
        for qty in CART_QUANTITIES:
            links.append((f"{name} ({qty}x {currency}{v.price})", f"{origin}/cart/{v.id}:{qty}"))
    return links


def build_product_message(
    product: ProductSnapshot,
    origin: str,
    status: str,
    *,
    previous_status: Optional[str] = None,
    currency: str = CURRENCY_LABEL,
    checked_at: Optional[_dt.datetime] = None,
) -> Message:
    removed = status == "removed"
    available = product.available and not removed
    title = product.title or product.handle
    if removed:
        title = f"~~{title}~~ (REMOVED)"
        color = COLOR_REMOVED
    elif not available:
        title = f"~~{title}~~ (SOLD OUT)"
        color = COLOR_SOLD_OUT
    else:
        color = COLOR_AVAILABLE

    fields = [
        ("Status", _STATUS_LABELS.get(status, status)),
        ("Price", format_price_range(product, currency)),
    ]
    if previous_status:
        fields.append(("Previous status", _STATUS_LABELS.get(previous_status, previous_status)))
    fields.append(("Checked at", format_timestamp(checked_at)))

    return Message(
        title=title,
        url=f"{origin}/products/{product.handle}",
        description=product.description,
        thumbnail=product.thumbnail,
        fields=fields,
        links=[] if not available else cart_links(product, origin, currency),
        color=color,
        footer=origin,
    )


def build_access_message(origin: str, protected: bool, *, checked_at: Optional[_dt.datetime] = None) -> Message:
    if protected:
        title, status, color = f"Password protected: {origin}", "Store is behind a password page", COLOR_PROTECTED
    else:
        title, status, color = f"Store open: {origin}", "Store is publicly accessible", COLOR_AVAILABLE
    return Message(
        title=title,
        url=origin,
        fields=[("Status", status), ("Checked at", format_timestamp(checked_at))],
        color=color,
        footer=origin,
    )


def _build_embed(message: Message) -> dict:
    embed = {
        "title": message.title[:256],
        "url": message.url,
        "color": message.color,
    }
    if message.description:
        embed["description"] = message.description[:4096]
    if message.thumbnail:
        embed["thumbnail"] = {"url": message.thumbnail}
    fields = [{"name": n, "value": v or "-", "inline": True} for n, v in message.fields]
    if message.links:
        fields.append({
            "name": "Add to cart",
            "value": "\n".join(f"[{label}]({url})" for label, url in message.links)[:1024],
            "inline": False,
        })
    if fields:
        embed["fields"] = fields
    if message.footer:
        embed["footer"] = {"text": message.footer}
    return embed


class DiscordNotifier:
    """send/edit primitive over Discord webhooks."""

    def __init__(self, session: Optional[requests.Session] = None) -> None:
        self.session = session or get_http_session()

    def send(self, destination: str, message: Message) -> str:
        """Post a new message and return its id. Raises utils.HTTPError on failure."""
        payload = {"embeds": [_build_embed(message)]}
        logger.info("Sending notification: %s", message.title)
        resp = _post(self.session, destination, params={"wait": "true"}, json=payload)
        return str(resp.json()["id"])

    def edit(self, destination: str, message_id: str, message: Message) -> bool:
        """Edit a message in place; False when it no longer exists."""
        payload = {"embeds": [_build_embed(message)]}
        url = f"{destination.split('?', 1)[0].rstrip('/')}/messages/{message_id}"
        try:
            _patch(self.session, url, json=payload)
        except NotFoundError:
            logger.info("Message %s no longer exists; it will be re-sent", message_id)
            return False
        logger.info("Edited notification %s: %s", message_id, message.title)
        return True

    def close(self) -> None:
        self.session.close()


__all__ = [
    "DiscordNotifier",
    "Message",
    "build_product_message",
    "build_access_message",
    "cart_links",
    "destination_id",
    "format_price_range",
    "format_timestamp",
]
