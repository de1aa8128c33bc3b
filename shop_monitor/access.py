"""Storefront access-state (password page) monitor."""

from __future__ import annotations

import datetime as _dt
import logging
from typing import Any, Callable, Optional

import requests
from bs4 import BeautifulSoup

from .config import ACCESS_CHECK_COOLDOWN_MINUTES
from .models import access_key
from .notifier import build_access_message
from .utils import HTTPError, get_http_session, retryable_request

logger = logging.getLogger(__name__)


@retryable_request(attempts=2)
def _get(session: requests.Session, url: str, **kwargs: Any) -> requests.Response:
    return session.get(url, **kwargs)


def _utcnow() -> _dt.datetime:
    return _dt.datetime.now(_dt.timezone.utc)


def _parse_ts(value: Optional[str]) -> Optional[_dt.datetime]:
    if not value:
        return None
    try:
        return _dt.datetime.fromisoformat(value)
    except ValueError:
        return None


def looks_password_protected(html: str, final_url: str = "") -> bool:
    """True when the page is a storefront password gate."""
    if final_url.split("?", 1)[0].rstrip("/").endswith("/password"):
        return True
    soup = BeautifulSoup(html or "", "html.parser")
    body = soup.find("body")
    if body is not None and any("password" in c for c in (body.get("class") or [])):
        return True
    if soup.select_one('form[action*="/password"]'):
        return True
    text = soup.get_text(" ", strip=True).lower()
    return "opening soon" in text and soup.select_one('input[type="password"]') is not None


class AccessMonitor:
    """Tracks whether a storefront sits behind a password page."""

    def __init__(
        self,
        store,
        sink,
        *,
        session: Optional[requests.Session] = None,
        cooldown_minutes: int = ACCESS_CHECK_COOLDOWN_MINUTES,
        clock: Callable[[], _dt.datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.sink = sink
        self.session = session or get_http_session()
        self.cooldown = _dt.timedelta(minutes=cooldown_minutes)
        self.clock = clock

    def check_access_state(self, origin: str) -> Optional[bool]:
        """Return True/False, or None when the storefront root is unreachable."""
        try:
            resp = _get(self.session, origin + "/", allow_redirects=True)
        except (HTTPError, requests.RequestException) as e:
            if isinstance(e, HTTPError) and e.status_code == 401:
                return True
            logger.debug("Access check failed for %s: %s", origin, e)
            return None
        return looks_password_protected(resp.text, str(resp.url or ""))

    def _send_or_edit(self, destination: str, message_id: Optional[str], message) -> Optional[str]:
        """Return the id of the delivered message, or None if nothing was delivered."""
        if message_id:
            try:
                if self.sink.edit(destination, message_id, message):
                    return message_id
            except (HTTPError, requests.RequestException) as e:
                logger.warning("Edit of access message %s failed: %s", message_id, e)
        try:
            return self.sink.send(destination, message)
        except (HTTPError, requests.RequestException, KeyError, ValueError) as e:
            logger.warning("Sending access message for %s failed: %s", message.url, e)
            return None

    def run(self, origin: str, destination: str, channel: str) -> Optional[bool]:
        """Check once and notify on change; returns the observed state."""
        protected = self.check_access_state(origin)
        if protected is None:
            return None

        key = access_key(origin, channel)
        rec = self.store.get(key) or {}
        now = self.clock()
        baseline = rec.get("protected")
        message_id = rec.get("message_id")

        if baseline is None:
            logger.info("Access baseline for %s: protected=%s", origin, protected)
            self.store.put(key, {
                "protected": protected,
                "message_id": message_id,
                "last_checked_at": now.isoformat(),
            })
            return protected

        if protected != baseline:
            new_id = self._send_or_edit(destination, message_id, build_access_message(origin, protected, checked_at=now))
            if new_id is None:
                return protected
            logger.info("Access state changed for %s: protected=%s", origin, protected)
            self.store.put(key, {
                "protected": protected,
                "message_id": new_id,
                "last_checked_at": now.isoformat(),
            })
            return protected

        last_touch = _parse_ts(rec.get("last_checked_at"))
        if message_id and (last_touch is None or now - last_touch >= self.cooldown):
            new_id = self._send_or_edit(destination, message_id, build_access_message(origin, protected, checked_at=now))
            if new_id is None:
                # Record untouched; the refresh is retried next cycle.
                return protected
            self.store.put(key, {"message_id": new_id, "last_checked_at": now.isoformat()})
        return protected


__all__ = ["AccessMonitor", "looks_password_protected"]
