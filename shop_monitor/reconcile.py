"""Turn successive catalog snapshots into notifications.

One :class:`Reconciler` pass handles one (origin, destination) pair:

* first sighting: available -> send "new"; unavailable -> record only
* unchanged content hash -> refresh the cached snapshot, no message
* unavailable -> available: restock (edit in place, else send)
* available -> unavailable: sold out (edit in place, else send)
* same availability, different hash: update (policy ``notify_on_price_change``)
* handle in the previous index but not in this catalog: removed
* removed and seen again: restock-like (or brand new with ``reappear_as_new``)

Whenever a message id is on file the message is edited; if the edit fails
a new message is sent and its id adopted.
"""

from __future__ import annotations

import datetime as _dt
import logging
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

import requests

from .config import CURRENCY_LABEL, NOTIFY_ON_PRICE_CHANGE, REAPPEAR_AS_NEW
from .models import ProductSnapshot, SweepResult, index_key, product_key
from .notifier import Message, build_product_message
from .utils import HTTPError

logger = logging.getLogger(__name__)

_SINK_ERRORS = (HTTPError, requests.RequestException, KeyError, ValueError)


def _utcnow() -> _dt.datetime:
    return _dt.datetime.now(_dt.timezone.utc)


class Reconciler:
    def __init__(
        self,
        store,
        sink,
        *,
        notify_on_price_change: bool = NOTIFY_ON_PRICE_CHANGE,
        reappear_as_new: bool = REAPPEAR_AS_NEW,
        currency: str = CURRENCY_LABEL,
        clock: Callable[[], _dt.datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.sink = sink
        self.notify_on_price_change = notify_on_price_change
        self.reappear_as_new = reappear_as_new
        self.currency = currency
        self.clock = clock

    # ---- message plumbing ------------------------------------------------

    def _message(self, origin: str, product: ProductSnapshot, status: str, **kw: Any) -> Message:
        return build_product_message(
            product, origin, status, currency=self.currency, checked_at=self.clock(), **kw
        )

    def _deliver(
        self,
        destination: str,
        message_id: Optional[str],
        message: Message,
        result: SweepResult,
    ) -> Tuple[Optional[str], bool]:
        """Edit `message_id` in place, or send a new message.

        Returns (message id to keep on file, whether anything was delivered).
        When nothing was delivered the id on file is returned unchanged.
        """
        if message_id:
            try:
                edited = self.sink.edit(destination, message_id, message)
            except _SINK_ERRORS as e:
                logger.warning("Edit of message %s failed (%s); sending a new one", message_id, e)
                edited = False
            if edited:
                result.edited += 1
                return message_id, True

        try:
            new_id = self.sink.send(destination, message)
        except _SINK_ERRORS as e:
            logger.warning("Sending %r failed: %s", message.title, e)
            result.failures.append(message.title)
            return message_id, False
        result.sent += 1
        return new_id, True

    # ---- per product -----------------------------------------------------

    def _base_patch(self, product: ProductSnapshot) -> Dict[str, Any]:
        return {
            "available": product.available,
            "content_hash": product.content_hash(),
            "removed": False,
            "last_snapshot": product.to_dict(),
        }

    def _first_sighting(self, origin, destination, key, product, result) -> None:
        patch = self._base_patch(product)
        patch["force_refreshed"] = True
        if not product.available:
            # First indexing of a sold-out product stays silent.
            patch["message_id"] = None
            self.store.put(key, patch)
            return
        message_id, ok = self._deliver(
            destination, None, self._message(origin, product, "new"), result
        )
        if not ok:
            return
        patch.update(message_id=message_id, last_posted_at=self.clock().isoformat())
        self.store.put(key, patch)

    def reconcile_product(
        self,
        origin: str,
        destination: str,
        channel: str,
        product: ProductSnapshot,
        result: SweepResult,
    ) -> None:
        key = product_key(origin, product.handle, channel)
        prev = self.store.get_product(origin, product.handle, channel)

        if prev is None or (prev.get("removed") and self.reappear_as_new):
            self._first_sighting(origin, destination, key, product, result)
            return

        was_removed = bool(prev.get("removed"))
        prev_available = bool(prev.get("available")) and not was_removed
        available = product.available
        hash_changed = prev.get("content_hash") != product.content_hash()
        message_id = prev.get("message_id")

        if not was_removed and not hash_changed and prev_available == available:
            self.store.put(key, {"last_snapshot": product.to_dict()})
            return

        status: Optional[str]
        if available and not prev_available:
            status = "restock" if message_id else "new"
        elif prev_available and not available:
            status = "sold_out"
        elif was_removed:
            # Reappeared while still sold out: correct the "removed" message if any.
            status = "sold_out" if message_id else None
        elif self.notify_on_price_change and (message_id or available):
            status = "update"
        else:
            status = None

        patch = self._base_patch(product)
        if status is None:
            logger.debug("Silent state update for %s on %s", product.handle, origin)
            self.store.put(key, patch)
            return

        new_id, ok = self._deliver(
            destination, message_id, self._message(origin, product, status), result
        )
        if not ok:
            # Transition stays unrecorded; retried next cycle.
            return
        logger.info("%s: %s on %s", status, product.title or product.handle, origin)
        patch.update(message_id=new_id, last_posted_at=self.clock().isoformat())
        self.store.put(key, patch)

    # ---- removals --------------------------------------------------------

    def detect_removals(
        self,
        origin: str,
        destination: str,
        channel: str,
        seen_handles: Iterable[str],
        result: SweepResult,
    ) -> None:
        seen = set(seen_handles)
        if not seen:
            # An empty catalog means "nothing to reconcile", never "all removed".
            return
        idx_key = index_key(origin, channel)
        previous = set((self.store.get(idx_key) or {}).get("handles") or ())
        # Undelivered removals stay indexed so the next cycle retries them.
        pending: set[str] = set()

        for handle in sorted(previous - seen):
            rec = self.store.get_product(origin, handle, channel)
            if rec is None or rec.get("removed"):
                continue
            snap_data = rec.get("last_snapshot")
            if snap_data:
                product = ProductSnapshot.from_dict(snap_data)
            else:
                product = ProductSnapshot(id=handle, title=handle, handle=handle)
            previous_status = "available" if rec.get("available") else "sold_out"
            message = self._message(origin, product, "removed", previous_status=previous_status)
            message_id, ok = self._deliver(destination, rec.get("message_id"), message, result)
            if not ok:
                pending.add(handle)
                continue
            now = self.clock().isoformat()
            self.store.put(product_key(origin, handle, channel), {
                "removed": True,
                "status_before_removal": previous_status,
                "removed_at": now,
                "message_id": message_id,
                "last_posted_at": now,
            })
            result.removed += 1
            logger.info("removed: %s on %s", product.title or handle, origin)

        self.store.put(idx_key, {"handles": sorted(seen | pending), "observed_at": self.clock().isoformat()})

    # ---- force refresh ---------------------------------------------------

    def force_refresh(self, origin: str, destination: str, channel: str, result: SweepResult) -> int:
        """Re-render every existing message for this pair once.

        A message that is gone is replaced by a new one. Records whose
        delivery failed are retried on the next call.
        """
        prefix, suffix = f"product|{origin}|", f"|{channel}"
        refreshed = 0
        for key, rec in self.store.items(prefix):
            if not key.endswith(suffix) or rec.get("force_refreshed"):
                continue
            message_id = rec.get("message_id")
            if not message_id or not rec.get("last_snapshot"):
                self.store.put(key, {"force_refreshed": True})
                continue
            product = ProductSnapshot.from_dict(rec["last_snapshot"])
            if rec.get("removed"):
                status = "removed"
            else:
                status = "available" if rec.get("available") else "sold_out"
            new_id, ok = self._deliver(
                destination, message_id, self._message(origin, product, status), result
            )
            if not ok:
                logger.warning("Force refresh of %s failed; retrying next cycle", key)
                continue
            refreshed += 1
            self.store.put(key, {"force_refreshed": True, "message_id": new_id})
        if refreshed:
            logger.info("Force-refreshed %d messages for %s", refreshed, origin)
        return refreshed

    # ---- pass ------------------------------------------------------------

    def reconcile(
        self,
        origin: str,
        destination: str,
        channel: str,
        products: Iterable[ProductSnapshot],
        *,
        seen_handles: Optional[Iterable[str]] = None,
        result: Optional[SweepResult] = None,
    ) -> SweepResult:
        """Reconcile the keyword-matched `products` of one catalog snapshot.

        `seen_handles` is every handle discovered this cycle (before keyword
        filtering) and drives removal detection; it defaults to the handles
        of `products`.
        """
        products = list(products)
        result = result or SweepResult(origin=origin, destination=channel)
        result.matched = len(products)
        for product in products:
            self.reconcile_product(origin, destination, channel, product, result)
        handles = [p.handle for p in products] if seen_handles is None else list(seen_handles)
        self.detect_removals(origin, destination, channel, handles, result)
        return result


__all__ = ["Reconciler"]
