from __future__ import annotations

import logging
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from . import config
from .access import AccessMonitor
from .db import StateStore
from .discovery import CatalogDiscovery
from .keywords import KeywordMatcher
from .models import SweepResult
from .normalize import normalize_origin
from .notifier import DiscordNotifier, destination_id
from .reconcile import Reconciler


def setup_logging() -> None:
    level = getattr(logging, config.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


@dataclass(frozen=True)
class ShopTarget:
    """One configured (storefront, destination) pair."""

    origin: str
    destination: str      # webhook URL
    channel: str          # destination id used in state keys


def build_targets(shop_urls: Sequence[str], webhook_urls: Sequence[str]) -> List[ShopTarget]:
    config.validate(list(shop_urls), list(webhook_urls))
    targets: List[ShopTarget] = []
    for shop, hook in zip(shop_urls, webhook_urls):
        try:
            origin = normalize_origin(shop)
        except ValueError as e:
            raise config.ConfigurationError(str(e)) from e
        targets.append(ShopTarget(origin=origin, destination=hook, channel=destination_id(hook)))
    return targets


class Monitor:
    """Runs reconciliation sweeps over all configured pairs."""

    def __init__(
        self,
        targets: Sequence[ShopTarget],
        store: StateStore,
        *,
        sink=None,
        discovery: Optional[CatalogDiscovery] = None,
        matcher: Optional[KeywordMatcher] = None,
        access: Optional[AccessMonitor] = None,
        reconciler: Optional[Reconciler] = None,
        force_refresh_origins: Sequence[str] = (),
        max_workers: int = config.PAIR_CONCURRENCY,
    ) -> None:
        self.targets = list(targets)
        self.store = store
        self.sink = sink or DiscordNotifier()
        self.matcher = matcher or KeywordMatcher(config.KEYWORDS)
        self.discovery = discovery or CatalogDiscovery(keywords=self.matcher.keywords)
        self.access = access or AccessMonitor(store, self.sink)
        self.reconciler = reconciler or Reconciler(store, self.sink)
        self.force_refresh_origins = set()
        for o in force_refresh_origins:
            try:
                self.force_refresh_origins.add(normalize_origin(o))
            except ValueError:
                logging.getLogger(__name__).warning("Ignoring invalid force-refresh origin %r", o)
        self.max_workers = max(1, max_workers)
        self._locks: Dict[Tuple[str, str], threading.Lock] = {
            (t.origin, t.channel): threading.Lock() for t in self.targets
        }

    def sweep_pair(self, target: ShopTarget) -> Optional[SweepResult]:
        """One discovery + reconciliation pass; None if a pass is already running."""
        logger = logging.getLogger(__name__)
        lock = self._locks.setdefault((target.origin, target.channel), threading.Lock())
        if not lock.acquire(blocking=False):
            logger.info("Sweep for %s is still running; skipping this round.", target.origin)
            return None
        try:
            result = SweepResult(origin=target.origin, destination=target.channel)
            self.access.run(target.origin, target.destination, target.channel)

            products = self.discovery.discover(target.origin)
            result.discovered = len(products)
            if not products:
                logger.info("Empty catalog for %s; nothing to reconcile.", target.origin)
                return result

            if target.origin in self.force_refresh_origins:
                self.reconciler.force_refresh(target.origin, target.destination, target.channel, result)

            wanted = self.matcher.filter(products)
            self.reconciler.reconcile(
                target.origin,
                target.destination,
                target.channel,
                wanted,
                seen_handles=[p.handle for p in products],
                result=result,
            )
            if self.store.degraded:
                logger.warning("State for %s is not fully persisted; will retry on next write.", target.origin)
            logger.info(
                "Sweep %s: %d discovered, %d matched, %d sent, %d edited, %d removed",
                target.origin, result.discovered, result.matched, result.sent, result.edited, result.removed,
            )
            return result
        finally:
            lock.release()

    def _run_pair(self, target: ShopTarget) -> Optional[SweepResult]:
        try:
            return self.sweep_pair(target)
        except Exception:
            logging.getLogger(__name__).exception("Unexpected error during sweep for %s.", target.origin)
            return None

    def run_once(self) -> List[Optional[SweepResult]]:
        """Sweep every pair once; pairs run concurrently and independently."""
        if len(self.targets) <= 1 or self.max_workers == 1:
            return [self._run_pair(t) for t in self.targets]
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="sweep") as pool:
            return list(pool.map(self._run_pair, self.targets))


def _loop(monitor: Monitor, interval_seconds: int) -> None:
    logger = logging.getLogger(__name__)
    while True:
        monitor.run_once()
        logger.info(
            "Sleeping for %d seconds before next sweep over %d shops.",
            interval_seconds, len(monitor.targets),
        )
        time.sleep(interval_seconds)


def main() -> None:
    """Initialise and run the monitoring loop."""
    setup_logging()
    logger = logging.getLogger(__name__)
    try:
        targets = build_targets(config.SHOP_URLS, config.DISCORD_WEBHOOK_URLS)
    except config.ConfigurationError as e:
        logger.error("Configuration error: %s", e)
        sys.exit(2)

    logger.info("Initializing database…")
    store = StateStore(config.SQLITE_DB_PATH)
    store.load()

    monitor = Monitor(targets, store, force_refresh_origins=config.FORCE_REFRESH_ORIGINS)
    logger.info(
        "Starting shop monitor for %s with interval %s seconds (keywords: %s).",
        ", ".join(t.origin for t in targets),
        config.SCRAPE_INTERVAL_SECONDS,
        ", ".join(config.KEYWORDS) or "<none>",
    )
    if not config.KEYWORDS:
        logger.warning("KEYWORDS is empty; no products will be tracked.")
    try:
        _loop(monitor, config.SCRAPE_INTERVAL_SECONDS)
    except KeyboardInterrupt:
        logger.info("Shutting down.")
    finally:
        store.close()


if __name__ == "__main__":
    main()
