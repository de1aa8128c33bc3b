from __future__ import annotations

import threading

import pytest

from shop_monitor.config import ConfigurationError
from shop_monitor.keywords import KeywordMatcher
from shop_monitor.main import Monitor, ShopTarget, build_targets
from shop_monitor.models import product_key
from shop_monitor.reconcile import Reconciler

from conftest import make_product

HOOK_A = "https://discord.com/api/webhooks/1/a"
HOOK_B = "https://discord.com/api/webhooks/2/b"


class StubDiscovery:
    def __init__(self, catalogs):
        self.catalogs = catalogs
        self.calls = []

    def discover(self, origin):
        self.calls.append(origin)
        catalog = self.catalogs[origin]
        if isinstance(catalog, Exception):
            raise catalog
        return list(catalog)


class StubAccess:
    def __init__(self):
        self.calls = []

    def run(self, origin, destination, channel):
        self.calls.append(origin)
        return False


def _monitor(store, sink, catalogs, targets, **kw):
    return Monitor(
        targets,
        store,
        sink=sink,
        discovery=StubDiscovery(catalogs),
        matcher=KeywordMatcher(["vinyl"]),
        access=StubAccess(),
        reconciler=Reconciler(store, sink),
        **kw,
    )


def test_build_targets_pairs_and_normalizes() -> None:
    targets = build_targets(["https://A.example/collections/x", "b.example"], [HOOK_A, HOOK_B])
    assert targets == [
        ShopTarget("https://a.example", HOOK_A, "1"),
        ShopTarget("https://b.example", HOOK_B, "2"),
    ]


@pytest.mark.parametrize(
    "shops, hooks",
    [
        ([], []),
        (["https://a.example"], []),
        (["https://a.example", "https://b.example"], [HOOK_A]),
        (["https://a.example"], ["not-a-url"]),
    ],
)
def test_build_targets_rejects_bad_configuration(shops, hooks) -> None:
    with pytest.raises(ConfigurationError):
        build_targets(shops, hooks)


def test_run_once_filters_keywords_and_isolates_failures(store, sink) -> None:
    targets = build_targets(["https://a.example", "https://b.example"], [HOOK_A, HOOK_B])
    catalogs = {
        "https://a.example": RuntimeError("shop exploded"),
        "https://b.example": [make_product("lp"), make_product("shirt", product_type="Apparel")],
    }
    monitor = _monitor(store, sink, catalogs, targets, max_workers=2)
    results = monitor.run_once()
    assert results[0] is None
    assert results[1].discovered == 2 and results[1].matched == 1
    assert len(sink.sent) == 1
    assert store.get(product_key("https://b.example", "lp", "2"))["available"] is True
    assert store.get(product_key("https://b.example", "shirt", "2")) is None


def test_same_shop_tracked_independently_per_destination(store, sink) -> None:
    targets = build_targets(["https://a.example", "https://a.example"], [HOOK_A, HOOK_B])
    monitor = _monitor(store, sink, {"https://a.example": [make_product("lp")]}, targets, max_workers=1)
    monitor.run_once()
    assert [d for d, _ in sink.sent] == [HOOK_A, HOOK_B]
    monitor.run_once()
    assert len(sink.sent) == 2


def test_overlapping_sweep_for_same_pair_is_skipped(store, sink) -> None:
    target = build_targets(["https://a.example"], [HOOK_A])[0]
    monitor = _monitor(store, sink, {"https://a.example": [make_product("lp")]}, [target])
    lock = monitor._locks[(target.origin, target.channel)]
    assert isinstance(lock, type(threading.Lock()))
    lock.acquire()
    try:
        assert monitor.sweep_pair(target) is None
        assert monitor.discovery.calls == []
    finally:
        lock.release()
    assert monitor.sweep_pair(target).sent == 1


def test_empty_catalog_skips_reconciliation(store, sink) -> None:
    target = build_targets(["https://a.example"], [HOOK_A])[0]
    monitor = _monitor(store, sink, {"https://a.example": []}, [target])
    result = monitor.sweep_pair(target)
    assert result.discovered == 0
    assert sink.calls == 0
    assert monitor.access.calls == ["https://a.example"]


def test_force_refresh_runs_for_configured_origin(store, sink) -> None:
    target = build_targets(["https://a.example"], [HOOK_A])[0]
    store.put(product_key(target.origin, "lp", target.channel), {
        "available": True,
        "content_hash": make_product("lp").content_hash(),
        "message_id": "5",
        "removed": False,
        "last_snapshot": make_product("lp").to_dict(),
    })
    monitor = _monitor(
        store, sink, {"https://a.example": [make_product("lp")]}, [target],
        force_refresh_origins=["https://A.example/"],
    )
    monitor.sweep_pair(target)
    monitor.sweep_pair(target)
    assert [e[1] for e in sink.edits] == ["5"]
    assert not sink.sent
