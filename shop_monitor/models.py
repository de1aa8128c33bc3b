"""Catalog data types and state-key helpers."""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple


@dataclass(frozen=True)
class Variant:
    id: str
    title: str
    price: str          # 2-dp decimal string, e.g. "10.00"
    available: bool


@dataclass(frozen=True)
class ProductSnapshot:
    id: str
    title: str
    handle: str
    images: Tuple[str, ...] = ()
    variants: Tuple[Variant, ...] = ()
    product_type: str = ""
    tags: Tuple[str, ...] = ()
    published_at: Optional[str] = None
    description: str = ""

    @property
    def available(self) -> bool:
        return any(v.available for v in self.variants)

    @property
    def thumbnail(self) -> Optional[str]:
        return self.images[0] if self.images else None

    def content_hash(self) -> str:
        return content_hash(self.variants)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["images"] = list(self.images)
        data["tags"] = list(self.tags)
        data["variants"] = [asdict(v) for v in self.variants]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProductSnapshot":
        return cls(
            id=str(data.get("id", "")),
            title=str(data.get("title", "")),
            handle=str(data.get("handle", "")),
            images=tuple(data.get("images") or ()),
            variants=tuple(
                Variant(
                    id=str(v.get("id", "")),
                    title=str(v.get("title", "")),
                    price=str(v.get("price", "0.00")),
                    available=bool(v.get("available")),
                )
                for v in data.get("variants") or ()
            ),
            product_type=str(data.get("product_type", "")),
            tags=tuple(data.get("tags") or ()),
            published_at=data.get("published_at"),
            description=str(data.get("description", "")),
        )


def content_hash(variants: Iterable[Variant]) -> str:
    """Digest of (id, availability, price) per variant, independent of order."""
    rows = sorted((str(v.id), bool(v.available), str(v.price)) for v in variants)
    raw = json.dumps(rows, separators=(",", ":"))
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


# ---- State keys --------------------------------------------------------------

def product_key(origin: str, handle: str, destination: str) -> str:
    return f"product|{origin}|{handle}|{destination}"


def legacy_product_key(origin: str, handle: str) -> str:
    """Key used before state was scoped per notification destination."""
    return f"product|{origin}|{handle}"


def access_key(origin: str, destination: str) -> str:
    return f"access|{origin}|{destination}"


def index_key(origin: str, destination: str) -> str:
    return f"index|{origin}|{destination}"


@dataclass
class SweepResult:
    """Counters for one reconciliation pass, used for logging."""

    origin: str
    destination: str
    discovered: int = 0
    matched: int = 0
    sent: int = 0
    edited: int = 0
    removed: int = 0
    failures: List[str] = field(default_factory=list)

    @property
    def notifications(self) -> int:
        return self.sent + self.edited


__all__ = [
    "Variant",
    "ProductSnapshot",
    "SweepResult",
    "content_hash",
    "product_key",
    "legacy_product_key",
    "access_key",
    "index_key",
]
