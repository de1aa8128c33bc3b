"""Keyword gate deciding which discovered products are reconciled."""

from __future__ import annotations

from typing import Iterable, List

from .models import ProductSnapshot


class KeywordMatcher:
    """Case-insensitive substring match over title, product type and tags.

    An empty keyword list matches nothing.
    """

    def __init__(self, keywords: Iterable[str]) -> None:
        self.keywords: List[str] = [k.strip().lower() for k in keywords if k and k.strip()]

    def wanted(self, product: ProductSnapshot) -> bool:
        hay = " ".join([product.title, product.product_type, *product.tags]).lower()
        return any(kw in hay for kw in self.keywords)

    def filter(self, products: Iterable[ProductSnapshot]) -> List[ProductSnapshot]:
        return [p for p in products if self.wanted(p)]


__all__ = ["KeywordMatcher"]
