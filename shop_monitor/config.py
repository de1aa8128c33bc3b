"""Configuration loader.

Reads environment variables and `.env` to configure the service.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

# Load variables from a .env file if present (project root).
load_dotenv(dotenv_path=Path(__file__).resolve().parents[1] / ".env")


class ConfigurationError(RuntimeError):
    """Raised when the configuration cannot start a monitor."""


def _get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def _parse_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.lower() in ("1", "true", "yes")


def _parse_int(value: Optional[str], default: int) -> int:
    try:
        return int(value) if value is not None else default
    except ValueError:
        return default


def _get_list(name: str, default: str = "") -> List[str]:
    raw = _get_env(name, default) or ""
    return [s.strip() for s in raw.split(",") if s.strip()]


# ---- Shops & destinations ----------------------------------------------------

# Shop URLs and Discord webhook URLs are paired by position.
SHOP_URLS: List[str] = _get_list("SHOP_URLS")
DISCORD_WEBHOOK_URLS: List[str] = _get_list("DISCORD_WEBHOOK_URLS")

# Case-insensitive substrings matched against title, product type and tags.
KEYWORDS: List[str] = [k.lower() for k in _get_list("KEYWORDS", "vinyl,cd")]

# Seconds between sweeps over all pairs.
SCRAPE_INTERVAL_SECONDS: int = _parse_int(_get_env("SCRAPE_INTERVAL_SECONDS"), 60)

# ---- Display -----------------------------------------------------------------

CURRENCY_LABEL: str = _get_env("CURRENCY_LABEL", "€") or ""
DISPLAY_TIMEZONE: str = _get_env("DISPLAY_TIMEZONE", "Europe/Amsterdam") or "UTC"
DATETIME_FORMAT: str = _get_env("DATETIME_FORMAT", "%d-%m-%Y %H:%M:%S") or "%Y-%m-%d %H:%M:%S"

# ---- Reconciliation policies -------------------------------------------------

# Origins whose existing messages are re-rendered once (e.g. to backfill thumbnails).
FORCE_REFRESH_ORIGINS: List[str] = _get_list("FORCE_REFRESH_ORIGINS")

# Edit the message when price/variants change but availability does not.
NOTIFY_ON_PRICE_CHANGE: bool = _parse_bool(_get_env("NOTIFY_ON_PRICE_CHANGE"), True)

# Treat a removed product that reappears as a brand-new listing (forget its message).
REAPPEAR_AS_NEW: bool = _parse_bool(_get_env("REAPPEAR_AS_NEW"), False)

# Refresh an unchanged access-state message after this many minutes.
ACCESS_CHECK_COOLDOWN_MINUTES: int = _parse_int(_get_env("ACCESS_CHECK_COOLDOWN_MINUTES"), 60)

# ---- Discovery & HTTP --------------------------------------------------------

USER_AGENT: str = _get_env(
    "USER_AGENT",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36",
) or ""

HTTP_TIMEOUT_SECONDS: int = _parse_int(_get_env("HTTP_TIMEOUT_SECONDS"), 15)

# Concurrent per-handle product fetches against a single origin.
FETCH_CONCURRENCY: int = _parse_int(_get_env("FETCH_CONCURRENCY"), 4)

# Concurrent (shop, destination) pairs within one sweep.
PAIR_CONCURRENCY: int = _parse_int(_get_env("PAIR_CONCURRENCY"), 4)

BULK_PAGE_LIMIT: int = _parse_int(_get_env("BULK_PAGE_LIMIT"), 250)

# Only the first few nested product sitemaps are crawled.
SITEMAP_MAX_NESTED: int = _parse_int(_get_env("SITEMAP_MAX_NESTED"), 2)

LOCALE_PREFIXES: List[str] = _get_list("LOCALE_PREFIXES", "en,nl,de,fr,en-us,en-gb,nl-nl,de-de")

# ---- Storage & logging -------------------------------------------------------

SQLITE_DB_PATH: str = _get_env("SQLITE_DB_PATH", "monitor.db") or "monitor.db"

# Logging level: DEBUG, INFO, WARNING, ERROR.
LOG_LEVEL: str = _get_env("LOG_LEVEL", "INFO") or "INFO"

# ---- Validation --------------------------------------------------------------

def validate(
    shop_urls: Optional[List[str]] = None,
    webhook_urls: Optional[List[str]] = None,
) -> None:
    """Validate required configuration parameters."""
    shops = SHOP_URLS if shop_urls is None else shop_urls
    hooks = DISCORD_WEBHOOK_URLS if webhook_urls is None else webhook_urls
    if not shops:
        raise ConfigurationError("SHOP_URLS must list at least one shop. See .env.example for details.")
    if not hooks:
        raise ConfigurationError(
            "DISCORD_WEBHOOK_URLS must be set. See .env.example for details."
        )
    if len(shops) != len(hooks):
        raise ConfigurationError(
            f"SHOP_URLS ({len(shops)}) and DISCORD_WEBHOOK_URLS ({len(hooks)}) must have the same length."
        )
    for hook in hooks:
        if not hook.startswith(("http://", "https://")):
            raise ConfigurationError(f"Invalid webhook URL: {hook!r}")


__all__ = [
    "ConfigurationError",
    # Shops
    "SHOP_URLS",
    "DISCORD_WEBHOOK_URLS",
    "KEYWORDS",
    "SCRAPE_INTERVAL_SECONDS",
    # Display
    "CURRENCY_LABEL",
    "DISPLAY_TIMEZONE",
    "DATETIME_FORMAT",
    # Policies
    "FORCE_REFRESH_ORIGINS",
    "NOTIFY_ON_PRICE_CHANGE",
    "REAPPEAR_AS_NEW",
    "ACCESS_CHECK_COOLDOWN_MINUTES",
    # Discovery
    "USER_AGENT",
    "HTTP_TIMEOUT_SECONDS",
    "FETCH_CONCURRENCY",
    "PAIR_CONCURRENCY",
    "BULK_PAGE_LIMIT",
    "SITEMAP_MAX_NESTED",
    "LOCALE_PREFIXES",
    # Storage
    "SQLITE_DB_PATH",
    "LOG_LEVEL",
    # Helpers
    "validate",
]
