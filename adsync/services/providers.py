"""Known data providers.

WHAT:
    Canonical provider keys with display names, categories and the priority
    used to order a direct pipeline run.

WHY:
    Provider keys on integrations are free-form strings. This table is the one
    place that says which keys the ingestion subsystem ships mock handlers for
    and how they are presented to callers of the status query.
"""

from dataclasses import dataclass
from typing import Dict, List

DEFAULT_PRIORITY = 999


@dataclass(frozen=True)
class ProviderInfo:
    key: str
    name: str
    category: str  # advertising, analytics, seo, commerce
    priority: int
    platform: str  # platform label written on campaigns/metrics
    id_prefix: str  # prefix for synthetic external ids


PROVIDER_CATALOG: Dict[str, ProviderInfo] = {
    info.key: info
    for info in (
        ProviderInfo("google_ads", "Google Ads", "advertising", 1, "google", "gg"),
        ProviderInfo("facebook", "Facebook Ads", "advertising", 2, "facebook", "fb"),
        ProviderInfo("tiktok", "TikTok Ads", "advertising", 3, "tiktok", "tt"),
        ProviderInfo("ga4", "Google Analytics 4", "analytics", 4, "ga4", "ga"),
        ProviderInfo("google_search_console", "Google Search Console", "seo", 5, "gsc", "gsc"),
        ProviderInfo("line_ads", "LINE Ads", "advertising", 6, "line", "line"),
        ProviderInfo("shopee", "Shopee", "commerce", 7, "shopee", "shp"),
        ProviderInfo("lazada", "Lazada", "commerce", 8, "lazada", "lzd"),
    )
}


def list_providers() -> List[ProviderInfo]:
    """Return catalog entries ordered by priority."""
    return sorted(PROVIDER_CATALOG.values(), key=lambda p: p.priority)


def provider_priority(key: str) -> int:
    info = PROVIDER_CATALOG.get(key)
    return info.priority if info else DEFAULT_PRIORITY


def provider_name(key: str) -> str:
    info = PROVIDER_CATALOG.get(key)
    return info.name if info else key
