"""Mock sync handlers.

WHAT:
    One synthetic-data handler per catalog provider. Each upserts 3-8 campaigns
    and one DailyMetric per campaign per day of the integration's lookback
    window, then returns a result shaped like a real handler's.

WHY:
    Integrations without credentials (or with `mockMode: true`) still fill the
    dashboard with schema-valid data, and the worker exercises the same
    write/record path as a real sync.

Usage:
    registry = SyncHandlerRegistry(default_mock_handlers())
"""

from __future__ import annotations

import logging
import random
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from functools import partial
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from adsync.models import Campaign, DailyMetric, Integration, SyncModeEnum
from adsync.services.providers import PROVIDER_CATALOG, ProviderInfo
from adsync.services.sync_registry import parse_json

logger = logging.getLogger(__name__)

DEFAULT_LOOKBACK_DAYS = 30
MIN_CAMPAIGNS = 3
MAX_CAMPAIGNS = 8

OBJECTIVES = {
    "advertising": ["SALES", "LEADS", "TRAFFIC"],
    "analytics": ["SESSIONS", "ENGAGEMENT"],
    "seo": ["ORGANIC_SEARCH"],
    "commerce": ["STORE_SALES", "PROMOTIONS"],
}


def _money(rng: random.Random, low: float, high: float) -> Decimal:
    return Decimal(f"{rng.uniform(low, high):.2f}")


def _lookback_days(integration: Integration) -> int:
    config = parse_json(integration.config, {})
    try:
        days = int(config.get("lookbackDays") or DEFAULT_LOOKBACK_DAYS)
    except (TypeError, ValueError, AttributeError):
        days = DEFAULT_LOOKBACK_DAYS
    return max(1, days)


def _upsert_campaign(
    db: Session,
    integration: Integration,
    info: ProviderInfo,
    index: int,
    start: date,
    rng: random.Random,
) -> Campaign:
    external_id = f"mock_{info.id_prefix}_{index + 1}"
    objectives = OBJECTIVES.get(info.category, ["OTHER"])
    campaign = (
        db.query(Campaign)
        .filter(
            Campaign.tenant_id == integration.tenant_id,
            Campaign.platform == info.platform,
            Campaign.external_id == external_id,
        )
        .first()
    )
    if campaign is None:
        campaign = Campaign(
            tenant_id=integration.tenant_id,
            integration_id=integration.id,
            platform=info.platform,
            external_id=external_id,
            currency="THB",
            start_date=start,
        )
        db.add(campaign)

    campaign.name = f"{info.name} Campaign #{index + 1}"
    campaign.status = "active"
    campaign.objective = objectives[index % len(objectives)]
    campaign.budget = _money(rng, 100, 2500)
    campaign.budget_type = "daily"
    db.flush()
    return campaign


def _upsert_daily_metric(
    db: Session,
    integration: Integration,
    info: ProviderInfo,
    campaign: Campaign,
    day: date,
    rng: random.Random,
) -> None:
    values = {
        "impressions": rng.randint(8000, 90000),
        "clicks": rng.randint(200, 4000),
        "conversions": rng.randint(0, 80),
        "spend": _money(rng, 100, 1800),
        "revenue": _money(rng, 0, 6000),
        "details": {"mock": True},
    }
    metric = (
        db.query(DailyMetric)
        .filter(
            DailyMetric.campaign_id == campaign.id,
            DailyMetric.date == day,
            DailyMetric.source == info.key,
        )
        .first()
    )
    if metric is None:
        metric = DailyMetric(
            tenant_id=integration.tenant_id,
            campaign_id=campaign.id,
            date=day,
            platform=info.platform,
            source=info.key,
        )
        db.add(metric)
    for key, value in values.items():
        setattr(metric, key, value)


def mock_sync(
    db: Session,
    integration: Integration,
    info: ProviderInfo,
    rng: Optional[random.Random] = None,
    today: Optional[date] = None,
) -> Dict[str, Any]:
    """Synthesize campaigns and daily metrics for `integration`.

    Returns:
        {"status": "ok", "provider", "integration_id", "mock": True,
         "campaigns", "metric_days", "days", "cursor": {"last_date"}}
    """
    rng = rng or random.Random()
    lookback_days = _lookback_days(integration)
    end = today or datetime.now(timezone.utc).date()
    start = end - timedelta(days=lookback_days - 1)

    campaigns = [
        _upsert_campaign(db, integration, info, i, start, rng)
        for i in range(rng.randint(MIN_CAMPAIGNS, MAX_CAMPAIGNS))
    ]

    metric_days = 0
    for campaign in campaigns:
        for offset in range(lookback_days):
            _upsert_daily_metric(db, integration, info, campaign, start + timedelta(days=offset), rng)
            metric_days += 1
    db.flush()

    logger.info(
        "[MOCK_SYNC] %s: integration=%s campaigns=%d metric_days=%d days=%d",
        info.key, integration.id, len(campaigns), metric_days, lookback_days,
    )
    return {
        "status": "ok",
        "provider": info.key,
        "integration_id": str(integration.id),
        "mock": True,
        "campaigns": len(campaigns),
        "metric_days": metric_days,
        "days": lookback_days,
        "cursor": {"last_date": end.isoformat()},
    }


def default_mock_handlers(rng: Optional[random.Random] = None) -> List[Tuple[str, SyncModeEnum, Any]]:
    """(provider, mode, handler) tuples for every catalog provider."""
    return [
        (key, SyncModeEnum.mock, partial(mock_sync, info=info, rng=rng))
        for key, info in PROVIDER_CATALOG.items()
    ]
