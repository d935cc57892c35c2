# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Campaign status roll-up.

The status of a campaign is derived from the current state of its messages
only: no pending message left means completed, anything else means sending.
Running the aggregation again without message changes yields the same result,
so it can be repeated after a crash or by an overlapping invocation.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from .logger import get_logger
from .models import CampaignStatus
from .persistence import Persistence


def status_for(pending: int) -> CampaignStatus:
    return CampaignStatus.COMPLETED if pending == 0 else CampaignStatus.SENDING


async def aggregate_campaign(persistence: Persistence, campaign_id: str) -> CampaignStatus:
    """Recompute and store the status of one campaign."""
    pending = await persistence.count_pending_for_campaign(campaign_id)
    status = status_for(pending)
    await persistence.set_campaign_status(campaign_id, status)
    return status


async def aggregate_campaigns(
    persistence: Persistence,
    campaign_ids: Iterable[str],
    logger: logging.Logger | None = None,
) -> dict[str, str]:
    """Recompute the status of every given campaign.

    Store errors are logged per campaign and the others are still processed.

    Returns:
        Mapping campaign id -> new status, for the campaigns that succeeded.
    """
    logger = logger or get_logger()
    statuses: dict[str, str] = {}
    for campaign_id in campaign_ids:
        try:
            status = await aggregate_campaign(persistence, campaign_id)
        except Exception as exc:
            logger.error("Failed to update status of campaign %s: %s", campaign_id, exc)
            continue
        statuses[campaign_id] = status.value
        logger.debug("Campaign %s is now %s", campaign_id, status.value)
    return statuses
