"""Scheduler trigger for the reconciliation sweep.

Gated by ``Authorization: Bearer <cron_secret>``.  Both GET and POST are
accepted because hosted cron services differ in the method they send.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends

from voicegate_api.dependencies import SweeperDep, require_cron_secret

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["cron"], dependencies=[Depends(require_cron_secret)])


@router.api_route("/sync", methods=["GET", "POST"])
async def cron_sync(sweeper: SweeperDep) -> dict[str, Any]:
    """Run one reconciliation sweep over every open tenant."""
    summary = await sweeper.sweep()
    return {"status": "completed", **summary.to_dict()}
