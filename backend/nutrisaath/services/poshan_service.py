"""
NutriSaath Backend: Poshan Summary Service
============================================

What:  Sandbox placeholder for the Poshan nutrition-programme summary.
Who:   Called by GET /api/poshan/summary for an authenticated caller.
"""

import logging
from datetime import datetime, timezone

from nutrisaath.config import settings
from nutrisaath.schemas.poshan import PoshanSummary

logger = logging.getLogger(__name__)

PLACEHOLDER_MESSAGE = "Sandbox Poshan summary placeholder"


class PoshanService:
    # TODO: call the Poshan tracker API at POSHAN_BASE_URL once sandbox credentials are issued
    async def get_summary(self, user_id: str) -> PoshanSummary:
        logger.debug("Poshan summary requested for user %s", user_id)
        return PoshanSummary(
            user_id=user_id,
            status="ok",
            message=PLACEHOLDER_MESSAGE,
            source=settings.poshan_base_url,
            last_synced_at=datetime.now(timezone.utc),
        )


poshan_service = PoshanService()
