"""
NutriSaath Backend: Poshan Route
==================================

What:  GET /api/poshan/summary for an authenticated caller. Auth only, no throttle.
"""

from fastapi import APIRouter, Depends

from nutrisaath.middleware.gate import GateContext, authenticated
from nutrisaath.schemas.common import ErrorResponse
from nutrisaath.schemas.poshan import PoshanSummary
from nutrisaath.services.poshan_service import poshan_service

router = APIRouter(prefix="/api/poshan", tags=["Poshan"])


@router.get(
    "/summary",
    response_model=PoshanSummary,
    responses={401: {"description": "Missing or invalid bearer token", "model": ErrorResponse}},
    summary="Poshan programme summary (sandbox)",
)
async def get_poshan_summary(gate: GateContext = Depends(authenticated)) -> PoshanSummary:
    return await poshan_service.get_summary(gate.identity.subject_id)
