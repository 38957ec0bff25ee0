"""
NutriSaath Backend: Barcode Lookup Route
==========================================

What:  POST /api/barcode/lookup, the scanner's anonymous lookup endpoint.
How:   Throttled per client address ("barcode-lookup" policy), then the same
       ProductResolver flow as GET /api/products/barcode/{ean}.

Response:
    {"found": false}                                  no product anywhere
    {"found": true, "product": {...}, "source": ...}  cache or upstream hit
"""

import logging

from fastapi import APIRouter, Depends

from nutrisaath.config import settings
from nutrisaath.middleware.gate import GateContext, throttle_by_address
from nutrisaath.schemas.common import ErrorResponse
from nutrisaath.schemas.product import BarcodeLookupRequest, BarcodeLookupResponse
from nutrisaath.services.product_service import ProductResolver, get_product_resolver
from nutrisaath.services.throttle import RequestThrottle, ThrottlePolicy

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/barcode", tags=["Barcode"])

lookup_throttle = RequestThrottle(
    ThrottlePolicy(
        prefix="barcode-lookup",
        points=settings.barcode_rate_points,
        window_seconds=settings.barcode_rate_window,
        block_seconds=settings.barcode_rate_block,
    )
)


@router.post(
    "/lookup",
    response_model=BarcodeLookupResponse,
    response_model_exclude_none=True,
    responses={
        400: {"description": "Barcode is not 8 to 14 digits", "model": ErrorResponse},
        429: {"description": "Too many lookups from this address", "model": ErrorResponse},
        502: {"description": "Open Food Facts unavailable", "model": ErrorResponse},
    },
    summary="Look up a scanned barcode",
)
async def lookup_barcode(
    body: BarcodeLookupRequest,
    gate: GateContext = Depends(throttle_by_address(lookup_throttle)),
    resolver: ProductResolver = Depends(get_product_resolver),
) -> BarcodeLookupResponse:
    resolution = await resolver.resolve(body.barcode)
    if resolution.origin == "notFound":
        logger.info("Barcode %s not found (client %s)", body.barcode, gate.client_address)
        return BarcodeLookupResponse(found=False)
    return BarcodeLookupResponse(found=True, product=resolution.record, source=resolution.origin)
