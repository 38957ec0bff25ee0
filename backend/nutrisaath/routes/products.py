"""
NutriSaath Backend: Product Route Handlers
============================================

What:  GET /api/products/barcode/{ean} and GET /api/products/search.
How:   Delegates to ProductResolver; `nocache=1` skips the local cache.
Who:   Called by the scanner and search screens of the app. Not gated.
"""

import logging

from fastapi import APIRouter, Depends, Path, Query

from nutrisaath.schemas.common import ErrorResponse
from nutrisaath.schemas.product import (
    BARCODE_PATTERN,
    ProductLookupResponse,
    ProductSearchResponse,
)
from nutrisaath.services.product_service import (
    DEFAULT_PAGE_SIZE,
    ProductResolver,
    get_product_resolver,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/products", tags=["Products"])


@router.get(
    "/barcode/{ean}",
    response_model=ProductLookupResponse,
    responses={
        400: {"description": "Barcode is not 8 to 14 digits", "model": ErrorResponse},
        502: {"description": "Open Food Facts unavailable", "model": ErrorResponse},
    },
    summary="Resolve a product by barcode",
)
async def get_product_by_barcode(
    ean: str = Path(pattern=BARCODE_PATTERN, description="EAN/UPC, 8 to 14 digits"),
    nocache: bool = Query(default=False, description="1 to bypass the local cache"),
    resolver: ProductResolver = Depends(get_product_resolver),
) -> ProductLookupResponse:
    """`product` is null and `source` is "notFound" when no product matches."""
    resolution = await resolver.resolve(ean, skip_cache=nocache)
    return ProductLookupResponse(product=resolution.record, source=resolution.origin)


@router.get(
    "/search",
    response_model=ProductSearchResponse,
    responses={
        400: {"description": "Missing query", "model": ErrorResponse},
        502: {"description": "Open Food Facts unavailable", "model": ErrorResponse},
    },
    summary="Search products by name or brand",
)
async def search_products(
    q: str = Query(default="", description="Free-text query"),
    page: int = Query(default=1, description="1-based page, values below 1 read as 1"),
    page_size: int = Query(default=DEFAULT_PAGE_SIZE, description="Results per page, capped at 100"),
    nocache: bool = Query(default=False, description="1 to bypass the local cache"),
    resolver: ProductResolver = Depends(get_product_resolver),
) -> ProductSearchResponse:
    result = await resolver.search(q, page=page, page_size=page_size, skip_cache=nocache)
    return ProductSearchResponse(products=result.products, source=result.origin)
