"""
NutriSaath Backend: Product Request/Response Schemas
======================================================

What:  Pydantic models for product records, lookup bodies and responses.
How:   ProductRecord validates straight from the ORM row (`from_attributes`)
       and from upstream-normalized dicts, so services hand the same type to
       every route.

Barcode rule (shared by every entry point):
    8 to 14 ASCII digits, `^[0-9]{8,14}$`.
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

BARCODE_PATTERN = r"^[0-9]{8,14}$"

ProductOrigin = Literal["cache", "upstream", "notFound"]


class ProductImage(BaseModel):
    type: str = Field(description="Image role, e.g. front, ingredients, nutrition")
    url: str = Field(description="Display URL")

    model_config = {"from_attributes": True}


class ProductRecord(BaseModel):
    """
    What:  A resolved product, from the local store or the upstream source.
    Who:   Returned inside every product and barcode lookup response.
    """

    barcode: str = Field(pattern=BARCODE_PATTERN, description="EAN/UPC, 8 to 14 digits")
    name: Optional[str] = None
    brand: Optional[str] = None
    ingredients: Optional[str] = None
    nutrients: Optional[Dict[str, Any]] = None
    images: List[ProductImage] = Field(default_factory=list)
    last_fetched_at: Optional[datetime] = Field(
        default=None, description="When the record was last refreshed from upstream (UTC)"
    )

    model_config = {"from_attributes": True}


class ProductResolution(BaseModel):
    """
    Result of resolving one barcode.

    `record` is None exactly when `origin == "notFound"`; callers branch on
    `origin` rather than catching an error.
    """

    record: Optional[ProductRecord] = None
    origin: ProductOrigin


class ProductSearchResult(BaseModel):
    """Ordered matches for a free-text query plus where they came from."""

    products: List[ProductRecord] = Field(default_factory=list)
    origin: Literal["cache", "upstream"]


# ══════════════════════════════════════════════════════════════════════════
# Request Models
# ══════════════════════════════════════════════════════════════════════════


class BarcodeLookupRequest(BaseModel):
    """Body of POST /api/barcode/lookup."""

    barcode: str = Field(pattern=BARCODE_PATTERN, description="Barcode must contain 8 to 14 digits")


# ══════════════════════════════════════════════════════════════════════════
# Response Models
# ══════════════════════════════════════════════════════════════════════════


class ProductLookupResponse(BaseModel):
    """GET /api/products/barcode/{ean}: product is null when not found."""

    product: Optional[ProductRecord] = None
    source: ProductOrigin


class BarcodeLookupResponse(BaseModel):
    """POST /api/barcode/lookup: `{found: false}` or the product and its source."""

    found: bool
    product: Optional[ProductRecord] = None
    source: Optional[ProductOrigin] = None


class ProductSearchResponse(BaseModel):
    products: List[ProductRecord] = Field(default_factory=list)
    source: Literal["cache", "upstream"]
