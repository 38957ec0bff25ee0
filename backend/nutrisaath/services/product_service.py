"""
NutriSaath Backend: Product Resolver
======================================

What:  Resolves a barcode (or a free-text query) to product records using the
       local cache first and Open Food Facts second.
Who:   Called by the product routes and the barcode lookup route.
When:  Once per product request.

Resolve flow:
    ┌───────────────┐ fresh hit  ┌──────────────────┐
    │ ProductStore  │───────────▶│ origin = cache   │
    └───────┬───────┘            └──────────────────┘
            │ miss / stale / skip_cache
            ▼
    ┌───────────────┐  match     ┌──────────────────┐
    │ Open Food     │───────────▶│ upsert, origin = │
    │ Facts         │            │ upstream         │
    └───────┬───────┘            └──────────────────┘
            │ no match           ┌──────────────────┐
            ├───────────────────▶│ origin = notFound│ (nothing written)
            │                    └──────────────────┘
            │ failure
            ▼
    UpstreamUnavailable (502)

A cached record is never returned as a fallback after an upstream failure,
and a notFound answer never removes an existing cached record.

Staleness:
    PRODUCT_STALE_AFTER_SECONDS unset → a record is fresh until it expires.
    Otherwise a record older than that is refreshed from upstream.

Search ordering:
    Results are ranked by a relevance score over name and brand (exact match,
    prefix, whole word, substring) with a small boost for barcodes containing
    the query. Ties keep the source order.
"""

import logging
import re
import unicodedata
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from nutrisaath.config import settings
from nutrisaath.database import get_db_session
from nutrisaath.exceptions import InvalidInput
from nutrisaath.schemas.product import ProductRecord, ProductResolution, ProductSearchResult
from nutrisaath.services.off_client import off_client
from nutrisaath.services.product_store import ProductStore

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 20


class ProductSource(Protocol):
    """What the resolver needs from the upstream product source."""

    async def get_product(self, barcode: str) -> Optional[Dict[str, Any]]:
        ...

    async def search(
        self, query: str, page: int = 1, page_size: int = 20, nocache: bool = False
    ) -> List[Dict[str, Any]]:
        ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; every stored timestamp is UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ══════════════════════════════════════════════════════════════════════════
# Relevance Scoring
# ══════════════════════════════════════════════════════════════════════════

_TOKEN_SPLIT = re.compile(r"[^a-z0-9]+")


def normalize_text(value: Optional[str]) -> str:
    """Lowercase, strip diacritics (NFKD) and surrounding whitespace."""
    decomposed = unicodedata.normalize("NFKD", (value or "").lower())
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return stripped.strip()


def tokenize(value: str) -> List[str]:
    return [token for token in _TOKEN_SPLIT.split(value) if token]


def relevance_score(normalized_query: str, tokens: Sequence[str], record: ProductRecord) -> int:
    """
    Score one record against a normalized query.

        exact name 1000, exact brand 700
        name prefix 500, brand prefix 350
        per token: whole word in name 120 / brand 90,
                   substring of name 60 / brand 45
        barcode contains the query: 10
    """
    name = normalize_text(record.name)
    brand = normalize_text(record.brand)
    score = 0

    if name == normalized_query:
        score += 1000
    if brand == normalized_query:
        score += 700

    if name.startswith(normalized_query):
        score += 500
    if brand.startswith(normalized_query):
        score += 350

    for token in tokens:
        word = re.compile(r"(^|\s)" + re.escape(token) + r"(\s|$)")
        if word.search(name):
            score += 120
        if word.search(brand):
            score += 90
        if token in name:
            score += 60
        if token in brand:
            score += 45

    if normalized_query in record.barcode:
        score += 10

    return score


def rank_by_relevance(query: str, records: List[ProductRecord]) -> List[ProductRecord]:
    """Sort records by descending relevance; sorted() keeps ties in order."""
    normalized_query = normalize_text(query)
    tokens = tokenize(normalized_query)
    return sorted(
        records,
        key=lambda record: relevance_score(normalized_query, tokens, record),
        reverse=True,
    )


# ══════════════════════════════════════════════════════════════════════════
# Resolver
# ══════════════════════════════════════════════════════════════════════════


class ProductResolver:
    """
    Cache-then-upstream product resolution.

    Args:
        store:       ProductStore for the current request
        upstream:    Product source (Open Food Facts client)
        stale_after: Seconds after which a cached record is refreshed;
                     None means fresh until expiry
        clock:       Returns the current UTC datetime
    """

    def __init__(
        self,
        store: ProductStore,
        upstream: ProductSource,
        stale_after: Optional[int] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.upstream = upstream
        self.stale_after = stale_after
        self._clock = clock

    def is_stale(self, last_fetched_at: Optional[datetime]) -> bool:
        if self.stale_after is None:
            return False
        if last_fetched_at is None:
            return True
        age = self._clock() - _as_utc(last_fetched_at)
        return age > timedelta(seconds=self.stale_after)

    async def resolve(self, barcode: str, skip_cache: bool = False) -> ProductResolution:
        """
        Resolve one barcode.

        Returns:
            ProductResolution with origin cache, upstream or notFound.

        Raises:
            UpstreamUnavailable: The upstream call failed (→ 502).
            DatabaseError: The cache could not be read or written (→ 500).
        """
        if not skip_cache:
            cached = await self.store.find_by_barcode(barcode)
            if cached is not None and not self.is_stale(cached.last_fetched_at):
                logger.debug("Product %s served from cache", barcode)
                return ProductResolution(
                    record=ProductRecord.model_validate(cached), origin="cache"
                )
            if cached is not None:
                logger.info("Cached product %s is stale, refreshing", barcode)

        fields = await self.upstream.get_product(barcode)
        if fields is None:
            logger.info("Product %s not found upstream", barcode)
            return ProductResolution(record=None, origin="notFound")

        # Stored under the requested barcode so the next lookup hits the cache
        stored = await self.store.upsert(barcode, fields)
        logger.info("Product %s fetched from upstream and cached", barcode)
        return ProductResolution(record=ProductRecord.model_validate(stored), origin="upstream")

    async def search(
        self,
        query: str,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
        skip_cache: bool = False,
    ) -> ProductSearchResult:
        """
        Free-text product search, cache first.

        `page` is raised to at least 1 and `page_size` clamped to 1..100.

        Raises:
            InvalidInput: Blank query (→ 400).
            UpstreamUnavailable: Cache had nothing and upstream failed.
        """
        q = (query or "").strip()
        if not q:
            raise InvalidInput(message="Query is required", field="q")
        page = max(1, page)
        page_size = max(1, min(page_size, MAX_PAGE_SIZE))

        if not skip_cache:
            cached = await self.store.find_many(q, page=page, page_size=page_size)
            if cached:
                hits_from_cache = [ProductRecord.model_validate(p) for p in cached]
                logger.debug("Search %r served %d products from cache", q, len(hits_from_cache))
                return ProductSearchResult(
                    products=rank_by_relevance(q, hits_from_cache), origin="cache"
                )

        hits = await self.upstream.search(q, page=page, page_size=page_size, nocache=skip_cache)
        records: List[ProductRecord] = []
        for fields in hits:
            stored = await self.store.upsert(fields["barcode"], fields)
            records.append(ProductRecord.model_validate(stored))

        logger.info("Search %r returned %d products from upstream", q, len(records))
        return ProductSearchResult(products=rank_by_relevance(q, records), origin="upstream")


def get_product_resolver(db: AsyncSession = Depends(get_db_session)) -> ProductResolver:
    """FastAPI dependency: a resolver bound to the request's session."""
    return ProductResolver(
        store=ProductStore(db),
        upstream=off_client,
        stale_after=settings.product_stale_after_seconds,
    )
