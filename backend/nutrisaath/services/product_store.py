"""
NutriSaath Backend: Product Store (Persistent Cache)
======================================================

What:  Data access for the `products` table: barcode lookup, idempotent
       upsert, substring search and the expiry purge.
How:   Async SQLAlchemy 2.0 queries on the request's AsyncSession. The store
       flushes but never commits; get_db_session() owns the transaction.
Who:   Used by ProductResolver, and by the startup sweep in main.py.

Passive expiry:
    A record whose last_fetched_at is older than PRODUCT_RETENTION_DAYS is
    treated as absent by every read, even before purge_expired() removes it.

Upsert:
    INSERT ... ON CONFLICT (barcode) DO UPDATE on PostgreSQL and SQLite, so
    two concurrent resolutions of the same barcode both succeed and the last
    write wins.

Errors:
    SQLAlchemyError is logged and re-raised as DatabaseError (→ 500); SQL
    details never reach the client.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import delete, desc, or_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from nutrisaath.config import settings
from nutrisaath.exceptions import DatabaseError
from nutrisaath.models.product import Product

logger = logging.getLogger(__name__)

UPSERT_FIELDS = ("name", "brand", "ingredients", "nutrients", "images")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class ProductStore:
    """
    Product persistence bound to one database session.

    Args:
        session:        AsyncSession from get_db_session()
        retention_days: Visibility window, defaults to PRODUCT_RETENTION_DAYS
        clock:          Returns the current UTC datetime (tests inject one)
    """

    def __init__(
        self,
        session: AsyncSession,
        retention_days: Optional[int] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.session = session
        self.retention_days = retention_days or settings.product_retention_days
        self._clock = clock

    def _expiry_cutoff(self) -> datetime:
        return self._clock() - timedelta(days=self.retention_days)

    async def find_by_barcode(self, barcode: str) -> Optional[Product]:
        """Return the unexpired record for a barcode, or None."""
        try:
            result = await self.session.execute(
                select(Product)
                .where(Product.barcode == barcode)
                .where(Product.last_fetched_at >= self._expiry_cutoff())
            )
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error("Database error looking up product %s: %s", barcode, e)
            raise DatabaseError(
                message="Could not read the product cache. Please try again.",
                context={"barcode": barcode},
            ) from e

    def _insert_for_dialect(self):
        dialect = self.session.get_bind().dialect.name
        if dialect == "postgresql":
            return pg_insert
        if dialect == "sqlite":
            return sqlite_insert
        raise DatabaseError(
            message="Unsupported database for product upsert",
            context={"dialect": dialect},
        )

    async def upsert(self, barcode: str, fields: Dict[str, Any]) -> Product:
        """
        Insert or overwrite the record for `barcode` and stamp last_fetched_at.

        Args:
            barcode: Conflict key
            fields:  Any of name, brand, ingredients, nutrients, images; other
                     keys are ignored

        Returns:
            The stored Product row as it is after the write.
        """
        now = self._clock()
        values: Dict[str, Any] = {key: fields.get(key) for key in UPSERT_FIELDS}
        if values["images"] is None:
            values["images"] = []
        values["last_fetched_at"] = now

        insert = self._insert_for_dialect()
        stmt = insert(Product).values(barcode=barcode, created_at=now, **values)
        stmt = stmt.on_conflict_do_update(index_elements=["barcode"], set_=values)

        try:
            await self.session.execute(stmt)
            await self.session.flush()
            result = await self.session.execute(
                select(Product)
                .where(Product.barcode == barcode)
                .execution_options(populate_existing=True)
            )
            product = result.scalar_one()
        except SQLAlchemyError as e:
            logger.error("Database error upserting product %s: %s", barcode, e)
            raise DatabaseError(
                message="Could not update the product cache. Please try again.",
                context={"barcode": barcode},
            ) from e

        logger.debug("Upserted product %s", barcode)
        return product

    async def find_many(self, query: str, page: int = 1, page_size: int = 20) -> List[Product]:
        """
        Unexpired records whose name or brand contains `query`
        (case-insensitive), newest first.

        Query plan:
            SELECT * FROM products
            WHERE last_fetched_at >= :cutoff
              AND (name ILIKE :q OR brand ILIKE :q)
            ORDER BY last_fetched_at DESC
            LIMIT :page_size OFFSET (:page - 1) * :page_size
        """
        pattern = f"%{_escape_like(query.strip())}%"
        stmt = (
            select(Product)
            .where(Product.last_fetched_at >= self._expiry_cutoff())
            .where(
                or_(
                    Product.name.ilike(pattern, escape="\\"),
                    Product.brand.ilike(pattern, escape="\\"),
                )
            )
            .order_by(desc(Product.last_fetched_at), Product.id)
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        try:
            result = await self.session.execute(stmt)
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error("Database error searching products for %r: %s", query, e)
            raise DatabaseError(
                message="Could not search the product cache. Please try again.",
                context={"query": query},
            ) from e

    async def purge_expired(self) -> int:
        """Delete every expired record. Returns the number removed."""
        cutoff = self._expiry_cutoff()
        try:
            result = await self.session.execute(
                delete(Product).where(Product.last_fetched_at < cutoff)
            )
            await self.session.flush()
        except SQLAlchemyError as e:
            logger.error("Database error purging expired products: %s", e)
            raise DatabaseError(context={"operation": "purge_expired"}) from e

        removed = result.rowcount or 0
        if removed:
            logger.info("Purged %d expired products (older than %s)", removed, cutoff.isoformat())
        return removed
