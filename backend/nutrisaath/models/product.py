"""
NutriSaath Backend: Product SQLAlchemy Model
==============================================

What:  ORM model for the `products` table, the local cache of upstream
       (Open Food Facts) product records.
Who:   Used by ProductStore for lookups and upserts, and by Alembic.

Table Design:
    - barcode: 8 to 14 digit EAN/UPC, unique. Upserts conflict on it.
    - nutrients / images: JSON columns (mapping and ordered list of
      {type, url}); portable between PostgreSQL and SQLite.
    - last_fetched_at: bumped on every upstream refresh. Drives both the
      staleness check and passive expiry (records older than
      PRODUCT_RETENTION_DAYS are treated as absent and purged).

Index on last_fetched_at:
    Backs the expiry filter on reads and the periodic purge DELETE.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from nutrisaath.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Product(Base):
    """
    A product record resolved from the upstream source.

    Lifecycle:
        1. Inserted on the first successful upstream resolution
        2. Overwritten (fields + last_fetched_at) on every later refresh
        3. Invisible to reads once last_fetched_at is older than the
           retention window; physically removed by purge_expired()
    """

    __tablename__ = "products"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    barcode: Mapped[str] = mapped_column(
        String(14),
        nullable=False,
        unique=True,
        index=True,
        comment="EAN/UPC barcode, 8 to 14 digits",
    )

    name: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    brand: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    ingredients: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    nutrients: Mapped[Optional[Dict[str, Any]]] = mapped_column(
        JSON,
        nullable=True,
        comment="Upstream nutriments mapping, stored as-is",
    )

    images: Mapped[List[Dict[str, str]]] = mapped_column(
        JSON,
        nullable=False,
        default=list,
        comment="Ordered list of {type, url}",
    )

    last_fetched_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        comment="When this record was last refreshed from upstream (UTC)",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
    )

    __table_args__ = (
        Index("idx_products_last_fetched_at", "last_fetched_at"),
    )

    def __repr__(self) -> str:
        return f"<Product(barcode='{self.barcode}', last_fetched_at='{self.last_fetched_at}')>"
