# Models package init
"""
NutriSaath Backend: ORM Models
================================

Model Inventory:
    - Product:      Cached product records keyed by barcode (passive 30-day expiry)
    - ChatSession:  Per-user chat transcripts with the nutrition assistant
"""

from nutrisaath.models.chat_session import ChatSession
from nutrisaath.models.product import Product

__all__ = ["ChatSession", "Product"]
