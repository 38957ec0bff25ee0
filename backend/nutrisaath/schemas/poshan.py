"""
NutriSaath Backend: Poshan Summary Schema
===========================================

What:  Response model for GET /api/poshan/summary (sandbox placeholder).
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class PoshanSummary(BaseModel):
    user_id: str = Field(description="Subject id of the caller")
    status: str = Field(default="ok")
    message: str = Field(description="Human-readable status message")
    source: Optional[str] = Field(default=None, description="Configured Poshan base URL, if any")
    last_synced_at: datetime = Field(description="When the summary was produced (UTC)")
