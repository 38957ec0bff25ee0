"""
NutriSaath Backend: Chat Schemas
==================================

What:  Request/response models for POST /api/chat.
"""

import uuid
from typing import Optional

from pydantic import BaseModel, Field


class ChatRequest(BaseModel):
    message: str = Field(min_length=1, max_length=500, description="User question")
    session_id: Optional[uuid.UUID] = Field(
        default=None,
        description="Continue an existing session; omit to start a new one",
    )


class ChatResponse(BaseModel):
    session_id: str = Field(description="Session to send with follow-up messages")
    reply: str = Field(description="Assistant reply")
