"""
NutriSaath Backend: Chat Session SQLAlchemy Model
===================================================

What:  ORM model for the `chat_sessions` table, one row per (user, session).
How:   The full transcript lives in a JSON list of
       {"role": "user" | "assistant", "text": str, "ts": ISO-8601 str}.
Who:   Read and upserted by ChatService.
"""

import uuid
from datetime import datetime, timezone
from typing import Dict, List

from sqlalchemy import JSON, DateTime, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from nutrisaath.database import Base
from nutrisaath.schemas.auth import SUBJECT_ID_MAX_LENGTH


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ChatSession(Base):
    """A conversation between one user and the nutrition assistant."""

    __tablename__ = "chat_sessions"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    user_id: Mapped[str] = mapped_column(String(SUBJECT_ID_MAX_LENGTH), nullable=False, index=True)
    session_id: Mapped[str] = mapped_column(String(36), nullable=False)
    model_id: Mapped[str] = mapped_column(String(64), nullable=False)
    messages: Mapped[List[Dict[str, str]]] = mapped_column(JSON, nullable=False, default=list)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("user_id", "session_id", name="uq_chat_sessions_user_session"),
    )

    def __repr__(self) -> str:
        return (
            f"<ChatSession(user_id='{self.user_id}', session_id='{self.session_id}', "
            f"messages={len(self.messages or [])})>"
        )
