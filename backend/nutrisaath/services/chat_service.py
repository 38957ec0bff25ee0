"""
NutriSaath Backend: Chat Service
==================================

What:  The nutrition assistant conversation: prompt building, Gemini call and
       transcript persistence.
How:   Loads the caller's session (if any), folds the last few turns into the
       prompt, asks the LLM service for a reply, then appends both turns to the
       session row.
Who:   Called by POST /api/chat with the verified subject id from the gate.
When:  Once per chat message, after auth and throttle have admitted the call.

Flow:
    message ──trim──▶ load session ──▶ build prompt ──▶ Gemini ──▶ save turns
                       (user, sid)      (+3 turns)                 (upsert)

Nothing is written when Gemini fails, so a failed call leaves the transcript
unchanged.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from nutrisaath.config import settings
from nutrisaath.exceptions import DatabaseError, InvalidInput
from nutrisaath.models.chat_session import ChatSession
from nutrisaath.schemas.chat import ChatResponse
from nutrisaath.services.gemini_service import gemini_service
from nutrisaath.services.llm_base import LLMService

logger = logging.getLogger(__name__)

HISTORY_TURNS = 3

PROMPT_HEADER = [
    "You are Nutri Saath, a friendly Indian nutrition and lifestyle assistant.",
    "Provide evidence-backed guidance aligned with Indian dietary habits, cultural context, "
    "seasonal availability, and FSSAI recommendations.",
    "Always consider the user's health needs before suggesting foods.",
]

RESPONSE_EXPECTATIONS = [
    "RESPONSE EXPECTATIONS:",
    "- Start with a warm greeting.",
    "- Share 1-2 short paragraphs that explain the advice with Indian context "
    "(local foods, cooking styles, regional considerations).",
    "- Follow with a bullet list of 2-3 actionable tips, meal ideas, or substitutions.",
    "- If suggesting packaged foods, remind the user to inspect Indian FSSAI nutrition labels.",
    "- Explicitly call out foods to avoid or limit when health conditions or allergies are mentioned.",
    "- If lifestyle tips are relevant (hydration, activity, sleep), include them briefly.",
    "- Keep the tone positive, respectful, and supportive.",
]


def format_turn(entry: Dict[str, str]) -> str:
    speaker = "Assistant" if entry.get("role") == "assistant" else "User"
    return f"{speaker}: {entry.get('text', '')}"


def build_nutrition_prompt(message: str, history: List[Dict[str, str]]) -> str:
    """
    Assemble the full prompt: persona, expectations, the last HISTORY_TURNS
    transcript entries, then the current question.
    """
    lines: List[str] = [*PROMPT_HEADER, "", *RESPONSE_EXPECTATIONS]

    recent = [format_turn(entry) for entry in history[-HISTORY_TURNS:]]
    if recent:
        lines.extend(["", "RECENT CONVERSATION:"])
        lines.extend(f"- {entry}" for entry in recent)

    lines.extend([
        "",
        "CURRENT QUESTION:",
        message,
        "",
        "Craft the response now following the expectations above.",
    ])
    return "\n".join(lines)


class ChatService:
    """
    Stateless orchestrator; the LLM service can be swapped for tests.
    """

    def __init__(self, llm: Optional[LLMService] = None):
        self._llm = llm

    @property
    def llm(self) -> LLMService:
        return self._llm if self._llm is not None else gemini_service

    async def _load_session(
        self, db: AsyncSession, user_id: str, session_id: str
    ) -> Optional[ChatSession]:
        try:
            result = await db.execute(
                select(ChatSession).where(
                    ChatSession.user_id == user_id,
                    ChatSession.session_id == session_id,
                )
            )
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error("Database error loading chat session %s: %s", session_id, e)
            raise DatabaseError(
                message="Could not load the chat session. Please try again.",
                context={"session_id": session_id},
            ) from e

    async def send_message(
        self,
        db: AsyncSession,
        user_id: str,
        message: str,
        session_id: Optional[str] = None,
    ) -> ChatResponse:
        """
        Answer one chat message and record it.

        Args:
            db:         Request session
            user_id:    Verified subject id
            message:    Raw user message (1 to 500 chars before trimming)
            session_id: Existing session to continue, or None for a new one

        Returns:
            ChatResponse with the session id to continue with and the reply.

        Raises:
            InvalidInput: Message is blank after trimming
            LLMServiceError / CircuitBreakerOpenError: Gemini unavailable
            DatabaseError: Session could not be read or written
        """
        text = message.strip()
        if not text:
            raise InvalidInput(message="Message cannot be empty", field="message")

        session = await self._load_session(db, user_id, session_id) if session_id else None
        history: List[Dict[str, str]] = list(session.messages or []) if session else []

        prompt = build_nutrition_prompt(text, history)
        reply = await self.llm.generate_text(prompt, temperature=settings.gemini_temperature)

        final_session_id = session.session_id if session else (session_id or str(uuid.uuid4()))
        now = datetime.now(timezone.utc).isoformat()
        messages = history + [
            {"role": "user", "text": text, "ts": now},
            {"role": "assistant", "text": reply, "ts": now},
        ]

        try:
            if session is None:
                session = ChatSession(
                    user_id=user_id,
                    session_id=final_session_id,
                    model_id=settings.gemini_model,
                    messages=messages,
                )
                db.add(session)
            else:
                # New list object so the JSON column is flagged dirty
                session.messages = messages
                session.model_id = settings.gemini_model
            await db.flush()
        except SQLAlchemyError as e:
            logger.error("Database error saving chat session %s: %s", final_session_id, e)
            raise DatabaseError(
                message="Could not save the chat session. Please try again.",
                context={"session_id": final_session_id},
            ) from e

        logger.info(
            "Chat reply for user %s in session %s (%d messages)",
            user_id,
            final_session_id,
            len(messages),
        )
        return ChatResponse(session_id=final_session_id, reply=reply)


chat_service = ChatService()
