"""
NutriSaath Backend: Chat Route
================================

What:  POST /api/chat, the nutrition assistant.
How:   Gate: verify the bearer token, then throttle by subject id ("chat"
       policy). The handler passes the verified identity to ChatService.
"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from nutrisaath.config import settings
from nutrisaath.database import get_db_session
from nutrisaath.middleware.gate import GateContext, throttle_by_identity
from nutrisaath.schemas.chat import ChatRequest, ChatResponse
from nutrisaath.schemas.common import ErrorResponse
from nutrisaath.services.chat_service import chat_service
from nutrisaath.services.throttle import RequestThrottle, ThrottlePolicy

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Chat"])

chat_throttle = RequestThrottle(
    ThrottlePolicy(
        prefix="chat",
        points=settings.chat_rate_points,
        window_seconds=settings.chat_rate_window,
        block_seconds=settings.chat_rate_block,
    )
)


@router.post(
    "/chat",
    response_model=ChatResponse,
    responses={
        400: {"description": "Empty or oversized message", "model": ErrorResponse},
        401: {"description": "Missing or invalid bearer token", "model": ErrorResponse},
        429: {"description": "Chat rate limit reached", "model": ErrorResponse},
        503: {"description": "Assistant temporarily unavailable", "model": ErrorResponse},
    },
    summary="Ask the nutrition assistant",
)
async def chat(
    body: ChatRequest,
    gate: GateContext = Depends(throttle_by_identity(chat_throttle)),
    db: AsyncSession = Depends(get_db_session),
) -> ChatResponse:
    return await chat_service.send_message(
        db,
        user_id=gate.identity.subject_id,
        message=body.message,
        session_id=str(body.session_id) if body.session_id else None,
    )
