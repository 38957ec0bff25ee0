"""
NutriSaath Backend: Authentication Schemas
============================================

What:  The verified caller identity produced by the token verifier.
Who:   Returned by TokenService.verify(); carried in GateContext to handlers.
"""

from pydantic import BaseModel, Field

# Matches chat_sessions.user_id
SUBJECT_ID_MAX_LENGTH = 255


class Identity(BaseModel):
    """Claims extracted from a verified bearer token. Both fields are non-empty."""

    subject_id: str = Field(
        min_length=1,
        max_length=SUBJECT_ID_MAX_LENGTH,
        description="Stable user id (token `uid` claim)",
    )
    email: str = Field(min_length=1, description="User email (token `email` claim)")

    model_config = {"frozen": True}
