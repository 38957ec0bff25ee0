"""
NutriSaath Backend: Bearer Token Service
==========================================

What:  Verifies `Authorization: Bearer <token>` headers and issues tokens.
How:   HMAC-signed JWTs (PyJWT) checked against the shared JWT_SECRET.
Who:   `verify` is called by the gate's `require_identity` dependency;
       `issue` signs tokens for a verified identity (login flow, tooling).
When:  Once per protected request. Pure CPU work, no I/O, no retries.

Failure mapping:
    header absent / not "Bearer <token>"    → AuthenticationRequired
    bad signature / malformed / expired     → InvalidCredential (cause logged)
    claims without subject id or email      → InvalidCredential ("payload incomplete")

Claims:
    {"uid": "<subject id>", "email": "<email>", "exp": <unix seconds>, ...}
    `sub` is accepted when `uid` is absent.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt

from nutrisaath.config import settings
from nutrisaath.exceptions import AuthenticationRequired, InvalidCredential
from nutrisaath.schemas.auth import SUBJECT_ID_MAX_LENGTH, Identity

logger = logging.getLogger(__name__)

BEARER_SCHEME = "bearer"


def parse_bearer(authorization: Optional[str]) -> Optional[str]:
    """
    Extract the token from an Authorization header value.

    Returns None unless the value is exactly two space-separated parts with a
    case-insensitive `Bearer` scheme and a non-empty token.
    """
    if not authorization:
        return None
    parts = authorization.split(" ")
    if len(parts) != 2:
        return None
    scheme, token = parts
    if scheme.lower() != BEARER_SCHEME or not token:
        return None
    return token


class TokenService:
    """
    Verifies and issues bearer tokens.

    Args given to the constructor override settings; anything left as None is
    read from settings at call time, so a patched settings object takes effect.
    """

    def __init__(
        self,
        secret: Optional[str] = None,
        algorithm: Optional[str] = None,
        expires_in_seconds: Optional[int] = None,
    ):
        self._secret = secret
        self._algorithm = algorithm
        self._expires_in_seconds = expires_in_seconds

    @property
    def secret(self) -> str:
        return self._secret if self._secret is not None else settings.jwt_secret

    @property
    def algorithm(self) -> str:
        return self._algorithm or settings.jwt_algorithm

    @property
    def expires_in_seconds(self) -> int:
        return self._expires_in_seconds or settings.jwt_expires_in_seconds

    def verify(self, authorization: Optional[str]) -> Identity:
        """
        Validate a bearer credential and return the caller's identity.

        Args:
            authorization: Raw Authorization header value (None if absent).

        Returns:
            Identity with non-empty subject_id and email.

        Raises:
            AuthenticationRequired: No header, or not of the form "Bearer <token>".
            InvalidCredential: Token fails signature/structure/expiry checks,
                or its payload lacks a subject id or email.
        """
        token = parse_bearer(authorization)
        if token is None:
            raise AuthenticationRequired()

        try:
            payload = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError as e:
            raise InvalidCredential(cause=f"expired: {e}")
        except jwt.InvalidTokenError as e:
            raise InvalidCredential(cause=f"{type(e).__name__}: {e}")

        return self._identity_from_claims(payload)

    def issue(self, identity: Identity, expires_in_seconds: Optional[int] = None) -> str:
        """
        Sign a token for a verified identity.

        The token carries `uid`, `sub`, `email`, `iat` and `exp` claims.
        """
        now = datetime.now(timezone.utc)
        lifetime = expires_in_seconds if expires_in_seconds is not None else self.expires_in_seconds
        claims: Dict[str, Any] = {
            "uid": identity.subject_id,
            "sub": identity.subject_id,
            "email": identity.email,
            "iat": now,
            "exp": now + timedelta(seconds=lifetime),
        }
        return jwt.encode(claims, self.secret, algorithm=self.algorithm)

    @staticmethod
    def _identity_from_claims(payload: Dict[str, Any]) -> Identity:
        subject_id = payload.get("uid") or payload.get("sub")
        email = payload.get("email")
        if not isinstance(subject_id, str) or not subject_id:
            raise InvalidCredential(message="Invalid token payload", cause="payload incomplete: uid")
        if len(subject_id) > SUBJECT_ID_MAX_LENGTH:
            raise InvalidCredential(message="Invalid token payload", cause="uid exceeds maximum length")
        if not isinstance(email, str) or not email:
            raise InvalidCredential(message="Invalid token payload", cause="payload incomplete: email")
        return Identity(subject_id=subject_id, email=email)


token_service = TokenService()
