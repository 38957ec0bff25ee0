"""
NutriSaath Backend: Custom Exception Hierarchy
================================================

What:  Application-specific exceptions for every failure the API can surface.
How:   Each exception carries a user-facing message, an HTTP status code and an
       optional context dict. Global exception handlers (registered in main.py)
       turn them into the error body:

           {"error": {"message": "...", "code": 401, "request_id": "..."}}

Who:   Raised by the gate, services and clients; caught by global handlers.

Exception Hierarchy:
    NutriSaathError (base)                  → 500
    ├── AuthenticationRequired              → 401 (no or garbled credential)
    ├── InvalidCredential                   → 401 (signature, expiry, claims)
    ├── RateLimited                         → 429 (throttle rejection)
    ├── InvalidInput                        → 400 (schema/shape violation)
    ├── UpstreamUnavailable                 → 502 (product source failure)
    ├── LLMServiceError                     → 503 (Gemini failed after retries)
    ├── CircuitBreakerOpenError             → 503 (Gemini circuit open)
    └── DatabaseError                       → 500

`context` is diagnostic detail for logs. It is never returned for 401 or 5xx
responses.
"""

from typing import Any, Dict, Optional


class NutriSaathError(Exception):
    """
    Base exception for all application errors.

    Attributes:
        message:     User-facing error description (safe to return in API response)
        context:     Additional debug info (logged, not always returned)
        status_code: HTTP status the global handler responds with
        kind:        Short machine-readable failure kind used in logs
    """

    status_code: int = 500
    kind: str = "internal_error"

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.context = context or {}
        super().__init__(self.message)


class AuthenticationRequired(NutriSaathError):
    """
    Raised when a protected operation receives no usable credential.

    When:  Authorization header absent, not of the form `Bearer <token>`.
    HTTP:  401 Unauthorized
    """

    status_code = 401
    kind = "authentication_required"

    def __init__(
        self,
        message: str = "Authentication required",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class InvalidCredential(NutriSaathError):
    """
    Raised when a bearer token fails verification.

    When:  Bad signature, malformed token, expired token, or decoded claims
           without a subject id or email.
    HTTP:  401 Unauthorized

    The underlying decode error is stored in `context["cause"]` for logging
    only; the client sees the generic message.
    """

    status_code = 401
    kind = "invalid_credential"

    def __init__(
        self,
        message: str = "Invalid or expired token",
        cause: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if cause:
            ctx["cause"] = cause
        super().__init__(message=message, context=ctx)


class RateLimited(NutriSaathError):
    """
    Raised when the request throttle rejects a call.

    HTTP:  429 Too Many Requests, with a Retry-After header.
    """

    status_code = 429
    kind = "rate_limited"

    def __init__(
        self,
        retry_after: int = 60,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        ctx["retry_after"] = retry_after
        super().__init__(message="Too many requests", context=ctx)
        self.retry_after = retry_after


class InvalidInput(NutriSaathError):
    """
    Raised when client input fails validation.

    When:  Barcode not 8 to 14 digits, empty chat message, bad query params.
    HTTP:  400 Bad Request
    """

    status_code = 400
    kind = "invalid_input"

    def __init__(
        self,
        message: str = "Validation failed",
        field: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if field:
            ctx["field"] = field
        super().__init__(message=message, context=ctx)
        self.field = field


class UpstreamUnavailable(NutriSaathError):
    """
    Raised when the upstream product source cannot answer.

    When:  Timeout, connection error, non-2xx status (other than "no such
           product"), or a payload we cannot parse.
    HTTP:  502 Bad Gateway

    Distinct from "not found": a miss upstream is a normal result.
    """

    status_code = 502
    kind = "upstream_unavailable"

    def __init__(
        self,
        message: str = "Product source is temporarily unavailable",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class LLMServiceError(NutriSaathError):
    """
    Raised when Gemini fails after all retries.

    HTTP:  503 Service Unavailable
    """

    status_code = 503
    kind = "llm_service_error"

    def __init__(
        self,
        message: str = "The nutrition assistant is temporarily unavailable",
        retry_after: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if retry_after:
            ctx["retry_after"] = retry_after
        super().__init__(message=message, context=ctx)
        self.retry_after = retry_after


class CircuitBreakerOpenError(NutriSaathError):
    """
    Raised when the Gemini circuit breaker is OPEN.

    How circuit breaker works:
        CLOSED (normal) → failures increment counter
        → After N failures → OPEN (reject all calls for recovery_time seconds)
        → After recovery_time → HALF-OPEN (allow one test call)
        → If test succeeds → CLOSED; if it fails → OPEN again

    HTTP:  503 Service Unavailable, with a Retry-After header.
    """

    status_code = 503
    kind = "circuit_open"

    def __init__(
        self,
        recovery_time: int = 60,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = (
            "The nutrition assistant is temporarily unavailable due to repeated failures. "
            f"Please retry in approximately {recovery_time} seconds."
        )
        ctx = context or {}
        ctx["recovery_time"] = recovery_time
        super().__init__(message=message, context=ctx)
        self.recovery_time = recovery_time


class DatabaseError(NutriSaathError):
    """
    Raised when database operations fail unexpectedly.

    The message returned to the client is always generic; SQL details are
    logged server-side only.
    """

    status_code = 500
    kind = "database_error"

    def __init__(
        self,
        message: str = "A database error occurred. Please try again later.",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)
