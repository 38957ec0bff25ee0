"""
NutriSaath Backend: Request Gate (Auth + Throttle)
====================================================

What:  FastAPI dependencies that guard protected operations.
How:   Composes TokenService.verify and RequestThrottle.admit into ordered
       pipeline stages declared per route:

           require_identity               [auth]
           throttle_by_address(throttle)  [throttle keyed by client address]
           throttle_by_identity(throttle) [auth → throttle keyed by subject id]

       Each stage raises a taxonomy exception on failure, so later stages and
       the handler never run. The global exception handlers in main.py turn
       that into the terminal error response.

Who:   Declared on routes with Depends(...); handlers receive a GateContext.
When:  Before the route handler, after body validation is scheduled.

Explicit context:
    The verified identity is returned as a GateContext value and passed into
    services as plain arguments. Nothing is stored on request.state.

Logging:
    Every rejection is logged once with route prefix, failure kind and throttle
    key. Tokens and Authorization headers are never logged.
"""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from fastapi import Depends, Header, Request

from nutrisaath.config import settings
from nutrisaath.exceptions import NutriSaathError, RateLimited
from nutrisaath.middleware.request_id import request_id_var
from nutrisaath.schemas.auth import Identity
from nutrisaath.services.throttle import RequestThrottle
from nutrisaath.services.token_service import token_service

logger = logging.getLogger(__name__)

ANONYMOUS_KEY = "anonymous"


@dataclass(frozen=True)
class GateContext:
    """What the gate learned about the caller, handed to the handler."""

    client_address: str
    identity: Optional[Identity] = None


def get_client_address(request: Request) -> str:
    """
    Network address used as the throttle key for anonymous callers.

    With TRUST_FORWARDED_FOR the first X-Forwarded-For hop wins; otherwise the
    socket peer. Falls back to "anonymous" when neither is known.
    """
    if settings.trust_forwarded_for:
        forwarded = request.headers.get("x-forwarded-for", "")
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    if request.client and request.client.host:
        return request.client.host
    return ANONYMOUS_KEY


def _log_rejection(request: Request, stage: str, exc: NutriSaathError, key: str = "-") -> None:
    logger.warning(
        "[%s] Gate rejected %s %s at %s: %s (key=%s)",
        request_id_var.get(""),
        request.method,
        request.url.path,
        stage,
        exc.kind,
        key,
        extra={"failure_kind": exc.kind, "throttle_key": key, "gate_stage": stage},
    )


async def require_identity(
    request: Request,
    authorization: Optional[str] = Header(default=None),
) -> Identity:
    """
    Gate stage: verify the bearer credential.

    Raises:
        AuthenticationRequired / InvalidCredential (→ 401)
    """
    try:
        return token_service.verify(authorization)
    except NutriSaathError as exc:
        _log_rejection(request, "auth", exc)
        if exc.context.get("cause"):
            logger.debug("Token verification failure detail: %s", exc.context["cause"])
        raise


async def _admit_or_raise(request: Request, throttle: RequestThrottle, key: str) -> None:
    decision = await throttle.admit(key)
    if decision.admitted:
        return
    exc = RateLimited(
        retry_after=decision.retry_after_seconds,
        context={"prefix": throttle.policy.prefix},
    )
    _log_rejection(request, f"throttle:{throttle.policy.prefix}", exc, key)
    raise exc


def throttle_by_address(throttle: RequestThrottle) -> Callable[..., Awaitable[GateContext]]:
    """
    Build a gate stage that throttles anonymous callers by network address.

    Usage:
        @router.post("/lookup")
        async def lookup(gate: GateContext = Depends(throttle_by_address(lookup_throttle))):
    """

    async def dependency(request: Request) -> GateContext:
        address = get_client_address(request)
        await _admit_or_raise(request, throttle, address)
        return GateContext(client_address=address)

    return dependency


def throttle_by_identity(throttle: RequestThrottle) -> Callable[..., Awaitable[GateContext]]:
    """
    Build a gate pipeline: verify the token, then throttle by subject id.

    A failed verification short-circuits before any throttle point is spent.
    """

    async def dependency(
        request: Request,
        identity: Identity = Depends(require_identity),
    ) -> GateContext:
        address = get_client_address(request)
        key = identity.subject_id or address
        await _admit_or_raise(request, throttle, key)
        return GateContext(client_address=address, identity=identity)

    return dependency


async def authenticated(
    request: Request,
    identity: Identity = Depends(require_identity),
) -> GateContext:
    """Gate pipeline with the auth stage only."""
    return GateContext(client_address=get_client_address(request), identity=identity)
