"""
NutriSaath Backend: Google Gemini Service
===========================================

What:  LLM service behind the nutrition chat, backed by Google Gemini.
How:   google-generativeai `GenerativeModel.generate_content_async`, wrapped in
       a tenacity retry (exponential backoff with jitter) and a circuit breaker.
Who:   Module singleton `gemini_service`, called by ChatService.
When:  Once per chat message.

Resilience:
    1. Circuit breaker checked first; an OPEN circuit fails fast with
       CircuitBreakerOpenError (→ 503 + Retry-After)
    2. Transient API failures are retried RETRY_MAX_ATTEMPTS times
    3. Exhausted retries or an empty reply count as one breaker failure and
       surface as LLMServiceError (→ 503)
"""

import logging
import time
import uuid
from typing import Callable, Optional

import google.generativeai as genai
from tenacity import (
    RetryError,
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from nutrisaath.config import settings
from nutrisaath.exceptions import CircuitBreakerOpenError, LLMServiceError
from nutrisaath.services.llm_base import LLMService

logger = logging.getLogger(__name__)

GENERATION_TIMEOUT_SECONDS = 30


# ══════════════════════════════════════════════════════════════════════════
# Circuit Breaker
# ══════════════════════════════════════════════════════════════════════════

class CircuitBreaker:
    """
    State machine guarding the Gemini API.

        CLOSED     → each failure increments failure_count;
                     at failure_threshold → OPEN
        OPEN       → calls rejected with CircuitBreakerOpenError until
                     recovery_timeout has passed → HALF_OPEN
        HALF_OPEN  → one trial call; success → CLOSED, failure → OPEN

    State is per process; all requests on the event loop share it.
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: int = 60,
        clock: Callable[[], float] = time.time,
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self.failure_count = 0
        self.state = self.CLOSED
        self.last_failure_time: Optional[float] = None

    def can_execute(self) -> bool:
        """
        Returns True when a call may proceed.

        Raises:
            CircuitBreakerOpenError: OPEN and still inside the recovery window.
        """
        if self.state == self.CLOSED:
            return True

        if self.state == self.OPEN:
            elapsed = self._clock() - (self.last_failure_time or 0)
            if elapsed >= self.recovery_timeout:
                logger.info("Circuit breaker transitioning to HALF_OPEN after %.1fs", elapsed)
                self.state = self.HALF_OPEN
                return True
            remaining = max(1, int(self.recovery_timeout - elapsed))
            raise CircuitBreakerOpenError(recovery_time=remaining)

        return True

    def record_success(self) -> None:
        if self.state == self.HALF_OPEN:
            logger.info("Circuit breaker transitioning to CLOSED (service recovered)")
        self.failure_count = 0
        self.state = self.CLOSED
        self.last_failure_time = None

    def record_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = self._clock()

        if self.state == self.HALF_OPEN:
            logger.warning("Circuit breaker returning to OPEN (trial call failed)")
            self.state = self.OPEN
        elif self.failure_count >= self.failure_threshold:
            logger.warning(
                "Circuit breaker OPENING after %d consecutive failures",
                self.failure_count,
            )
            self.state = self.OPEN


# ══════════════════════════════════════════════════════════════════════════
# Gemini Service
# ══════════════════════════════════════════════════════════════════════════

class GeminiService(LLMService):
    """
    Text generation through Gemini with retry and circuit breaking.

    The model object is created once and reused across requests.
    """

    def __init__(self):
        if settings.gemini_api_key:
            genai.configure(api_key=settings.gemini_api_key)

        self.model = genai.GenerativeModel(settings.gemini_model)
        self.circuit_breaker = CircuitBreaker(
            failure_threshold=settings.cb_failure_threshold,
            recovery_timeout=settings.cb_recovery_timeout,
        )

        logger.info(
            "GeminiService initialized with model=%s, circuit_breaker(threshold=%d, recovery=%ds)",
            settings.gemini_model,
            settings.cb_failure_threshold,
            settings.cb_recovery_timeout,
        )

    async def generate_text(self, prompt: str, temperature: Optional[float] = None) -> str:
        """
        Generate a chat reply for `prompt`.

        Args:
            prompt:      Full prompt including instructions and history
            temperature: Sampling temperature, defaults to GEMINI_TEMPERATURE

        Raises:
            CircuitBreakerOpenError: Circuit is open
            LLMServiceError: Retries exhausted, or the reply was empty
        """
        call_id = str(uuid.uuid4())[:8]
        self.circuit_breaker.can_execute()

        effective_temperature = settings.gemini_temperature if temperature is None else temperature
        logger.info(
            "[%s] Gemini generate_text: %d prompt chars, temperature=%.2f",
            call_id,
            len(prompt),
            effective_temperature,
        )

        try:
            reply = await self._call_gemini_with_retry(prompt, effective_temperature, call_id)
        except RetryError as e:
            self.circuit_breaker.record_failure()
            logger.error(
                "[%s] All Gemini retries exhausted: %s",
                call_id,
                str(e.last_attempt.exception()) if e.last_attempt else "Unknown error",
            )
            raise LLMServiceError(
                retry_after=self.circuit_breaker.recovery_timeout,
                context={"call_id": call_id, "attempts": settings.retry_max_attempts},
            ) from e
        except Exception as e:
            self.circuit_breaker.record_failure()
            logger.error("[%s] Gemini error: %s", call_id, str(e), exc_info=True)
            raise LLMServiceError(
                context={"call_id": call_id, "error_type": type(e).__name__},
            ) from e

        if not reply:
            self.circuit_breaker.record_failure()
            logger.error("[%s] Gemini returned an empty reply", call_id)
            raise LLMServiceError(
                message="The nutrition assistant returned an empty reply",
                context={"call_id": call_id},
            )

        self.circuit_breaker.record_success()
        return reply

    @retry(
        retry=retry_if_exception_type(Exception),
        stop=stop_after_attempt(settings.retry_max_attempts),
        wait=wait_exponential_jitter(
            initial=settings.retry_min_wait,
            max=settings.retry_max_wait,
            jitter=1,
        ),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def _call_gemini_with_retry(self, prompt: str, temperature: float, call_id: str) -> str:
        start_time = time.time()
        try:
            response = await self.model.generate_content_async(
                prompt,
                generation_config=genai.types.GenerationConfig(temperature=temperature),
                request_options={"timeout": GENERATION_TIMEOUT_SECONDS},
            )
            text = response.text.strip() if response.text else ""
        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            logger.warning("[%s] Gemini call failed after %.0fms: %s", call_id, duration_ms, str(e))
            raise

        duration_ms = (time.time() - start_time) * 1000
        logger.info("[%s] Gemini replied in %.0fms with %d chars", call_id, duration_ms, len(text))
        return text

    async def health_check(self) -> bool:
        """List models to confirm the key works; costs no tokens."""
        try:
            model_names = [m.name for m in genai.list_models()]
        except Exception as e:
            logger.warning("Gemini health check failed: %s", str(e))
            return False
        target = f"models/{settings.gemini_model}"
        if target not in model_names:
            logger.warning("Configured model %s not found in available models", target)
        return True


gemini_service = GeminiService()
