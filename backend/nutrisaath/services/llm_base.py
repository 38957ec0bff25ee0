"""
NutriSaath Backend: Abstract LLM Service Interface
====================================================

What:  The contract ChatService relies on for text generation.
How:   Concrete providers subclass LLMService; GeminiService is the default.
Who:   Called by ChatService; health_check() by the health endpoint.
"""

from abc import ABC, abstractmethod
from typing import Optional


class LLMService(ABC):
    """
    Contract:
        - generate_text() takes a complete prompt and returns the reply text
        - Implementations own their retry logic and error translation
        - Provider errors surface as LLMServiceError or CircuitBreakerOpenError
    """

    @abstractmethod
    async def generate_text(self, prompt: str, temperature: Optional[float] = None) -> str:
        """
        Generate a reply for a single prompt.

        Returns:
            Non-empty reply text.

        Raises:
            LLMServiceError: The provider failed after all retries or returned
                nothing usable.
            CircuitBreakerOpenError: Too many recent consecutive failures.
        """
        ...

    @abstractmethod
    async def health_check(self) -> bool:
        """Lightweight reachability check that does not consume generation quota."""
        ...
