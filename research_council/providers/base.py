"""Abstract base for LLM transports."""

from abc import ABC, abstractmethod

from research_council.models import GenerationRequest, LLMResponse


class Transport(ABC):
    """One network call per attempt, authenticated with the given credential."""

    @abstractmethod
    def name(self) -> str:
        """Return the short transport name (e.g. 'gemini')."""
        ...

    @abstractmethod
    async def send(self, request: GenerationRequest, credential: str) -> LLMResponse:
        """Issue a single request.

        Args:
            request: The immutable request descriptor.
            credential: API key chosen by the executor for this attempt.

        Returns:
            LLMResponse with the primary text (possibly empty) and any
            grounding sources.

        Raises:
            TransientError: classified failure of this attempt.
        """
        ...
