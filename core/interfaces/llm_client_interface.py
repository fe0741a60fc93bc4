from abc import ABC, abstractmethod


class LLMClientInterface(ABC):
    """Text-completion transport used by the consolidation collaborators."""

    @abstractmethod
    async def complete(self, model: str, system_prompt: str, user_prompt: str, max_tokens: int) -> str:
        """
        Run a single completion and return the raw response text.

        Args:
            model: Provider-prefixed model id, e.g. "anthropic/claude-sonnet-4-6"
            system_prompt: Instructions for the model
            user_prompt: The material to work on
            max_tokens: Output token cap

        Raises:
            LLMException: After the retry budget is exhausted
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        pass
