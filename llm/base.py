"""Provider interface for the LLM behind the reasoning collaborator."""

from abc import ABC, abstractmethod


class LLMClient(ABC):
    """One chat-style completion call, nothing provider specific.

    LLMReasoner holds an LLMClient and calls complete() once per reasoning
    operation. main.py picks the concrete provider; a new provider is one
    subclass.
    """

    @abstractmethod
    async def complete(self, system: str, user: str) -> str:
        """Run one completion.

        Args:
            system: Operation prompt from prompts/<operation>.txt.
            user: Health report, diagnosis, action or metrics rendered as
                labelled JSON sections.

        Returns:
            Reply text only; SDK response objects stay inside the provider.
        """
        ...
