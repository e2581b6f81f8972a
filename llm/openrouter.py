"""OpenRouter provider for the reasoning collaborator.

OpenRouter fronts many vendors behind one OpenAI-compatible endpoint, so the
reasoning model is picked with SI_REASONING_MODEL and nothing else changes.

Environment:
    OPENROUTER_API_KEY  required; read from the process or .env
"""

import os

import openai
from dotenv import load_dotenv

from llm.base import LLMClient

load_dotenv()

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_REQUEST_TIMEOUT_SECS = 60.0


class OpenRouterClient(LLMClient):
    """Chat completions through OpenRouter with cold sampling.

    The reasoning operations want the same JSON for the same health report,
    so temperature defaults low.

        reasoner = LLMReasoner(OpenRouterClient("anthropic/claude-sonnet-4-6"))

    Attributes:
        model: OpenRouter model id.
        temperature: Sampling temperature for every request.
        max_tokens: Reply length cap.
        client: openai.AsyncOpenAI pointed at OpenRouter.
    """

    def __init__(
        self,
        model: str,
        temperature: float = 0.2,
        max_tokens: int = 1500,
        timeout_secs: float = DEFAULT_REQUEST_TIMEOUT_SECS,
    ):
        """
        Raises:
            KeyError: OPENROUTER_API_KEY is missing. Raised here so a
                misconfigured host fails at startup, not at its first
                degraded health check.
        """
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.client = openai.AsyncOpenAI(
            base_url=OPENROUTER_BASE_URL,
            api_key=os.environ["OPENROUTER_API_KEY"],
            timeout=timeout_secs,
        )

    async def complete(self, system: str, user: str) -> str:
        """Return the model's reply text, or "" when it sent no content.

        Raises:
            openai.APIError: On any provider or transport error.
        """
        completion = await self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )
        choice = completion.choices[0]
        return choice.message.content or ""
