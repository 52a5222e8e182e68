"""OpenAI-compatible summarization model."""

from typing import TYPE_CHECKING

from tokenwatch.backends.base import Message

if TYPE_CHECKING:
    from openai import AsyncOpenAI


class OpenAISummaryModel:
    """Summarization model backed by any OpenAI-compatible chat API.

    Example:
        >>> from openai import AsyncOpenAI
        >>> from tokenwatch.backends.openai import OpenAISummaryModel
        >>>
        >>> client = AsyncOpenAI()
        >>> model = OpenAISummaryModel(client, model="gpt-4.1-mini")
    """

    def __init__(
        self,
        client: "AsyncOpenAI",
        model: str = "gpt-4.1-mini",
        temperature: float = 0.2,
    ) -> None:
        """Initialize the summarization model.

        Args:
            client: An initialized async OpenAI client.
            model: Model name to use for summaries.
            temperature: Sampling temperature.
        """
        self._client = client
        self._model = model
        self._temperature = temperature

    @property
    def model_name(self) -> str:
        """Return the model name being used."""
        return self._model

    async def generate(self, messages: list[Message], max_tokens: int) -> str:
        """Ask the model for a summary.

        Args:
            messages: Prompt conversation.
            max_tokens: Maximum tokens in the summary.

        Returns:
            The summary text (empty if the model returned no content).
        """
        response = await self._client.chat.completions.create(
            model=self._model,
            messages=messages,  # type: ignore[arg-type]
            temperature=self._temperature,
            max_tokens=max_tokens,
        )

        content = response.choices[0].message.content
        return content if content is not None else ""
