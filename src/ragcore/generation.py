"""Generation provider implementations."""

import asyncio
import logging
from typing import AsyncIterator, Callable, Optional, Union

from .base import BaseGenerator, GenerationOptions
from .exceptions import GenerationFailure

logger = logging.getLogger(__name__)


class StaticGenerator(BaseGenerator):
    """Scripted generator for tests and offline runs.

    Replies come from a fixed string, a list consumed in order (the last
    reply repeats), or a function of the prompt. Every prompt is recorded in
    ``prompts``.
    """

    def __init__(
        self,
        responses: Union[str, list[str], Callable[[str], str]] = "",
        delay: float = 0.0,
        error: Optional[Exception] = None,
    ):
        """Initialize the static generator.

        Args:
            responses: Reply text, replies in order, or a prompt -> reply function
            delay: Seconds to sleep before replying
            error: Exception raised instead of replying
        """
        self.responses = responses
        self.delay = delay
        self.error = error
        self.prompts: list[str] = []
        self.options: list[GenerationOptions] = []

    def _next_response(self, prompt: str) -> str:
        if callable(self.responses):
            return self.responses(prompt)
        if isinstance(self.responses, str):
            return self.responses
        index = min(len(self.prompts) - 1, len(self.responses) - 1)
        return self.responses[index] if index >= 0 else ""

    async def generate(self, prompt: str, options: Optional[GenerationOptions] = None) -> str:
        self.prompts.append(prompt)
        self.options.append(options or GenerationOptions())
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self._next_response(prompt)

    async def generate_stream(
        self,
        prompt: str,
        options: Optional[GenerationOptions] = None,
    ) -> AsyncIterator[str]:
        text = await self.generate(prompt, options)
        words = text.split(" ")
        for i, word in enumerate(words):
            yield word if i == len(words) - 1 else word + " "


class OpenAIGenerator(BaseGenerator):
    """Chat-completion generator backed by the OpenAI API.

    Note: Requires the 'openai' extra to be installed.
    """

    def __init__(
        self,
        model: str = "gpt-4o-mini",
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
    ):
        """Initialize the OpenAI generator.

        Args:
            model: Chat model name
            api_key: OpenAI API key (optional, uses env var if not provided)
            base_url: Optional base URL for API (OpenAI-compatible servers)
        """
        self.model = model
        self.api_key = api_key
        self.base_url = base_url
        self._client = None

    def _get_client(self):
        """Get or create the OpenAI client."""
        if self._client is None:
            try:
                from openai import AsyncOpenAI
            except ImportError:
                raise ImportError(
                    "OpenAI generation requires the 'openai' package. "
                    "Install it with: pip install ragcore[openai]"
                )

            kwargs = {}
            if self.api_key:
                kwargs["api_key"] = self.api_key
            if self.base_url:
                kwargs["base_url"] = self.base_url

            self._client = AsyncOpenAI(**kwargs)
        return self._client

    async def generate(self, prompt: str, options: Optional[GenerationOptions] = None) -> str:
        options = options or GenerationOptions()
        client = self._get_client()

        try:
            response = await client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
                max_tokens=options.max_tokens,
                temperature=options.temperature,
            )
        except Exception as e:
            raise GenerationFailure(str(e)) from e

        content = response.choices[0].message.content if response.choices else None
        if content is None:
            raise GenerationFailure("empty completion")
        return content

    async def generate_stream(
        self,
        prompt: str,
        options: Optional[GenerationOptions] = None,
    ) -> AsyncIterator[str]:
        options = options or GenerationOptions()
        client = self._get_client()

        try:
            stream = await client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
                max_tokens=options.max_tokens,
                temperature=options.temperature,
                stream=True,
            )
        except Exception as e:
            raise GenerationFailure(str(e)) from e

        async for event in stream:
            if not event.choices:
                continue
            delta = event.choices[0].delta.content
            if delta:
                yield delta


def create_generator(provider: str, model: Optional[str] = None, **kwargs) -> BaseGenerator:
    """Build a generation provider by name (``openai`` or ``static``)."""
    if provider == "openai":
        return OpenAIGenerator(model=model or "gpt-4o-mini", **kwargs)
    if provider == "static":
        return StaticGenerator(**kwargs)
    raise ValueError(f"Unknown generation provider: {provider!r}")
