"""Retrieve, augment, generate.

The orchestrator turns a question into a grounded answer in three timed
stages: retrieval through :class:`~ragcore.search.SearchService`, prompt
assembly under a token budget, and a call to the generation provider.
"""

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from typing import AsyncIterator, Optional

from pydantic import BaseModel, Field

from .base import BaseGenerator, GenerationOptions
from .document import (
    ChatTurn,
    GeneralAnswer,
    HybridResponse,
    RAGResponse,
    ResponseMetadata,
    SearchResult,
    SourceReference,
)
from .exceptions import (
    GenerationError,
    GenerationFailure,
    GenerationTimeout,
    NoContextError,
    NotInitialized,
    PromptTooLarge,
)
from .search import SearchService
from .utils.config import GenerationConfig

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "Based on the following context, please answer the user's question.\n"
    "If the context does not contain the answer, state that you don't know."
)

GENERAL_PROMPT = "Please provide a concise and accurate answer to the following question."

REASONING_INSTRUCTIONS = (
    "Think through the question step by step using only the sources above. "
    "Write your reasoning after 'Reasoning:' and end with 'Final Answer:' "
    "followed by the answer."
)

FINAL_ANSWER_MARKER = "Final Answer:"
PREVIEW_CHARS = 150


def estimate_tokens(text: str) -> int:
    """Rough token count: one token per four characters."""
    return math.ceil(len(text) / 4)


def fit_to_token_budget(results: list[SearchResult], max_tokens: int) -> list[SearchResult]:
    """Take results in ranked order until the next one would exceed ``max_tokens``.

    Selection stops at the first result that does not fit; smaller results
    further down are not used to fill the remaining budget.
    """
    selected = []
    used = 0
    for result in results:
        tokens = estimate_tokens(result.document.content)
        if used + tokens > max_tokens:
            break
        selected.append(result)
        used += tokens
    return selected


def build_prompt(
    question: str,
    results: list[SearchResult],
    system_prompt: Optional[str] = None,
    history: Optional[list[ChatTurn]] = None,
) -> str:
    """Assemble the document-grounded prompt.

    Args:
        question: The user's question
        results: Context chunks, already ranked and budgeted
        system_prompt: Instructions placed first (default asks the model to
            say it does not know when the context lacks the answer)
        history: Previous turns, oldest first

    Returns:
        Prompt text ending with an ``Answer:`` cue
    """
    parts = [system_prompt or DEFAULT_SYSTEM_PROMPT]

    if results:
        sources = [
            f"Source {i}: {result.document.title} ({result.score * 100:.0f}% relevant)\n"
            f"{result.document.content}"
            for i, result in enumerate(results, start=1)
        ]
        parts.append("Context:\n" + "\n\n".join(sources))

    if history:
        turns = "\n".join(f"User: {turn.question}\nAssistant: {turn.answer}" for turn in history)
        parts.append("Previous conversation:\n" + turns)

    parts.append(f"Question:\n{question}")
    parts.append("Answer:")
    return "\n\n".join(parts)


def build_general_prompt(question: str) -> str:
    """Prompt for an answer from the model's own knowledge."""
    return f"{GENERAL_PROMPT}\n\nQuestion:\n{question}\n\nAnswer:"


def parse_chain_of_thought(raw: str) -> str:
    """Extract the final answer from a step-by-step completion.

    Returns the text after the last ``Final Answer:`` marker, or the whole
    trimmed completion when the marker is missing or nothing follows it.
    This is a heuristic; models do not always follow the format.
    """
    position = raw.rfind(FINAL_ANSWER_MARKER)
    if position == -1:
        return raw.strip()
    answer = raw[position + len(FINAL_ANSWER_MARKER):].strip()
    return answer or raw.strip()


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000


class AnswerOptions(BaseModel):
    """Per-call answer settings. ``None`` falls back to the orchestrator config.

    Attributes:
        max_context_chunks: Chunks requested from search
        max_context_tokens: Token budget for the whole prompt
        include_sources: Return source references with the answer
        system_prompt: Replaces the default instructions
        history: Previous conversation turns, oldest first
        threshold: Minimum similarity for context chunks
        filters: Metadata filters passed to search
        max_tokens: Completion length limit
        temperature: Sampling temperature
        timeout: Seconds to wait for the generation provider
    """

    max_context_chunks: Optional[int] = None
    max_context_tokens: Optional[int] = None
    include_sources: bool = True
    system_prompt: Optional[str] = None
    history: list[ChatTurn] = Field(default_factory=list)
    threshold: Optional[float] = None
    filters: Optional[dict] = None
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    timeout: Optional[float] = None


@dataclass
class PreparedPrompt:
    """Output of the retrieve and augment stages."""

    prompt: str
    results: list[SearchResult]
    metadata: ResponseMetadata
    started: float


class RAGOrchestrator:
    """Answers questions from indexed documents.

    Example:
        ```python
        orchestrator = RAGOrchestrator(search, OpenAIGenerator())
        response = await orchestrator.answer("What is Python?")
        print(response.answer)
        for source in response.sources:
            print(source.title, source.score)
        ```
    """

    def __init__(
        self,
        search: SearchService,
        generator: BaseGenerator,
        config: Optional[GenerationConfig] = None,
        general_generator: Optional[BaseGenerator] = None,
    ):
        """Initialize the orchestrator.

        Args:
            search: Search service used for retrieval
            generator: Provider for document-grounded answers
            config: Generation defaults
            general_generator: Provider for general-knowledge answers
                (defaults to ``generator``)
        """
        self.search = search
        self.generator = generator
        self.config = config or GenerationConfig()
        self.general_generator = general_generator or generator

    def _generation_options(self, options: AnswerOptions) -> GenerationOptions:
        return GenerationOptions(
            max_tokens=options.max_tokens or self.config.max_tokens,
            temperature=(
                options.temperature if options.temperature is not None else self.config.temperature
            ),
        )

    def _timeout(self, options: AnswerOptions) -> Optional[float]:
        return options.timeout if options.timeout is not None else self.config.timeout

    async def _prepare(
        self,
        query: str,
        options: AnswerOptions,
        system_prompt: Optional[str] = None,
    ) -> PreparedPrompt:
        """Run the retrieve and augment stages."""
        started = time.perf_counter()
        max_chunks = (
            options.max_context_chunks
            if options.max_context_chunks is not None
            else self.config.max_context_chunks
        )
        max_tokens = (
            options.max_context_tokens
            if options.max_context_tokens is not None
            else self.config.max_context_tokens
        )
        history = options.history[-self.config.max_history_turns:] if self.config.max_history_turns else []
        system_prompt = system_prompt or options.system_prompt or self.config.system_prompt

        bare_tokens = estimate_tokens(build_prompt(query, [], system_prompt, history))
        if bare_tokens > max_tokens:
            raise PromptTooLarge(bare_tokens, max_tokens)

        overrides = {"limit": max_chunks}
        if options.threshold is not None:
            overrides["threshold"] = options.threshold
        if options.filters:
            overrides["filters"] = options.filters

        try:
            response = await self.search.search(query, self.search.options(**overrides))
        except NotInitialized:
            raise
        except Exception as e:
            logger.warning(f"Retrieval failed: {e}")
            raise NoContextError(f"Retrieval failed: {e}") from e

        retrieval_time_ms = _elapsed_ms(started)
        if not response.results:
            raise NoContextError()

        results = fit_to_token_budget(response.results, max_tokens - bare_tokens)
        # Source headers also count against the budget.
        while results and estimate_tokens(build_prompt(query, results, system_prompt, history)) > max_tokens:
            results.pop()
        if not results:
            raise NoContextError("Retrieved context does not fit the token budget")

        metadata = ResponseMetadata(
            retrieval_time_ms=retrieval_time_ms,
            chunks_used=len(results),
            context_tokens=sum(estimate_tokens(r.document.content) for r in results),
        )
        prompt = build_prompt(query, results, system_prompt, history)
        return PreparedPrompt(prompt=prompt, results=results, metadata=metadata, started=started)

    async def _generate(
        self,
        generator: BaseGenerator,
        prompt: str,
        options: GenerationOptions,
        timeout: Optional[float],
        metadata: ResponseMetadata,
    ) -> str:
        """Run the generate stage, attaching ``metadata`` to any failure."""
        started = time.perf_counter()
        try:
            if timeout is not None:
                return await asyncio.wait_for(generator.generate(prompt, options), timeout)
            return await generator.generate(prompt, options)
        except asyncio.TimeoutError:
            raise GenerationTimeout(timeout, metadata=metadata) from None
        except GenerationError as e:
            if e.metadata is None:
                e.metadata = metadata
            raise
        except Exception as e:
            raise GenerationFailure(str(e), metadata=metadata) from e
        finally:
            metadata.generation_time_ms = _elapsed_ms(started)

    def _sources(self, results: list[SearchResult]) -> list[SourceReference]:
        sources = []
        for result in results:
            content = result.document.content
            preview = content[:PREVIEW_CHARS] + "..." if len(content) > PREVIEW_CHARS else content
            sources.append(
                SourceReference(
                    title=result.document.title,
                    preview=preview,
                    score=result.score,
                    document_id=result.document.document_id,
                    chunk_id=result.document.chunk_id,
                )
            )
        return sources

    async def _answer(
        self,
        query: str,
        options: AnswerOptions,
        system_prompt: Optional[str] = None,
    ) -> tuple[str, PreparedPrompt]:
        prepared = await self._prepare(query, options, system_prompt)
        try:
            raw = await self._generate(
                self.generator,
                prepared.prompt,
                self._generation_options(options),
                self._timeout(options),
                prepared.metadata,
            )
        finally:
            prepared.metadata.total_time_ms = _elapsed_ms(prepared.started)
        return raw, prepared

    async def answer(self, query: str, options: Optional[AnswerOptions] = None) -> RAGResponse:
        """Answer a question from indexed documents.

        Args:
            query: The user's question
            options: Per-call settings

        Returns:
            RAGResponse with the answer, its sources and stage timings

        Raises:
            NoContextError: Retrieval failed or found nothing usable
            PromptTooLarge: The prompt exceeds the budget before any context
            GenerationFailure: The provider failed (``metadata`` holds timings)
            GenerationTimeout: The provider exceeded ``timeout``
        """
        options = options or AnswerOptions()
        raw, prepared = await self._answer(query, options)

        logger.info(
            f"Answered query with {prepared.metadata.chunks_used} chunks "
            f"in {prepared.metadata.total_time_ms:.0f}ms"
        )
        return RAGResponse(
            answer=raw.strip(),
            sources=self._sources(prepared.results) if options.include_sources else [],
            metadata=prepared.metadata,
        )

    async def answer_with_reasoning(
        self,
        query: str,
        options: Optional[AnswerOptions] = None,
    ) -> RAGResponse:
        """Answer with step-by-step reasoning.

        The model is asked to reason before giving a ``Final Answer:``; the
        parsed answer is returned in ``answer`` and the full completion in
        ``reasoning``.
        """
        options = options or AnswerOptions()
        instructions = options.system_prompt or self.config.system_prompt or DEFAULT_SYSTEM_PROMPT
        raw, prepared = await self._answer(
            query, options, system_prompt=f"{instructions}\n{REASONING_INSTRUCTIONS}"
        )
        return RAGResponse(
            answer=parse_chain_of_thought(raw),
            sources=self._sources(prepared.results) if options.include_sources else [],
            metadata=prepared.metadata,
            reasoning=raw.strip(),
        )

    async def answer_general(
        self,
        query: str,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> GeneralAnswer:
        """Answer from the model's own knowledge, without retrieval."""
        options = GenerationOptions(
            max_tokens=max_tokens or self.config.general_max_tokens,
            temperature=temperature if temperature is not None else self.config.general_temperature,
        )
        metadata = ResponseMetadata()
        text = await self._generate(
            self.general_generator,
            build_general_prompt(query),
            options,
            timeout if timeout is not None else self.config.timeout,
            metadata,
        )
        return GeneralAnswer(answer=text.strip(), generation_time_ms=metadata.generation_time_ms)

    async def answer_hybrid(
        self,
        query: str,
        options: Optional[AnswerOptions] = None,
    ) -> HybridResponse:
        """Generate document-grounded and general answers concurrently.

        The two answers are returned side by side. When one source fails its
        error message is recorded in ``errors``; when both fail the
        document-grounded error is raised.
        """
        options = options or AnswerOptions()
        document, general = await asyncio.gather(
            self.answer(query, options),
            self.answer_general(query, timeout=options.timeout),
            return_exceptions=True,
        )

        response = HybridResponse(query=query)
        failures = {}
        for name, outcome in (("document", document), ("general", general)):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                logger.warning(f"Hybrid {name} answer failed: {outcome}")
                failures[name] = outcome
                response.errors[name] = str(outcome)

        if len(failures) == 2:
            raise failures["document"]

        if "document" not in failures:
            response.document = document
        if "general" not in failures:
            response.general = general
        return response

    async def stream_answer(
        self,
        query: str,
        options: Optional[AnswerOptions] = None,
    ) -> AsyncIterator[str]:
        """Stream a document-grounded answer as text fragments.

        Retrieval and prompt assembly happen before the first fragment;
        their errors are raised from the first iteration.
        """
        options = options or AnswerOptions()
        prepared = await self._prepare(query, options)
        try:
            async for fragment in self.generator.generate_stream(
                prepared.prompt, self._generation_options(options)
            ):
                yield fragment
        except GenerationError:
            raise
        except Exception as e:
            raise GenerationFailure(str(e), metadata=prepared.metadata) from e
