"""Narrative phase: streamed story text with empty-response retries.

The narrative is streamed chunk by chunk. Every chunk carrying content or
reasoning is forwarded as a :class:`NarrativeChunk`. If a stream finishes
with nothing but whitespace, it is restarted from scratch (not resumed),
up to :data:`MAX_EMPTY_RESPONSE_RETRIES` attempts in total.

Polling points: before each streaming attempt and before each incoming
chunk is processed. An :class:`AbortError` raised by the stream is treated
the same as observing the flag. Once ``Aborted`` is yielded no further
chunks are emitted.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

from storyloom.observability import get_logger
from storyloom.pipeline.abort import AbortError
from storyloom.pipeline.events import (
    Aborted,
    ErrorEvent,
    NarrativeChunk,
    PhaseComplete,
    PhaseStart,
)
from storyloom.pipeline.streams import PhaseReturn, PhaseRun

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, AsyncIterator

    from storyloom.pipeline.abort import AbortSignal
    from storyloom.pipeline.context import RetrievalResult, WorldState
    from storyloom.pipeline.events import GenerationEvent
    from storyloom.storage.models import Story, StoryEntry

log = get_logger(__name__)

MAX_EMPTY_RESPONSE_RETRIES = 3


@dataclass(frozen=True)
class StreamChunk:
    """One increment from the narrative model."""

    content: str = ""
    reasoning: str = ""
    done: bool = False


@dataclass(frozen=True)
class NarrativeRequest:
    """What the narrative model is asked to continue."""

    entries: list[StoryEntry]
    world_state: WorldState
    story: Story
    retrieved_context: str | None
    timeline_fill: Any
    signal: AbortSignal


class NarrativeDependencies(Protocol):
    def stream_narrative(self, request: NarrativeRequest) -> AsyncIterator[StreamChunk]: ...


@dataclass
class NarrativeInput:
    visible_entries: list[StoryEntry]
    world_state: WorldState
    story: Story
    retrieval: RetrievalResult
    abort_signal: AbortSignal


class EmptyNarrativeError(Exception):
    """Raised when every attempt streamed nothing but whitespace."""

    def __init__(self, attempts: int) -> None:
        self.attempts = attempts
        super().__init__(f"Empty response after {attempts} attempts")


@dataclass(frozen=True)
class NarrativeResult:
    content: str
    reasoning: str
    chunk_count: int
    attempts: int = 1


class NarrativeRun(PhaseRun[NarrativeResult]):
    """Narrative run that keeps the error behind a missing narrative."""

    def __init__(
        self,
        stream: AsyncGenerator[GenerationEvent | PhaseReturn[NarrativeResult | None], None],
        failures: list[Exception],
    ) -> None:
        super().__init__(stream)
        self._failures = failures

    @property
    def error(self) -> Exception | None:
        """Why the phase returned no narrative; ``None`` on success or abort."""
        return self._failures[-1] if self._failures else None


class NarrativePhase:
    """Streams the narrative response for a turn."""

    def __init__(self, deps: NarrativeDependencies) -> None:
        self._deps = deps

    def execute(self, inp: NarrativeInput) -> NarrativeRun:
        failures: list[Exception] = []
        return NarrativeRun(self._run(inp, failures), failures)

    async def _run(
        self, inp: NarrativeInput, failures: list[Exception]
    ) -> AsyncGenerator[GenerationEvent | PhaseReturn[NarrativeResult | None], None]:
        yield PhaseStart("narrative")
        signal = inp.abort_signal
        request = NarrativeRequest(
            entries=inp.visible_entries,
            world_state=inp.world_state,
            story=inp.story,
            retrieved_context=inp.retrieval.combined_context,
            timeline_fill=inp.retrieval.timeline_fill,
            signal=signal,
        )

        for attempt in range(1, MAX_EMPTY_RESPONSE_RETRIES + 1):
            if signal.aborted:
                yield Aborted("narrative")
                yield PhaseReturn(None)
                return

            content = ""
            reasoning = ""
            chunk_count = 0
            aborted = False
            stream = self._deps.stream_narrative(request)
            try:
                async for chunk in stream:
                    if signal.aborted:
                        aborted = True
                        break
                    content += chunk.content
                    reasoning += chunk.reasoning
                    if chunk.content or chunk.reasoning:
                        chunk_count += 1
                        yield NarrativeChunk(content=chunk.content, reasoning=chunk.reasoning)
                    if chunk.done:
                        break
            except AbortError:
                aborted = True
            except Exception as e:
                log.error("narrative_stream_failed", attempt=attempt, error=str(e))
                failures.append(e)
                yield ErrorEvent("narrative", str(e), fatal=True)
                yield PhaseReturn(None)
                return
            finally:
                aclose = getattr(stream, "aclose", None)
                if aclose is not None:
                    await aclose()

            if aborted:
                yield Aborted("narrative")
                yield PhaseReturn(None)
                return

            if content.strip():
                result = NarrativeResult(
                    content=content,
                    reasoning=reasoning,
                    chunk_count=chunk_count,
                    attempts=attempt,
                )
                yield PhaseComplete("narrative", result)
                yield PhaseReturn(result)
                return

            log.warning(
                "narrative_empty_response",
                attempt=attempt,
                max_attempts=MAX_EMPTY_RESPONSE_RETRIES,
            )

        error = EmptyNarrativeError(MAX_EMPTY_RESPONSE_RETRIES)
        failures.append(error)
        log.error("narrative_retries_exhausted", attempts=MAX_EMPTY_RESPONSE_RETRIES)
        yield ErrorEvent("narrative", str(error), fatal=True)
        yield PhaseReturn(None)
