"""Tests for the narrative phase."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from storyloom.pipeline.abort import AbortController, AbortError
from storyloom.pipeline.context import RetrievalResult
from storyloom.pipeline.events import (
    Aborted,
    ErrorEvent,
    NarrativeChunk,
    PhaseComplete,
    PhaseStart,
)
from storyloom.pipeline.phases import (
    MAX_EMPTY_RESPONSE_RETRIES,
    EmptyNarrativeError,
    NarrativeInput,
    NarrativePhase,
    StreamChunk,
)
from tests.fixtures.story_fixtures import FakeDeps, make_context

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from storyloom.pipeline.phases import NarrativeRequest


def _input(controller: AbortController, retrieval: RetrievalResult | None = None) -> NarrativeInput:
    ctx = make_context(controller=controller)
    return NarrativeInput(
        visible_entries=ctx.visible_entries,
        world_state=ctx.world_state,
        story=ctx.story,
        retrieval=retrieval or RetrievalResult(),
        abort_signal=ctx.abort_signal,
    )


class TestNarrativeStreaming:
    @pytest.mark.asyncio
    async def test_streams_chunks_and_accumulates(self) -> None:
        deps = FakeDeps(
            [
                [
                    StreamChunk(content="The lamp ", reasoning="think"),
                    StreamChunk(content="flickers."),
                    StreamChunk(done=True),
                ]
            ]
        )

        events, result = await NarrativePhase(deps).execute(_input(AbortController())).collect()

        assert events[0] == PhaseStart("narrative")
        chunks = [e for e in events if isinstance(e, NarrativeChunk)]
        assert [c.content for c in chunks] == ["The lamp ", "flickers."]
        assert result is not None
        assert result.content == "The lamp flickers."
        assert result.reasoning == "think"
        assert result.chunk_count == 2
        assert result.attempts == 1
        assert events[-1] == PhaseComplete("narrative", result)

    @pytest.mark.asyncio
    async def test_request_carries_retrieved_context(self) -> None:
        deps = FakeDeps()
        retrieval = RetrievalResult(combined_context="lore", timeline_fill={"a": 1})

        await NarrativePhase(deps).execute(_input(AbortController(), retrieval)).collect()

        request = deps.stream_requests[0]
        assert request.retrieved_context == "lore"
        assert request.timeline_fill == {"a": 1}


class TestEmptyResponseRetry:
    @pytest.mark.asyncio
    async def test_retries_empty_then_succeeds(self) -> None:
        deps = FakeDeps(
            [
                [StreamChunk(content="   "), StreamChunk(done=True)],
                [StreamChunk(content="Dawn breaks."), StreamChunk(done=True)],
            ]
        )

        events, result = await NarrativePhase(deps).execute(_input(AbortController())).collect()

        assert result is not None
        assert result.content == "Dawn breaks."
        assert result.attempts == 2
        assert not any(isinstance(e, ErrorEvent) for e in events)

    @pytest.mark.asyncio
    async def test_gives_up_after_retry_ceiling(self) -> None:
        deps = FakeDeps([[StreamChunk(done=True)]])

        run = NarrativePhase(deps).execute(_input(AbortController()))
        events, result = await run.collect()

        assert result is None
        assert len(deps.stream_requests) == MAX_EMPTY_RESPONSE_RETRIES
        assert isinstance(run.error, EmptyNarrativeError)
        errors = [e for e in events if isinstance(e, ErrorEvent)]
        assert errors == [
            ErrorEvent("narrative", "Empty response after 3 attempts", fatal=True)
        ]
        assert not any(isinstance(e, PhaseComplete) for e in events)


class TestNarrativeAbort:
    @pytest.mark.asyncio
    async def test_abort_between_chunks_stops_stream(self) -> None:
        controller = AbortController()
        deps = FakeDeps(
            [[StreamChunk(content=f"part{i} ") for i in range(5)] + [StreamChunk(done=True)]]
        )
        deps.on_chunk = lambda index: controller.abort() if index == 2 else None

        events, result = await NarrativePhase(deps).execute(_input(controller)).collect()

        assert result is None
        chunks = [e for e in events if isinstance(e, NarrativeChunk)]
        assert len(chunks) == 2
        assert events[-1] == Aborted("narrative")
        assert not any(isinstance(e, PhaseComplete) for e in events)

    @pytest.mark.asyncio
    async def test_abort_before_start(self) -> None:
        controller = AbortController()
        controller.abort()
        deps = FakeDeps()

        run = NarrativePhase(deps).execute(_input(controller))
        events, result = await run.collect()

        assert result is None
        assert run.error is None
        assert events == [PhaseStart("narrative"), Aborted("narrative")]
        assert deps.stream_requests == []

    @pytest.mark.asyncio
    async def test_abort_error_from_stream(self) -> None:
        class Raising(FakeDeps):
            async def stream_narrative(
                self, request: NarrativeRequest
            ) -> AsyncIterator[StreamChunk]:
                yield StreamChunk(content="half")
                raise AbortError("cancelled upstream")

        phase = NarrativePhase(Raising())
        events, result = await phase.execute(_input(AbortController())).collect()

        assert result is None
        assert events[-1] == Aborted("narrative")


class TestNarrativeFailure:
    @pytest.mark.asyncio
    async def test_provider_error_is_fatal(self) -> None:
        class Failing(FakeDeps):
            async def stream_narrative(
                self, request: NarrativeRequest
            ) -> AsyncIterator[StreamChunk]:
                raise ConnectionError("provider down")
                yield StreamChunk()  # pragma: no cover

        phase = NarrativePhase(Failing())
        run = phase.execute(_input(AbortController()))
        events, result = await run.collect()

        assert result is None
        assert events[-1] == ErrorEvent("narrative", "provider down", fatal=True)
        assert isinstance(run.error, ConnectionError)
