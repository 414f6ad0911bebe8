"""Tests for the retrieval phase."""

from __future__ import annotations

import pytest

from storyloom.pipeline.abort import AbortController
from storyloom.pipeline.context import MemoryConfig, RetrievalResult, WorldState
from storyloom.pipeline.events import Aborted, PhaseComplete, PhaseStart
from storyloom.pipeline.phases import RetrievalInput, RetrievalPhase
from storyloom.storage.models import Chapter, Character
from tests.fixtures.story_fixtures import FakeDeps, make_context, make_world


def _world(*, chapters: bool = True, lore: bool = True, memory: bool = True) -> WorldState:
    return WorldState(
        characters=[Character(story_id="s", name="Mara")] if lore else [],
        chapters=[Chapter(story_id="s", number=1, summary="The storm.")] if chapters else [],
        memory_config=MemoryConfig(enable_retrieval=memory),
    )


class TestRetrievalPhase:
    @pytest.mark.asyncio
    async def test_timeline_fill_and_lorebook(self) -> None:
        deps = FakeDeps()
        ctx = make_context(world=_world())

        events, result = await RetrievalPhase(deps).execute(RetrievalInput(context=ctx)).collect()

        assert events[0] == PhaseStart("retrieval")
        assert result == RetrievalResult(
            chapter_context=None,
            lorebook_context="Mara: the keeper's daughter.",
            timeline_fill={"answers": ["The keeper left at dawn."]},
            combined_context="Mara: the keeper's daughter.",
        )
        assert events[-1] == PhaseComplete("retrieval", result)
        assert sorted(deps.calls) == ["lorebook", "timeline_fill"]

    @pytest.mark.asyncio
    async def test_agentic_retrieval_replaces_lorebook(self) -> None:
        deps = FakeDeps()
        deps.use_agentic = True
        ctx = make_context(world=_world())

        _, result = await RetrievalPhase(deps).execute(RetrievalInput(context=ctx)).collect()

        assert result is not None
        assert result.chapter_context == "Chapter 1: the storm."
        assert result.combined_context == "Chapter 1: the storm."
        assert deps.calls == ["agentic_retrieval"]

    @pytest.mark.asyncio
    async def test_memory_skipped_when_disabled(self) -> None:
        deps = FakeDeps()
        ctx = make_context(world=_world())

        phase = RetrievalPhase(deps)
        await phase.execute(RetrievalInput(context=ctx, timeline_fill_enabled=False)).collect()

        assert deps.calls == ["lorebook"]

    @pytest.mark.asyncio
    async def test_memory_config_turns_off_chapters(self) -> None:
        deps = FakeDeps()
        ctx = make_context(world=_world(memory=False, lore=False))

        _, result = await RetrievalPhase(deps).execute(RetrievalInput(context=ctx)).collect()

        assert deps.calls == []
        assert result == RetrievalResult()

    @pytest.mark.asyncio
    async def test_failed_lookup_is_not_fatal(self) -> None:
        class Failing(FakeDeps):
            async def run_timeline_fill(self, entries, chapters):  # type: ignore[override]
                raise TimeoutError("slow model")

        ctx = make_context(world=_world())

        _, result = await RetrievalPhase(Failing()).execute(RetrievalInput(context=ctx)).collect()

        assert result is not None
        assert result.timeline_fill is None
        assert result.lorebook_context == "Mara: the keeper's daughter."

    @pytest.mark.asyncio
    async def test_abort_after_lookups(self) -> None:
        controller = AbortController()

        class Aborting(FakeDeps):
            async def get_relevant_lorebook_entries(self, *args):  # type: ignore[override]
                controller.abort()
                return "lore"

        ctx = make_context(world=_world(chapters=False), controller=controller)

        events, result = await RetrievalPhase(Aborting()).execute(
            RetrievalInput(context=ctx)
        ).collect()

        assert result == RetrievalResult()
        assert events[-1] == Aborted("retrieval")

    @pytest.mark.asyncio
    async def test_abort_on_entry_skips_lookups(self) -> None:
        controller = AbortController()
        deps = FakeDeps()
        deps.use_agentic = True
        ctx = make_context(world=_world(), controller=controller)

        run = RetrievalPhase(deps).execute(RetrievalInput(context=ctx))
        events: list[object] = []
        async for event in run:
            events.append(event)
            if event == PhaseStart("retrieval"):
                controller.abort("user")

        assert events == [PhaseStart("retrieval"), Aborted("retrieval")]
        assert run.result == RetrievalResult()
        assert deps.calls == []

    @pytest.mark.asyncio
    async def test_aborted_before_start(self) -> None:
        controller = AbortController()
        controller.abort()
        deps = FakeDeps()
        ctx = make_context(world=make_world("s"), controller=controller)

        events, result = await RetrievalPhase(deps).execute(RetrievalInput(context=ctx)).collect()

        assert events[-1] == Aborted("retrieval")
        assert result == RetrievalResult()
        assert deps.calls == []
