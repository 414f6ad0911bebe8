"""Retrieval phase: memory and lorebook context for the narrative prompt.

Memory retrieval (agentic chapter querying or timeline fill) and lorebook
retrieval run concurrently. Either may fail without failing the turn.

Polling points: on entry, before any lookup starts, and once both lookups
have finished. Collaborators receive the abort signal and are expected to
stop their own requests.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, TypeVar

from storyloom.observability import get_logger
from storyloom.pipeline.abort import AbortError
from storyloom.pipeline.context import RetrievalResult
from storyloom.pipeline.events import Aborted, PhaseComplete, PhaseStart
from storyloom.pipeline.streams import PhaseReturn, PhaseRun

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Awaitable, Sequence

    from storyloom.pipeline.abort import AbortSignal
    from storyloom.pipeline.context import GenerationContext, WorldState
    from storyloom.pipeline.events import GenerationEvent
    from storyloom.storage.models import Chapter, StoryEntry

log = get_logger(__name__)

T = TypeVar("T")

# Recent entries handed to lorebook matching
LOREBOOK_RECENT_ENTRIES = 10


async def _none() -> None:
    return None


class RetrievalDependencies(Protocol):
    def should_use_agentic_retrieval(self, chapter_count: int) -> bool: ...

    async def run_agentic_retrieval(
        self,
        user_input: str,
        entries: Sequence[StoryEntry],
        world_state: WorldState,
        signal: AbortSignal,
    ) -> str | None:
        """Answer questions against chapter summaries; returns prompt-ready context."""
        ...

    async def run_timeline_fill(
        self, entries: Sequence[StoryEntry], chapters: Sequence[Chapter]
    ) -> Any: ...

    async def get_relevant_lorebook_entries(
        self,
        user_input: str,
        recent_entries: Sequence[StoryEntry],
        world_state: WorldState,
        signal: AbortSignal,
    ) -> str | None:
        """Select lore relevant to the action; returns a context block."""
        ...


@dataclass
class RetrievalInput:
    context: GenerationContext
    timeline_fill_enabled: bool = True


class RetrievalPhase:
    """Gathers retrieved context before narrative generation."""

    def __init__(self, deps: RetrievalDependencies) -> None:
        self._deps = deps

    def execute(self, inp: RetrievalInput) -> PhaseRun[RetrievalResult]:
        return PhaseRun(self._run(inp))

    async def _run(
        self, inp: RetrievalInput
    ) -> AsyncGenerator[GenerationEvent | PhaseReturn[RetrievalResult], None]:
        yield PhaseStart("retrieval")

        ctx = inp.context
        if ctx.abort_signal.aborted:
            yield Aborted("retrieval")
            yield PhaseReturn(RetrievalResult())
            return

        world = ctx.world_state
        use_agentic = self._deps.should_use_agentic_retrieval(len(world.chapters))

        wants_memory = bool(
            world.chapters and inp.timeline_fill_enabled and world.memory_config.enable_retrieval
        )
        has_lore = bool(
            world.lorebook_entries or world.characters or world.locations or world.items
        )
        memory, lore = await asyncio.gather(
            self._guarded("memory", self._memory(ctx, use_agentic)) if wants_memory else _none(),
            self._guarded("lorebook", self._lorebook(ctx))
            if has_lore and not use_agentic
            else _none(),
        )
        chapter_context, timeline_fill = memory or (None, None)

        if ctx.abort_signal.aborted:
            yield Aborted("retrieval")
            yield PhaseReturn(RetrievalResult())
            return

        parts = [p for p in (chapter_context, lore) if p]
        result = RetrievalResult(
            chapter_context=chapter_context,
            lorebook_context=lore,
            timeline_fill=timeline_fill,
            combined_context="\n".join(parts) or None,
        )
        yield PhaseComplete("retrieval", result)
        yield PhaseReturn(result)

    async def _guarded(self, source: str, lookup: Awaitable[T]) -> T | None:
        try:
            return await lookup
        except AbortError:
            return None
        except Exception as e:
            log.warning("retrieval_failed", source=source, error=str(e))
            return None

    async def _memory(self, ctx: GenerationContext, use_agentic: bool) -> tuple[str | None, Any]:
        """Chapter context (agentic) or a timeline fill result."""
        if use_agentic:
            context = await self._deps.run_agentic_retrieval(
                ctx.user_action.content, ctx.visible_entries, ctx.world_state, ctx.abort_signal
            )
            return context, None
        fill = await self._deps.run_timeline_fill(ctx.visible_entries, ctx.world_state.chapters)
        return None, fill

    async def _lorebook(self, ctx: GenerationContext) -> str | None:
        return await self._deps.get_relevant_lorebook_entries(
            ctx.user_action.content,
            ctx.visible_entries[-LOREBOOK_RECENT_ENTRIES:],
            ctx.world_state,
            ctx.abort_signal,
        )
