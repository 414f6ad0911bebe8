"""Post-generation phase: follow-up suggestions or action choices.

Creative-writing stories get plot suggestions for the author; adventure
stories get action choices for the player. When suggestion translation is
enabled the output is translated, falling back to the original text if
translation fails. Every error here is non-fatal.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

from pydantic import BaseModel

from storyloom.observability import get_logger
from storyloom.pipeline.abort import AbortError
from storyloom.pipeline.events import Aborted, ErrorEvent, PhaseComplete, PhaseStart
from storyloom.pipeline.streams import PhaseReturn, PhaseRun

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Sequence

    from storyloom.pipeline.abort import AbortSignal
    from storyloom.pipeline.config import TranslationSettings
    from storyloom.pipeline.context import WorldState
    from storyloom.pipeline.events import GenerationEvent
    from storyloom.storage.models import LorebookEntry, Story, StoryBeat, StoryEntry

log = get_logger(__name__)


class Suggestion(BaseModel):
    """A direction the author could take the story next."""

    text: str
    type: str = "action"


class ActionChoice(BaseModel):
    """A selectable action offered to the player."""

    text: str
    type: str = "do"


class PostGenerationDependencies(Protocol):
    async def generate_suggestions(
        self,
        entries: Sequence[StoryEntry],
        active_threads: Sequence[StoryBeat],
        lorebook_entries: Sequence[LorebookEntry],
        story: Story,
    ) -> list[Suggestion]: ...

    async def translate_suggestions(
        self, suggestions: list[Suggestion], target_language: str
    ) -> list[Suggestion]: ...

    async def generate_action_choices(
        self,
        entries: Sequence[StoryEntry],
        world_state: WorldState,
        narrative: str,
        story: Story,
    ) -> list[ActionChoice]: ...

    async def translate_action_choices(
        self, choices: list[ActionChoice], target_language: str
    ) -> list[ActionChoice]: ...


@dataclass
class PostGenerationInput:
    story: Story
    entries: list[StoryEntry]
    world_state: WorldState
    narrative: str
    translation: TranslationSettings
    is_creative_mode: bool = False
    disable_suggestions: bool = False
    interactive: bool = True
    active_threads: list[StoryBeat] = field(default_factory=list)
    abort_signal: AbortSignal | None = None


@dataclass(frozen=True)
class PostGenerationResult:
    suggestions: list[Suggestion] | None = None
    action_choices: list[ActionChoice] | None = None


class PostGenerationPhase:
    def __init__(self, deps: PostGenerationDependencies) -> None:
        self._deps = deps

    def execute(self, inp: PostGenerationInput) -> PhaseRun[PostGenerationResult]:
        return PhaseRun(self._run(inp))

    async def _run(
        self, inp: PostGenerationInput
    ) -> AsyncGenerator[GenerationEvent | PhaseReturn[PostGenerationResult], None]:
        yield PhaseStart("post")

        if inp.abort_signal is not None and inp.abort_signal.aborted:
            yield Aborted("post")
            yield PhaseReturn(PostGenerationResult())
            return

        result = PostGenerationResult()
        if inp.disable_suggestions or not inp.interactive:
            log.debug(
                "post_generation_skipped",
                disable_suggestions=inp.disable_suggestions,
                interactive=inp.interactive,
            )
        else:
            try:
                if inp.is_creative_mode:
                    result = PostGenerationResult(suggestions=await self._suggestions(inp))
                else:
                    result = PostGenerationResult(action_choices=await self._choices(inp))
            except AbortError:
                yield Aborted("post")
                yield PhaseReturn(PostGenerationResult())
                return
            except Exception as e:
                log.warning("post_generation_failed", error=str(e))
                yield ErrorEvent("post", str(e), fatal=False)

        yield PhaseComplete("post", result)
        yield PhaseReturn(result)

    async def _suggestions(self, inp: PostGenerationInput) -> list[Suggestion]:
        suggestions = await self._deps.generate_suggestions(
            inp.entries, inp.active_threads, inp.world_state.lorebook_entries, inp.story
        )
        if not inp.translation.suggestions_enabled:
            return suggestions
        try:
            return await self._deps.translate_suggestions(
                suggestions, inp.translation.target_language
            )
        except Exception as e:
            log.warning("suggestion_translation_failed", error=str(e))
            return suggestions

    async def _choices(self, inp: PostGenerationInput) -> list[ActionChoice]:
        choices = await self._deps.generate_action_choices(
            inp.entries, inp.world_state, inp.narrative, inp.story
        )
        if not inp.translation.suggestions_enabled:
            return choices
        try:
            return await self._deps.translate_action_choices(
                choices, inp.translation.target_language
            )
        except Exception as e:
            log.warning("action_choice_translation_failed", error=str(e))
            return choices
