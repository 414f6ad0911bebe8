"""Classification phase: extract world-state changes from the narrative.

Errors are non-fatal: the narrative stands and the result is ``None``.

Polling points: phase entry and after the classifier returns.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

from pydantic import BaseModel, Field

from storyloom.observability import get_logger
from storyloom.pipeline.abort import AbortError
from storyloom.pipeline.events import (
    Aborted,
    ClassificationComplete,
    ErrorEvent,
    PhaseComplete,
    PhaseStart,
)
from storyloom.pipeline.streams import PhaseReturn, PhaseRun

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Sequence

    from storyloom.pipeline.abort import AbortSignal
    from storyloom.pipeline.context import WorldState
    from storyloom.pipeline.events import GenerationEvent
    from storyloom.storage.models import Story, StoryEntry, TimeTracker

log = get_logger(__name__)


class SceneInfo(BaseModel):
    """Scene details detected in the narrative."""

    present_character_names: list[str] = Field(default_factory=list)
    current_location_name: str | None = None
    time_progression: str | None = None


class ClassificationResult(BaseModel):
    """Structured world-state changes returned by the classifier."""

    scene: SceneInfo = Field(default_factory=SceneInfo)
    new_characters: list[str] = Field(default_factory=list)
    new_locations: list[str] = Field(default_factory=list)
    new_items: list[str] = Field(default_factory=list)
    updated_story_beats: list[str] = Field(default_factory=list)


class ClassificationDependencies(Protocol):
    async def classify_response(
        self,
        narrative: str,
        user_action: str,
        world_state: WorldState,
        story: Story,
        chat_history: Sequence[StoryEntry],
        time_tracker: TimeTracker | None,
    ) -> ClassificationResult: ...


@dataclass
class ClassificationInput:
    narrative_content: str
    narrative_entry_id: str
    user_action_content: str
    world_state: WorldState
    story: Story
    visible_entries: list[StoryEntry] = field(default_factory=list)
    abort_signal: AbortSignal | None = None


@dataclass(frozen=True)
class ClassificationPhaseResult:
    classification: ClassificationResult
    narrative_entry_id: str


class ClassificationPhase:
    def __init__(self, deps: ClassificationDependencies) -> None:
        self._deps = deps

    def execute(self, inp: ClassificationInput) -> PhaseRun[ClassificationPhaseResult]:
        return PhaseRun(self._run(inp))

    async def _run(
        self, inp: ClassificationInput
    ) -> AsyncGenerator[GenerationEvent | PhaseReturn[ClassificationPhaseResult | None], None]:
        yield PhaseStart("classification")
        signal = inp.abort_signal

        if signal is not None and signal.aborted:
            yield Aborted("classification")
            yield PhaseReturn(None)
            return

        # The narrative is passed separately; keep it out of the history
        history = [e for e in inp.visible_entries if e.id != inp.narrative_entry_id]
        try:
            classification = await self._deps.classify_response(
                inp.narrative_content,
                inp.user_action_content,
                inp.world_state,
                inp.story,
                history,
                inp.story.time_tracker,
            )
        except AbortError:
            yield Aborted("classification")
            yield PhaseReturn(None)
            return
        except Exception as e:
            log.warning("classification_failed", error=str(e))
            yield ErrorEvent("classification", str(e), fatal=False)
            yield PhaseReturn(None)
            return

        if signal is not None and signal.aborted:
            yield Aborted("classification")
            yield PhaseReturn(None)
            return

        result = ClassificationPhaseResult(
            classification=classification, narrative_entry_id=inp.narrative_entry_id
        )
        yield ClassificationComplete(classification)
        yield PhaseComplete("classification", result)
        yield PhaseReturn(result)
