"""Builders and fake collaborators for pipeline and storage tests."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from storyloom.pipeline.abort import AbortController
from storyloom.pipeline.context import GenerationContext, UserAction, WorldState
from storyloom.pipeline.phases import (
    ActionChoice,
    ClassificationResult,
    SceneInfo,
    StreamChunk,
    Suggestion,
)
from storyloom.storage.models import Character, Location, Story, StoryEntry

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable, Sequence

    from storyloom.pipeline.config import ImageSettings
    from storyloom.pipeline.phases import ImageGenerationContext, NarrativeRequest


def make_story(**overrides: Any) -> Story:
    fields: dict[str, Any] = {"title": "The Lighthouse"}
    fields.update(overrides)
    return Story(**fields)


def make_context(
    *,
    story: Story | None = None,
    entries: list[StoryEntry] | None = None,
    world: WorldState | None = None,
    controller: AbortController | None = None,
    action: str = "I climb the stairs",
) -> GenerationContext:
    """A turn whose user action is the last of *entries*."""
    story = story or make_story()
    if entries is None:
        entries = [
            StoryEntry(story_id=story.id, type="narration", content="The door creaks.", position=0),
            StoryEntry(story_id=story.id, type="user_action", content=action, position=1),
        ]
    user_entry = entries[-1]
    return GenerationContext(
        story=story,
        visible_entries=entries,
        world_state=world or WorldState(),
        user_action=UserAction(entry_id=user_entry.id, content=action, raw_input=action),
        abort_signal=(controller or AbortController()).signal,
    )


def make_world(story_id: str) -> WorldState:
    return WorldState(
        characters=[
            Character(story_id=story_id, name="Mara"),
            Character(story_id=story_id, name="The Keeper"),
        ],
        locations=[Location(story_id=story_id, name="Lamp room", current=True)],
    )


class FakeDeps:
    """Every pipeline dependency, with per-call recording.

    Narrative attempts are served from ``narrative_attempts``: each item is
    the list of chunks one streaming attempt yields. Failures are injected
    by setting the matching ``*_error`` attribute.
    """

    def __init__(self, narrative_attempts: list[list[StreamChunk]] | None = None) -> None:
        self.narrative_attempts = narrative_attempts or [
            [
                StreamChunk(content="The lamp "),
                StreamChunk(content="flickers."),
                StreamChunk(done=True),
            ]
        ]
        self.calls: list[str] = []
        self.stream_requests: list[NarrativeRequest] = []
        self.on_chunk: Callable[[int], None] | None = None
        self.present_names: list[str] = []
        self.classify_history: Sequence[StoryEntry] = ()
        self.image_context: ImageGenerationContext | None = None
        self.image_configured = True
        self.use_agentic = False
        self.classify_error: Exception | None = None
        self.background_error: Exception | None = None
        self.translate_error: Exception | None = None
        self.image_error: Exception | None = None
        self.post_error: Exception | None = None
        self.translate_choices_error: Exception | None = None

    # Retrieval

    def should_use_agentic_retrieval(self, chapter_count: int) -> bool:
        return self.use_agentic and chapter_count > 0

    async def run_agentic_retrieval(self, user_input, entries, world_state, signal) -> str | None:
        self.calls.append("agentic_retrieval")
        return "Chapter 1: the storm."

    async def run_timeline_fill(self, entries, chapters) -> Any:
        self.calls.append("timeline_fill")
        return {"answers": ["The keeper left at dawn."]}

    async def get_relevant_lorebook_entries(
        self, user_input, recent_entries, world_state, signal
    ) -> str | None:
        self.calls.append("lorebook")
        return "Mara: the keeper's daughter."

    # Narrative

    async def stream_narrative(self, request: NarrativeRequest) -> AsyncIterator[StreamChunk]:
        attempt = len(self.stream_requests)
        self.stream_requests.append(request)
        self.calls.append("narrative")
        chunks = self.narrative_attempts[min(attempt, len(self.narrative_attempts) - 1)]
        for index, chunk in enumerate(chunks):
            if self.on_chunk is not None:
                self.on_chunk(index)
            yield chunk

    # Classification and images

    async def classify_response(
        self, narrative, user_action, world_state, story, chat_history, time_tracker
    ) -> ClassificationResult:
        self.calls.append("classification")
        self.classify_history = chat_history
        if self.classify_error:
            raise self.classify_error
        return ClassificationResult(scene=SceneInfo(present_character_names=self.present_names))

    def is_image_generation_enabled(self, settings: ImageSettings, kind: str) -> bool:
        return self.image_configured

    async def analyze_background_change(self, story_id, entries) -> None:
        self.calls.append("background_image")
        if self.background_error:
            raise self.background_error

    async def generate_images_for_narrative(self, context: ImageGenerationContext) -> None:
        self.calls.append("image")
        self.image_context = context
        if self.image_error:
            raise self.image_error

    # Translation

    async def translate_narration(self, content, target_language, is_visual_prose) -> str:
        self.calls.append("translation")
        if self.translate_error:
            raise self.translate_error
        return f"[{target_language}] {content}"

    # Post generation

    async def generate_suggestions(self, entries, active_threads, lorebook_entries, story):
        self.calls.append("suggestions")
        if self.post_error:
            raise self.post_error
        return [Suggestion(text="Follow the light")]

    async def translate_suggestions(self, suggestions, target_language):
        return [Suggestion(text=f"[{target_language}] {s.text}") for s in suggestions]

    async def generate_action_choices(self, entries, world_state, narrative, story):
        self.calls.append("action_choices")
        if self.post_error:
            raise self.post_error
        return [ActionChoice(text="Light the lamp"), ActionChoice(text="Go back down")]

    async def translate_action_choices(self, choices, target_language):
        if self.translate_choices_error:
            raise self.translate_choices_error
        return [ActionChoice(text=f"[{target_language}] {c.text}") for c in choices]
