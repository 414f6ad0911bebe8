"""Generation pipeline: one turn of the story.

Phases run in a fixed order::

    pre -> retrieval -> narrative -> {classification | background_image}
        -> translation -> image -> post

Classification and the background image run concurrently through
:func:`~storyloom.pipeline.streams.merge`. The abort signal is checked after
every phase; once it is set the partial result is returned with
``aborted=True`` and no further phase starts.

Phase failures are handled inside the phases. An exception that escapes a
phase anyway is recorded as ``fatal_error``, reported with a single fatal
:class:`~storyloom.pipeline.events.ErrorEvent`, and the partial result is
returned so that a finished narrative is never lost.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

from storyloom.observability import get_logger
from storyloom.pipeline.config import ImageSettings, TranslationSettings
from storyloom.pipeline.context import RetrievalResult
from storyloom.pipeline.events import ErrorEvent, NarrativeComplete
from storyloom.pipeline.phases import (
    BackgroundImageDependencies,
    BackgroundImageInput,
    BackgroundImagePhase,
    ClassificationDependencies,
    ClassificationInput,
    ClassificationPhase,
    ImageDependencies,
    ImageGenerationContext,
    ImageInput,
    ImagePhase,
    NarrativeDependencies,
    NarrativeInput,
    NarrativePhase,
    PostGenerationDependencies,
    PostGenerationInput,
    PostGenerationPhase,
    PreGenerationInput,
    PreGenerationPhase,
    RetrievalDependencies,
    RetrievalInput,
    RetrievalPhase,
    TranslationDependencies,
    TranslationInput,
    TranslationPhase,
)
from storyloom.pipeline.streams import PhaseReturn, PhaseRun, merge

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from structlog.typing import FilteringBoundLogger

    from storyloom.pipeline.config import ProjectConfig, StoryModeName
    from storyloom.pipeline.context import GenerationContext
    from storyloom.pipeline.events import GenerationEvent, GenerationPhase
    from storyloom.pipeline.phases import (
        BackgroundImageResult,
        ClassificationPhaseResult,
        ImageResult,
        NarrativeResult,
        PostGenerationResult,
        PreGenerationResult,
        TranslationResult,
    )
    from storyloom.storage.models import ActionInputType, StoryBeat

log = get_logger(__name__)


class PipelineError(Exception):
    """Raised when a turn cannot produce a narrative."""

    def __init__(self, phase: str, message: str) -> None:
        self.phase = phase
        super().__init__(f"Pipeline error in phase '{phase}': {message}")


class PipelineDependencies(
    RetrievalDependencies,
    NarrativeDependencies,
    ClassificationDependencies,
    BackgroundImageDependencies,
    TranslationDependencies,
    ImageDependencies,
    PostGenerationDependencies,
    Protocol,
):
    """Every collaborator the pipeline calls, supplied by the host."""


@dataclass
class PipelineConfig:
    """Per-turn settings for a pipeline run."""

    raw_input: str
    action_type: ActionInputType = "do"
    was_raw_action_choice: bool = False
    timeline_fill_enabled: bool = True
    story_mode: StoryModeName = "adventure"
    translation: TranslationSettings = field(default_factory=TranslationSettings)
    images: ImageSettings = field(default_factory=ImageSettings)
    agentic_image_generate: bool = True
    disable_suggestions: bool = False
    interactive: bool = True
    active_threads: list[StoryBeat] = field(default_factory=list)
    activation_data: dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_project(
        cls,
        config: ProjectConfig,
        raw_input: str,
        *,
        action_type: ActionInputType = "do",
        was_raw_action_choice: bool = False,
        active_threads: list[StoryBeat] | None = None,
        activation_data: dict[str, int] | None = None,
    ) -> PipelineConfig:
        """Build the turn config from project settings."""
        generation = config.generation
        return cls(
            raw_input=raw_input,
            action_type=action_type,
            was_raw_action_choice=was_raw_action_choice,
            timeline_fill_enabled=generation.timeline_fill,
            story_mode=generation.story_mode,
            translation=config.translation,
            images=config.images,
            disable_suggestions=generation.disable_suggestions,
            interactive=generation.interactive,
            active_threads=active_threads or [],
            activation_data=activation_data or {},
        )


@dataclass
class PipelineResult:
    """Results of every phase that ran; ``None`` for phases that did not."""

    pre_generation: PreGenerationResult | None = None
    retrieval: RetrievalResult | None = None
    narrative: NarrativeResult | None = None
    background: BackgroundImageResult | None = None
    classification: ClassificationPhaseResult | None = None
    translation: TranslationResult | None = None
    image: ImageResult | None = None
    post_generation: PostGenerationResult | None = None
    aborted: bool = False
    fatal_error: Exception | None = None


PipelineRun = PhaseRun[PipelineResult]


class GenerationPipeline:
    """Runs the phases of a turn in order and assembles the result."""

    def __init__(self, deps: PipelineDependencies) -> None:
        self._deps = deps
        self._pre = PreGenerationPhase()
        self._retrieval = RetrievalPhase(deps)
        self._narrative = NarrativePhase(deps)
        self._classification = ClassificationPhase(deps)
        self._background = BackgroundImagePhase(deps)
        self._translation = TranslationPhase(deps)
        self._image = ImagePhase(deps)
        self._post = PostGenerationPhase(deps)

    def execute(self, ctx: GenerationContext, cfg: PipelineConfig) -> PipelineRun:
        """Start a turn.

        Iterate the returned run for events; ``run.result`` holds the
        :class:`PipelineResult` once iteration finishes.
        """
        return PhaseRun(self._run(ctx, cfg))

    async def _run(
        self, ctx: GenerationContext, cfg: PipelineConfig
    ) -> AsyncGenerator[GenerationEvent | PhaseReturn[PipelineResult], None]:
        r = PipelineResult()
        signal = ctx.abort_signal
        tlog = log.bind(story_id=ctx.story.id, branch_id=ctx.branch_id)
        phase: GenerationPhase = "pre"
        tlog.info("turn_started", action_type=cfg.action_type)

        try:
            pre = self._pre.execute(
                PreGenerationInput(
                    context=ctx,
                    raw_input=cfg.raw_input,
                    action_type=cfg.action_type,
                    was_raw_action_choice=cfg.was_raw_action_choice,
                    activation_data=cfg.activation_data,
                )
            )
            async for event in pre:
                yield event
            r.pre_generation = pre.result
            if signal.aborted:
                yield PhaseReturn(self._aborted(r, phase, tlog))
                return

            phase = "retrieval"
            retrieval = self._retrieval.execute(
                RetrievalInput(context=ctx, timeline_fill_enabled=cfg.timeline_fill_enabled)
            )
            async for event in retrieval:
                yield event
            r.retrieval = retrieval.result or RetrievalResult()
            if signal.aborted:
                yield PhaseReturn(self._aborted(r, phase, tlog))
                return

            phase = "narrative"
            narrative = self._narrative.execute(
                NarrativeInput(
                    visible_entries=ctx.visible_entries,
                    world_state=ctx.world_state,
                    story=ctx.story,
                    retrieval=r.retrieval,
                    abort_signal=signal,
                )
            )
            async for event in narrative:
                yield event
            r.narrative = narrative.result
            if signal.aborted:
                yield PhaseReturn(self._aborted(r, phase, tlog))
                return
            if r.narrative is None:
                # The phase already reported the failure as a fatal event
                cause = narrative.error
                error = PipelineError(phase, f"no narrative was generated: {cause}")
                error.__cause__ = cause
                r.fatal_error = error
                tlog.error("turn_failed", phase=phase, error=str(cause))
                yield PhaseReturn(r)
                return

            entry_id = ctx.narration_entry_id or r.pre_generation.streaming_entry_id
            yield NarrativeComplete(
                content=r.narrative.content,
                reasoning=r.narrative.reasoning,
                entry_id=entry_id,
            )

            phase = "classification"
            classification = self._classification.execute(
                ClassificationInput(
                    narrative_content=r.narrative.content,
                    narrative_entry_id=entry_id,
                    user_action_content=ctx.user_action.content,
                    world_state=ctx.world_state,
                    story=ctx.story,
                    visible_entries=ctx.visible_entries,
                    abort_signal=signal,
                )
            )
            background = self._background.execute(
                BackgroundImageInput(
                    story_id=ctx.story.id,
                    entries=ctx.visible_entries,
                    settings=cfg.images,
                    abort_signal=signal,
                )
            )
            async for event in merge(classification, background):
                yield event
            r.classification = classification.result
            r.background = background.result
            if signal.aborted:
                yield PhaseReturn(self._aborted(r, phase, tlog))
                return

            phase = "translation"
            translation = self._translation.execute(
                TranslationInput(
                    narrative_content=r.narrative.content,
                    settings=cfg.translation,
                    visual_prose_mode=r.pre_generation.visual_prose_mode,
                    abort_signal=signal,
                )
            )
            async for event in translation:
                yield event
            r.translation = translation.result
            if signal.aborted:
                yield PhaseReturn(self._aborted(r, phase, tlog))
                return

            phase = "image"
            image = self._image.execute(self._image_input(ctx, cfg, r, entry_id))
            async for event in image:
                yield event
            r.image = image.result
            if signal.aborted:
                yield PhaseReturn(self._aborted(r, phase, tlog))
                return

            phase = "post"
            post = self._post.execute(
                PostGenerationInput(
                    story=ctx.story,
                    entries=ctx.visible_entries,
                    world_state=ctx.world_state,
                    narrative=r.narrative.content,
                    translation=cfg.translation,
                    is_creative_mode=cfg.story_mode == "creative-writing",
                    disable_suggestions=cfg.disable_suggestions,
                    interactive=cfg.interactive,
                    active_threads=cfg.active_threads,
                    abort_signal=signal,
                )
            )
            async for event in post:
                yield event
            r.post_generation = post.result
            if signal.aborted:
                yield PhaseReturn(self._aborted(r, phase, tlog))
                return
        except Exception as e:
            tlog.exception("turn_failed", phase=phase)
            r.fatal_error = e
            yield ErrorEvent(phase, str(e), fatal=True)
            yield PhaseReturn(r)
            return

        tlog.info("turn_completed", narrative_chars=len(r.narrative.content))
        yield PhaseReturn(r)

    def _aborted(
        self, r: PipelineResult, phase: GenerationPhase, tlog: FilteringBoundLogger
    ) -> PipelineResult:
        tlog.info("turn_aborted", after_phase=phase)
        r.aborted = True
        return r

    def _image_input(
        self, ctx: GenerationContext, cfg: PipelineConfig, r: PipelineResult, entry_id: str
    ) -> ImageInput:
        names: list[str] = []
        if r.classification is not None:
            names = r.classification.classification.scene.present_character_names
        present = [c for c in ctx.world_state.characters if c.name in names]
        location = ctx.world_state.current_location
        translation = r.translation
        return ImageInput(
            context=ImageGenerationContext(
                story_id=ctx.story.id,
                entry_id=entry_id,
                narrative=r.narrative.content if r.narrative else "",
                user_action=ctx.user_action.content,
                present_characters=present,
                current_location_name=location.name if location else None,
                translated_narrative=translation.translated_content if translation else None,
                translation_language=translation.target_language if translation else None,
                reference_mode=cfg.images.reference_mode,
                abort_signal=ctx.abort_signal,
            ),
            settings=cfg.images,
            agentic_generate=cfg.agentic_image_generate,
            abort_signal=ctx.abort_signal,
        )
