"""Image phase: illustrate the narrative.

Inline mode is handled while the narrative renders, so this phase only
runs for agentic image generation. Errors are non-fatal.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal, Protocol

from storyloom.observability import get_logger
from storyloom.pipeline.abort import AbortError
from storyloom.pipeline.events import Aborted, ErrorEvent, PhaseComplete, PhaseStart
from storyloom.pipeline.streams import PhaseReturn, PhaseRun

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from storyloom.pipeline.abort import AbortSignal
    from storyloom.pipeline.config import ImageSettings
    from storyloom.pipeline.events import GenerationEvent
    from storyloom.storage.models import Character

log = get_logger(__name__)

ImageSkipReason = Literal[
    "inline_mode", "disabled", "agentic_generate_off", "not_configured", "aborted"
]


@dataclass
class ImageGenerationContext:
    """What the image collaborator needs to pick and render scenes."""

    story_id: str
    entry_id: str
    narrative: str
    user_action: str
    present_characters: list[Character]
    current_location_name: str | None
    translated_narrative: str | None = None
    translation_language: str | None = None
    reference_mode: bool = False
    abort_signal: AbortSignal | None = None


class ImageDependencies(Protocol):
    def is_image_generation_enabled(self, settings: ImageSettings, kind: str) -> bool: ...

    async def generate_images_for_narrative(self, context: ImageGenerationContext) -> None: ...


@dataclass
class ImageInput:
    context: ImageGenerationContext
    settings: ImageSettings
    agentic_generate: bool = True
    abort_signal: AbortSignal | None = None


@dataclass(frozen=True)
class ImageResult:
    started: bool
    skipped_reason: ImageSkipReason | None = None


class ImagePhase:
    def __init__(self, deps: ImageDependencies) -> None:
        self._deps = deps

    def execute(self, inp: ImageInput) -> PhaseRun[ImageResult]:
        return PhaseRun(self._run(inp))

    def _skip_reason(self, inp: ImageInput) -> ImageSkipReason | None:
        settings = inp.settings
        if settings.mode == "inline":
            return "inline_mode"
        if settings.mode == "none":
            return "disabled"
        if not inp.agentic_generate:
            return "agentic_generate_off"
        kind = "reference" if settings.reference_mode else "standard"
        if not self._deps.is_image_generation_enabled(settings, kind):
            return "not_configured"
        return None

    async def _run(
        self, inp: ImageInput
    ) -> AsyncGenerator[GenerationEvent | PhaseReturn[ImageResult | None], None]:
        yield PhaseStart("image")

        reason = self._skip_reason(inp)
        if reason is not None:
            log.debug("image_generation_skipped", reason=reason)
            skipped = ImageResult(started=False, skipped_reason=reason)
            yield PhaseComplete("image", skipped)
            yield PhaseReturn(skipped)
            return

        aborted = ImageResult(started=False, skipped_reason="aborted")
        if inp.abort_signal is not None and inp.abort_signal.aborted:
            yield Aborted("image")
            yield PhaseReturn(aborted)
            return

        try:
            await self._deps.generate_images_for_narrative(inp.context)
        except AbortError:
            yield Aborted("image")
            yield PhaseReturn(aborted)
            return
        except Exception as e:
            log.warning("image_generation_failed", entry_id=inp.context.entry_id, error=str(e))
            yield ErrorEvent("image", str(e), fatal=False)
            yield PhaseReturn(None)
            return

        result = ImageResult(started=True)
        yield PhaseComplete("image", result)
        yield PhaseReturn(result)
