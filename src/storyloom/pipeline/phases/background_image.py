"""Background image phase: refresh the scene backdrop.

Runs alongside classification. Errors are non-fatal.

Polling points: after the enabled/configured checks, before the
collaborator call.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal, Protocol

from storyloom.observability import get_logger
from storyloom.pipeline.abort import AbortError
from storyloom.pipeline.events import Aborted, ErrorEvent, PhaseComplete, PhaseStart
from storyloom.pipeline.streams import PhaseReturn, PhaseRun

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Sequence

    from storyloom.pipeline.abort import AbortSignal
    from storyloom.pipeline.config import ImageSettings
    from storyloom.pipeline.events import GenerationEvent
    from storyloom.storage.models import StoryEntry

log = get_logger(__name__)

BackgroundSkipReason = Literal["disabled", "not_configured", "aborted"]


class BackgroundImageDependencies(Protocol):
    def is_image_generation_enabled(self, settings: ImageSettings, kind: str) -> bool: ...

    async def analyze_background_change(
        self, story_id: str, entries: Sequence[StoryEntry]
    ) -> None: ...


@dataclass
class BackgroundImageInput:
    story_id: str
    entries: list[StoryEntry]
    settings: ImageSettings
    abort_signal: AbortSignal | None = None


@dataclass(frozen=True)
class BackgroundImageResult:
    started: bool
    skipped_reason: BackgroundSkipReason | None = None


class BackgroundImagePhase:
    def __init__(self, deps: BackgroundImageDependencies) -> None:
        self._deps = deps

    def execute(self, inp: BackgroundImageInput) -> PhaseRun[BackgroundImageResult]:
        return PhaseRun(self._run(inp))

    async def _run(
        self, inp: BackgroundImageInput
    ) -> AsyncGenerator[GenerationEvent | PhaseReturn[BackgroundImageResult], None]:
        yield PhaseStart("background_image")

        if not inp.settings.background_images_enabled:
            result = BackgroundImageResult(started=False, skipped_reason="disabled")
        elif not self._deps.is_image_generation_enabled(inp.settings, "background"):
            result = BackgroundImageResult(started=False, skipped_reason="not_configured")
        else:
            result = None

        if result is not None:
            yield PhaseComplete("background_image", result)
            yield PhaseReturn(result)
            return

        aborted = BackgroundImageResult(started=False, skipped_reason="aborted")
        if inp.abort_signal is not None and inp.abort_signal.aborted:
            yield Aborted("background_image")
            yield PhaseReturn(aborted)
            return

        try:
            await self._deps.analyze_background_change(inp.story_id, inp.entries)
        except AbortError:
            yield Aborted("background_image")
            yield PhaseReturn(aborted)
            return
        except Exception as e:
            log.warning("background_image_failed", error=str(e))
            yield ErrorEvent("background_image", str(e), fatal=False)
            yield PhaseReturn(BackgroundImageResult(started=False))
            return

        result = BackgroundImageResult(started=True)
        yield PhaseComplete("background_image", result)
        yield PhaseReturn(result)
