"""Translation phase: translate the narrative into the reader's language.

Errors are non-fatal: the untranslated narrative is kept.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from storyloom.observability import get_logger
from storyloom.pipeline.abort import AbortError
from storyloom.pipeline.events import Aborted, ErrorEvent, PhaseComplete, PhaseStart
from storyloom.pipeline.streams import PhaseReturn, PhaseRun

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from storyloom.pipeline.abort import AbortSignal
    from storyloom.pipeline.config import TranslationSettings
    from storyloom.pipeline.events import GenerationEvent

log = get_logger(__name__)


class TranslationDependencies(Protocol):
    async def translate_narration(
        self, content: str, target_language: str, is_visual_prose: bool
    ) -> str: ...


@dataclass
class TranslationInput:
    narrative_content: str
    settings: TranslationSettings
    visual_prose_mode: bool = False
    abort_signal: AbortSignal | None = None


@dataclass(frozen=True)
class TranslationResult:
    translated: bool
    translated_content: str | None = None
    target_language: str | None = None


class TranslationPhase:
    def __init__(self, deps: TranslationDependencies) -> None:
        self._deps = deps

    def execute(self, inp: TranslationInput) -> PhaseRun[TranslationResult]:
        return PhaseRun(self._run(inp))

    async def _run(
        self, inp: TranslationInput
    ) -> AsyncGenerator[GenerationEvent | PhaseReturn[TranslationResult | None], None]:
        yield PhaseStart("translation")

        if not inp.settings.narration_enabled:
            skipped = TranslationResult(translated=False)
            yield PhaseComplete("translation", skipped)
            yield PhaseReturn(skipped)
            return

        if inp.abort_signal is not None and inp.abort_signal.aborted:
            yield Aborted("translation")
            yield PhaseReturn(None)
            return

        language = inp.settings.target_language
        try:
            translated = await self._deps.translate_narration(
                inp.narrative_content, language, inp.visual_prose_mode
            )
        except AbortError:
            yield Aborted("translation")
            yield PhaseReturn(None)
            return
        except Exception as e:
            log.warning("translation_failed", target_language=language, error=str(e))
            yield ErrorEvent("translation", str(e), fatal=False)
            yield PhaseReturn(None)
            return

        result = TranslationResult(
            translated=True, translated_content=translated, target_language=language
        )
        yield PhaseComplete("translation", result)
        yield PhaseReturn(result)
