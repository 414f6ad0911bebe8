"""Pre-generation phase: retry backup and turn setup.

Polling points: none. The phase does no I/O, and the pipeline checks the
abort signal as soon as it completes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from storyloom.observability import get_logger
from storyloom.pipeline.events import PhaseComplete, PhaseStart
from storyloom.pipeline.streams import PhaseReturn, PhaseRun
from storyloom.retry.backup import build_retry_backup
from storyloom.storage.models import TimeTracker, new_id

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from storyloom.pipeline.context import GenerationContext
    from storyloom.pipeline.events import GenerationEvent
    from storyloom.retry.backup import RetryBackupData
    from storyloom.storage.models import ActionInputType

log = get_logger(__name__)


@dataclass
class PreGenerationInput:
    context: GenerationContext
    raw_input: str
    action_type: ActionInputType = "do"
    was_raw_action_choice: bool = False
    activation_data: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class PreGenerationResult:
    """Backup and per-turn settings prepared before generation.

    Attributes:
        retry_backup: Full-state backup; callers persist ``to_persistent()``.
        visual_prose_mode: The story renders narrative as styled HTML.
        streaming_entry_id: Temporary ID used for the narrative while it streams.
        time_tracker: The story's time tracker, initialised if it had none.
    """

    retry_backup: RetryBackupData
    visual_prose_mode: bool
    streaming_entry_id: str
    time_tracker: TimeTracker


class PreGenerationPhase:
    """Prepares retry backup data and turn settings."""

    def execute(self, inp: PreGenerationInput) -> PhaseRun[PreGenerationResult]:
        return PhaseRun(self._run(inp))

    async def _run(
        self, inp: PreGenerationInput
    ) -> AsyncGenerator[GenerationEvent | PhaseReturn[PreGenerationResult], None]:
        yield PhaseStart("pre")

        story = inp.context.story
        backup = build_retry_backup(
            inp.context,
            raw_input=inp.raw_input,
            action_type=inp.action_type,
            was_raw_action_choice=inp.was_raw_action_choice,
            activation_data=inp.activation_data,
        )
        result = PreGenerationResult(
            retry_backup=backup,
            visual_prose_mode=story.settings.visual_prose_mode,
            streaming_entry_id=new_id(),
            time_tracker=story.time_tracker or TimeTracker(),
        )
        log.debug(
            "retry_backup_prepared",
            watermark=backup.entry_count_before_action,
            characters=len(backup.character_ids),
        )

        yield PhaseComplete("pre", result)
        yield PhaseReturn(result)
