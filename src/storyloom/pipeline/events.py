"""Events emitted by a generation turn.

``GenerationEvent`` is a closed union of frozen dataclasses and is the only
observable output of the pipeline while it runs. Consumers should dispatch
with ``match`` and end with ``assert_never`` so that adding a variant is a
type error everywhere it is not yet handled; :func:`describe_event` is the
reference consumer.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal, assert_never

GenerationPhase = Literal[
    "pre",
    "retrieval",
    "narrative",
    "classification",
    "background_image",
    "translation",
    "image",
    "post",
]


@dataclass(frozen=True)
class PhaseStart:
    phase: GenerationPhase


@dataclass(frozen=True)
class PhaseComplete:
    phase: GenerationPhase
    result: Any = None


@dataclass(frozen=True)
class NarrativeChunk:
    """Incremental narrative text or reasoning from the stream."""

    content: str
    reasoning: str = ""


@dataclass(frozen=True)
class NarrativeComplete:
    """Full narrative text once streaming succeeded."""

    content: str
    reasoning: str
    entry_id: str


@dataclass(frozen=True)
class ClassificationComplete:
    result: Any


@dataclass(frozen=True)
class ErrorEvent:
    """A phase failed. ``fatal`` errors end the turn."""

    phase: GenerationPhase
    error: str
    fatal: bool


@dataclass(frozen=True)
class Aborted:
    phase: GenerationPhase


GenerationEvent = (
    PhaseStart
    | PhaseComplete
    | NarrativeChunk
    | NarrativeComplete
    | ClassificationComplete
    | ErrorEvent
    | Aborted
)


def describe_event(event: GenerationEvent) -> str:
    """One-line human description of an event."""
    match event:
        case PhaseStart(phase=phase):
            return f"{phase}: started"
        case PhaseComplete(phase=phase):
            return f"{phase}: complete"
        case NarrativeChunk(content=content, reasoning=reasoning):
            return f"narrative: +{len(content)} chars, +{len(reasoning)} reasoning"
        case NarrativeComplete(content=content):
            return f"narrative: finished with {len(content)} chars"
        case ClassificationComplete():
            return "classification: world state updated"
        case ErrorEvent(phase=phase, error=error, fatal=fatal):
            return f"{phase}: {'fatal ' if fatal else ''}error: {error}"
        case Aborted(phase=phase):
            return f"{phase}: aborted"
        case _:
            assert_never(event)
