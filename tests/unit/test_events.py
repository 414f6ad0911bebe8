"""Tests for generation event descriptions."""

from __future__ import annotations

import pytest

from storyloom.pipeline.events import (
    Aborted,
    ClassificationComplete,
    ErrorEvent,
    NarrativeChunk,
    NarrativeComplete,
    PhaseComplete,
    PhaseStart,
    describe_event,
)


@pytest.mark.parametrize(
    ("event", "expected"),
    [
        (PhaseStart("retrieval"), "retrieval: started"),
        (PhaseComplete("post", None), "post: complete"),
        (NarrativeChunk("abc", "xy"), "narrative: +3 chars, +2 reasoning"),
        (NarrativeComplete("hello", "", "e1"), "narrative: finished with 5 chars"),
        (ClassificationComplete(None), "classification: world state updated"),
        (ErrorEvent("image", "quota", fatal=False), "image: error: quota"),
        (ErrorEvent("narrative", "down", fatal=True), "narrative: fatal error: down"),
        (Aborted("translation"), "translation: aborted"),
    ],
)
def test_describe_event(event: object, expected: str) -> None:
    assert describe_event(event) == expected  # type: ignore[arg-type]


def test_events_are_immutable() -> None:
    event = PhaseStart("pre")

    with pytest.raises(AttributeError):
        event.phase = "post"  # type: ignore[misc]
