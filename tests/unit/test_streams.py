"""Tests for phase streams and merging."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import pytest

from storyloom.pipeline.events import PhaseComplete, PhaseStart
from storyloom.pipeline.streams import PhaseReturn, PhaseRun, merge

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator


async def _phase(
    name: str, steps: int, delay: float = 0.0, value: object = None
) -> AsyncGenerator[object, None]:
    yield PhaseStart(name)  # type: ignore[arg-type]
    for _ in range(steps):
        await asyncio.sleep(delay)
        yield PhaseComplete(name, None)  # type: ignore[arg-type]
    yield PhaseReturn(value)


class TestPhaseRun:
    @pytest.mark.asyncio
    async def test_iterates_events_and_captures_result(self) -> None:
        run = PhaseRun(_phase("pre", 2, value="done"))

        events = [e async for e in run]

        assert [type(e) for e in events] == [PhaseStart, PhaseComplete, PhaseComplete]
        assert run.done is True
        assert run.result == "done"

    @pytest.mark.asyncio
    async def test_result_before_finish_raises(self) -> None:
        run = PhaseRun(_phase("pre", 1))

        with pytest.raises(RuntimeError, match="before the phase finished"):
            _ = run.result
        await run.aclose()

    @pytest.mark.asyncio
    async def test_collect(self) -> None:
        events, result = await PhaseRun(_phase("post", 0, value=7)).collect()

        assert events == [PhaseStart("post")]
        assert result == 7

    @pytest.mark.asyncio
    async def test_generator_without_return_yields_none(self) -> None:
        async def bare() -> AsyncGenerator[object, None]:
            yield PhaseStart("image")

        run = PhaseRun(bare())
        _, result = await run.collect()

        assert result is None


class TestMerge:
    @pytest.mark.asyncio
    async def test_collects_all_events_and_results(self) -> None:
        first = PhaseRun(_phase("classification", 2, value="a"))
        second = PhaseRun(_phase("background_image", 3, value="b"))

        events = [e async for e in merge(first, second)]

        assert len(events) == 7
        assert first.result == "a"
        assert second.result == "b"

    @pytest.mark.asyncio
    async def test_interleaves_by_arrival(self) -> None:
        slow = PhaseRun(_phase("classification", 1, delay=0.05))
        fast = PhaseRun(_phase("background_image", 1, delay=0.0))

        events = [e async for e in merge(slow, fast)]

        completes = [e.phase for e in events if isinstance(e, PhaseComplete)]
        assert completes == ["background_image", "classification"]

    @pytest.mark.asyncio
    async def test_preserves_order_within_run(self) -> None:
        async def numbered() -> AsyncGenerator[object, None]:
            for i in range(5):
                yield PhaseComplete("translation", i)
            yield PhaseReturn(None)

        other = PhaseRun(_phase("image", 3))
        events = [e async for e in merge(PhaseRun(numbered()), other)]

        ours = [e.result for e in events if getattr(e, "phase", None) == "translation"]
        assert ours == [0, 1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_fails_fast_and_closes_siblings(self) -> None:
        closed: list[str] = []

        async def failing() -> AsyncGenerator[object, None]:
            yield PhaseStart("classification")
            raise RuntimeError("classifier crashed")

        async def endless() -> AsyncGenerator[object, None]:
            try:
                yield PhaseStart("background_image")
                while True:
                    await asyncio.sleep(0.01)
                    yield PhaseComplete("background_image", None)
            finally:
                closed.append("background_image")

        sibling = PhaseRun(endless())
        with pytest.raises(RuntimeError, match="classifier crashed"):
            async for _ in merge(PhaseRun(failing()), sibling):
                pass

        assert sibling.done is True
        assert closed == ["background_image"]
