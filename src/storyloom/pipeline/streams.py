"""Phase streams: async generators that yield events and produce a result.

An async generator cannot ``return`` a value, so a phase body yields its
events and finishes by yielding a single :class:`PhaseReturn`. Wrapping the
generator in :class:`PhaseRun` hides that convention: iterating the run
yields only events, and ``run.result`` holds the returned value once the
run is exhausted.

:func:`merge` interleaves several runs as their events arrive.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Generic, TypeVar

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, AsyncIterator

    from storyloom.pipeline.events import GenerationEvent

T = TypeVar("T")


@dataclass(frozen=True)
class PhaseReturn(Generic[T]):
    """Final item of a phase stream carrying the phase's result."""

    value: T


class PhaseRun(Generic[T]):
    """Event iterator over a phase stream with access to its result."""

    def __init__(self, stream: AsyncGenerator[GenerationEvent | PhaseReturn[T], None]) -> None:
        self._stream = stream
        self._done = False
        self._result: T | None = None

    def __aiter__(self) -> AsyncIterator[GenerationEvent]:
        return self

    async def __anext__(self) -> GenerationEvent:
        if self._done:
            raise StopAsyncIteration
        try:
            item = await self._stream.__anext__()
        except BaseException:
            self._done = True
            raise
        if isinstance(item, PhaseReturn):
            self._result = item.value
            self._done = True
            await self._stream.aclose()
            raise StopAsyncIteration
        return item

    @property
    def done(self) -> bool:
        return self._done

    @property
    def result(self) -> T | None:
        """The phase's return value; ``None`` when it returned nothing.

        Raises:
            RuntimeError: If the run has not been exhausted yet.
        """
        if not self._done:
            raise RuntimeError("Phase result read before the phase finished")
        return self._result

    async def aclose(self) -> None:
        self._done = True
        await self._stream.aclose()

    async def collect(self) -> tuple[list[GenerationEvent], T | None]:
        """Drain the run, returning its events and result."""
        events = [event async for event in self]
        return events, self.result


_EXHAUSTED = object()


async def _advance(run: PhaseRun[Any]) -> Any:
    try:
        return await run.__anext__()
    except StopAsyncIteration:
        return _EXHAUSTED


async def merge(*runs: PhaseRun[Any]) -> AsyncGenerator[GenerationEvent, None]:
    """Yield events from several runs in arrival order.

    Each run has at most one pending step, so events from one run keep
    their order. The merge ends once every run is exhausted; results are
    then available on the runs themselves. If any run raises, the others
    are cancelled and closed and the exception propagates.
    """
    pending: dict[asyncio.Task[Any], PhaseRun[Any]] = {}

    def schedule(run: PhaseRun[Any]) -> None:
        pending[asyncio.ensure_future(_advance(run))] = run

    for run in runs:
        schedule(run)
    try:
        while pending:
            done, _ = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            for task in [t for t in pending if t in done]:
                run = pending.pop(task)
                item = task.result()
                if item is _EXHAUSTED:
                    continue
                yield item
                schedule(run)
    finally:
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        for run in runs:
            if not run.done:
                await run.aclose()
