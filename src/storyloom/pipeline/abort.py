"""Cooperative cancellation for generation turns.

An :class:`AbortController` owns an :class:`AbortSignal` that is threaded
through every phase and collaborator call. Setting it never interrupts
running code: phases poll ``signal.aborted`` at documented points (phase
entry, between streamed chunks, between retries) and collaborators that
perform network I/O are expected to register a listener and cancel their
own request.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from storyloom.observability import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable

log = get_logger(__name__)


class AbortError(Exception):
    """Raised by a collaborator that stopped because the signal was set."""

    def __init__(self, reason: str | None = None) -> None:
        self.reason = reason
        super().__init__(reason or "Generation aborted")


class AbortSignal:
    """Read side of a cancellation token."""

    def __init__(self) -> None:
        self._aborted = False
        self._reason: str | None = None
        self._listeners: list[Callable[[], None]] = []

    @property
    def aborted(self) -> bool:
        return self._aborted

    @property
    def reason(self) -> str | None:
        return self._reason

    def add_listener(self, listener: Callable[[], None]) -> None:
        """Register a callback run once on abort; runs now if already aborted."""
        if self._aborted:
            listener()
            return
        self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[], None]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def raise_if_aborted(self) -> None:
        if self._aborted:
            raise AbortError(self._reason)

    def _fire(self, reason: str | None) -> None:
        if self._aborted:
            return
        self._aborted = True
        self._reason = reason
        listeners, self._listeners = self._listeners, []
        for listener in listeners:
            try:
                listener()
            except Exception:
                log.exception("abort_listener_failed")


class AbortController:
    """Write side of a cancellation token."""

    def __init__(self) -> None:
        self.signal = AbortSignal()

    def abort(self, reason: str | None = None) -> None:
        """Set the signal. Later calls are ignored."""
        self.signal._fire(reason)
