"""Tests for cooperative cancellation."""

from __future__ import annotations

import pytest

from storyloom.pipeline.abort import AbortController, AbortError


class TestAbortSignal:
    def test_starts_clear(self) -> None:
        signal = AbortController().signal

        assert signal.aborted is False
        assert signal.reason is None
        signal.raise_if_aborted()

    def test_abort_sets_flag_and_reason(self) -> None:
        controller = AbortController()

        controller.abort("user pressed stop")

        assert controller.signal.aborted is True
        assert controller.signal.reason == "user pressed stop"

    def test_second_abort_keeps_first_reason(self) -> None:
        controller = AbortController()

        controller.abort("first")
        controller.abort("second")

        assert controller.signal.reason == "first"

    def test_raise_if_aborted(self) -> None:
        controller = AbortController()
        controller.abort("stop")

        with pytest.raises(AbortError, match="stop"):
            controller.signal.raise_if_aborted()

    def test_default_error_message(self) -> None:
        assert str(AbortError()) == "Generation aborted"


class TestListeners:
    def test_listener_runs_once(self) -> None:
        controller = AbortController()
        calls: list[str] = []
        controller.signal.add_listener(lambda: calls.append("x"))

        controller.abort()
        controller.abort()

        assert calls == ["x"]

    def test_listener_added_after_abort_runs_immediately(self) -> None:
        controller = AbortController()
        controller.abort()
        calls: list[str] = []

        controller.signal.add_listener(lambda: calls.append("x"))

        assert calls == ["x"]

    def test_removed_listener_not_called(self) -> None:
        controller = AbortController()
        calls: list[str] = []

        def listener() -> None:
            calls.append("x")

        controller.signal.add_listener(listener)
        controller.signal.remove_listener(listener)
        controller.abort()

        assert calls == []

    def test_failing_listener_does_not_block_others(self) -> None:
        controller = AbortController()
        calls: list[str] = []

        def broken() -> None:
            raise RuntimeError("boom")

        controller.signal.add_listener(broken)
        controller.signal.add_listener(lambda: calls.append("ok"))

        controller.abort()

        assert calls == ["ok"]
        assert controller.signal.aborted is True
