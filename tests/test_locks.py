"""Tests for devchronicle.locks."""

from __future__ import annotations

import threading

import pytest

from devchronicle.errors import SessionBusy
from devchronicle.locks import SessionGuard


class TestSessionGuard:
    def test_hold_and_release(self, guard: SessionGuard):
        with guard.hold(1):
            assert guard.is_held(1)
        assert not guard.is_held(1)

    def test_second_holder_rejected(self, guard: SessionGuard):
        with guard.hold(1):
            with pytest.raises(SessionBusy):
                with guard.hold(1):
                    pass
        assert not guard.is_held(1)

    def test_multi_session_releases_partial_acquisition(self, guard: SessionGuard):
        with guard.hold(2):
            with pytest.raises(SessionBusy):
                with guard.hold(1, 2):
                    pass
            assert not guard.is_held(1)

    def test_independent_sessions(self, guard: SessionGuard):
        with guard.hold(1):
            with guard.hold(2):
                assert guard.is_held(1) and guard.is_held(2)

    def test_rejects_across_threads(self, guard: SessionGuard):
        errors: list[Exception] = []
        entered = threading.Event()
        release = threading.Event()

        def holder():
            with guard.hold(7):
                entered.set()
                release.wait(5)

        thread = threading.Thread(target=holder)
        thread.start()
        entered.wait(5)
        try:
            with guard.hold(7):
                pass
        except SessionBusy as e:
            errors.append(e)
        finally:
            release.set()
            thread.join(5)
        assert len(errors) == 1

    def test_released_on_exception(self, guard: SessionGuard):
        with pytest.raises(ValueError):
            with guard.hold(3):
                raise ValueError("boom")
        assert not guard.is_held(3)
