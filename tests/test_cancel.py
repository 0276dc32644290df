"""Tests for the cancellation controller."""

import threading

from quill.cancel import CancellationController


class _Transport:
    def __init__(self):
        self.kills = 0

    def kill(self):
        self.kills += 1


class TestCancellationController:
    def test_abort_when_idle_is_noop(self):
        c = CancellationController()
        assert c.abort() is False
        assert not c.aborted

    def test_abort_kills_attached_transport(self):
        c = CancellationController()
        t = _Transport()
        c.begin()
        c.attach(t)
        assert c.is_streaming
        assert c.abort() is True
        assert c.aborted
        assert t.kills == 1

    def test_second_abort_is_noop(self):
        c = CancellationController()
        t = _Transport()
        c.begin()
        c.attach(t)
        c.abort()
        assert c.abort() is False
        assert t.kills == 1

    def test_abort_between_rounds(self):
        c = CancellationController()
        c.begin()
        assert c.abort() is True
        t = _Transport()
        c.attach(t)
        assert t.kills == 1

    def test_detach_only_matching(self):
        c = CancellationController()
        a, b = _Transport(), _Transport()
        c.begin()
        c.attach(a)
        c.detach(b)
        assert c.is_streaming
        c.detach(a)
        assert not c.is_streaming
        c.abort()
        assert a.kills == 0

    def test_begin_resets(self):
        c = CancellationController()
        c.begin()
        c.abort()
        c.end()
        assert not c.running
        c.begin()
        assert c.running
        assert not c.aborted

    def test_abort_from_other_thread(self):
        c = CancellationController()
        t = _Transport()
        c.begin()
        c.attach(t)
        results = []
        threads = [threading.Thread(target=lambda: results.append(c.abort())) for _ in range(8)]
        for th in threads:
            th.start()
        for th in threads:
            th.join()
        assert results.count(True) == 1
        assert t.kills == 1
