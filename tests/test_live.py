"""
Tests for the threaded live analyzer and its frame buffer.
"""

import threading
import time

import numpy as np

from smash_tracker.config import MachineConfig
from smash_tracker.errors import SourceLost
from smash_tracker.live import FrameBuffer, LiveAnalyzer
from smash_tracker.state_machine import BattleStateMachine, MachineState
from smash_tracker.templates import SceneKind

from conftest import ListSource, ScriptedExtractor, ScriptedMatcher, blank_image

RTF = SceneKind.READY_TO_FIGHT


def wait_for(condition, timeout=5.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if condition():
            return True
        time.sleep(0.01)
    return condition()


class QuietSource(ListSource):
    """Delivers its frames, then keeps running with nothing new to deliver."""

    def _grab(self):
        if self._position >= len(self.images):
            return None
        return super()._grab()


class BlockingSource(ListSource):
    """Blocks in read until released, then reports the device as gone."""

    def __init__(self):
        super().__init__([], end=SourceLost)
        self.entered = threading.Event()
        self.release = threading.Event()

    def _grab(self):
        self.entered.set()
        self.release.wait(timeout=5)
        raise SourceLost("device unplugged")


class TestFrameBuffer:

    def test_fifo(self):
        buffer = FrameBuffer(max_size=2)
        assert buffer.put("a")
        assert buffer.put("b")
        assert buffer.get_buffer_size() == 2
        assert buffer.get() == "a"
        assert buffer.get() == "b"

    def test_put_times_out_when_full(self):
        buffer = FrameBuffer(max_size=1)
        assert buffer.put("a")
        assert not buffer.put("b", timeout=0.05)
        assert buffer.get_buffer_size() == 1

    def test_get_times_out_when_empty(self):
        assert FrameBuffer().get(timeout=0.05) is None

    def test_blocked_producer_resumes(self):
        buffer = FrameBuffer(max_size=1)
        buffer.put("a")
        results = []
        producer = threading.Thread(target=lambda: results.append(buffer.put("b", timeout=5)))
        producer.start()

        assert buffer.get(timeout=1) == "a"
        producer.join(timeout=5)
        assert results == [True]
        assert buffer.get(timeout=1) == "b"

    def test_close_and_reopen(self):
        buffer = FrameBuffer()
        buffer.put("a")
        buffer.close()
        assert not buffer.put("b")

        buffer.reopen()
        assert buffer.get_buffer_size() == 0
        assert buffer.put("c")
        buffer.clear()
        assert buffer.get(timeout=0.05) is None


class TestLiveAnalyzer:

    def make_machine(self, script):
        return BattleStateMachine(ScriptedMatcher(script), ScriptedExtractor(),
                                  MachineConfig(reaffirm_interval=1))

    def test_source_loss_aborts_match(self):
        bad = np.zeros((0, 640, 3), dtype=np.uint8)
        source = ListSource([bad] + [blank_image()] * 3, end=SourceLost)
        machine = self.make_machine([None, RTF, RTF, RTF])
        analyzer = LiveAnalyzer(source, machine)

        analyzer.start()
        try:
            assert wait_for(lambda: analyzer.source_lost)
        finally:
            analyzer.stop()

        assert source.opened and source.closed
        assert analyzer.frames_dropped == 1
        assert analyzer.frames_processed == 3
        assert machine.matches_aborted == 1
        assert machine.state == MachineState.IDLE

    def test_switch_source(self):
        first = ListSource([blank_image()] * 3, end=SourceLost)
        second = ListSource([blank_image()] * 3, end=SourceLost)
        machine = self.make_machine([RTF, RTF, RTF])
        analyzer = LiveAnalyzer(first, machine)

        analyzer.start()
        try:
            assert wait_for(lambda: machine.matches_aborted == 1)
            analyzer.switch_source(second)
            assert wait_for(lambda: machine.matches_aborted == 2)
        finally:
            analyzer.stop()

        assert first.closed
        assert second.opened and second.closed
        assert analyzer.source is second
        assert analyzer.frames_processed == 6

    def test_stale_capture_thread_cannot_abort_new_source(self, monkeypatch):
        monkeypatch.setattr("smash_tracker.live.CAPTURE_JOIN_TIMEOUT", 0.05)
        first = BlockingSource()
        second = QuietSource([blank_image()] * 3)
        machine = self.make_machine([RTF, RTF, RTF])
        analyzer = LiveAnalyzer(first, machine)

        analyzer.start()
        try:
            assert first.entered.wait(timeout=5)
            old_thread = analyzer.capture_thread
            analyzer.switch_source(second)
            assert wait_for(lambda: analyzer.frames_processed == 3)

            # The old read finally returns with an error for the closed source
            first.release.set()
            old_thread.join(timeout=5)
            assert wait_for(lambda: analyzer.frame_buffer.get_buffer_size() == 0)
            time.sleep(0.2)

            assert not analyzer.source_lost
            assert machine.state == MachineState.MATCH_STARTING
            assert machine.matches_aborted == 0
        finally:
            first.release.set()
            analyzer.stop()

    def test_stop_flushes_on_the_processing_thread(self):
        source = QuietSource([blank_image()] * 3)
        machine = self.make_machine([RTF, RTF, RTF])
        flushed_on = []
        original_flush = machine.flush

        def flush():
            flushed_on.append(threading.current_thread().name)
            return original_flush()

        machine.flush = flush
        analyzer = LiveAnalyzer(source, machine)
        analyzer.start()
        assert wait_for(lambda: analyzer.frames_processed == 3)
        analyzer.stop()

        assert flushed_on == ["process"]
        # The open match never reached its result screen
        assert machine.matches_aborted == 1
        assert machine.state == MachineState.IDLE
