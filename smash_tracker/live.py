"""
Live and replay drivers.

LiveAnalyzer runs capture and processing on two threads joined by a
one-slot frame buffer: the capture thread blocks while a frame is in
flight, so frames are processed strictly in order with a look-ahead of one.
replay() drives the same pipeline synchronously for recordings and tests.
"""

import logging
import threading
import time
from collections import deque
from typing import Optional

from smash_tracker.capture import FrameSource
from smash_tracker.diagnostics import NoSceneWatchdog
from smash_tracker.errors import EndOfStream, InvalidFrame, SourceLost
from smash_tracker.frames import normalize
from smash_tracker.sink import FinalizeWorker
from smash_tracker.state_machine import BattleStateMachine, MachineState


logger = logging.getLogger(__name__)

STATUS_INTERVAL = 5.0  # Log status every 5 seconds

STAGE_DESCRIPTIONS = {
    MachineState.IDLE: "Waiting for READY TO FIGHT / matchmaking",
    MachineState.MATCH_STARTING: "Reading match identity (rule, characters)",
    MachineState.IN_PROGRESS: "Match in progress, waiting for GAME SET",
    MachineState.MATCH_ENDING: "Reading results",
}


class _SourceSwitched:
    """Buffer marker: everything queued after it comes from a new source."""


# Seconds to wait for a capture thread blocked in a slow read
CAPTURE_JOIN_TIMEOUT = 2.0


class FrameBuffer:
    """Thread-safe bounded FIFO of frames and in-order source events."""

    def __init__(self, max_size=1):
        self.max_size = max_size
        self.items = deque()
        self.condition = threading.Condition()
        self.closed = False

    def put(self, item, timeout: Optional[float] = None) -> bool:
        """Add an item, blocking while the buffer is full. Returns False if closed or timed out."""
        with self.condition:
            if not self.condition.wait_for(lambda: self.closed or len(self.items) < self.max_size, timeout):
                return False
            if self.closed:
                return False
            self.items.append(item)
            self.condition.notify_all()
            return True

    def get(self, timeout: Optional[float] = None):
        """Remove and return the oldest item, or None if none arrived in time."""
        with self.condition:
            if not self.condition.wait_for(lambda: self.closed or self.items, timeout):
                return None
            if not self.items:
                return None
            item = self.items.popleft()
            self.condition.notify_all()
            return item

    def get_buffer_size(self):
        with self.condition:
            return len(self.items)

    def clear(self):
        """Drop all queued items and wake any blocked producer."""
        with self.condition:
            self.items.clear()
            self.condition.notify_all()

    def close(self):
        with self.condition:
            self.closed = True
            self.condition.notify_all()

    def reopen(self):
        with self.condition:
            self.closed = False
            self.items.clear()


class LiveAnalyzer:
    """
    Real-time analyzer: one capture thread, one processing thread.

    Args:
        source: FrameSource to capture from (opened by start())
        machine: BattleStateMachine, driven only by the processing thread
        finalizer: FinalizeWorker committing finished records (optional)
        watchdog: NoSceneWatchdog fed with every processed frame (optional)
    """

    def __init__(self, source: FrameSource, machine: BattleStateMachine,
                 finalizer: Optional[FinalizeWorker] = None,
                 watchdog: Optional[NoSceneWatchdog] = None):
        self.source = source
        self.machine = machine
        self.finalizer = finalizer
        self.watchdog = watchdog

        self.frame_buffer = FrameBuffer(max_size=1)

        # Threading control
        self.running = False
        self.capture_thread = None
        self.capture_stop = None
        # Buffer items are tagged with the generation of the source they came from
        self.generation = 0
        self.process_thread = None
        self.source_lost = False

        # Performance tracking
        self.frames_processed = 0
        self.frames_dropped = 0
        self.processing_times = deque(maxlen=100)

    def print_status(self):
        """Log current status."""
        stage = STAGE_DESCRIPTIONS.get(self.machine.state, f"Unknown state: {self.machine.state}")
        if self.source_lost:
            stage = "Source lost, waiting for a new source"

        avg_time = sum(self.processing_times) / len(self.processing_times) if self.processing_times else 0
        logger.info(f"[STATUS] {stage} | Matches: {self.machine.matches_finalized} | "
                    f"Processed: {self.frames_processed} frames | Dropped: {self.frames_dropped} | "
                    f"Avg: {avg_time:.1f}ms/frame")

    def capture_frames(self, source: FrameSource, generation: int, stop: threading.Event):
        """Capture thread - read frames into the buffer until stopped or the source is lost."""
        while not stop.is_set():
            try:
                frame = source.read()
            except SourceLost as e:
                if not stop.is_set():
                    logger.warning(f"Source lost: {e}")
                    self.frame_buffer.put((generation, e))
                break

            if frame is None:
                time.sleep(0.01)
                continue

            # Wait for the processing thread to take the previous frame
            while not stop.is_set() and not self.frame_buffer.put((generation, frame), timeout=0.1):
                pass

        logger.info("Capture thread stopped")

    def process_frames(self):
        """Processing thread - the only caller of machine.process()."""
        last_status_time = time.time()
        logger.info("Processing started")

        while self.running:
            current_time = time.time()
            if current_time - last_status_time >= STATUS_INTERVAL:
                self.print_status()
                last_status_time = current_time

            item = self.frame_buffer.get(timeout=0.1)
            if item is None:
                continue

            generation, item = item
            if generation != self.generation:
                # Left over from a source that has since been replaced
                continue
            if isinstance(item, SourceLost):
                self.machine.on_source_lost()
                self.source_lost = True
                continue
            if isinstance(item, _SourceSwitched):
                self.machine.abort("source switched")
                self.source_lost = False
                continue

            self._process_one(item)

        self.machine.flush()
        logger.info("Processing thread stopped")

    def _process_one(self, frame):
        start_time = time.perf_counter()
        try:
            frame = normalize(frame)
        except InvalidFrame as e:
            logger.warning(f"Dropped frame {frame.index}: {e}")
            self.frames_dropped += 1
            return

        result = self.machine.process(frame)
        if self.watchdog is not None:
            self.watchdog.observe(frame, result.classification)

        self.processing_times.append((time.perf_counter() - start_time) * 1000)
        self.frames_processed += 1

    def _start_capture(self, source: FrameSource):
        self.capture_stop = threading.Event()
        self.capture_thread = threading.Thread(target=self.capture_frames,
                                               args=(source, self.generation, self.capture_stop),
                                               name="capture", daemon=True)
        self.capture_thread.start()

    def _stop_capture(self):
        if self.capture_stop is not None:
            self.capture_stop.set()
        self.frame_buffer.clear()
        if self.capture_thread:
            self.capture_thread.join(timeout=CAPTURE_JOIN_TIMEOUT)
            if self.capture_thread.is_alive():
                logger.warning("Capture thread is still blocked in a read, leaving it behind")
            self.capture_thread = None
        # A frame may have slipped in before the thread saw the flag
        self.frame_buffer.clear()

    def start(self):
        """Open the source and start both threads. DeviceBusy from open() reaches the caller."""
        self.source.open()
        self.running = True
        self.frame_buffer.reopen()

        if self.finalizer is not None:
            self.finalizer.start()

        self.process_thread = threading.Thread(target=self.process_frames, name="process", daemon=True)
        self.process_thread.start()
        self._start_capture(self.source)
        logger.info(f"Live analysis running on {self.source}")

    def switch_source(self, new_source: FrameSource):
        """Stop capturing, abort the current match and continue on new_source."""
        logger.info(f"Switching source: {self.source} -> {new_source}")
        self._stop_capture()
        self.source.close()

        new_source.open()
        self.source = new_source
        self.generation += 1
        self.frame_buffer.put((self.generation, _SourceSwitched()))
        self._start_capture(new_source)

    def stop(self):
        """Stop the analyzer gracefully."""
        self._stop_capture()
        self.running = False
        self.frame_buffer.close()
        if self.process_thread:
            # The processing thread flushes the machine on its way out
            self.process_thread.join()
            self.process_thread = None
        else:
            self.machine.flush()
        self.source.close()

        if self.finalizer is not None:
            self.finalizer.join()
            self.finalizer.stop()

        logger.info(f"Stopped. Frames processed: {self.frames_processed}, "
                    f"matches recorded: {self.machine.matches_finalized}")

    def run(self):
        """Run the analyzer until interrupted."""
        try:
            self.start()
            while self.running:
                time.sleep(0.1)
        except KeyboardInterrupt:
            pass
        finally:
            self.stop()


def replay(source: FrameSource, machine: BattleStateMachine,
           watchdog: Optional[NoSceneWatchdog] = None, max_frames: Optional[int] = None) -> int:
    """
    Drive a recorded source through the machine on the calling thread.

    Stops at EndOfStream (flushing the machine) or after max_frames frames.
    Any other SourceLost aborts the current match and stops the replay.

    Returns:
        int: Number of frames processed
    """
    processed = 0
    with source:
        while max_frames is None or processed < max_frames:
            try:
                frame = source.read()
            except EndOfStream:
                logger.info(f"End of stream after {processed} frames")
                machine.flush()
                break
            except SourceLost as e:
                logger.warning(f"Source lost during replay: {e}")
                machine.on_source_lost()
                break

            if frame is None:
                continue

            try:
                frame = normalize(frame)
            except InvalidFrame as e:
                logger.warning(f"Dropped frame {frame.index}: {e}")
                continue

            result = machine.process(frame)
            if watchdog is not None:
                watchdog.observe(frame, result.classification)
            processed += 1
    return processed
