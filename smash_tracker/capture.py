"""
Frame sources.

Every source yields raw Frames (any resolution); normalization happens
downstream. read() returns None when a frame is temporarily unavailable
and raises SourceLost when the source is gone for good.
"""

import ctypes
import glob
import logging
import os
import threading
import time
from typing import Iterator, Optional, Tuple, Union

import cv2
import mss
import numpy as np

from smash_tracker.config import CaptureConfig
from smash_tracker.errors import CaptureError, DeviceBusy, EndOfStream, SourceLost
from smash_tracker.frames import Frame, placeholder_frame


logger = logging.getLogger(__name__)

# Pause between retries while a live source has nothing to deliver
RETRY_INTERVAL = 0.01

IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".bmp")


class FrameSource:
    """Base class for all capture sources. Re-open a source to restart it."""

    name = "source"

    def __init__(self):
        self._last_frame: Optional[Frame] = None
        self._frame_count = 0

    def open(self):
        pass

    def close(self):
        pass

    def _grab(self) -> Optional[Tuple[np.ndarray, float]]:
        """Return (image, timestamp), or None if nothing is available right now."""
        raise NotImplementedError

    def read(self) -> Optional[Frame]:
        grabbed = self._grab()
        if grabbed is None:
            return None
        image, timestamp = grabbed
        frame = Frame(image=image, timestamp=timestamp, source=self.name, index=self._frame_count)
        self._frame_count += 1
        self._last_frame = frame
        return frame

    @property
    def last_frame(self) -> Frame:
        """Last captured frame, or a black placeholder when nothing was captured yet."""
        if self._last_frame is None:
            return placeholder_frame(self.name)
        return self._last_frame

    def frames(self) -> Iterator[Frame]:
        """Yield frames forever, waiting out temporary gaps. SourceLost ends the stream."""
        while True:
            frame = self.read()
            if frame is None:
                time.sleep(RETRY_INTERVAL)
                continue
            yield frame

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __repr__(self):
        return f"{type(self).__name__}({self.name!r})"


class _ScreenGrabber:
    """mss handles are bound to the thread that created them, so keep one per thread."""

    def __init__(self):
        self._local = threading.local()

    @property
    def sct(self):
        if not hasattr(self._local, 'sct'):
            self._local.sct = mss.mss()
        return self._local.sct

    def grab(self, left: int, top: int, width: int, height: int) -> np.ndarray:
        monitor = {"left": int(left), "top": int(top), "width": int(width), "height": int(height)}
        # mss returns BGRA
        return cv2.cvtColor(np.array(self.sct.grab(monitor)), cv2.COLOR_BGRA2BGR)

    def monitor(self, index: int) -> dict:
        monitors = self.sct.monitors
        if not 0 <= index < len(monitors):
            raise CaptureError(f"Monitor {index} not found ({len(monitors) - 1} available)")
        return monitors[index]

    def close(self):
        sct = getattr(self._local, 'sct', None)
        if sct is not None:
            sct.close()
            del self._local.sct


def _window_class_name(window) -> Optional[str]:
    """Win32 class name of a pygetwindow window."""
    hwnd = getattr(window, '_hWnd', None)
    if hwnd is None:
        return None
    buffer = ctypes.create_unicode_buffer(256)
    ctypes.windll.user32.GetClassNameW(hwnd, buffer, 256)
    return buffer.value


class WindowSource(FrameSource):
    """
    Grab a window's rectangle, looked up by title (and optionally class).

    Closing the window raises SourceLost; a minimized or zero-size window
    yields no frames until it comes back.
    """

    def __init__(self, title: str, class_name: Optional[str] = None):
        super().__init__()
        self.title = title
        self.class_name = class_name
        self.name = title
        self._grabber = _ScreenGrabber()

    def _find_window(self):
        # pygetwindow only supports Windows and raises on import elsewhere
        import pygetwindow as gw

        for window in gw.getWindowsWithTitle(self.title):
            if self.class_name is None or _window_class_name(window) == self.class_name:
                return window
        return None

    def open(self):
        if self._find_window() is None:
            raise SourceLost(f"Window not found: {self.title!r}")
        logger.info(f"Bound to window {self.title!r}")

    def _grab(self):
        window = self._find_window()
        if window is None:
            raise SourceLost(f"Window closed: {self.title!r}")
        if window.isMinimized or window.width <= 0 or window.height <= 0:
            return None
        return self._grabber.grab(window.left, window.top, window.width, window.height), time.time()

    def close(self):
        self._grabber.close()


class DesktopSource(FrameSource):
    """Grab a fixed screen region, or a whole monitor when no region is given."""

    def __init__(self, region: Optional[Tuple[int, int, int, int]] = None, monitor: int = 1):
        super().__init__()
        self.region = region
        self.monitor = monitor
        self.name = f"desktop:{region}" if region else f"monitor:{monitor}"
        self._grabber = _ScreenGrabber()

    def _grab(self):
        if self.region is not None:
            left, top, width, height = self.region
        else:
            mon = self._grabber.monitor(self.monitor)
            left, top, width, height = mon["left"], mon["top"], mon["width"], mon["height"]
        return self._grabber.grab(left, top, width, height), time.time()

    def close(self):
        self._grabber.close()


class VideoDeviceSource(FrameSource):
    """
    Capture card or webcam, by index or (DirectShow) device name.

    A device that stops delivering frames (unplugged, driver reset) raises
    SourceLost once `max_failures` reads in a row have failed.
    """

    def __init__(self, device: Union[int, str] = 0, max_failures: int = 300):
        super().__init__()
        self.max_failures = max_failures
        self._failures = 0
        if isinstance(device, str) and device.isdigit():
            device = int(device)
        self.device = device
        self.name = f"device:{device}"
        self.cap = None

    def open(self):
        if isinstance(self.device, int):
            cap = cv2.VideoCapture(self.device)
        else:
            cap = cv2.VideoCapture(f"video={self.device}", cv2.CAP_DSHOW)
        if not cap.isOpened():
            cap.release()
            raise DeviceBusy(f"Could not open capture device {self.device!r} (in use or not connected)")

        # Try to force 60fps for capture cards (may not work on all devices)
        cap.set(cv2.CAP_PROP_FPS, 60)
        width = int(cap.get(cv2.CAP_PROP_FRAME_WIDTH))
        height = int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT))
        logger.info(f"Opened capture device {self.device!r}: {width}x{height} @ {cap.get(cv2.CAP_PROP_FPS):.1f}fps")
        self.cap = cap
        self._failures = 0

    def _grab(self):
        if self.cap is None:
            raise SourceLost(f"Capture device {self.device!r} is not open")
        ret, image = self.cap.read()
        if not ret:
            if not self.cap.isOpened():
                raise SourceLost(f"Capture device {self.device!r} was closed")
            self._failures += 1
            if self._failures >= self.max_failures:
                raise SourceLost(f"Capture device {self.device!r} stopped delivering frames "
                                 f"({self._failures} failed reads)")
            logger.debug(f"Failed to read from device {self.device!r}, retrying")
            return None
        self._failures = 0
        return image, time.time()

    def close(self):
        if self.cap is not None:
            self.cap.release()
            self.cap = None


class VideoFileSource(FrameSource):
    """
    Replay a recorded video. Timestamps are the file position, offset by
    the moment the file was opened.
    """

    def __init__(self, path: str, frame_step: int = 1):
        super().__init__()
        self.path = path
        self.frame_step = max(1, frame_step)
        self.name = os.path.basename(path)
        self.cap = None
        self.fps = 60.0
        self._origin = 0.0

    def open(self):
        if not os.path.exists(self.path):
            raise CaptureError(f"Video file not found: {self.path}")
        cap = cv2.VideoCapture(self.path)
        if not cap.isOpened():
            raise CaptureError(f"Could not open video: {self.path}")

        self.fps = cap.get(cv2.CAP_PROP_FPS) or 60.0
        total = int(cap.get(cv2.CAP_PROP_FRAME_COUNT))
        logger.info(f"Opened {self.path}: {total} frames @ {self.fps:.1f}fps, "
                    f"{total / self.fps:.1f}s")
        self.cap = cap
        self._origin = time.time()

    def _grab(self):
        if self.cap is None:
            raise SourceLost(f"Video {self.path} is not open")
        for _ in range(self.frame_step - 1):
            if not self.cap.grab():
                raise EndOfStream(self.path)
        position = self.cap.get(cv2.CAP_PROP_POS_MSEC) / 1000.0
        ret, image = self.cap.read()
        if not ret:
            raise EndOfStream(self.path)
        return image, self._origin + position

    def close(self):
        if self.cap is not None:
            self.cap.release()
            self.cap = None


class ImageFolderSource(FrameSource):
    """Replay saved frames from a directory in filename order."""

    def __init__(self, path: str, fps: float = 60.0):
        super().__init__()
        self.path = path
        self.fps = fps
        self.name = os.path.basename(os.path.normpath(path))
        self.files = []
        self._position = 0
        self._origin = 0.0

    def open(self):
        if not os.path.isdir(self.path):
            raise CaptureError(f"Frame folder not found: {self.path}")
        self.files = sorted(
            f for f in glob.glob(os.path.join(self.path, "*"))
            if f.lower().endswith(IMAGE_EXTENSIONS)
        )
        self._position = 0
        self._origin = time.time()
        logger.info(f"Opened {self.path}: {len(self.files)} frames")

    def _grab(self):
        while self._position < len(self.files):
            path = self.files[self._position]
            timestamp = self._origin + self._position / self.fps
            self._position += 1
            image = cv2.imread(path)
            if image is None:
                logger.warning(f"Could not read frame: {path}")
                continue
            return image, timestamp
        raise EndOfStream(self.path)


def open_source(config: CaptureConfig) -> FrameSource:
    """Build (but do not open) the frame source the capture config selects."""
    if config.mode == "window":
        if not config.window_title:
            raise CaptureError("Window capture needs a window title")
        return WindowSource(config.window_title, config.window_class)
    elif config.mode == "desktop":
        return DesktopSource(config.region, config.monitor)
    elif config.mode == "video_device":
        return VideoDeviceSource(config.device, config.max_read_failures)
    elif config.mode == "video_file":
        if not config.path:
            raise CaptureError("Video file capture needs a path")
        return VideoFileSource(config.path)
    else:
        if not config.path:
            raise CaptureError("Image folder capture needs a path")
        return ImageFolderSource(config.path)
