"""
Exceptions raised across the capture and recognition pipeline.

Only capture, asset and persistence problems are exceptions. A frame that
matches no scene is a normal classification outcome, and illegible text
degrades to a placeholder on the record instead of raising.
"""


class SmashTrackerError(Exception):
    """Base class for all smash_tracker errors."""


class CaptureError(SmashTrackerError):
    """A frame source could not deliver frames."""


class SourceLost(CaptureError):
    """The capture source disappeared (window closed, device unplugged)."""


class EndOfStream(SourceLost):
    """A recorded source (video file, frame folder) has no more frames."""


class DeviceBusy(CaptureError):
    """The capture device is held exclusively by another consumer."""


class InvalidFrame(SmashTrackerError):
    """A frame has zero area or an unsupported channel layout."""


class ExtractionError(SmashTrackerError):
    """A layout region cannot be sampled from the frame."""


class AssetError(SmashTrackerError):
    """The template/vocabulary bundle could not be loaded."""


class SinkError(SmashTrackerError):
    """A record sink failed to persist a finalized record."""


class FrozenRecordError(SmashTrackerError, AttributeError):
    """A finalized BattleRecord was modified."""


class ConfigError(SmashTrackerError):
    """The configuration file is missing or invalid."""
