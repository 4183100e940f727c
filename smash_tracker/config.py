"""
Session configuration for smash_tracker.

A session is configured by one SessionConfig object, loaded from a JSON file
(or built from defaults) and handed to the pipeline at start-up.

Example config.json:

    {
        "capture": {"mode": "window", "window_title": "OBS"},
        "machine": {"debounce_frames": 4},
        "assets_dir": "assets",
        "csv_path": "battles.csv"
    }
"""

import logging
from pathlib import Path
from typing import Literal, Optional, Tuple, Union

from pydantic import BaseModel, Field, ValidationError, field_validator

from smash_tracker.errors import ConfigError


logger = logging.getLogger(__name__)


class CaptureConfig(BaseModel):
    """Capture source selector and identity."""

    mode: Literal["window", "desktop", "video_device", "video_file", "image_folder"] = Field(
        default="video_device",
        description="Which frame source to open",
    )
    window_title: Optional[str] = Field(default=None, description="Window title to bind to")
    window_class: Optional[str] = Field(default=None, description="Window class (optional)")
    device: Union[int, str] = Field(default=0, description="Capture device index or name")
    region: Optional[Tuple[int, int, int, int]] = Field(
        default=None,
        description="Desktop capture region as (left, top, width, height)",
    )
    monitor: int = Field(default=1, ge=0, description="mss monitor index for desktop capture")
    path: Optional[str] = Field(default=None, description="Video file or frame folder to replay")
    max_read_failures: int = Field(
        default=300,
        ge=1,
        description="Consecutive failed reads before a capture device counts as lost",
    )

    @field_validator("region")
    @classmethod
    def _region_has_area(cls, region):
        if region is not None and (region[2] <= 0 or region[3] <= 0):
            raise ValueError("capture region must have positive width and height")
        return region


class MachineConfig(BaseModel):
    """Battle state machine tuning. All values are empirically chosen defaults."""

    debounce_frames: int = Field(
        default=3,
        ge=1,
        description="Consecutive frames a scene must persist before a transition",
    )
    vote_min_run: int = Field(
        default=3,
        ge=1,
        description="Identical consecutive observations that resolve a discrete field",
    )
    vote_window: int = Field(
        default=9,
        ge=1,
        description="Rolling window size for discrete votes",
    )
    vote_majority: float = Field(
        default=0.6,
        gt=0.5,
        le=1.0,
        description="Share of a full window that resolves a discrete field",
    )
    power_window: int = Field(default=15, ge=1, description="Rolling window for skill rating")
    power_tolerance: float = Field(
        default=0.1,
        gt=0,
        description="Relative deviation from the running median beyond which a rating is discarded",
    )
    min_power: int = Field(default=10, ge=0, description="Ratings below this are OCR noise")
    similarity_floor: float = Field(
        default=0.8,
        ge=0,
        le=1.0,
        description="Minimum fuzzy similarity to accept a character name",
    )
    reaffirm_interval: int = Field(
        default=10,
        ge=1,
        description="While in progress, classify only every Nth frame",
    )
    in_progress_timeout: float = Field(
        default=600.0,
        gt=0,
        description="Seconds without any recognized scene before an in-progress match is dropped",
    )
    in_progress_grace: float = Field(
        default=90.0,
        ge=0,
        description="Added to a known time limit to derive the in-progress timeout",
    )
    result_window_frames: int = Field(
        default=240,
        ge=1,
        description="Frames spent in match-ending before finalizing with what is known",
    )


class DiagnosticsConfig(BaseModel):
    """No-scene watchdog settings."""

    enabled: bool = Field(default=True)
    directory: str = Field(default="diagnostics", description="Where diagnostic clips are written")
    no_scene_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Seconds without a recognized scene before a diagnostic clip is published",
    )
    clip_length: int = Field(default=30, ge=1, description="Frames kept in the rolling clip")


class SessionConfig(BaseModel):
    """Everything a capture session needs, consumed once at start-up."""

    capture: CaptureConfig = Field(default_factory=CaptureConfig)
    machine: MachineConfig = Field(default_factory=MachineConfig)
    diagnostics: DiagnosticsConfig = Field(default_factory=DiagnosticsConfig)
    assets_dir: str = Field(default="assets", description="Template/vocabulary bundle directory")
    csv_path: Optional[str] = Field(default="battles.csv", description="CSV file for finished records")
    remote_url: Optional[str] = Field(
        default=None,
        description="Results server to POST finished records to, instead of the CSV file",
    )
    result_limit: int = Field(
        default=100,
        ge=1,
        description="Finished records kept in memory for the session",
    )


def load_config(path: Optional[str] = None) -> SessionConfig:
    """
    Load a SessionConfig from a JSON file.

    Args:
        path: Path to the JSON file. None returns the defaults.

    Returns:
        SessionConfig
    """
    if path is None:
        return SessionConfig()

    config_path = Path(path)
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    try:
        config = SessionConfig.model_validate_json(config_path.read_text(encoding="utf-8"))
    except ValidationError as e:
        raise ConfigError(f"Invalid config {config_path}: {e}") from e

    logger.info(f"Loaded config from {config_path} (capture mode: {config.capture.mode})")
    return config
