"""
Encoder job engine: per-job workspaces, sequential ffmpeg pipelines with
deadlines, a catalogue of image/GIF/video operations and a background
sweeper that reclaims whatever jobs leave behind.
"""

from .config import Settings, load_settings
from .errors import (
    AllocationError,
    EncoderError,
    StepError,
    StepTimeout,
    UnknownOperation,
    ValidationError,
)
from .sweeper import Sweeper
from .worker import JobRunner
from .workspace import active_workspaces, allocate, remove_tree, scoped_workspace, with_workspace

__all__ = [
    "Settings",
    "load_settings",
    "EncoderError",
    "ValidationError",
    "UnknownOperation",
    "AllocationError",
    "StepError",
    "StepTimeout",
    "Sweeper",
    "JobRunner",
    "active_workspaces",
    "allocate",
    "remove_tree",
    "scoped_workspace",
    "with_workspace",
]
