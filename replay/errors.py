"""Errors raised while turning raw timing data into a timeline.

Playback never raises; only the build side does.
"""
from typing import Optional


class TimelineError(Exception):
    """Base class for timeline build failures."""


class FormatError(TimelineError):
    """A time string (or lap sample) could not be used.

    Aborts the whole normalization call: a partial cumulative sum would be wrong.
    """

    def __init__(self, message: str, text: Optional[str] = None):
        super().__init__(message)
        self.text = text


class MissingDataError(TimelineError):
    """No lap records at all for a race."""
