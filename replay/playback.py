"""Playback engine.

Drives a virtual race clock over a Timeline's frames: play / pause / restart / speed / seek,
plus interpolation between the two frames bracketing the clock.

States: stopped (clock at 0), playing, paused. Nothing here raises: out of range seeks and
speeds are clamped, and without a timeline every operation returns the default state.
"""
import asyncio
import logging
import math
import time
from bisect import bisect_right
from dataclasses import replace
from typing import Callable, List, Optional

from replay.models import (
    PAUSED,
    PLAYING,
    STOPPED,
    CompetitorState,
    Frame,
    PlaybackState,
    Timeline,
)

logger = logging.getLogger(__name__)

# Race ms per wall ms at 1x speed.
PACE_CONSTANT = 20.0
MIN_SPEED = 0.1
MAX_SPEED = 16.0
# Discrete fields (lap, position) flip to the next frame past this point.
DISCRETE_SWITCH = 0.5

Listener = Callable[[PlaybackState], None]


def _monotonic_ms() -> float:
    return time.monotonic() * 1000.0


def interpolate_state(
    current: CompetitorState,
    upcoming: Optional[CompetitorState],
    t_local: float,
) -> CompetitorState:
    """Blend one competitor between two frames.

    progress_pct is linear (wrapping through 100 -> 0 on a new lap); lap_number and position
    are a hard step once t_local passes DISCRETE_SWITCH. Everything else keeps the floor value.
    """
    if upcoming is None:
        return current

    start = current.progress_pct
    end = upcoming.progress_pct
    if upcoming.lap_number > current.lap_number and end < start:
        progress = start + (100.0 - start + end) * t_local
        if progress > 100.0:
            progress -= 100.0
    else:
        progress = start + (end - start) * t_local

    switched = t_local > DISCRETE_SWITCH
    return replace(
        current,
        progress_pct=progress,
        lap_number=upcoming.lap_number if switched else current.lap_number,
        position=upcoming.position if switched else current.position,
    )


class PlaybackEngine:
    """One viewing session over one timeline."""

    def __init__(
        self,
        timeline: Optional[Timeline] = None,
        pace_constant: float = PACE_CONSTANT,
        refresh_hz: float = 60.0,
        clock: Callable[[], float] = _monotonic_ms,
    ):
        self.pace_constant = pace_constant
        self.refresh_hz = refresh_hz
        self._clock = clock
        self._timeline: Optional[Timeline] = None
        self._frame_times: List[int] = []
        self._state = PlaybackState()
        self._listeners: List[Listener] = []
        self._last_tick_ms: Optional[float] = None
        if timeline is not None:
            self.load(timeline)

    @property
    def state(self) -> PlaybackState:
        return self._state

    @property
    def timeline(self) -> Optional[Timeline]:
        return self._timeline

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call listener with every new state. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self, state: PlaybackState) -> PlaybackState:
        if state != self._state:
            self._state = state
            for listener in list(self._listeners):
                listener(state)
        return self._state

    def _frame_index(self, ms: float) -> int:
        return max(0, bisect_right(self._frame_times, ms) - 1)

    def load(self, timeline: Optional[Timeline]) -> PlaybackState:
        """Swap the timeline; the session starts over."""
        self._timeline = timeline
        self._frame_times = [f.time_ms for f in timeline.frames] if timeline else []
        self._last_tick_ms = None
        return self._publish(PlaybackState())

    def play(self) -> PlaybackState:
        if self._timeline is None or self._state.is_playing:
            return self._state
        self._last_tick_ms = None
        return self._publish(replace(self._state, is_playing=True, status=PLAYING))

    def pause(self) -> PlaybackState:
        if not self._state.is_playing:
            return self._state
        return self._publish(replace(self._state, is_playing=False, status=PAUSED))

    def restart(self) -> PlaybackState:
        if self._timeline is None:
            return self._state
        self._last_tick_ms = None
        return self._publish(
            PlaybackState(speed_multiplier=self._state.speed_multiplier)
        )

    def set_speed(self, speed: float) -> PlaybackState:
        if self._timeline is None or not isinstance(speed, (int, float)) or not math.isfinite(speed):
            return self._state
        speed = min(MAX_SPEED, max(MIN_SPEED, float(speed)))
        return self._publish(replace(self._state, speed_multiplier=speed))

    def seek(self, ms: float) -> PlaybackState:
        if self._timeline is None or not isinstance(ms, (int, float)) or math.isnan(ms):
            return self._state
        target = min(float(self._timeline.total_duration_ms), max(0.0, float(ms)))
        status = self._state.status
        if status == STOPPED and target > 0:
            # stopped means "at zero"; a seek away from it leaves the session paused
            status = PAUSED
        return self._publish(
            replace(
                self._state,
                virtual_clock_ms=target,
                current_frame_index=self._frame_index(target),
                status=status,
            )
        )

    def seek_percent(self, pct: float) -> PlaybackState:
        if self._timeline is None or not isinstance(pct, (int, float)) or math.isnan(pct):
            return self._state
        pct = min(100.0, max(0.0, float(pct)))
        return self.seek(pct / 100.0 * self._timeline.total_duration_ms)

    def tick(self, now_ms: Optional[float] = None) -> PlaybackState:
        """Advance the virtual clock by the wall time since the previous tick."""
        if self._timeline is None or not self._state.is_playing:
            return self._state

        now = self._clock() if now_ms is None else now_ms
        if self._last_tick_ms is None:
            self._last_tick_ms = now
            return self._state
        delta = max(0.0, now - self._last_tick_ms)
        self._last_tick_ms = now

        s = self._state
        clock_ms = s.virtual_clock_ms + delta * s.speed_multiplier * self.pace_constant
        total = self._timeline.total_duration_ms
        if clock_ms >= total:
            logger.debug(f"Playback reached end | clock_ms={total}")
            return self._publish(
                replace(
                    s,
                    is_playing=False,
                    status=PAUSED,
                    virtual_clock_ms=float(total),
                    current_frame_index=max(0, len(self._frame_times) - 1),
                )
            )
        return self._publish(
            replace(s, virtual_clock_ms=clock_ms, current_frame_index=self._frame_index(clock_ms))
        )

    def current_frame(self) -> Optional[Frame]:
        if self._timeline is None or not self._timeline.frames:
            return None
        return self._timeline.frames[self._state.current_frame_index]

    def interpolate(self, ms: Optional[float] = None) -> List[CompetitorState]:
        """Competitor states at ms (default: the virtual clock)."""
        if self._timeline is None or not self._timeline.frames:
            return []
        if ms is None:
            ms = self._state.virtual_clock_ms

        frames = self._timeline.frames
        i = self._frame_index(ms)
        floor = frames[i]
        if i + 1 >= len(frames):
            return list(floor.competitor_states)

        upcoming = frames[i + 1]
        span = upcoming.time_ms - floor.time_ms
        t_local = min(1.0, max(0.0, (ms - floor.time_ms) / span)) if span > 0 else 0.0

        by_id = {s.competitor_id: s for s in upcoming.competitor_states}
        return [interpolate_state(s, by_id.get(s.competitor_id), t_local) for s in floor.competitor_states]

    async def run(self) -> PlaybackState:
        """Cooperative refresh loop: one tick per refresh while playing.

        Stops re-arming as soon as the session is no longer playing (pause, restart or end).
        """
        period = 1.0 / self.refresh_hz
        while True:
            if not self._state.is_playing:
                return self._state
            self.tick()
            await asyncio.sleep(period)
