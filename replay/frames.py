"""Frame generator.

Samples race time at a fixed interval and computes every competitor's state at each sample.
All states go into one StateBuffer; frames only keep their slice bounds.
"""
import logging
import math
from bisect import bisect_left
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from replay.models import (
    Competitor,
    CompetitorLapSeries,
    CompetitorState,
    Frame,
    PitStopSample,
    RaceEvent,
    RaceMetadata,
    StateBuffer,
    Timeline,
)

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_MS = 500
# A pitted competitor counts as "in the pit lane" only near the end of that lap.
PIT_WINDOW_PCT = 85.0


def pit_lap_index(pit_stops: Iterable[PitStopSample]) -> Dict[str, FrozenSet[int]]:
    """competitor_id -> laps on which they pitted."""
    index: Dict[str, Set[int]] = {}
    for stop in pit_stops:
        index.setdefault(stop.competitor_id, set()).add(stop.lap_number)
    return {k: frozenset(v) for k, v in index.items()}


def total_duration_ms(series: Iterable[CompetitorLapSeries]) -> int:
    return max((s.final_cumulative_ms for s in series), default=0)


def leader_times(series: Iterable[CompetitorLapSeries]) -> Dict[int, int]:
    """lap_number -> running sum of the P1 lap times up to that lap.

    Laps nobody led are left out and do not advance the sum.
    """
    p1_lap_ms: Dict[int, int] = {}
    for s in series:
        for lap in s.laps:
            if lap.position == 1 and lap.lap_number not in p1_lap_ms:
                p1_lap_ms[lap.lap_number] = lap.lap_time_ms

    times: Dict[int, int] = {}
    total = 0
    for lap_number in sorted(p1_lap_ms):
        total += p1_lap_ms[lap_number]
        times[lap_number] = total
    return times


class _Sampler:
    """Per-timeline lookup tables used while sampling competitor states."""

    def __init__(
        self,
        series: Sequence[CompetitorLapSeries],
        pit_laps: Mapping[str, Iterable[int]],
        retirements: Mapping[str, int],
        fastest_competitor_id: Optional[str],
    ):
        self.series = series
        self.cumulative = {s.competitor_id: [lap.cumulative_time_ms for lap in s.laps] for s in series}
        self.pit_laps = {k: set(v) for k, v in pit_laps.items()}
        self.retirements = retirements
        self.fastest_competitor_id = fastest_competitor_id
        self.leader_times = leader_times(series)

    def state(self, s: CompetitorLapSeries, t: int) -> CompetitorState:
        if not s.laps:
            return CompetitorState(competitor_id=s.competitor_id)

        cums = self.cumulative[s.competitor_id]
        i = bisect_left(cums, t)
        if i >= len(cums):
            lap = s.laps[-1]
            progress = 100.0
        else:
            lap = s.laps[i]
            lap_start = cums[i - 1] if i > 0 else 0
            progress = min(100.0, max(0.0, 100.0 * (t - lap_start) / lap.lap_time_ms))

        in_pit = lap.lap_number in self.pit_laps.get(s.competitor_id, ()) and PIT_WINDOW_PCT < progress < 100.0
        retired_on = self.retirements.get(s.competitor_id)
        retired = retired_on is not None and lap.lap_number >= retired_on

        if lap.position == 1:
            gap = 0
        else:
            # Same lap number, not same instant: lapped cars get an approximate gap.
            gap = max(0, lap.cumulative_time_ms - self.leader_times.get(lap.lap_number, 0))

        return CompetitorState(
            competitor_id=s.competitor_id,
            position=lap.position,
            progress_pct=progress,
            lap_number=lap.lap_number,
            in_pit=in_pit,
            retired=retired,
            has_fastest_lap=s.competitor_id == self.fastest_competitor_id,
            gap_to_leader_ms=gap,
            last_lap_time_ms=lap.lap_time_ms,
        )

    def frame_states(self, t: int) -> List[CompetitorState]:
        states = [self.state(s, t) for s in self.series]
        # Running by position, then unplaced, then retired; sort is stable.
        states.sort(key=lambda st: (st.retired, st.position == 0, st.position))
        return states


def _event_slots(events: Sequence[RaceEvent], frame_count: int, interval_ms: int) -> List[List[RaceEvent]]:
    """Give each event to the frame within half an interval of it (exactly one frame each)."""
    slots: List[List[RaceEvent]] = [[] for _ in range(frame_count)]
    if frame_count == 0:
        return slots
    half = interval_ms / 2
    for e in events:
        i = int(math.floor((e.time_ms + half) / interval_ms))
        slots[min(frame_count - 1, max(0, i))].append(e)
    return slots


def generate_frames(
    series: Sequence[CompetitorLapSeries],
    events: Sequence[RaceEvent],
    pit_laps: Mapping[str, Iterable[int]],
    retirements: Mapping[str, int],
    fastest_competitor_id: Optional[str],
    interval_ms: int = DEFAULT_INTERVAL_MS,
) -> Tuple[int, Tuple[Frame, ...]]:
    """Sample t = 0, interval, ... up to the race duration (inclusive).

    Returns (total_duration_ms, frames).
    """
    if interval_ms <= 0:
        raise ValueError("interval_ms must be > 0")

    total = total_duration_ms(series)
    frame_count = total // interval_ms + 1
    sampler = _Sampler(series, pit_laps, retirements, fastest_competitor_id)
    slots = _event_slots(events, frame_count, interval_ms)

    buffer = StateBuffer()
    frames: List[Frame] = []
    for i in range(frame_count):
        t = i * interval_ms
        start, stop = buffer.append_all(sampler.frame_states(t))
        frames.append(Frame(time_ms=t, start=start, stop=stop, buffer=buffer, events=tuple(slots[i])))

    return total, tuple(frames)


def generate_timeline(
    metadata: Optional[RaceMetadata],
    roster: Sequence[Competitor],
    series: Sequence[CompetitorLapSeries],
    events: Sequence[RaceEvent],
    pit_laps: Mapping[str, Iterable[int]],
    retirements: Mapping[str, int],
    fastest_competitor_id: Optional[str],
    interval_ms: int = DEFAULT_INTERVAL_MS,
) -> Timeline:
    total, frames = generate_frames(
        series, events, pit_laps, retirements, fastest_competitor_id, interval_ms
    )
    logger.info(
        f"Frames generated | duration_ms={total} | interval_ms={interval_ms} | frames={len(frames)}"
    )
    return Timeline(
        metadata=metadata,
        roster=tuple(roster),
        total_duration_ms=total,
        frames=frames,
        events=tuple(events),
    )


def compress_timeline(timeline: Timeline, target_frame_count: int) -> Timeline:
    """Thin frames by stride, keeping the first, the last and any frame at an event time.

    Events attached to a dropped frame move to the next kept frame.
    Returns the same timeline when it already fits the target.
    """
    frames = timeline.frames
    n = len(frames)
    if target_frame_count >= n:
        return timeline

    stride = math.ceil(n / max(1, target_frame_count))
    event_times = {e.time_ms for e in timeline.events}

    kept: List[Frame] = []
    carried: List[RaceEvent] = []
    for i, frame in enumerate(frames):
        keep = i == 0 or i == n - 1 or i % stride == 0 or frame.time_ms in event_times
        if not keep:
            carried.extend(frame.events)
            continue
        if carried:
            frame = Frame(
                time_ms=frame.time_ms,
                start=frame.start,
                stop=frame.stop,
                buffer=frame.buffer,
                events=tuple(carried) + frame.events,
            )
            carried = []
        kept.append(frame)

    logger.info(f"Timeline compressed | frames={n} -> {len(kept)} | stride={stride}")
    return Timeline(
        metadata=timeline.metadata,
        roster=timeline.roster,
        total_duration_ms=timeline.total_duration_ms,
        frames=tuple(kept),
        events=timeline.events,
    )


def timeline_slice(timeline: Timeline, start_ms: float, end_ms: float) -> List[Frame]:
    """Frames with start_ms <= time <= end_ms."""
    return [f for f in timeline.frames if start_ms <= f.time_ms <= end_ms]
