"""Replay engine.

Runs the whole pipeline for one race:
provider records -> lap series -> event log -> frames -> Timeline.

Nothing is kept between calls; every request builds its own timeline.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from replay.errors import MissingDataError
from replay.events import build_event_log
from replay.frames import DEFAULT_INTERVAL_MS, compress_timeline, generate_timeline, pit_lap_index
from replay.models import (
    Competitor,
    CompetitorLapSeries,
    CompetitorState,
    PitStopSample,
    PlaybackState,
    RaceEvent,
    RaceMetadata,
    ResultEntry,
    Timeline,
)
from replay.normalizer import (
    build_series,
    find_fastest_lap,
    lap_samples_from_raw,
    metadata_from_raw,
    pit_stops_from_raw,
    results_from_raw,
    retirement_laps,
    roster_from_raw,
)
from replay.playback import PlaybackEngine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NormalizedRace:
    metadata: RaceMetadata
    roster: Tuple[Competitor, ...]
    results: Tuple[ResultEntry, ...]
    series: Tuple[CompetitorLapSeries, ...]
    pit_stops: Tuple[PitStopSample, ...]
    retirements: Dict[str, Tuple[int, str]]
    fastest: Optional[ResultEntry]


def normalize_race(
    race: Dict[str, Any],
    raw_laps: Sequence[Dict[str, Any]],
    raw_pit_stops: Sequence[Dict[str, Any]] = (),
) -> NormalizedRace:
    """Parse every provider record for one race. Raises FormatError / MissingDataError."""
    if not raw_laps:
        raise MissingDataError("Lap data not available for this race")

    raw_results = race.get("Results") or []
    roster = roster_from_raw(raw_results)
    results = results_from_raw(raw_results)
    samples = lap_samples_from_raw(raw_laps)
    pit_stops = pit_stops_from_raw(raw_pit_stops)

    # Anyone timed but missing from the classification still gets a (bare) roster entry.
    known = {c.competitor_id for c in roster}
    for sample in samples:
        if sample.competitor_id not in known:
            known.add(sample.competitor_id)
            roster.append(Competitor(competitor_id=sample.competitor_id, code=sample.competitor_id[:3].upper()))

    series = build_series(samples, [c.competitor_id for c in roster])
    return NormalizedRace(
        metadata=metadata_from_raw(race),
        roster=tuple(roster),
        results=tuple(results),
        series=tuple(series),
        pit_stops=tuple(pit_stops),
        retirements=retirement_laps(results),
        fastest=find_fastest_lap(results),
    )


def race_events(normalized: NormalizedRace) -> List[RaceEvent]:
    return build_event_log(
        normalized.series,
        normalized.pit_stops,
        normalized.retirements,
        normalized.fastest,
    )


def build_timeline(
    race: Dict[str, Any],
    raw_laps: Sequence[Dict[str, Any]],
    raw_pit_stops: Sequence[Dict[str, Any]] = (),
    interval_ms: int = DEFAULT_INTERVAL_MS,
    max_frames: Optional[int] = None,
) -> Timeline:
    """Build the full Timeline for one race, optionally compressed to max_frames."""
    normalized = normalize_race(race, raw_laps, raw_pit_stops)
    events = race_events(normalized)
    timeline = generate_timeline(
        metadata=normalized.metadata,
        roster=normalized.roster,
        series=normalized.series,
        events=events,
        pit_laps=pit_lap_index(normalized.pit_stops),
        retirements={k: lap for k, (lap, _) in normalized.retirements.items()},
        fastest_competitor_id=normalized.fastest.competitor_id if normalized.fastest else None,
        interval_ms=interval_ms,
    )
    if max_frames:
        timeline = compress_timeline(timeline, max_frames)

    m = normalized.metadata
    logger.info(
        f"Timeline built | race={m.season}/{m.round} | competitors={len(timeline.roster)} "
        f"| events={len(timeline.events)} | frames={len(timeline.frames)}"
    )
    return timeline


def state_at(timeline: Timeline, time_ms: float) -> Tuple[PlaybackState, List[CompetitorState]]:
    """Rebuild the (interpolated) race state at one race time."""
    engine = PlaybackEngine(timeline)
    state = engine.seek(time_ms)
    return state, engine.interpolate()
