"""Event detector.

Derives the race event log (lap completions, pit stops, overtakes, retirements and the
fastest lap) from normalized lap series, plus the small query helpers the event feed uses.

Timestamps are race time in ms. A built log is sorted by time; events sharing a time keep
the category order in EVENT_TYPES and then their generation order.
"""
import logging
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from replay.models import (
    EVENT_ORDER,
    FASTEST_LAP,
    LAP_COMPLETE,
    OVERTAKE,
    PIT_STOP,
    RETIREMENT,
    Competitor,
    CompetitorLapSeries,
    PitStopSample,
    RaceEvent,
    ResultEntry,
)
from replay.normalizer import format_lap_time

logger = logging.getLogger(__name__)

# Pit entry is placed 90% of the way through the pitted lap.
PIT_ENTRY_FRACTION = 0.1
# Overtakes are placed at mid-lap.
OVERTAKE_FRACTION = 0.5


def _by_id(series: Iterable[CompetitorLapSeries]) -> Dict[str, CompetitorLapSeries]:
    return {s.competitor_id: s for s in series}


def sort_events(events: Iterable[RaceEvent]) -> List[RaceEvent]:
    """Sort by time, then category order; sorted() is stable so generation order breaks the rest."""
    return sorted(events, key=lambda e: (e.time_ms, EVENT_ORDER[e.type]))


def lap_complete_events(series: Sequence[CompetitorLapSeries]) -> List[RaceEvent]:
    events: List[RaceEvent] = []
    for s in series:
        for lap in s.laps:
            events.append(
                RaceEvent(
                    type=LAP_COMPLETE,
                    lap_number=lap.lap_number,
                    time_ms=lap.cumulative_time_ms,
                    competitor_id=s.competitor_id,
                    payload={"position": lap.position, "lapTimeMs": lap.lap_time_ms},
                )
            )
    return events


def pit_stop_events(
    pit_stops: Sequence[PitStopSample],
    series: Sequence[CompetitorLapSeries],
) -> List[RaceEvent]:
    """One event per stop, slightly before the end of the pitted lap."""
    lookup = _by_id(series)
    events: List[RaceEvent] = []
    for stop in pit_stops:
        s = lookup.get(stop.competitor_id)
        lap = s.lap(stop.lap_number) if s else None
        if lap is None:
            logger.debug(f"Pit stop skipped | competitor={stop.competitor_id} | lap={stop.lap_number}")
            continue
        events.append(
            RaceEvent(
                type=PIT_STOP,
                lap_number=stop.lap_number,
                time_ms=lap.cumulative_time_ms - PIT_ENTRY_FRACTION * lap.lap_time_ms,
                competitor_id=stop.competitor_id,
                payload={"stopSequence": stop.stop_sequence, "durationMs": stop.duration_ms},
            )
        )
    return events


def detect_overtakes(series: Sequence[CompetitorLapSeries]) -> List[RaceEvent]:
    """Emit an overtake whenever a competitor's position improves from lap N-1 to lap N.

    The overtaken competitor is whoever held the new position at lap N-1.
    """
    holders: Dict[int, Dict[int, str]] = {}
    for s in series:
        for lap in s.laps:
            holders.setdefault(lap.lap_number, {}).setdefault(lap.position, s.competitor_id)

    events: List[RaceEvent] = []
    for s in series:
        for prev, lap in zip(s.laps, s.laps[1:]):
            if lap.position >= prev.position:
                continue
            overtaken = holders.get(prev.lap_number, {}).get(lap.position)
            events.append(
                RaceEvent(
                    type=OVERTAKE,
                    lap_number=lap.lap_number,
                    time_ms=lap.cumulative_time_ms - OVERTAKE_FRACTION * lap.lap_time_ms,
                    competitor_id=s.competitor_id,
                    payload={
                        "position": lap.position,
                        "previousPosition": prev.position,
                        "overtakenId": overtaken,
                    },
                )
            )
    return events


def retirement_events(
    retirements: Mapping[str, Tuple[int, str]],
    series: Sequence[CompetitorLapSeries],
) -> List[RaceEvent]:
    """One event per retired competitor, at the end of their last recorded lap."""
    lookup = _by_id(series)
    events: List[RaceEvent] = []
    for competitor_id, (lap_number, reason) in retirements.items():
        s = lookup.get(competitor_id)
        events.append(
            RaceEvent(
                type=RETIREMENT,
                lap_number=lap_number,
                time_ms=s.final_cumulative_ms if s else 0,
                competitor_id=competitor_id,
                payload={"reason": reason},
            )
        )
    return events


def fastest_lap_event(
    fastest: Optional[ResultEntry],
    series: Sequence[CompetitorLapSeries],
) -> Optional[RaceEvent]:
    if fastest is None or fastest.fastest_lap_number is None:
        return None
    s = _by_id(series).get(fastest.competitor_id)
    lap = s.lap(fastest.fastest_lap_number) if s else None
    if lap is None:
        return None
    return RaceEvent(
        type=FASTEST_LAP,
        lap_number=lap.lap_number,
        time_ms=lap.cumulative_time_ms,
        competitor_id=fastest.competitor_id,
        payload={
            "lapTimeMs": fastest.fastest_lap_time_ms or lap.lap_time_ms,
            "averageSpeed": fastest.fastest_lap_avg_speed,
        },
    )


def build_event_log(
    series: Sequence[CompetitorLapSeries],
    pit_stops: Sequence[PitStopSample] = (),
    retirements: Optional[Mapping[str, Tuple[int, str]]] = None,
    fastest: Optional[ResultEntry] = None,
) -> List[RaceEvent]:
    """Merge every derived event into one chronologically sorted log."""
    events: List[RaceEvent] = []
    events.extend(lap_complete_events(series))
    events.extend(pit_stop_events(pit_stops, series))
    events.extend(detect_overtakes(series))
    events.extend(retirement_events(retirements or {}, series))
    fl = fastest_lap_event(fastest, series)
    if fl is not None:
        events.append(fl)

    log = sort_events(events)
    logger.info(f"Event log built | events={len(log)} | overtakes={sum(e.type == OVERTAKE for e in log)}")
    return log


def filter_events(
    events: Iterable[RaceEvent],
    types: Optional[Iterable[str]] = None,
    start_ms: Optional[float] = None,
    end_ms: Optional[float] = None,
    competitor_id: Optional[str] = None,
) -> List[RaceEvent]:
    """Filter by type(s), closed time window and/or competitor; order is preserved."""
    wanted = set(types) if types else None
    out: List[RaceEvent] = []
    for e in events:
        if wanted is not None and e.type not in wanted:
            continue
        if start_ms is not None and e.time_ms < start_ms:
            continue
        if end_ms is not None and e.time_ms > end_ms:
            continue
        if competitor_id is not None and e.competitor_id != competitor_id:
            continue
        out.append(e)
    return out


def events_in_window(events: Iterable[RaceEvent], now_ms: float, window_ms: float = 5000) -> List[RaceEvent]:
    """Events from the last window_ms of race time, up to and including now_ms."""
    return filter_events(events, start_ms=now_ms - window_ms, end_ms=now_ms)


def latest_competitor_event(
    events: Sequence[RaceEvent],
    competitor_id: str,
    now_ms: float,
) -> Optional[RaceEvent]:
    latest = None
    for e in events:
        if e.time_ms > now_ms:
            break
        if e.competitor_id == competitor_id:
            latest = e
    return latest


def describe_event(event: RaceEvent, roster: Mapping[str, Competitor]) -> str:
    """One-line, human readable description for the event feed."""

    def label(competitor_id: Optional[str]) -> str:
        if not competitor_id:
            return "driver"
        c = roster.get(competitor_id)
        return c.code if c else competitor_id[:3].upper()

    name = label(event.competitor_id)
    p = event.payload

    if event.type == LAP_COMPLETE:
        return f"{name} completed lap {event.lap_number}"
    if event.type == PIT_STOP:
        duration = p.get("durationMs")
        if duration is None:
            return f"{name} pits"
        return f"{name} pits - {duration / 1000:.1f}s stop"
    if event.type == OVERTAKE:
        return f"{name} overtakes {label(p.get('overtakenId'))} for P{p.get('position')}"
    if event.type == RETIREMENT:
        return f"{name} OUT - {p.get('reason') or 'Retired'}"
    if event.type == FASTEST_LAP:
        return f"{name} sets fastest lap - {format_lap_time(p.get('lapTimeMs') or 0)}"
    return f"{name} - {event.type}"
