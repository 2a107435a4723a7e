"""Lap time normalizer.

Turns provider records (Ergast/Jolpica shapes) into typed samples, and lap samples into
per-competitor series with cumulative times and a bounded pace factor.

Any lap time string that cannot be parsed aborts the whole call with FormatError.
Pit stop durations are read leniently: they never enter cumulative times.
"""
import logging
import math
import re
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from replay.errors import FormatError, MissingDataError
from replay.models import (
    Competitor,
    CompetitorLapSeries,
    LapRecord,
    LapSample,
    PitStopSample,
    RaceMetadata,
    ResultEntry,
)

logger = logging.getLogger(__name__)

PACE_FACTOR_MIN = 0.5
PACE_FACTOR_MAX = 1.5
# Used when no lap has a usable time (1:30.000).
DEFAULT_AVERAGE_LAP_MS = 90000

_MINUTES_RE = re.compile(r"^(\d+):([0-5]\d)\.(\d{1,3})$")
_SECONDS_RE = re.compile(r"^([0-5]?\d)\.(\d{1,3})$")

TEAM_COLORS = {
    "red_bull": "#3671C6",
    "ferrari": "#E8002D",
    "mercedes": "#27F4D2",
    "mclaren": "#FF8000",
    "aston_martin": "#229971",
    "alpine": "#FF87BC",
    "williams": "#64C4FF",
    "rb": "#6692FF",
    "sauber": "#52E252",
    "haas": "#B6BABD",
    "alphatauri": "#5E8FAA",
    "alfa": "#C92D4B",
    "racing_point": "#F596C8",
    "renault": "#FFF500",
    "toro_rosso": "#469BFF",
}
DEFAULT_COLOR = "#888888"


def parse_time(text: str) -> int:
    """Parse "M:SS.mmm" or "SS.mmm" into whole milliseconds."""
    if not isinstance(text, str):
        raise FormatError(f"Lap time must be a string, got {type(text).__name__}", text=None)

    s = text.strip()
    m = _MINUTES_RE.match(s)
    if m:
        minutes, seconds, fraction = m.groups()
    else:
        m = _SECONDS_RE.match(s)
        if not m:
            raise FormatError(f"Unparsable lap time: {text!r}", text=text)
        minutes = "0"
        seconds, fraction = m.groups()

    return int(minutes) * 60000 + int(seconds) * 1000 + int(fraction.ljust(3, "0"))


def format_lap_time(ms: float) -> str:
    """Inverse of parse_time for display: 83456 -> "1:23.456"."""
    if ms <= 0:
        return "--:--.---"
    total = int(round(ms))
    minutes, rest = divmod(total, 60000)
    seconds, millis = divmod(rest, 1000)
    if minutes > 0:
        return f"{minutes}:{seconds:02d}.{millis:03d}"
    return f"{seconds}.{millis:03d}"


def _to_int(value: Any, what: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise FormatError(f"Invalid {what}: {value!r}", text=str(value)) from None


def _to_float(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def lap_samples_from_raw(raw_laps: Iterable[Dict[str, Any]]) -> List[LapSample]:
    """Flatten provider lap pages ({"number", "Timings": [...]}) into LapSamples."""
    samples: List[LapSample] = []
    for lap in raw_laps:
        lap_number = _to_int(lap.get("number"), "lap number")
        for timing in lap.get("Timings") or []:
            text = timing.get("time")
            samples.append(
                LapSample(
                    competitor_id=str(timing["driverId"]),
                    lap_number=lap_number,
                    position=_to_int(timing.get("position"), "position"),
                    raw_time_text=text,
                    time_ms=parse_time(text),
                )
            )
    return samples


def _pit_duration_ms(p: Dict[str, Any]) -> Optional[int]:
    """Stop duration in ms; None when the provider text is not a time."""
    text = p.get("duration")
    try:
        return parse_time(text)
    except FormatError:
        pass
    # Long stationary periods (red flags) come as plain seconds, e.g. "1843.227".
    seconds = _to_float(text)
    if seconds is not None and math.isfinite(seconds) and seconds >= 0:
        return int(round(seconds * 1000))
    logger.warning(f"Pit stop duration ignored | driver={p.get('driverId')} | lap={p.get('lap')} | duration={text!r}")
    return None


def pit_stops_from_raw(raw_pit_stops: Iterable[Dict[str, Any]]) -> List[PitStopSample]:
    """Convert provider pit stop rows into PitStopSamples."""
    return [
        PitStopSample(
            competitor_id=str(p["driverId"]),
            lap_number=_to_int(p.get("lap"), "pit lap"),
            stop_sequence=_to_int(p.get("stop"), "stop number"),
            duration_ms=_pit_duration_ms(p),
        )
        for p in raw_pit_stops
    ]


def results_from_raw(raw_results: Iterable[Dict[str, Any]]) -> List[ResultEntry]:
    """Convert the race classification into ResultEntry rows."""
    entries: List[ResultEntry] = []
    for r in raw_results:
        fastest = r.get("FastestLap") or {}
        fastest_time = (fastest.get("Time") or {}).get("time")
        entries.append(
            ResultEntry(
                competitor_id=str(r["Driver"]["driverId"]),
                position=_to_int(r.get("position"), "result position"),
                grid=_to_int(r.get("grid", 0), "grid position"),
                laps=_to_int(r.get("laps", 0), "laps completed"),
                status=r.get("status") or "",
                fastest_lap_rank=_to_int(fastest["rank"], "fastest lap rank") if fastest.get("rank") else None,
                fastest_lap_number=_to_int(fastest["lap"], "fastest lap") if fastest.get("lap") else None,
                fastest_lap_time_ms=parse_time(fastest_time) if fastest_time else None,
                fastest_lap_avg_speed=_to_float((fastest.get("AverageSpeed") or {}).get("speed")),
            )
        )
    return entries


def roster_from_raw(raw_results: Iterable[Dict[str, Any]]) -> List[Competitor]:
    """Build the competitor roster (in classification order) from race results."""
    roster: List[Competitor] = []
    for r in raw_results:
        driver = r.get("Driver") or {}
        constructor = r.get("Constructor") or {}
        driver_id = str(driver["driverId"])
        constructor_id = constructor.get("constructorId", "")
        roster.append(
            Competitor(
                competitor_id=driver_id,
                code=driver.get("code") or driver_id[:3].upper(),
                permanent_number=str(r.get("number") or driver.get("permanentNumber") or ""),
                given_name=driver.get("givenName", ""),
                family_name=driver.get("familyName", ""),
                nationality=driver.get("nationality", ""),
                constructor_id=constructor_id,
                constructor_name=constructor.get("name", ""),
                color=TEAM_COLORS.get(constructor_id, DEFAULT_COLOR),
            )
        )
    return roster


def metadata_from_raw(race: Dict[str, Any]) -> RaceMetadata:
    circuit = race.get("Circuit") or {}
    location = circuit.get("Location") or {}
    laps = [_to_int(r.get("laps", 0), "laps completed") for r in race.get("Results") or []]
    return RaceMetadata(
        season=str(race.get("season", "")),
        round=str(race.get("round", "")),
        race_name=race.get("raceName", ""),
        circuit_id=circuit.get("circuitId", ""),
        circuit_name=circuit.get("circuitName", ""),
        country=location.get("country", ""),
        locality=location.get("locality", ""),
        date=race.get("date", ""),
        time=race.get("time"),
        total_laps=max(laps) if laps else 0,
    )


def is_finished(status: str) -> bool:
    """True for "Finished" and lapped finishes such as "+1 Lap"."""
    s = (status or "").strip().lower()
    return s == "finished" or s.startswith("+")


def retirement_laps(results: Iterable[ResultEntry]) -> Dict[str, Tuple[int, str]]:
    """competitor_id -> (laps completed, status) for everyone who did not finish."""
    return {
        r.competitor_id: (r.laps, r.status)
        for r in results
        if not is_finished(r.status)
    }


def find_fastest_lap(results: Iterable[ResultEntry]) -> Optional[ResultEntry]:
    """Return the result holding fastest-lap rank 1, if the source has one."""
    for r in results:
        if r.fastest_lap_rank == 1 and r.fastest_lap_number:
            return r
    return None


def build_series(
    lap_samples: Sequence[LapSample],
    competitor_ids: Sequence[str],
) -> List[CompetitorLapSeries]:
    """Build one cumulative-time series per competitor, in competitor_ids order."""
    if not lap_samples:
        raise MissingDataError("No lap records for this race")

    by_competitor: Dict[str, Dict[int, LapSample]] = {}
    for sample in lap_samples:
        if sample.time_ms <= 0:
            raise FormatError(
                f"Non-positive lap time for {sample.competitor_id} lap {sample.lap_number}",
                text=sample.raw_time_text,
            )
        laps = by_competitor.setdefault(sample.competitor_id, {})
        if sample.lap_number in laps:
            raise FormatError(
                f"Duplicate lap sample for {sample.competitor_id} lap {sample.lap_number}",
                text=sample.raw_time_text,
            )
        laps[sample.lap_number] = sample

    valid = [s.time_ms for s in lap_samples if s.time_ms > 0]
    average = sum(valid) / len(valid) if valid else DEFAULT_AVERAGE_LAP_MS

    series: List[CompetitorLapSeries] = []
    for competitor_id in competitor_ids:
        laps = by_competitor.get(competitor_id, {})
        records: List[LapRecord] = []
        cumulative = 0
        lap_number = 1
        while lap_number in laps:
            sample = laps[lap_number]
            cumulative += sample.time_ms
            pace = max(PACE_FACTOR_MIN, min(PACE_FACTOR_MAX, average / sample.time_ms))
            records.append(
                LapRecord(
                    lap_number=lap_number,
                    position=sample.position,
                    lap_time_ms=sample.time_ms,
                    cumulative_time_ms=cumulative,
                    pace_factor=pace,
                )
            )
            lap_number += 1

        if len(records) < len(laps):
            logger.warning(
                f"Lap gap | competitor={competitor_id} | kept={len(records)} | dropped={len(laps) - len(records)}"
            )
        series.append(CompetitorLapSeries(competitor_id=competitor_id, laps=tuple(records)))

    logger.info(
        f"Lap series built | competitors={len(series)} | samples={len(lap_samples)} | avg_lap_ms={average:.0f}"
    )
    return series
