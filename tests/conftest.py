"""Shared fixtures: small hand-built races with known timings."""
from typing import List, Sequence, Tuple

import pytest

from replay.events import build_event_log
from replay.frames import generate_timeline, pit_lap_index
from replay.models import LapSample, PitStopSample
from replay.normalizer import build_series, format_lap_time


def samples_for(competitor_id: str, laps: Sequence[Tuple[int, int]]) -> List[LapSample]:
    """laps: (lap_time_ms, position) per lap, starting at lap 1."""
    return [
        LapSample(
            competitor_id=competitor_id,
            lap_number=n,
            position=position,
            raw_time_text=format_lap_time(ms),
            time_ms=ms,
        )
        for n, (ms, position) in enumerate(laps, start=1)
    ]


def raw_race(results, laps, pit_stops=()):
    """Wrap rows in the provider's race shape."""
    race = {
        "season": "2023",
        "round": "1",
        "raceName": "Test Grand Prix",
        "Circuit": {"circuitId": "test", "circuitName": "Test Ring", "Location": {"country": "Nowhere", "locality": "Town"}},
        "date": "2023-03-05",
        "Results": list(results),
    }
    return race, list(laps), list(pit_stops)


def result_row(driver_id, position, laps, status="Finished", fastest_rank=None, fastest_lap=None, fastest_time=None):
    row = {
        "number": str(position),
        "position": str(position),
        "grid": str(position),
        "laps": str(laps),
        "status": status,
        "Driver": {"driverId": driver_id, "code": driver_id[:3].upper(), "givenName": "", "familyName": driver_id},
        "Constructor": {"constructorId": "ferrari", "name": "Ferrari"},
    }
    if fastest_rank is not None:
        row["FastestLap"] = {
            "rank": str(fastest_rank),
            "lap": str(fastest_lap),
            "Time": {"time": fastest_time},
            "AverageSpeed": {"units": "kph", "speed": "231.500"},
        }
    return row


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def overtake_samples():
    """A and B, three 80s laps each; B passes A on lap 2."""
    return (
        samples_for("A", [(80000, 1), (80000, 2), (80000, 2)])
        + samples_for("B", [(80000, 2), (80000, 1), (80000, 1)])
    )


@pytest.fixture
def overtake_series(overtake_samples):
    return build_series(overtake_samples, ["A", "B"])


@pytest.fixture
def short_series():
    """A leads two 5s laps; B follows with two 5.5s laps. Race lasts 11000 ms."""
    samples = (
        samples_for("A", [(5000, 1), (5000, 1)])
        + samples_for("B", [(5500, 2), (5500, 2)])
    )
    return build_series(samples, ["A", "B"])


@pytest.fixture
def short_timeline(short_series):
    pit_stops = [PitStopSample(competitor_id="B", lap_number=2, stop_sequence=1, duration_ms=22000)]
    events = build_event_log(short_series, pit_stops)
    return generate_timeline(
        metadata=None,
        roster=(),
        series=short_series,
        events=events,
        pit_laps=pit_lap_index(pit_stops),
        retirements={},
        fastest_competitor_id="A",
        interval_ms=500,
    )
