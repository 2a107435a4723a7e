"""Tests for the end-to-end timeline build."""
import pytest

from replay.engine import build_timeline, normalize_race, race_events, state_at
from replay.errors import FormatError, MissingDataError
from replay.models import FASTEST_LAP, OVERTAKE, PIT_STOP, RETIREMENT
from services.mock_race import PIT_LAPS, RETIREMENTS, TOTAL_LAPS, mock_race_data
from tests.conftest import raw_race, result_row


@pytest.fixture(scope="module")
def mock_timeline():
    race, laps, pit_stops = mock_race_data()
    return build_timeline(race, laps, pit_stops)


def _lap(number, *timings):
    return {
        "number": str(number),
        "Timings": [{"driverId": d, "position": str(p), "time": t} for d, p, t in timings],
    }


# ============================================================
# SAMPLE RACE
# ============================================================

class TestSampleRace:

    def test_deterministic(self):
        assert mock_race_data() == mock_race_data()
        assert mock_race_data(seed=1) != mock_race_data(seed=2)

    def test_metadata_and_roster(self, mock_timeline):
        m = mock_timeline.metadata
        assert (m.season, m.round, m.total_laps) == ("2024", "15", TOTAL_LAPS)
        assert len(mock_timeline.roster) == 10
        assert mock_timeline.roster[0].color != "#888888"

    def test_frames_cover_the_race(self, mock_timeline):
        frames = mock_timeline.frames
        assert frames[0].time_ms == 0
        assert 0 <= mock_timeline.total_duration_ms - frames[-1].time_ms < 500
        assert all(b.time_ms - a.time_ms <= 500 for a, b in zip(frames, frames[1:]))
        assert all(len(f.competitor_states) == 10 for f in frames)

    def test_event_kinds(self, mock_timeline):
        kinds = [e.type for e in mock_timeline.events]
        assert kinds.count(PIT_STOP) == len(PIT_LAPS)
        assert kinds.count(RETIREMENT) == len(RETIREMENTS)
        assert kinds.count(FASTEST_LAP) == 1
        assert all(a.time_ms <= b.time_ms for a, b in zip(mock_timeline.events, mock_timeline.events[1:]))

    def test_retired_competitor_sinks(self, mock_timeline):
        last = mock_timeline.frames[-1].competitor_states
        assert last[-1].competitor_id == "stroll"
        assert last[-1].retired is True
        assert not any(s.retired for s in last[:-1])

    def test_overtakes_are_real_gains(self, mock_timeline):
        for e in mock_timeline.events:
            if e.type == OVERTAKE:
                assert e.payload["position"] < e.payload["previousPosition"]
                assert e.lap_number > 1

    def test_max_frames(self):
        race, laps, pit_stops = mock_race_data()
        full = build_timeline(race, laps, pit_stops)
        small = build_timeline(race, laps, pit_stops, max_frames=100)

        assert len(small.frames) < len(full.frames)
        assert small.frames[-1].time_ms == full.frames[-1].time_ms
        assert sum(len(f.events) for f in small.frames) == len(full.events)


# ============================================================
# ERRORS
# ============================================================

class TestErrors:

    def test_no_laps(self):
        race, laps, pit_stops = raw_race([result_row("A", 1, 1)], [])
        with pytest.raises(MissingDataError):
            build_timeline(race, laps, pit_stops)

    def test_bad_time_text(self):
        race, laps, pit_stops = raw_race(
            [result_row("A", 1, 1)],
            [_lap(1, ("A", 1, "one minute"))],
        )
        with pytest.raises(FormatError):
            build_timeline(race, laps, pit_stops)

    def test_timed_but_unclassified_competitor_joins_roster(self):
        race, laps, pit_stops = raw_race(
            [result_row("A", 1, 2)],
            [
                _lap(1, ("A", 1, "1:20.000"), ("B", 2, "1:21.000")),
                _lap(2, ("A", 1, "1:20.000"), ("B", 2, "1:21.000")),
            ],
        )
        normalized = normalize_race(race, laps, pit_stops)

        assert [c.competitor_id for c in normalized.roster] == ["A", "B"]
        assert normalized.roster[1].code == "B"
        assert normalized.series[1].final_cumulative_ms == 162000
        assert len(race_events(normalized)) == 4


# ============================================================
# STATE LOOKUP
# ============================================================

class TestStateAt:

    def test_clamps_to_race(self, mock_timeline):
        start, _ = state_at(mock_timeline, -5)
        end, states = state_at(mock_timeline, 10 ** 9)

        assert start.virtual_clock_ms == 0
        assert end.virtual_clock_ms == mock_timeline.total_duration_ms
        assert end.current_frame_index == len(mock_timeline.frames) - 1
        assert states == list(mock_timeline.frames[-1].competitor_states)

    def test_mid_race(self, mock_timeline):
        playback, states = state_at(mock_timeline, 100250)
        assert playback.current_frame_index == 200
        assert len(states) == 10
