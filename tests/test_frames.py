"""Tests for the frame generator."""
import pytest

from replay.frames import (
    compress_timeline,
    generate_frames,
    generate_timeline,
    leader_times,
    pit_lap_index,
    timeline_slice,
    total_duration_ms,
)
from replay.models import PitStopSample
from replay.normalizer import build_series
from tests.conftest import samples_for


def _frame_at(timeline, t):
    return next(f for f in timeline.frames if f.time_ms == t)


# ============================================================
# SAMPLING
# ============================================================

class TestSampling:

    def test_frame_count_for_ten_seconds(self):
        series = build_series(samples_for("A", [(5000, 1), (5000, 1)]), ["A"])
        total, frames = generate_frames(series, [], {}, {}, None, interval_ms=500)

        assert total == 10000
        assert len(frames) == 21
        assert [f.time_ms for f in frames] == list(range(0, 10001, 500))

    def test_total_duration_is_longest_race(self, short_series):
        assert total_duration_ms(short_series) == 11000
        assert total_duration_ms([]) == 0

    def test_progress_and_gap(self, short_timeline):
        frame = _frame_at(short_timeline, 2500)
        a, b = frame.competitor_states

        assert (a.competitor_id, a.lap_number, a.progress_pct) == ("A", 1, 50.0)
        assert a.gap_to_leader_ms == 0
        assert a.has_fastest_lap is True
        assert a.last_lap_time_ms == 5000
        assert b.competitor_id == "B"
        assert b.progress_pct == pytest.approx(2500 / 5500 * 100)
        assert b.gap_to_leader_ms == 500
        assert b.has_fastest_lap is False

    def test_lap_end_belongs_to_finished_lap(self, short_timeline):
        a = _frame_at(short_timeline, 5000).state_for("A")
        assert (a.lap_number, a.progress_pct) == (1, 100.0)

    def test_past_last_lap_clamps_to_full_progress(self, short_timeline):
        frame = _frame_at(short_timeline, 10500)
        a = frame.state_for("A")
        b = frame.state_for("B")

        assert (a.lap_number, a.progress_pct) == (2, 100.0)
        assert b.lap_number == 2
        # gap compares cumulative times on the same lap number
        assert b.gap_to_leader_ms == 11000 - 10000

    def test_in_pit_only_near_end_of_pitted_lap(self, short_timeline):
        assert _frame_at(short_timeline, 10500).state_for("B").in_pit is True
        assert _frame_at(short_timeline, 10000).state_for("B").in_pit is False
        assert _frame_at(short_timeline, 11000).state_for("B").in_pit is False
        assert _frame_at(short_timeline, 3000).state_for("B").in_pit is False

    def test_retired_competitors_sort_last(self, overtake_series):
        timeline = generate_timeline(None, (), overtake_series, [], {}, {"B": 2}, None, interval_ms=20000)

        early = _frame_at(timeline, 40000)
        assert [(s.competitor_id, s.retired) for s in early.competitor_states] == [("A", False), ("B", False)]

        later = _frame_at(timeline, 100000)
        assert [(s.competitor_id, s.position, s.retired) for s in later.competitor_states] == [
            ("A", 2, False),
            ("B", 1, True),
        ]

    def test_competitor_without_laps(self):
        series = build_series(samples_for("A", [(5000, 1)]), ["Z", "A"])
        _, frames = generate_frames(series, [], {}, {}, None, interval_ms=1000)
        z = frames[2].competitor_states[-1]
        assert (z.competitor_id, z.position, z.lap_number, z.progress_pct) == ("Z", 0, 0, 0.0)

    def test_invalid_interval(self, short_series):
        with pytest.raises(ValueError):
            generate_frames(short_series, [], {}, {}, None, interval_ms=0)

    def test_leader_times_follow_p1(self, overtake_series):
        assert leader_times(overtake_series) == {1: 80000, 2: 160000, 3: 240000}

    def test_leader_time_sums_p1_lap_times_across_lead_change(self):
        samples = (
            samples_for("A", [(80000, 1), (80000, 2)])
            + samples_for("B", [(81000, 2), (78000, 1)])
        )
        series = build_series(samples, ["A", "B"])
        assert leader_times(series) == {1: 80000, 2: 80000 + 78000}

        _, frames = generate_frames(series, [], {}, {}, None, interval_ms=1000)
        a = frames[160].state_for("A")
        assert (a.lap_number, a.position) == (2, 2)
        assert a.gap_to_leader_ms == 160000 - 158000

    def test_leader_time_skips_lap_without_p1(self):
        samples = samples_for("A", [(80000, 1), (80000, 2), (80000, 1)])
        series = build_series(samples, ["A"])
        assert leader_times(series) == {1: 80000, 3: 160000}

    def test_pit_lap_index(self):
        stops = [
            PitStopSample("A", 10, 1, 22000),
            PitStopSample("A", 30, 2, 23000),
            PitStopSample("B", 12, 1, 21000),
        ]
        assert pit_lap_index(stops) == {"A": frozenset({10, 30}), "B": frozenset({12})}


# ============================================================
# EVENTS AND STORAGE
# ============================================================

class TestFrameEvents:

    def test_each_event_in_exactly_one_frame(self, short_timeline):
        attached = [(f.time_ms, e) for f in short_timeline.frames for e in f.events]

        assert len(attached) == len(short_timeline.events) == 5
        for t, e in attached:
            assert abs(e.time_ms - t) <= 250

    def test_pit_event_lands_on_nearest_frame(self, short_timeline):
        frame = _frame_at(short_timeline, 10500)
        assert [e.type for e in frame.events] == ["pitStop"]

    def test_frames_share_one_buffer(self, short_timeline):
        frames = short_timeline.frames
        buffer = frames[0].buffer
        assert all(f.buffer is buffer for f in frames)
        assert len(buffer) == sum(f.stop - f.start for f in frames) == 2 * len(frames)


# ============================================================
# COMPRESSION
# ============================================================

class TestCompression:

    def test_noop_when_under_budget(self, short_timeline):
        n = len(short_timeline.frames)
        assert compress_timeline(short_timeline, n) is short_timeline
        assert compress_timeline(short_timeline, n + 100) is short_timeline

    def test_keeps_first_last_and_event_frames(self, short_timeline):
        compressed = compress_timeline(short_timeline, 5)
        times = [f.time_ms for f in compressed.frames]

        assert times == [0, 2500, 5000, 5500, 7500, 10000, 11000]
        assert compressed.total_duration_ms == short_timeline.total_duration_ms
        assert compressed.events == short_timeline.events

    def test_no_event_lost(self, short_timeline):
        compressed = compress_timeline(short_timeline, 5)
        attached = [e for f in compressed.frames for e in f.events]
        assert sorted(e.time_ms for e in attached) == sorted(e.time_ms for e in short_timeline.events)
        # the pit stop frame (10500) was dropped, its event moved forward
        assert "pitStop" in [e.type for e in compressed.frames[-1].events]

    def test_slice(self, short_timeline):
        assert [f.time_ms for f in timeline_slice(short_timeline, 1000, 2000)] == [1000, 1500, 2000]
        assert timeline_slice(short_timeline, 20000, 30000) == []
