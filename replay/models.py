"""Data model for the replay pipeline.

Everything built from raw data (series, events, frames, timeline) is frozen.
Frames do not own their competitor states: all states of a timeline live in one
append-only StateBuffer and each Frame points at a [start, stop) slice of it.

Field names on the wire are camelCase (see the to_dict methods).
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

LAP_COMPLETE = "lapComplete"
PIT_STOP = "pitStop"
OVERTAKE = "overtake"
RETIREMENT = "retirement"
FASTEST_LAP = "fastestLap"

# Tie-break order for events that share a timestamp.
EVENT_TYPES = (LAP_COMPLETE, PIT_STOP, OVERTAKE, RETIREMENT, FASTEST_LAP)
EVENT_ORDER = {event_type: rank for rank, event_type in enumerate(EVENT_TYPES)}

STOPPED = "stopped"
PLAYING = "playing"
PAUSED = "paused"


@dataclass(frozen=True)
class LapSample:
    competitor_id: str
    lap_number: int
    position: int
    raw_time_text: str
    time_ms: int


@dataclass(frozen=True)
class PitStopSample:
    competitor_id: str
    lap_number: int
    stop_sequence: int
    duration_ms: Optional[int]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "competitorId": self.competitor_id,
            "lapNumber": self.lap_number,
            "stopSequence": self.stop_sequence,
            "durationMs": self.duration_ms,
        }


@dataclass(frozen=True)
class LapRecord:
    lap_number: int
    position: int
    lap_time_ms: int
    cumulative_time_ms: int
    pace_factor: float

    def to_dict(self) -> Dict[str, Any]:
        # pace_factor only feeds interpolation, it is not part of the contract
        return {
            "lapNumber": self.lap_number,
            "position": self.position,
            "lapTimeMs": self.lap_time_ms,
            "cumulativeTimeMs": self.cumulative_time_ms,
        }


@dataclass(frozen=True)
class CompetitorLapSeries:
    competitor_id: str
    laps: Tuple[LapRecord, ...] = ()

    def lap(self, lap_number: int) -> Optional[LapRecord]:
        """Return the record for lap_number (laps are contiguous from 1)."""
        if 1 <= lap_number <= len(self.laps):
            return self.laps[lap_number - 1]
        return None

    @property
    def final_cumulative_ms(self) -> int:
        return self.laps[-1].cumulative_time_ms if self.laps else 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "competitorId": self.competitor_id,
            "laps": [lap.to_dict() for lap in self.laps],
        }


@dataclass(frozen=True)
class ResultEntry:
    """One row of the race classification."""
    competitor_id: str
    position: int
    grid: int
    laps: int
    status: str
    fastest_lap_rank: Optional[int] = None
    fastest_lap_number: Optional[int] = None
    fastest_lap_time_ms: Optional[int] = None
    fastest_lap_avg_speed: Optional[float] = None


@dataclass(frozen=True)
class RaceMetadata:
    season: str
    round: str
    race_name: str
    circuit_id: str = ""
    circuit_name: str = ""
    country: str = ""
    locality: str = ""
    date: str = ""
    time: Optional[str] = None
    total_laps: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "season": self.season,
            "round": self.round,
            "raceName": self.race_name,
            "circuitId": self.circuit_id,
            "circuitName": self.circuit_name,
            "country": self.country,
            "locality": self.locality,
            "date": self.date,
            "time": self.time,
            "totalLaps": self.total_laps,
        }


@dataclass(frozen=True)
class Competitor:
    competitor_id: str
    code: str
    permanent_number: str = ""
    given_name: str = ""
    family_name: str = ""
    nationality: str = ""
    constructor_id: str = ""
    constructor_name: str = ""
    color: str = "#888888"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "competitorId": self.competitor_id,
            "code": self.code,
            "permanentNumber": self.permanent_number,
            "givenName": self.given_name,
            "familyName": self.family_name,
            "nationality": self.nationality,
            "constructor": {
                "constructorId": self.constructor_id,
                "name": self.constructor_name,
            },
            "color": self.color,
        }


@dataclass(frozen=True)
class RaceEvent:
    type: str
    lap_number: int
    time_ms: float
    competitor_id: str
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "lapNumber": self.lap_number,
            "timeMs": self.time_ms,
            "competitorId": self.competitor_id,
            "payload": dict(self.payload),
        }


@dataclass(frozen=True)
class CompetitorState:
    competitor_id: str
    position: int = 0
    progress_pct: float = 0.0
    lap_number: int = 0
    in_pit: bool = False
    retired: bool = False
    has_fastest_lap: bool = False
    gap_to_leader_ms: float = 0
    last_lap_time_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "competitorId": self.competitor_id,
            "position": self.position,
            "progressPct": self.progress_pct,
            "lapNumber": self.lap_number,
            "inPit": self.in_pit,
            "retired": self.retired,
            "hasFastestLap": self.has_fastest_lap,
            "gapToLeaderMs": self.gap_to_leader_ms,
            "lastLapTimeMs": self.last_lap_time_ms,
        }


class StateBuffer:
    """Append-only store holding the competitor states of every frame."""

    def __init__(self):
        self._states: List[CompetitorState] = []

    def __len__(self) -> int:
        return len(self._states)

    def append_all(self, states: Iterable[CompetitorState]) -> Tuple[int, int]:
        """Append states and return the [start, stop) slice they occupy."""
        start = len(self._states)
        self._states.extend(states)
        return start, len(self._states)

    def view(self, start: int, stop: int) -> Tuple[CompetitorState, ...]:
        return tuple(self._states[start:stop])


@dataclass(frozen=True)
class Frame:
    time_ms: int
    start: int
    stop: int
    buffer: StateBuffer = field(repr=False, compare=False)
    events: Tuple[RaceEvent, ...] = ()

    @property
    def competitor_states(self) -> Tuple[CompetitorState, ...]:
        return self.buffer.view(self.start, self.stop)

    def state_for(self, competitor_id: str) -> Optional[CompetitorState]:
        for state in self.competitor_states:
            if state.competitor_id == competitor_id:
                return state
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timeMs": self.time_ms,
            "competitorStates": [s.to_dict() for s in self.competitor_states],
            "events": [e.to_dict() for e in self.events],
        }


@dataclass(frozen=True)
class Timeline:
    metadata: Optional[RaceMetadata]
    roster: Tuple[Competitor, ...]
    total_duration_ms: int
    frames: Tuple[Frame, ...]
    events: Tuple[RaceEvent, ...]

    def to_dict(self, include_frames: bool = True) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "metadata": self.metadata.to_dict() if self.metadata else None,
            "competitorRoster": [c.to_dict() for c in self.roster],
            "totalDurationMs": self.total_duration_ms,
            "frameCount": len(self.frames),
            "events": [e.to_dict() for e in self.events],
        }
        if include_frames:
            out["frames"] = [f.to_dict() for f in self.frames]
        return out


@dataclass(frozen=True)
class PlaybackState:
    """Snapshot of one viewing session; the Playback Engine swaps in a new one on every change."""
    is_playing: bool = False
    virtual_clock_ms: float = 0.0
    speed_multiplier: float = 1.0
    current_frame_index: int = 0
    status: str = STOPPED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "isPlaying": self.is_playing,
            "virtualClockMs": self.virtual_clock_ms,
            "speedMultiplier": self.speed_multiplier,
            "currentFrameIndex": self.current_frame_index,
            "status": self.status,
        }
