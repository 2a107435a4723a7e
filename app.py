"""Race Replay API (FastAPI)

Builds a replay timeline for a historical race (frames + event log) from lap timing data,
and serves interpolated playback over HTTP and a websocket.

Folders:
- services/: calls the Jolpica API (or builds the offline sample race)
- replay/: normalizer, event detector, frame generator and playback engine
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple

import httpx
import requests
from fastapi import FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from starlette.concurrency import run_in_threadpool

from config import DEFAULT_INTERVAL_MS, LOG_LEVEL, MAX_FRAMES, REFRESH_HZ
from replay.engine import build_timeline, normalize_race, race_events, state_at
from replay.errors import FormatError, MissingDataError
from replay.events import filter_events
from replay.frames import timeline_slice
from replay.models import EVENT_TYPES, Timeline
from replay.playback import PlaybackEngine
from services import jolpica
from services.mock_race import mock_race_data

logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger(__name__)

app = FastAPI(title="Race Replay API")

RaceInputs = Tuple[Dict[str, Any], List[Dict[str, Any]], List[Dict[str, Any]]]


def _race_inputs(season: str, round_no: str, mock: bool) -> RaceInputs:
    """Fetch (race, laps, pit_stops), or the sample race when mock is set."""
    if mock:
        return mock_race_data()

    try:
        race = jolpica.fetch_race_results(season, round_no)
    except requests.RequestException as exc:
        logger.error(f"Results fetch failed | race={season}/{round_no} | error={exc}")
        raise HTTPException(status_code=502, detail="Race data provider unavailable")

    if not race or not race.get("Results"):
        raise HTTPException(
            status_code=404,
            detail="Race not found or results not available yet",
        )

    # Missing laps are reported as "lap data not available" further down, not as a provider error.
    try:
        laps = jolpica.fetch_laps(season, round_no)
    except httpx.HTTPError as exc:
        logger.warning(f"Laps fetch failed | race={season}/{round_no} | error={exc}")
        laps = []
    try:
        pit_stops = jolpica.fetch_pit_stops(season, round_no)
    except httpx.HTTPError as exc:
        logger.warning(f"Pit stops fetch failed | race={season}/{round_no} | error={exc}")
        pit_stops = []

    return race, laps, pit_stops


def _domain_error(season: str, round_no: str, exc: Exception) -> HTTPException:
    if isinstance(exc, MissingDataError):
        return HTTPException(status_code=404, detail=f"Lap data not available: {exc}")
    logger.error(f"Timing data rejected | race={season}/{round_no} | error={exc}")
    return HTTPException(status_code=422, detail=f"Unparsable timing data: {exc}")


def _timeline(
    season: str,
    round_no: str,
    mock: bool,
    interval_ms: int,
    max_frames: Optional[int] = None,
) -> Timeline:
    race, laps, pit_stops = _race_inputs(season, round_no, mock)
    try:
        return build_timeline(race, laps, pit_stops, interval_ms=interval_ms, max_frames=max_frames)
    except (FormatError, MissingDataError) as exc:
        raise _domain_error(season, round_no, exc)


@app.get("/health")
def health():
    return {"ok": True}


@app.get("/race/{season}/{round_no}/timeline")
def timeline(
    season: str,
    round_no: str,
    interval_ms: int = Query(DEFAULT_INTERVAL_MS, gt=0),
    max_frames: Optional[int] = Query(None, ge=2),
    mock: bool = Query(False),
):
    tl = _timeline(season, round_no, mock, interval_ms, max_frames or MAX_FRAMES or None)
    return {"season": season, "round": round_no, "timeline": tl.to_dict()}


@app.get("/race/{season}/{round_no}/events")
def events(
    season: str,
    round_no: str,
    type: Optional[List[str]] = Query(None),
    start_ms: Optional[float] = Query(None),
    end_ms: Optional[float] = Query(None),
    competitor: Optional[str] = Query(None),
    mock: bool = Query(False),
):
    unknown = [t for t in type or [] if t not in EVENT_TYPES]
    if unknown:
        raise HTTPException(status_code=400, detail=f"Unknown event type(s): {', '.join(unknown)}")

    race, laps, pit_stops = _race_inputs(season, round_no, mock)
    try:
        evts = race_events(normalize_race(race, laps, pit_stops))
    except (FormatError, MissingDataError) as exc:
        raise _domain_error(season, round_no, exc)

    evts = filter_events(evts, types=type, start_ms=start_ms, end_ms=end_ms, competitor_id=competitor)
    return {"season": season, "round": round_no, "events": [e.to_dict() for e in evts]}


@app.get("/race/{season}/{round_no}/laps")
def laps(season: str, round_no: str, mock: bool = Query(False)):
    race, raw_laps, pit_stops = _race_inputs(season, round_no, mock)
    try:
        normalized = normalize_race(race, raw_laps, pit_stops)
    except (FormatError, MissingDataError) as exc:
        raise _domain_error(season, round_no, exc)

    return {
        "season": season,
        "round": round_no,
        "series": [s.to_dict() for s in normalized.series],
        "pitStops": [p.to_dict() for p in normalized.pit_stops],
    }


@app.get("/race/{season}/{round_no}/frames")
def frames(
    season: str,
    round_no: str,
    start_ms: float = Query(0, ge=0),
    end_ms: Optional[float] = Query(None),
    interval_ms: int = Query(DEFAULT_INTERVAL_MS, gt=0),
    mock: bool = Query(False),
):
    tl = _timeline(season, round_no, mock, interval_ms)
    end = tl.total_duration_ms if end_ms is None else end_ms
    if end < start_ms:
        raise HTTPException(status_code=400, detail="end_ms must be >= start_ms")

    return {
        "season": season,
        "round": round_no,
        "startMs": start_ms,
        "endMs": end,
        "frames": [f.to_dict() for f in timeline_slice(tl, start_ms, end)],
    }


@app.get("/race/{season}/{round_no}/state")
def state(
    season: str,
    round_no: str,
    time_ms: float = Query(...),
    mock: bool = Query(False),
):
    if time_ms < 0:
        raise HTTPException(status_code=400, detail="time_ms must be >= 0")

    tl = _timeline(season, round_no, mock, DEFAULT_INTERVAL_MS)
    playback, competitors = state_at(tl, time_ms)

    competitors.sort(key=lambda s: (s.retired, s.position == 0, s.position))
    return {
        "season": season,
        "round": round_no,
        "timeMs": playback.virtual_clock_ms,
        "frameIndex": playback.current_frame_index,
        "leaderboard": [s.to_dict() for s in competitors],
    }


def _apply_command(engine: PlaybackEngine, message: Dict[str, Any]) -> bool:
    """Run one client command. False if the action is not known."""
    action = message.get("action")
    value = message.get("value")
    if action == "play":
        engine.play()
    elif action == "pause":
        engine.pause()
    elif action == "restart":
        engine.restart()
    elif action == "speed":
        engine.set_speed(value)
    elif action == "seek":
        engine.seek(value)
    elif action == "seek_percent":
        engine.seek_percent(value)
    else:
        return False
    return True


async def _pump_states(websocket: WebSocket, engine: PlaybackEngine, outbox: "asyncio.Queue") -> None:
    while True:
        playback = await outbox.get()
        await websocket.send_json({
            "type": "state",
            "state": playback.to_dict(),
            "competitors": [s.to_dict() for s in engine.interpolate(playback.virtual_clock_ms)],
        })


@app.websocket("/race/{season}/{round_no}/replay")
async def replay_socket(
    websocket: WebSocket,
    season: str,
    round_no: str,
    mock: bool = False,
    interval_ms: int = DEFAULT_INTERVAL_MS,
):
    """One viewing session: the client sends commands, the server streams playback states."""
    await websocket.accept()
    try:
        tl = await run_in_threadpool(_timeline, season, round_no, mock, max(1, interval_ms))
    except HTTPException as exc:
        await websocket.send_json({"type": "error", "status": exc.status_code, "detail": exc.detail})
        await websocket.close(code=1011)
        return

    engine = PlaybackEngine(tl, refresh_hz=REFRESH_HZ)
    outbox: asyncio.Queue = asyncio.Queue()
    unsubscribe = engine.subscribe(outbox.put_nowait)
    await websocket.send_json({"type": "timeline", "timeline": tl.to_dict(include_frames=False)})

    logger.info(f"Replay session opened | race={season}/{round_no} | frames={len(tl.frames)}")
    pump = asyncio.create_task(_pump_states(websocket, engine, outbox))
    runner: Optional[asyncio.Task] = None
    try:
        while True:
            message = await websocket.receive_json()
            if not isinstance(message, dict) or not _apply_command(engine, message):
                await websocket.send_json({"type": "error", "detail": f"Unknown command: {message!r}"})
                continue
            if engine.state.is_playing and (runner is None or runner.done()):
                runner = asyncio.create_task(engine.run())
    except WebSocketDisconnect:
        logger.info(f"Replay session closed | race={season}/{round_no}")
    finally:
        unsubscribe()
        engine.pause()
        for task in (runner, pump):
            if task is not None:
                task.cancel()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
