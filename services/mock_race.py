"""Offline sample race.

Builds a short, deterministic race in the provider's raw shapes (results, laps, pit stops)
so the API can be tried with ?mock=true without network access.
"""
import random
from typing import Any, Dict, List, Tuple

from replay.normalizer import format_lap_time

DEFAULT_SEED = 2024
TOTAL_LAPS = 10
BASE_LAP_MS = 84000
PIT_LOSS_MS = 20000
CIRCUIT_KM = 5.793

# driverId, code, number, given name, family name, nationality, constructorId, constructor
DRIVERS = [
    ("max_verstappen", "VER", "1", "Max", "Verstappen", "Dutch", "red_bull", "Red Bull"),
    ("leclerc", "LEC", "16", "Charles", "Leclerc", "Monegasque", "ferrari", "Ferrari"),
    ("norris", "NOR", "4", "Lando", "Norris", "British", "mclaren", "McLaren"),
    ("sainz", "SAI", "55", "Carlos", "Sainz", "Spanish", "ferrari", "Ferrari"),
    ("hamilton", "HAM", "44", "Lewis", "Hamilton", "British", "mercedes", "Mercedes"),
    ("russell", "RUS", "63", "George", "Russell", "British", "mercedes", "Mercedes"),
    ("piastri", "PIA", "81", "Oscar", "Piastri", "Australian", "mclaren", "McLaren"),
    ("perez", "PER", "11", "Sergio", "Perez", "Mexican", "red_bull", "Red Bull"),
    ("alonso", "ALO", "14", "Fernando", "Alonso", "Spanish", "aston_martin", "Aston Martin"),
    ("stroll", "STR", "18", "Lance", "Stroll", "Canadian", "aston_martin", "Aston Martin"),
]

PIT_LAPS = {"max_verstappen": 5, "leclerc": 4, "norris": 5, "sainz": 6}
RETIREMENTS = {"stroll": (6, "Engine")}


def _driver_row(d: Tuple[str, ...]) -> Dict[str, Any]:
    driver_id, code, number, given, family, nationality, constructor_id, constructor = d
    return {
        "Driver": {
            "driverId": driver_id,
            "permanentNumber": number,
            "code": code,
            "givenName": given,
            "familyName": family,
            "nationality": nationality,
        },
        "Constructor": {"constructorId": constructor_id, "name": constructor, "nationality": ""},
        "number": number,
    }


def mock_race_data(seed: int = DEFAULT_SEED) -> Tuple[Dict[str, Any], List[Dict[str, Any]], List[Dict[str, Any]]]:
    """Return (race, laps, pit_stops) in provider shapes."""
    rng = random.Random(seed)
    ids = [d[0] for d in DRIVERS]
    cumulative = {d: 0 for d in ids}
    lap_times: Dict[str, Dict[int, int]] = {d: {} for d in ids}

    laps: List[Dict[str, Any]] = []
    for lap in range(1, TOTAL_LAPS + 1):
        running = [d for d in ids if RETIREMENTS.get(d, (TOTAL_LAPS, ""))[0] >= lap]
        for index, d in enumerate(running):
            t = BASE_LAP_MS + rng.uniform(-1000, 1000) + index * 350
            if PIT_LAPS.get(d) == lap:
                t += PIT_LOSS_MS
            t = int(round(t))
            lap_times[d][lap] = t
            cumulative[d] += t

        order = sorted(running, key=lambda d: cumulative[d])
        laps.append({
            "number": str(lap),
            "Timings": [
                {"driverId": d, "position": str(pos), "time": format_lap_time(lap_times[d][lap])}
                for pos, d in enumerate(order, start=1)
            ],
        })

    pit_stops = [
        {
            "driverId": d,
            "lap": str(lap),
            "stop": "1",
            "time": f"14:{10 + lap:02d}:00",
            "duration": f"{rng.uniform(21.0, 25.0):.3f}",
        }
        for d, lap in PIT_LAPS.items()
    ]

    best = {d: min(lap_times[d].items(), key=lambda kv: kv[1]) for d in ids}
    fastest_rank = {d: rank for rank, d in enumerate(sorted(ids, key=lambda d: best[d][1]), start=1)}

    finishers = sorted((d for d in ids if d not in RETIREMENTS), key=lambda d: cumulative[d])
    classified = finishers + [d for d in ids if d in RETIREMENTS]
    by_id = {d[0]: d for d in DRIVERS}

    results: List[Dict[str, Any]] = []
    for position, d in enumerate(classified, start=1):
        best_lap, best_ms = best[d]
        row = _driver_row(by_id[d])
        retired = RETIREMENTS.get(d)
        row.update({
            "position": str(position),
            "positionText": "R" if retired else str(position),
            "points": "0",
            "grid": str(ids.index(d) + 1),
            "laps": str(retired[0] if retired else TOTAL_LAPS),
            "status": retired[1] if retired else "Finished",
            "FastestLap": {
                "rank": str(fastest_rank[d]),
                "lap": str(best_lap),
                "Time": {"time": format_lap_time(best_ms)},
                "AverageSpeed": {"units": "kph", "speed": f"{CIRCUIT_KM / (best_ms / 3600000):.3f}"},
            },
        })
        if not retired:
            row["Time"] = {"millis": str(cumulative[d])}
        results.append(row)

    race = {
        "season": "2024",
        "round": "15",
        "raceName": "Italian Grand Prix",
        "Circuit": {
            "circuitId": "monza",
            "circuitName": "Autodromo Nazionale di Monza",
            "Location": {"locality": "Monza", "country": "Italy"},
        },
        "date": "2024-09-01",
        "time": "13:00:00Z",
        "Results": results,
    }
    return race, laps, pit_stops
