"""Jolpica (Ergast-compatible) API helpers.

Functions fetch raw race data from the provider and return it in the provider's own shapes;
replay.normalizer does the parsing.

Notes:
- Responses are wrapped in MRData; list endpoints are paged with limit/offset and report
  the row count in MRData.total.
- The laps endpoint pages by timing row, so one lap can be split across two pages.
  Pages are merged by lap number.
"""
import logging
from typing import Any, Dict, List, Optional

import httpx
import requests

from config import HTTP_TIMEOUT, JOLPICA_BASE, PAGE_SIZE

logger = logging.getLogger(__name__)


def _first_race(payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    races = payload["MRData"]["RaceTable"].get("Races") or []
    return races[0] if races else None


def _fetch_pages(client: httpx.Client, path: str, key: str) -> List[Dict[str, Any]]:
    """Fetch every page of a race list endpoint and concatenate Races[0][key]."""
    rows: List[Dict[str, Any]] = []
    offset = 0
    while True:
        r = client.get(f"{JOLPICA_BASE}{path}", params={"limit": PAGE_SIZE, "offset": offset})
        r.raise_for_status()
        data = r.json()
        total = int(data["MRData"].get("total") or 0)
        race = _first_race(data)
        page = (race or {}).get(key) or []
        rows.extend(page)
        offset += PAGE_SIZE
        if not page or offset >= total:
            break
    return rows


def fetch_race_results(season: str, round_no: str) -> Optional[Dict[str, Any]]:
    """Fetch the race (metadata + classification). None if the race has no results yet."""
    url = f"{JOLPICA_BASE}/{season}/{round_no}/results.json"
    resp = requests.get(url, params={"limit": PAGE_SIZE}, timeout=HTTP_TIMEOUT)
    resp.raise_for_status()
    return _first_race(resp.json())


def fetch_laps(season: str, round_no: str, client: Optional[httpx.Client] = None) -> List[Dict[str, Any]]:
    """Fetch all lap timings, one {"number", "Timings"} entry per lap, in lap order."""
    if client is None:
        with httpx.Client(timeout=HTTP_TIMEOUT) as c:
            return fetch_laps(season, round_no, client=c)

    merged: Dict[int, Dict[str, Any]] = {}
    for lap in _fetch_pages(client, f"/{season}/{round_no}/laps.json", "Laps"):
        number = int(lap["number"])
        entry = merged.setdefault(number, {"number": lap["number"], "Timings": []})
        entry["Timings"].extend(lap.get("Timings") or [])

    logger.info(f"Laps fetched | race={season}/{round_no} | laps={len(merged)}")
    return [merged[n] for n in sorted(merged)]


def fetch_pit_stops(season: str, round_no: str, client: Optional[httpx.Client] = None) -> List[Dict[str, Any]]:
    """Fetch all pit stops for a race."""
    if client is None:
        with httpx.Client(timeout=HTTP_TIMEOUT) as c:
            return fetch_pit_stops(season, round_no, client=c)

    stops = _fetch_pages(client, f"/{season}/{round_no}/pitstops.json", "PitStops")
    logger.info(f"Pit stops fetched | race={season}/{round_no} | stops={len(stops)}")
    return stops
