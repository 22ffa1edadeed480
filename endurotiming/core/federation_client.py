"""
federation_client.py — Federation results API client.

Fetches the entry list and per-stage times of a race from the federation's
REST API and stores them in the local database.

Endpoints (relative to the base URL given by the caller):
    GET /api/races/{race_code}/entrylist
    GET /api/races/{race_code}/stages/{ordinal}/times
"""

from __future__ import annotations

import logging
import re
import sqlite3
from typing import Optional

import httpx

from endurotiming.core import database as db

logger = logging.getLogger("endurotiming.federation")

REQUEST_TIMEOUT = 15.0
USER_AGENT = "EnduroTiming/1.0"

# 4'12.35 / 4:12.35 / 1:04:12.35 / 252.35
_TIME_RE = re.compile(r"^(?:(\d+)[:])?(?:(\d+)['’:])?(\d+(?:\.\d+)?)$")


def parse_federation_time(text) -> Optional[float]:
    """Parse a federation time string into seconds. Blank or malformed gives None."""
    if text is None:
        return None
    if isinstance(text, (int, float)):
        return round(float(text), 2) if text >= 0 else None
    value = str(text).strip().replace(",", ".")
    if not value:
        return None
    m = _TIME_RE.match(value)
    if not m:
        return None
    hours, minutes, seconds = m.groups()
    if minutes is None and hours is not None:
        # "m:ss.cc" matched the hours group
        hours, minutes = None, hours
    total = float(seconds)
    if minutes is not None:
        if total >= 60:
            return None
        total += int(minutes) * 60
    if hours is not None:
        total += int(hours) * 3600
    return round(total, 2)


def _client(transport: Optional[httpx.AsyncBaseTransport]) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=REQUEST_TIMEOUT,
        headers={"User-Agent": USER_AGENT},
        transport=transport,
    )


async def _get_list(url: str, transport=None) -> list:
    """GET a JSON array. Any other payload shape raises ValueError."""
    async with _client(transport) as client:
        resp = await client.get(url)
        resp.raise_for_status()
        data = resp.json()
    if not isinstance(data, list):
        raise ValueError(f"Expected a JSON list from {url}, got {type(data).__name__}")
    return data


async def fetch_entrylist(base_url: str, race_code: str,
                          transport: Optional[httpx.AsyncBaseTransport] = None
                          ) -> list[dict]:
    """Fetch the entry list of a race.

    Expected API response format:
    [
        {"number": 12, "first_name": "Marco", "last_name": "Rossi",
         "class": "E1", "motorcycle": "Beta RR 300", "team": "Moto Club"},
        ...
    ]

    Returns list of dicts with keys:
        race_number, first_name, last_name, class_name, motorcycle, team
    """
    url = f"{base_url.rstrip('/')}/api/races/{race_code}/entrylist"
    logger.info("Fetching entry list: %s", url)
    data = await _get_list(url, transport)

    entries = []
    for item in data:
        if not isinstance(item, dict):
            logger.warning("Skipping malformed entry: %r", item)
            continue
        try:
            race_number = int(item.get("number"))
        except (TypeError, ValueError):
            logger.warning("Skipping entry with invalid race number: %s", item)
            continue
        entries.append({
            "race_number": race_number,
            "first_name": str(item.get("first_name") or "").strip(),
            "last_name": str(item.get("last_name") or "").strip(),
            "class_name": str(item.get("class") or "").strip(),
            "motorcycle": str(item.get("motorcycle") or "").strip(),
            "team": str(item.get("team") or "").strip(),
        })

    logger.info("Fetched %d entries for race %s", len(entries), race_code)
    return entries


async def fetch_stage_times(base_url: str, race_code: str, ordinal: int,
                            transport: Optional[httpx.AsyncBaseTransport] = None
                            ) -> list[dict]:
    """Fetch the times of one stage.

    Items look like {"number": 12, "time": "4'12.35", "penalty": "0"}.
    Returns dicts with race_number, elapsed_seconds, penalty_seconds.
    Rows without a usable race number or time are skipped.
    """
    url = f"{base_url.rstrip('/')}/api/races/{race_code}/stages/{ordinal}/times"
    logger.info("Fetching stage %s times: %s", ordinal, url)
    data = await _get_list(url, transport)

    times = []
    for item in data:
        if not isinstance(item, dict):
            logger.warning("Skipping malformed time on stage %s: %r", ordinal, item)
            continue
        try:
            race_number = int(item.get("number"))
        except (TypeError, ValueError):
            logger.warning("Skipping time with invalid race number: %s", item)
            continue
        elapsed = parse_federation_time(item.get("time"))
        if elapsed is None:
            logger.warning("Skipping #%s on stage %s: no valid time (%r)",
                           race_number, ordinal, item.get("time"))
            continue
        times.append({
            "race_number": race_number,
            "elapsed_seconds": elapsed,
            "penalty_seconds": parse_federation_time(item.get("penalty")),
        })
    return times


# ---------------------------------------------------------------------------
# Storing
# ---------------------------------------------------------------------------

def store_entrylist(conn: sqlite3.Connection, event_id: int,
                    entries: list[dict]) -> dict:
    """Upsert the roster by race number. Returns created/updated counts."""
    created = updated = 0
    for entry in entries:
        _, is_new = db.upsert_competitor(
            conn, event_id, entry["race_number"],
            entry["first_name"], entry["last_name"], entry["class_name"],
            entry["motorcycle"], entry["team"],
        )
        if is_new:
            created += 1
        else:
            updated += 1
    return {"created": created, "updated": updated}


def store_stage_times(conn: sqlite3.Connection, event_id: int, stage,
                      times: list[dict]) -> dict:
    """Record a stage's times. Unknown race numbers are skipped with a warning."""
    stored = 0
    warnings = []
    for item in times:
        comp = db.get_competitor_by_number(conn, event_id, item["race_number"])
        if comp is None:
            msg = f"Stage {stage['ordinal']}: unknown race number {item['race_number']}"
            logger.warning(msg)
            warnings.append(msg)
            continue
        db.record_time(conn, comp["id"], stage["id"], item["elapsed_seconds"],
                       item.get("penalty_seconds"))
        stored += 1
    return {"stored": stored, "warnings": warnings}
