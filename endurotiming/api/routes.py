"""
routes.py — REST API endpoints for EnduroTiming.

All endpoints under /api/. Wraps CRUD from core/database.py, standings from
core/replay.py and the live simulator held on app.state.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Optional

import httpx
from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel

from endurotiming.core.database import (
    STAGE_STATUSES,
    get_connection,
    create_event, get_all_events, get_event, update_event, delete_event,
    create_competitor, get_competitors, get_competitor, get_competitor_by_number,
    update_competitor, delete_competitor, get_classes,
    create_stage, get_stages, get_stage, get_stage_by_ordinal, update_stage,
    delete_stage,
    record_time, get_time, set_penalty, delete_time, get_times,
    get_times_with_details, count_times,
    create_communication, get_communications, delete_communication,
    log_audit, get_audit_log,
)
from endurotiming.core.federation_client import (
    fetch_entrylist, fetch_stage_times, store_entrylist, store_stage_times,
)
from endurotiming.core.replay import build_replay, build_stage_results, build_standings
from endurotiming.core.simulator import DEFAULT_BATCH_SIZE, SimulationNotFound
from endurotiming.core.timing_engine import format_elapsed, reconstruct_standings
from endurotiming.api.websocket import manager as ws_manager, generate_highlights

logger = logging.getLogger("endurotiming.api")

router = APIRouter()


# ─── Helper ──────────────────────────────────────────────────────────

def _row_to_dict(row) -> dict:
    """Convert sqlite3.Row to dict."""
    if row is None:
        return {}
    return dict(row)


def _rows_to_list(rows) -> list[dict]:
    """Convert list of sqlite3.Row to list of dicts."""
    return [dict(r) for r in rows]


def _get_conn():
    return get_connection()


def _event_or_404(conn, event_id: int):
    event = get_event(conn, event_id)
    if not event:
        raise HTTPException(404, "Event not found")
    return event


def _stage_or_404(conn, event_id: int, stage_id: int):
    stage = get_stage(conn, stage_id)
    if not stage or stage["event_id"] != event_id:
        raise HTTPException(404, "Stage not found")
    return stage


def _time_or_404(conn, event_id: int, time_id: int):
    time = get_time(conn, time_id)
    stage = get_stage(conn, time["stage_id"]) if time else None
    if not stage or stage["event_id"] != event_id:
        raise HTTPException(404, "Time not found")
    return time


# ─── Pydantic models ─────────────────────────────────────────────────

class EventCreate(BaseModel):
    code: str
    name: str
    date: str = ""
    location: str = ""
    description: str = ""
    stage_rank_includes_penalty: bool = False

class EventUpdate(BaseModel):
    name: Optional[str] = None
    date: Optional[str] = None
    location: Optional[str] = None
    description: Optional[str] = None
    stage_rank_includes_penalty: Optional[bool] = None

class CompetitorCreate(BaseModel):
    race_number: int
    first_name: str
    last_name: str
    class_name: str = ""
    motorcycle: str = ""
    team: str = ""

class CompetitorUpdate(BaseModel):
    race_number: Optional[int] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    class_name: Optional[str] = None
    motorcycle: Optional[str] = None
    team: Optional[str] = None

class StageCreate(BaseModel):
    ordinal: int
    name: str
    status: str = "not_started"

class StageUpdate(BaseModel):
    ordinal: Optional[int] = None
    name: Optional[str] = None
    status: Optional[str] = None

class TimeCreate(BaseModel):
    race_number: int
    stage_id: int
    elapsed_seconds: float
    penalty_seconds: Optional[float] = None

class PenaltyUpdate(BaseModel):
    penalty_seconds: float

class CommunicationCreate(BaseModel):
    text: str
    date: Optional[str] = None
    time: Optional[str] = None

class FederationImport(BaseModel):
    base_url: str
    race_code: str
    import_times: bool = True
    stage_ordinals: Optional[list[int]] = None


# ═══════════════════════════════════════════════════════════════════════
# EVENTS
# ═══════════════════════════════════════════════════════════════════════

@router.get("/events")
async def list_events():
    conn = _get_conn()
    try:
        return _rows_to_list(get_all_events(conn))
    finally:
        conn.close()


@router.post("/events")
async def create_event_endpoint(body: EventCreate):
    conn = _get_conn()
    try:
        try:
            event_id = create_event(
                conn, body.code, body.name, body.date, body.location,
                body.description, body.stage_rank_includes_penalty,
            )
        except sqlite3.IntegrityError:
            raise HTTPException(400, f"Event code '{body.code}' already exists")
        log_audit(conn, event_id, "create_event", "event", event_id, body.name)
        return {"id": event_id}
    finally:
        conn.close()


@router.get("/events/{event_id}")
async def get_event_endpoint(event_id: int):
    conn = _get_conn()
    try:
        return _row_to_dict(_event_or_404(conn, event_id))
    finally:
        conn.close()


@router.put("/events/{event_id}")
async def update_event_endpoint(event_id: int, body: EventUpdate):
    conn = _get_conn()
    try:
        _event_or_404(conn, event_id)
        fields = {k: v for k, v in body.model_dump().items() if v is not None}
        if fields:
            update_event(conn, event_id, **fields)
        return {"ok": True}
    finally:
        conn.close()


@router.delete("/events/{event_id}")
async def delete_event_endpoint(event_id: int, request: Request):
    conn = _get_conn()
    try:
        _event_or_404(conn, event_id)
        delete_event(conn, event_id)
        request.app.state.simulator.discard(event_id)
        return {"ok": True}
    finally:
        conn.close()


# ═══════════════════════════════════════════════════════════════════════
# COMPETITORS
# ═══════════════════════════════════════════════════════════════════════

@router.get("/events/{event_id}/competitors")
async def list_competitors(event_id: int,
                           class_name: Optional[str] = Query(None, alias="class")):
    conn = _get_conn()
    try:
        _event_or_404(conn, event_id)
        rows = _rows_to_list(get_competitors(conn, event_id))
        if class_name:
            rows = [r for r in rows if r["class_name"] == class_name]
        return rows
    finally:
        conn.close()


@router.post("/events/{event_id}/competitors")
async def create_competitor_endpoint(event_id: int, body: CompetitorCreate):
    conn = _get_conn()
    try:
        _event_or_404(conn, event_id)
        if get_competitor_by_number(conn, event_id, body.race_number):
            raise HTTPException(400, f"Race number {body.race_number} already taken")
        cid = create_competitor(
            conn, event_id, body.race_number, body.first_name, body.last_name,
            body.class_name, body.motorcycle, body.team,
        )
        return {"id": cid}
    finally:
        conn.close()


@router.put("/events/{event_id}/competitors/{competitor_id}")
async def update_competitor_endpoint(event_id: int, competitor_id: int,
                                     body: CompetitorUpdate):
    conn = _get_conn()
    try:
        comp = get_competitor(conn, competitor_id)
        if not comp or comp["event_id"] != event_id:
            raise HTTPException(404, "Competitor not found")
        fields = {k: v for k, v in body.model_dump().items() if v is not None}
        if fields:
            try:
                update_competitor(conn, competitor_id, **fields)
            except sqlite3.IntegrityError:
                raise HTTPException(400, f"Race number {body.race_number} already taken")
        return {"ok": True}
    finally:
        conn.close()


@router.delete("/events/{event_id}/competitors/{competitor_id}")
async def delete_competitor_endpoint(event_id: int, competitor_id: int):
    conn = _get_conn()
    try:
        comp = get_competitor(conn, competitor_id)
        if not comp or comp["event_id"] != event_id:
            raise HTTPException(404, "Competitor not found")
        delete_competitor(conn, competitor_id)
        log_audit(conn, event_id, "delete_competitor", "competitor", competitor_id,
                  f"#{comp['race_number']} {comp['first_name']} {comp['last_name']}")
        return {"ok": True}
    finally:
        conn.close()


@router.get("/events/{event_id}/classes")
async def list_classes(event_id: int):
    conn = _get_conn()
    try:
        _event_or_404(conn, event_id)
        return _rows_to_list(get_classes(conn, event_id))
    finally:
        conn.close()


# ═══════════════════════════════════════════════════════════════════════
# STAGES
# ═══════════════════════════════════════════════════════════════════════

@router.get("/events/{event_id}/stages")
async def list_stages(event_id: int):
    conn = _get_conn()
    try:
        _event_or_404(conn, event_id)
        stages = _rows_to_list(get_stages(conn, event_id))
        counts = conn.execute(
            """SELECT t.stage_id, COUNT(*) AS cnt FROM times t
               JOIN stages s ON t.stage_id = s.id
               WHERE s.event_id=? GROUP BY t.stage_id""",
            (event_id,)
        ).fetchall()
        by_stage = {r["stage_id"]: r["cnt"] for r in counts}
        for s in stages:
            s["times_recorded"] = by_stage.get(s["id"], 0)
        return stages
    finally:
        conn.close()


@router.post("/events/{event_id}/stages")
async def create_stage_endpoint(event_id: int, body: StageCreate):
    if body.status not in STAGE_STATUSES:
        raise HTTPException(400, f"Invalid stage status '{body.status}'")
    conn = _get_conn()
    try:
        _event_or_404(conn, event_id)
        if get_stage_by_ordinal(conn, event_id, body.ordinal):
            raise HTTPException(400, f"Stage ordinal {body.ordinal} already exists")
        sid = create_stage(conn, event_id, body.ordinal, body.name, body.status)
        return {"id": sid}
    finally:
        conn.close()


@router.put("/events/{event_id}/stages/{stage_id}")
async def update_stage_endpoint(event_id: int, stage_id: int, body: StageUpdate):
    if body.status is not None and body.status not in STAGE_STATUSES:
        raise HTTPException(400, f"Invalid stage status '{body.status}'")
    conn = _get_conn()
    try:
        _stage_or_404(conn, event_id, stage_id)
        fields = {k: v for k, v in body.model_dump().items() if v is not None}
        if fields:
            try:
                update_stage(conn, stage_id, **fields)
            except sqlite3.IntegrityError:
                raise HTTPException(400, f"Stage ordinal {body.ordinal} already exists")
        return {"ok": True}
    finally:
        conn.close()


@router.delete("/events/{event_id}/stages/{stage_id}")
async def delete_stage_endpoint(event_id: int, stage_id: int):
    conn = _get_conn()
    try:
        _stage_or_404(conn, event_id, stage_id)
        ok, msg = delete_stage(conn, stage_id)
        if not ok:
            raise HTTPException(400, msg)
        return {"ok": True}
    finally:
        conn.close()


# ═══════════════════════════════════════════════════════════════════════
# TIMES
# ═══════════════════════════════════════════════════════════════════════

@router.get("/events/{event_id}/times")
async def list_times(event_id: int, stage_id: Optional[int] = None):
    conn = _get_conn()
    try:
        _event_or_404(conn, event_id)
        rows = _rows_to_list(get_times_with_details(conn, event_id))
        if stage_id is not None:
            rows = [r for r in rows if r["stage_id"] == stage_id]
        return rows
    finally:
        conn.close()


@router.post("/events/{event_id}/times")
async def record_time_endpoint(event_id: int, body: TimeCreate):
    """Record (or overwrite) one stage time and push it to live clients."""
    if body.elapsed_seconds < 0 or (body.penalty_seconds or 0) < 0:
        raise HTTPException(400, "Times cannot be negative")
    conn = _get_conn()
    try:
        event = _event_or_404(conn, event_id)
        stage = _stage_or_404(conn, event_id, body.stage_id)
        comp = get_competitor_by_number(conn, event_id, body.race_number)
        if not comp:
            raise HTTPException(404, f"Race number {body.race_number} not found")

        time_id = record_time(conn, comp["id"], stage["id"],
                              body.elapsed_seconds, body.penalty_seconds)
        log_audit(conn, event_id, "record_time", "time", time_id,
                  f"#{comp['race_number']} {stage['name']} {body.elapsed_seconds}",
                  source="api")

        stages = get_stages(conn, event_id)
        history = reconstruct_standings(
            get_competitors(conn, event_id), stages, get_times(conn, event_id),
            stage_rank_includes_penalty=bool(event["stage_rank_includes_penalty"]),
        )
        stage_index = [s["id"] for s in stages].index(stage["id"])
        entry = next(e for e in history[stage_index] if e.competitor_id == comp["id"])

        await ws_manager.broadcast_time(event_id, {
            "race_number": comp["race_number"],
            "name": f"{comp['first_name']} {comp['last_name']}",
            "class": comp["class_name"],
            "stage_id": stage["id"],
            "stage_name": stage["name"],
            "elapsed": format_elapsed(entry.stage_elapsed),
            "elapsed_seconds": entry.stage_elapsed,
            "penalty_seconds": entry.stage_penalty,
            "stage_position": entry.stage_rank,
            "overall_position": entry.rank,
        })
        for h in generate_highlights(history, comp["id"], stage_index, dict(comp)):
            await ws_manager.broadcast_highlight(event_id, h)

        return {"id": time_id}
    finally:
        conn.close()


@router.put("/events/{event_id}/times/{time_id}/penalty")
async def set_penalty_endpoint(event_id: int, time_id: int, body: PenaltyUpdate):
    if body.penalty_seconds < 0:
        raise HTTPException(400, "Penalty cannot be negative")
    conn = _get_conn()
    try:
        _event_or_404(conn, event_id)
        _time_or_404(conn, event_id, time_id)
        set_penalty(conn, time_id, body.penalty_seconds)
        log_audit(conn, event_id, "set_penalty", "time", time_id,
                  f"{body.penalty_seconds}s")
        return {"ok": True}
    finally:
        conn.close()


@router.delete("/events/{event_id}/times/{time_id}")
async def delete_time_endpoint(event_id: int, time_id: int):
    conn = _get_conn()
    try:
        _event_or_404(conn, event_id)
        _time_or_404(conn, event_id, time_id)
        delete_time(conn, time_id)
        log_audit(conn, event_id, "delete_time", "time", time_id)
        return {"ok": True}
    finally:
        conn.close()


# ═══════════════════════════════════════════════════════════════════════
# RESULTS & REPLAY
# ═══════════════════════════════════════════════════════════════════════

@router.get("/events/{event_id}/standings")
async def get_standings_endpoint(event_id: int,
                                 class_name: Optional[str] = Query(None, alias="class")):
    conn = _get_conn()
    try:
        event = _event_or_404(conn, event_id)
        return build_standings(
            event, get_competitors(conn, event_id), get_stages(conn, event_id),
            get_times(conn, event_id), class_name=class_name,
        )
    finally:
        conn.close()


@router.get("/events/{event_id}/stages/{stage_id}/results")
async def get_stage_results_endpoint(event_id: int, stage_id: int,
                                     class_name: Optional[str] = Query(None, alias="class")):
    conn = _get_conn()
    try:
        event = _event_or_404(conn, event_id)
        _stage_or_404(conn, event_id, stage_id)
        rows = build_stage_results(
            event, get_competitors(conn, event_id), get_stages(conn, event_id),
            get_times(conn, event_id), stage_id,
        )
        if class_name:
            rows = [r for r in rows if r["class_name"] == class_name]
        return rows
    finally:
        conn.close()


@router.get("/events/{event_id}/replay")
async def get_replay_endpoint(event_id: int):
    """Stage-by-stage leaderboard snapshots for the timeline scrubber."""
    conn = _get_conn()
    try:
        event = _event_or_404(conn, event_id)
        return build_replay(
            event, get_competitors(conn, event_id), get_stages(conn, event_id),
            get_times(conn, event_id),
        )
    finally:
        conn.close()


# ═══════════════════════════════════════════════════════════════════════
# LIVE SIMULATION
# ═══════════════════════════════════════════════════════════════════════

def _time_loader(conn, event_id: int):
    return lambda: _rows_to_list(get_times_with_details(conn, event_id))


@router.post("/events/{event_id}/simulate-reset")
async def simulate_reset(event_id: int, request: Request):
    conn = _get_conn()
    try:
        _event_or_404(conn, event_id)
        simulator = request.app.state.simulator
        try:
            return simulator.reset(event_id, _time_loader(conn, event_id))
        except SimulationNotFound as e:
            raise HTTPException(404, str(e))
    finally:
        conn.close()


@router.get("/events/{event_id}/simulate-poll")
async def simulate_poll(event_id: int, request: Request,
                        batch: Optional[str] = None):
    """Release the next batch; a missing or unparseable batch size means 15."""
    conn = _get_conn()
    try:
        _event_or_404(conn, event_id)
        simulator = request.app.state.simulator
        result = simulator.poll(event_id, _time_loader(conn, event_id),
                                batch if batch is not None else DEFAULT_BATCH_SIZE)
        if result["newly_released"]:
            await ws_manager.broadcast_simulation(event_id, result)
        return result
    finally:
        conn.close()


@router.get("/events/{event_id}/simulate-status")
async def simulate_status(event_id: int, request: Request):
    conn = _get_conn()
    try:
        _event_or_404(conn, event_id)
    finally:
        conn.close()
    return request.app.state.simulator.status(event_id)


# ═══════════════════════════════════════════════════════════════════════
# COMMUNICATIONS
# ═══════════════════════════════════════════════════════════════════════

@router.get("/events/{event_id}/communications")
async def list_communications(event_id: int):
    conn = _get_conn()
    try:
        event = _event_or_404(conn, event_id)
        return _rows_to_list(get_communications(conn, event["code"]))
    finally:
        conn.close()


@router.post("/events/{event_id}/communications")
async def create_communication_endpoint(event_id: int, body: CommunicationCreate):
    if not body.text.strip():
        raise HTTPException(400, "Communication text is required")
    conn = _get_conn()
    try:
        event = _event_or_404(conn, event_id)
        cid, number = create_communication(conn, event["code"], body.text.strip(),
                                           body.date, body.time)
        log_audit(conn, event_id, "create_communication", "communication", cid,
                  f"No. {number}")
        return {"id": cid, "number": number}
    finally:
        conn.close()


@router.delete("/events/{event_id}/communications/{communication_id}")
async def delete_communication_endpoint(event_id: int, communication_id: int):
    conn = _get_conn()
    try:
        event = _event_or_404(conn, event_id)
        row = conn.execute(
            "SELECT event_code FROM communications WHERE id=?", (communication_id,)
        ).fetchone()
        if not row or row["event_code"] != event["code"]:
            raise HTTPException(404, "Communication not found")
        delete_communication(conn, communication_id)
        return {"ok": True}
    finally:
        conn.close()


# ═══════════════════════════════════════════════════════════════════════
# AUDIT LOG
# ═══════════════════════════════════════════════════════════════════════

@router.get("/events/{event_id}/audit")
async def get_event_audit(event_id: int, limit: int = 100):
    conn = _get_conn()
    try:
        _event_or_404(conn, event_id)
        return _rows_to_list(get_audit_log(conn, event_id, limit))
    finally:
        conn.close()


@router.get("/audit")
async def get_all_audit(limit: int = 100):
    conn = _get_conn()
    try:
        return _rows_to_list(get_audit_log(conn, limit=limit))
    finally:
        conn.close()


# ═══════════════════════════════════════════════════════════════════════
# CONNECTIONS — Federation
# ═══════════════════════════════════════════════════════════════════════

@router.post("/events/{event_id}/import-federation")
async def import_from_federation(event_id: int, body: FederationImport):
    """Import the entry list and, optionally, stage times from the federation API.

    Everything is fetched before anything is stored, so an upstream failure
    leaves the event untouched.
    """
    conn = _get_conn()
    try:
        _event_or_404(conn, event_id)
        try:
            entries = await fetch_entrylist(body.base_url, body.race_code)
        except (httpx.HTTPError, ValueError) as e:
            raise HTTPException(502, f"Could not fetch entry list: {e}")

        stage_payloads = []
        if body.import_times:
            stages = get_stages(conn, event_id)
            if body.stage_ordinals:
                wanted = set(body.stage_ordinals)
                stages = [s for s in stages if s["ordinal"] in wanted]
            for stage in stages:
                try:
                    times = await fetch_stage_times(body.base_url, body.race_code,
                                                    stage["ordinal"])
                except (httpx.HTTPError, ValueError) as e:
                    raise HTTPException(502, f"Could not fetch stage {stage['ordinal']} times: {e}")
                stage_payloads.append((stage, times))

        counts = store_entrylist(conn, event_id, entries)
        warnings: list[str] = []
        times_stored = 0
        for stage, times in stage_payloads:
            result = store_stage_times(conn, event_id, stage, times)
            times_stored += result["stored"]
            warnings.extend(result["warnings"])

        log_audit(conn, event_id, "import_federation", "competitors", None,
                  f"Race {body.race_code}: {counts['created']} new, "
                  f"{counts['updated']} updated, {times_stored} times",
                  source="federation")
        logger.info("Federation import for event %s: %s, %d times",
                    event_id, counts, times_stored)
        return {**counts, "times": times_stored, "warnings": warnings}
    finally:
        conn.close()


@router.post("/events/{event_id}/preview-federation")
async def preview_federation(event_id: int, body: FederationImport):
    """Preview the federation entry list without importing."""
    conn = _get_conn()
    try:
        _event_or_404(conn, event_id)
    finally:
        conn.close()
    try:
        entries = await fetch_entrylist(body.base_url, body.race_code)
    except (httpx.HTTPError, ValueError) as e:
        raise HTTPException(502, f"Could not fetch entry list: {e}")
    return {"entries": entries, "count": len(entries)}


# ═══════════════════════════════════════════════════════════════════════
# SYSTEM STATUS
# ═══════════════════════════════════════════════════════════════════════

@router.get("/status")
async def system_status():
    conn = _get_conn()
    try:
        events = get_all_events(conn)
        return {
            "server": "EnduroTiming",
            "version": "1.0",
            "events": len(events),
            "latest_event": _row_to_dict(events[0]) if events else None,
            "time_count": count_times(conn, events[0]["id"]) if events else 0,
            "ws_connections": ws_manager.connection_count,
        }
    finally:
        conn.close()
