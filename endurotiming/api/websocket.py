"""
websocket.py — WebSocket manager and broadcast for EnduroTiming.

Server → Client: time, highlight, simulation
Client → Server: subscribe (channel selection, currently informational)

Single endpoint: ws://{host}:8080/ws
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional, Sequence

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from endurotiming.core.timing_engine import StageHistoryEntry

logger = logging.getLogger("endurotiming.ws")

router = APIRouter()

CLOSE_FINISH_SECONDS = 2.0


class ConnectionManager:
    """Manages WebSocket connections and message broadcasting."""

    def __init__(self):
        self.active: list[WebSocket] = []

    async def connect(self, ws: WebSocket):
        await ws.accept()
        self.active.append(ws)
        logger.info("WS connected (%d total)", len(self.active))

    def disconnect(self, ws: WebSocket):
        if ws in self.active:
            self.active.remove(ws)
        logger.info("WS disconnected (%d total)", len(self.active))

    async def broadcast(self, message: dict):
        """Send message to all connected clients."""
        if not self.active:
            return
        data = json.dumps(message, ensure_ascii=False)
        disconnected = []
        for ws in self.active:
            try:
                await ws.send_text(data)
            except (WebSocketDisconnect, RuntimeError):
                disconnected.append(ws)
        for ws in disconnected:
            self.disconnect(ws)

    async def broadcast_time(self, event_id: int, time_data: dict):
        """Broadcast a recorded stage time."""
        await self.broadcast({"type": "time", "event_id": event_id, **time_data})

    async def broadcast_highlight(self, event_id: int, highlight: dict):
        await self.broadcast({"type": "highlight", "event_id": event_id, **highlight})

    async def broadcast_simulation(self, event_id: int, poll_result: dict):
        """Broadcast a simulator batch so dashboards can follow a replay."""
        await self.broadcast({
            "type": "simulation",
            "event_id": event_id,
            "released": poll_result["newly_released"],
            "remaining": poll_result["remaining"],
            "simulation_complete": poll_result["simulation_complete"],
        })

    @property
    def connection_count(self) -> int:
        return len(self.active)


manager = ConnectionManager()


# ─── Highlight generation ─────────────────────────────────────────────

def _short_name(comp: Optional[dict]) -> str:
    if not comp:
        return ""
    first = comp.get("first_name") or ""
    return f"{first[:1]}.{comp.get('last_name') or ''}" if first else comp.get("last_name") or ""


def generate_highlights(history: Sequence[Sequence[StageHistoryEntry]],
                        competitor_id: Any, stage_index: int,
                        competitor: Optional[dict] = None) -> list[dict]:
    """Speaker highlights after a competitor's time on a stage.

    new_leader: fastest on the stage with at least one other time in.
    close_finish: within CLOSE_FINISH_SECONDS of the stage leader.
    podium: top three in the cumulative classification.
    """
    highlights = []
    if stage_index >= len(history):
        return highlights

    row = history[stage_index]
    entry = next((e for e in row if e.competitor_id == competitor_id), None)
    if entry is None or not entry.completed:
        return highlights

    number = entry.race_number
    name = _short_name(competitor)
    stage_number = stage_index + 1
    finished = [e for e in row if e.completed]
    leader = next((e for e in finished if e.stage_rank == 1), None)

    if leader is not None:
        if leader.competitor_id == competitor_id:
            if len(finished) > 1:
                highlights.append({
                    "category": "new_leader",
                    "text": f"#{number} {name} takes the lead on stage {stage_number}",
                    "race_number": number,
                    "stage_number": stage_number,
                    "priority": "high",
                })
        else:
            diff = round(entry.stage_elapsed - leader.stage_elapsed, 2)
            if 0 < diff <= CLOSE_FINISH_SECONDS:
                highlights.append({
                    "category": "close_finish",
                    "text": f"#{number} {name} {diff:.1f}s off the lead on stage {stage_number}",
                    "race_number": number,
                    "stage_number": stage_number,
                    "priority": "high",
                })

    if entry.rank is not None and entry.rank <= 3:
        highlights.append({
            "category": "podium",
            "text": f"#{number} {name} is P{entry.rank} overall",
            "race_number": number,
            "stage_number": stage_number,
            "priority": "normal",
        })

    return highlights


# ─── WebSocket endpoint ───────────────────────────────────────────────

@router.websocket("/ws")
async def websocket_endpoint(ws: WebSocket):
    await manager.connect(ws)
    try:
        while True:
            data = await ws.receive_text()
            try:
                msg = json.loads(data)
                if msg.get("type") == "subscribe":
                    logger.debug("WS subscribe: %s", msg.get("channels"))
            except json.JSONDecodeError:
                logger.debug("WS ignored non-JSON message")
    except WebSocketDisconnect:
        manager.disconnect(ws)
