"""
replay.py — Leaderboard snapshots built from the standings history.

build_replay() produces one snapshot per stage for a timeline scrubber.
build_standings() and build_stage_results() give the final classification
and a single stage's ranking for the results endpoints.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional, Sequence

from endurotiming.core.timing_engine import (
    StageClassification,
    StageHistoryEntry,
    classify_standings,
    format_elapsed,
    format_gap,
    ordered_stages,
    reconstruct_standings,
)

ROSTER_FIELDS = ("race_number", "first_name", "last_name", "class_name",
                 "motorcycle", "team")


def _flag(event: Mapping, key: str) -> bool:
    try:
        return bool(event[key])
    except (KeyError, IndexError):
        return False


def _history_for(event: Mapping, competitors, stages, times):
    return reconstruct_standings(
        competitors, stages, times,
        stage_rank_includes_penalty=_flag(event, "stage_rank_includes_penalty"),
    )


def _by_competitor(history: Sequence[Sequence[StageHistoryEntry]]) -> dict[Any, list]:
    """competitor_id -> that competitor's entry at each stage index."""
    timeline: dict[Any, list] = {}
    for row in history:
        for entry in row:
            timeline.setdefault(entry.competitor_id, []).append(entry)
    return timeline


def _roster_entry(comp: Mapping) -> dict:
    entry = {"id": comp["id"]}
    for key in ROSTER_FIELDS:
        entry[key] = comp[key]
    return entry


def _retired_total(entry: StageHistoryEntry) -> str:
    return f"RIT ({entry.completed_count}/{entry.stage_index + 1})"


# ---------------------------------------------------------------------------
# Replay
# ---------------------------------------------------------------------------

def _snapshot_row(position: int, entry: StageHistoryEntry, entries: list,
                  stage_count: int, status: str) -> dict:
    """One leaderboard row at stage entry.stage_index.

    The per-stage arrays cover the whole event; slots after the snapshot's
    stage stay None.
    """
    upto = entry.stage_index
    gaps: list[Optional[str]] = [None] * stage_count
    deltas: list[Optional[int]] = [None] * stage_count
    stage_ranks: list[Optional[int]] = [None] * stage_count
    for j in range(upto + 1):
        past = entries[j]
        gaps[j] = format_gap(past.gap, past.rank)
        deltas[j] = past.rank_delta
        stage_ranks[j] = past.stage_rank

    if status == "active":
        total = format_elapsed(entry.cumulative)
    else:
        total = _retired_total(entry)

    return {
        "position": position,
        "competitor_id": entry.competitor_id,
        "race_number": entry.race_number,
        "gaps": gaps,
        "deltas": deltas,
        "stage_ranks": stage_ranks,
        "total": total,
        "total_seconds": entry.cumulative,
        "completed_stages": entry.completed_count,
        "status": status,
    }


def _snapshot(stage: Mapping, split: StageClassification,
              timeline: dict, stage_count: int) -> dict:
    active, retired = [], []
    for position, entry in split.positions():
        status = "active" if entry.rank is not None else "retired"
        row = _snapshot_row(position, entry, timeline[entry.competitor_id],
                            stage_count, status)
        (active if status == "active" else retired).append(row)
    return {
        "stage_number": split.stage_index + 1,
        "stage_ordinal": stage["ordinal"],
        "stage_name": stage["name"],
        "label": f"After {stage['name']}",
        "active": active,
        "retired": retired,
    }


def build_replay(event: Mapping, competitors: Sequence[Mapping],
                 stages: Sequence[Mapping], times: Sequence[Mapping]) -> dict:
    """Replay payload: event name, stage list, roster and one snapshot per stage.

    Deterministic for the same stored data. An event without stages or
    competitors has an empty snapshot list.
    """
    stages = ordered_stages(stages)
    history = _history_for(event, competitors, stages, times)
    timeline = _by_competitor(history)
    splits = classify_standings(history)

    return {
        "event_name": event["name"],
        "stages": [{"ordinal": s["ordinal"], "name": s["name"]} for s in stages],
        "competitors": [
            _roster_entry(c) for c in sorted(competitors, key=lambda c: c["race_number"])
        ],
        "snapshots": [
            _snapshot(stages[split.stage_index], split, timeline, len(stages))
            for split in splits
        ],
    }


# ---------------------------------------------------------------------------
# Final classification and stage results
# ---------------------------------------------------------------------------

def build_standings(event: Mapping, competitors: Sequence[Mapping],
                    stages: Sequence[Mapping], times: Sequence[Mapping],
                    class_name: Optional[str] = None) -> list[dict]:
    """Classification after the last stage, optionally within one class.

    A class filter ranks the class on its own, positions start at 1.
    """
    if class_name:
        competitors = [c for c in competitors if c["class_name"] == class_name]
    history = _history_for(event, competitors, stages, times)
    if not history:
        return []

    by_id = {c["id"]: c for c in competitors}
    split = classify_standings(history)[-1]
    standings = []
    for position, entry in split.positions():
        comp = by_id[entry.competitor_id]
        active = entry.rank is not None
        row = _roster_entry(comp)
        row.pop("id")
        row.update({
            "position": position,
            "competitor_id": entry.competitor_id,
            "total_seconds": entry.cumulative,
            "total": format_elapsed(entry.cumulative) if active else _retired_total(entry),
            "gap": format_gap(entry.gap, entry.rank),
            "completed_stages": entry.completed_count,
            "status": "active" if active else "retired",
        })
        standings.append(row)
    return standings


def build_stage_results(event: Mapping, competitors: Sequence[Mapping],
                        stages: Sequence[Mapping], times: Sequence[Mapping],
                        stage_id: Any) -> list[dict]:
    """This-stage ranking for one stage; competitors without a time are left out."""
    stages = ordered_stages(stages)
    history = _history_for(event, competitors, stages, times)
    index = next((i for i, s in enumerate(stages) if s["id"] == stage_id), None)
    if index is None or not history:
        return []

    by_id = {c["id"]: c for c in competitors}
    ranked = sorted((e for e in history[index] if e.completed),
                    key=lambda e: e.stage_rank)
    results = []
    for entry in ranked:
        row = _roster_entry(by_id[entry.competitor_id])
        row.pop("id")
        row.update({
            "position": entry.stage_rank,
            "competitor_id": entry.competitor_id,
            "elapsed_seconds": entry.stage_elapsed,
            "penalty_seconds": entry.stage_penalty,
            "stage_total_seconds": entry.stage_total,
            "time": format_elapsed(entry.stage_elapsed),
            "gap": format_gap(entry.stage_gap, entry.stage_rank),
        })
        results.append(row)
    return results
