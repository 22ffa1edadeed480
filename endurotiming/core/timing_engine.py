"""
timing_engine.py — Stage ordering, standings reconstruction and retirement
classification for multi-stage enduro events.

Pure functions over rows already fetched from the store (sqlite3.Row or any
mapping with the same keys). Nothing here touches the database.

Competitor rows: id, race_number (plus display fields, ignored here).
Stage rows:      id, ordinal, name.
Time rows:       competitor_id, stage_ordinal, elapsed_seconds, penalty_seconds.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional, Sequence

ROUND_DIGITS = 3  # cumulative sums and gaps


def format_elapsed(seconds: float | None) -> str:
    """Format elapsed seconds as m:ss.t (seconds zero-padded, one decimal)."""
    if seconds is None:
        return ""
    neg = seconds < 0
    tenths = int(round(abs(seconds) * 10))
    minutes, rest = divmod(tenths, 600)
    text = f"{minutes}:{rest / 10:04.1f}"
    return f"-{text}" if neg else text


def format_gap(gap: float | None, position: int | None) -> str | None:
    """Gap string: "0.0" for the leader, "+x.x" for everybody else."""
    if gap is None or position is None:
        return None
    if position == 1:
        return "0.0"
    return f"+{gap:.1f}"


# ---------------------------------------------------------------------------
# Stage sequencing
# ---------------------------------------------------------------------------

def ordered_stages(stages: Iterable[Mapping]) -> list[Mapping]:
    """Stages in running order. Ordinals may be sparse (2, 3, 5, 6, 8 ...)."""
    return sorted(stages, key=lambda s: s["ordinal"])


# ---------------------------------------------------------------------------
# Reconstruction
# ---------------------------------------------------------------------------

@dataclass
class StageHistoryEntry:
    """One competitor after one stage (index is 0-based in running order)."""
    competitor_id: Any
    race_number: int
    stage_index: int
    stage_id: Any
    completed: bool
    stage_elapsed: Optional[float]
    stage_penalty: Optional[float]
    cumulative: float
    completed_count: int
    eligible: bool
    rank: Optional[int] = None
    gap: Optional[float] = None
    stage_rank: Optional[int] = None
    stage_gap: Optional[float] = None
    rank_delta: int = 0

    @property
    def stage_total(self) -> Optional[float]:
        if self.stage_elapsed is None:
            return None
        return round(self.stage_elapsed + (self.stage_penalty or 0.0), ROUND_DIGITS)


def _index_times(times: Iterable[Mapping]) -> dict[tuple[Any, Any], Mapping]:
    return {(t["competitor_id"], t["stage_ordinal"]): t for t in times}


def _assign_positions(entries: list[StageHistoryEntry], value_of,
                      rank_attr: str, gap_attr: str) -> None:
    """Rank entries ascending by value, race number breaking ties.

    Gap is adjacent: each entry against the one directly ahead of it.
    """
    ordered = sorted(entries, key=lambda e: (value_of(e), e.race_number))
    previous = None
    for position, entry in enumerate(ordered, 1):
        value = value_of(entry)
        setattr(entry, rank_attr, position)
        if previous is None:
            setattr(entry, gap_attr, 0.0)
        else:
            setattr(entry, gap_attr, round(value - previous, ROUND_DIGITS))
        previous = value


def reconstruct_standings(competitors: Sequence[Mapping],
                          stages: Sequence[Mapping],
                          times: Iterable[Mapping],
                          stage_rank_includes_penalty: bool = False,
                          ) -> list[list[StageHistoryEntry]]:
    """Rebuild the classification after every stage.

    Returns one list per stage (running order), each holding one entry per
    competitor in race-number order. An event without stages or competitors
    yields an empty list.

    Cumulative rank only covers competitors with a time on every stage so
    far; one missing stage removes a competitor from every later cumulative
    ranking. Stage rank covers everybody with a time on that stage.
    """
    stages = ordered_stages(stages)
    competitors = sorted(competitors, key=lambda c: c["race_number"])
    if not stages or not competitors:
        return []

    matrix = _index_times(times)
    running = {
        c["id"]: {"cumulative": 0.0, "count": 0, "unbroken": True}
        for c in competitors
    }

    if stage_rank_includes_penalty:
        stage_value = lambda e: e.stage_total
    else:
        stage_value = lambda e: e.stage_elapsed

    history: list[list[StageHistoryEntry]] = []
    previous_rank: dict[Any, Optional[int]] = {}

    for index, stage in enumerate(stages):
        row: list[StageHistoryEntry] = []
        for comp in competitors:
            state = running[comp["id"]]
            record = matrix.get((comp["id"], stage["ordinal"]))
            if record is not None:
                elapsed = float(record["elapsed_seconds"])
                penalty = float(record["penalty_seconds"] or 0.0)
                state["cumulative"] = round(state["cumulative"] + elapsed + penalty,
                                            ROUND_DIGITS)
                state["count"] += 1
            else:
                elapsed = None
                penalty = None
                state["unbroken"] = False

            row.append(StageHistoryEntry(
                competitor_id=comp["id"],
                race_number=comp["race_number"],
                stage_index=index,
                stage_id=stage["id"],
                completed=record is not None,
                stage_elapsed=elapsed,
                stage_penalty=penalty,
                cumulative=state["cumulative"],
                completed_count=state["count"],
                eligible=state["unbroken"],
            ))

        _assign_positions([e for e in row if e.eligible],
                          lambda e: e.cumulative, "rank", "gap")
        _assign_positions([e for e in row if e.completed],
                          stage_value, "stage_rank", "stage_gap")

        for entry in row:
            before = previous_rank.get(entry.competitor_id)
            if index > 0 and before is not None and entry.rank is not None:
                entry.rank_delta = before - entry.rank
            previous_rank[entry.competitor_id] = entry.rank

        history.append(row)

    return history


# ---------------------------------------------------------------------------
# Retirement classification
# ---------------------------------------------------------------------------

@dataclass
class StageClassification:
    """The field split at one stage boundary."""
    stage_index: int
    active: list[StageHistoryEntry] = field(default_factory=list)
    retired: list[StageHistoryEntry] = field(default_factory=list)
    excluded: list[StageHistoryEntry] = field(default_factory=list)

    def positions(self) -> list[tuple[int, StageHistoryEntry]]:
        """(position, entry) pairs; retired positions follow the active block."""
        return list(enumerate(self.active + self.retired, 1))


def classify_stage(entries: Sequence[StageHistoryEntry],
                   stage_index: int) -> StageClassification:
    """Split one stage's entries into active, retired and excluded.

    Active: ranked in the cumulative classification.
    Retired: not ranked but with at least one completed stage so far,
    ordered by completed count descending (race number within a count).
    Excluded: nothing completed yet; not shown at this stage.
    """
    result = StageClassification(stage_index=stage_index)
    for entry in entries:
        if entry.rank is not None:
            result.active.append(entry)
        elif entry.completed_count > 0:
            result.retired.append(entry)
        else:
            result.excluded.append(entry)
    result.active.sort(key=lambda e: e.rank)
    result.retired.sort(key=lambda e: -e.completed_count)
    return result


def classify_standings(history: Sequence[Sequence[StageHistoryEntry]]
                       ) -> list[StageClassification]:
    return [classify_stage(row, i) for i, row in enumerate(history)]
