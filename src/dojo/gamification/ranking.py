"""Deterministic leaderboard ranking.

Competition ranking ("1, 1, 3") with inclusive tie overflow: a tie that
straddles the cutoff is returned whole, so a board of ``limit`` places can
hold more than ``limit`` rows. Nobody drops out of the top 10 because of
the order a tie happened to sort in.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable


@dataclass(frozen=True)
class BoardRow:
    student_id: int
    name: str
    value: float


@dataclass(frozen=True)
class RankedRow:
    rank: int
    student_id: int
    name: str
    value: float


def _sort_key(row: BoardRow, higher_is_better: bool) -> tuple:
    value = -row.value if higher_is_better else row.value
    return (value, (row.name or "").casefold(), row.name or "", row.student_id)


def rank_rows(
    rows: Iterable[BoardRow],
    higher_is_better: bool = True,
    limit: int = 10,
    min_value: float | None = None,
) -> list[RankedRow]:
    """Rank rows by value, ties broken by name then id.

    Rows below ``min_value`` are dropped before ranking. Equal values share
    the rank of the first row holding that value; the walk stops at the
    first row whose rank exceeds ``limit``.
    """
    if limit <= 0:
        return []

    candidates = [r for r in rows if min_value is None or r.value >= min_value]
    ordered = sorted(candidates, key=lambda r: _sort_key(r, higher_is_better))

    ranked: list[RankedRow] = []
    rank = 0
    prev_value: float | None = None
    for idx, row in enumerate(ordered):
        if idx == 0 or row.value != prev_value:
            rank = idx + 1
        if rank > limit:
            break
        ranked.append(RankedRow(rank=rank, student_id=row.student_id, name=row.name, value=row.value))
        prev_value = row.value

    return ranked
