"""Blend lexical relevance with recency."""

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

from recall.models import Candidate

HALF_LIFE_DAYS = 7.0

SECONDS_PER_DAY = 86400.0


@dataclass
class RankedMatch:
    """A session's best evidence for a query, with its blended score."""

    session_id: str
    anchor: Candidate
    relevance_score: float
    final_score: float
    match_count: int = 1


def recency_weight(age_days: float, half_life_days: float = HALF_LIFE_DAYS) -> float:
    """Exponential decay: 1.0 now, 0.5 after one half-life.

    Ages in the future (clock skew) count as zero.
    """
    if half_life_days <= 0:
        raise ValueError(f"half_life_days must be positive, got {half_life_days}")
    return 2.0 ** (-max(age_days, 0.0) / half_life_days)


def age_in_days(timestamp: datetime, now: datetime) -> float:
    return (now - timestamp).total_seconds() / SECONDS_PER_DAY


def final_score(
    relevance_score: float,
    timestamp: datetime,
    now: datetime,
    half_life_days: float = HALF_LIFE_DAYS,
) -> float:
    return relevance_score * recency_weight(age_in_days(timestamp, now), half_life_days)


def rank(
    candidates: Iterable[Candidate],
    now: datetime,
    half_life_days: float = HALF_LIFE_DAYS,
) -> list[RankedMatch]:
    """Collapse candidates to one entry per session and order them.

    The anchor is the latest matching message in the conversation, not the
    best scoring one. The session's relevance is its best raw score, decayed
    by the age of the anchor.
    """
    anchors: dict[str, Candidate] = {}
    best: dict[str, float] = {}
    counts: dict[str, int] = {}

    for c in candidates:
        current = anchors.get(c.session_id)
        if current is None or c.sequence_index > current.sequence_index:
            anchors[c.session_id] = c
        best[c.session_id] = max(best.get(c.session_id, c.raw_score), c.raw_score)
        counts[c.session_id] = counts.get(c.session_id, 0) + 1

    ranked = [
        RankedMatch(
            session_id=sid,
            anchor=anchor,
            relevance_score=best[sid],
            final_score=final_score(best[sid], anchor.timestamp, now, half_life_days),
            match_count=counts[sid],
        )
        for sid, anchor in anchors.items()
    ]
    ranked.sort(key=lambda r: r.session_id)
    ranked.sort(key=lambda r: (r.final_score, r.anchor.timestamp), reverse=True)
    return ranked
