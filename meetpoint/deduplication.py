"""Near-duplicate removal and top-N selection of scored candidates."""

import logging
from dataclasses import replace
from typing import List, Sequence

from geopy.distance import geodesic

from .hypotheses import AlgorithmPhase
from .scoring import ScoredCandidate

logger = logging.getLogger(__name__)


def distance_m(a: ScoredCandidate, b: ScoredCandidate) -> float:
    return geodesic((a.coordinate.lat, a.coordinate.lng), (b.coordinate.lat, b.coordinate.lng)).meters


def deduplicate(scored: Sequence[ScoredCandidate], threshold_m: float) -> List[ScoredCandidate]:
    """Keep a candidate only if no better-scored survivor lies within ``threshold_m``.

    Candidates are visited in score order (stable); discarded ones are
    dropped, not merged.
    """
    if threshold_m is None or threshold_m < 0:
        raise ValueError(f"Invalid distance threshold: {threshold_m}m. Must be non-negative")
    if not scored:
        return []

    kept: List[ScoredCandidate] = []
    for cand in sorted(scored, key=lambda c: c.score):
        if all(distance_m(cand, k) > threshold_m for k in kept):
            kept.append(cand)

    logger.info(
        "Deduplication complete: %d -> %d points (threshold %.0fm)",
        len(scored), len(kept), threshold_m)
    return kept


def select_top(points: Sequence[ScoredCandidate], k: int) -> List[ScoredCandidate]:
    """First ``k`` points ranked 1..k and marked as final output. Deduplicate first."""
    if k < 1:
        raise ValueError(f"Invalid selection count: {k}. Must be at least 1")
    return [
        replace(p, point=p.point.with_phase(AlgorithmPhase.FINAL_OUTPUT), rank=idx + 1)
        for idx, p in enumerate(points[:k])
    ]


def select_points_of_interest(
    scored: Sequence[ScoredCandidate],
    top_n: int,
    threshold_m: float,
) -> List[ScoredCandidate]:
    """Deduplicate valid candidates, then take the best ``top_n``."""
    valid = [c for c in scored if c.is_valid]
    selected = select_top(deduplicate(valid, threshold_m), top_n)
    logger.info("Selected %d points of interest from %d scored points", len(selected), len(scored))
    return selected
