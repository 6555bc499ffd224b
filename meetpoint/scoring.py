"""Scoring of hypothesis points against a travel time matrix.

Lower scores are better for every goal. Only measured travel times take part
in the aggregates; unreachable and invalid entries are dropped. When nothing
is left the goal's fallback applies, and no NaN or infinity ever leaves this
module.
"""

import logging
import math
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Sequence

from .errors import InputValidationError
from .geometry import Coordinate, haversine_m, validate_coordinate_bounds
from .hypotheses import AlgorithmPhase, HypothesisPoint, HypothesisType
from .optimization_config import OptimizationGoal, parse_enum
from .travel_matrix import PHASE_0, PHASE_1, PHASE_2, TravelTime, TravelTimeMatrix, classify_travel_time

logger = logging.getLogger(__name__)


# --- Module-level constants ---
UNREACHABLE_PENALTY = 999999.0
MEAN_FALLBACK_SCORE = 0.0
TIE_TOLERANCE_MINUTES = 0.01
IMPROVEMENT_EPSILON_MINUTES = 1.0
PHASE_ORDER = {PHASE_0: 0, PHASE_1: 1, PHASE_2: 2}


@dataclass(frozen=True)
class TravelTimeMetrics:
    max_travel_time: float
    average_travel_time: float
    total_travel_time: float
    variance: float
    reachable_count: int

    def to_dict(self) -> Dict:
        return {
            'maxTravelTime': self.max_travel_time,
            'averageTravelTime': self.average_travel_time,
            'totalTravelTime': self.total_travel_time,
            'variance': self.variance,
            'reachableCount': self.reachable_count,
        }


@dataclass(frozen=True)
class ScoredCandidate:
    """A hypothesis point annotated with its score. The point itself is untouched."""
    point: HypothesisPoint
    score: float
    metrics: TravelTimeMetrics
    travel_times: tuple
    source_phase: str = PHASE_0
    rank: Optional[int] = None

    @property
    def coordinate(self) -> Coordinate:
        return self.point.coordinate

    @property
    def max_travel_time(self) -> float:
        return self.metrics.max_travel_time

    @property
    def is_valid(self) -> bool:
        """At least one participant can reach this point."""
        return self.metrics.reachable_count > 0

    def to_dict(self) -> Dict:
        out = self.point.to_dict()
        out.update({
            'score': self.score,
            'travelTimeMetrics': self.metrics.to_dict(),
            'travelTimes': [t.minutes if t.is_measured else None for t in self.travel_times],
            'sourcePhase': self.source_phase,
        })
        if self.rank is not None:
            out['rank'] = self.rank
        return out

    @classmethod
    def from_dict(cls, data: Dict) -> 'ScoredCandidate':
        """Rebuild from ``to_dict`` output. Metrics are recomputed on rescoring.

        Raises ``InputValidationError`` for anything ``to_dict`` cannot have
        produced: a non-object point or metadata, or an out-of-range coordinate.
        """
        if not isinstance(data, dict):
            raise InputValidationError("Each scored point must be an object", field='points')
        coordinate = Coordinate.from_dict(data['coordinate'])
        if not validate_coordinate_bounds(coordinate):
            raise InputValidationError(
                f"Invalid coordinates for scored point {data.get('id')}: {coordinate.lat}, {coordinate.lng}",
                field='points')
        metadata = data.get('metadata') or {}
        if not isinstance(metadata, dict) or not isinstance(metadata.get('participant_ids', []), list):
            raise InputValidationError(
                f"metadata of scored point {data.get('id')} must be an object with a participant_ids list",
                field='points')
        point = HypothesisPoint(
            id=str(data['id']),
            coordinate=coordinate,
            type=HypothesisType(data.get('type', HypothesisType.COARSE_GRID_CELL.value)),
            phase=AlgorithmPhase(data.get('phase', AlgorithmPhase.ANCHOR.value)),
            participant_ids=tuple(metadata.get('participant_ids', ())),
        )
        times = tuple(classify_travel_time(t) for t in data.get('travelTimes', []))
        metrics = compute_metrics(times, OptimizationGoal.MINIMAX)
        return cls(point, metrics.max_travel_time, metrics, times, data.get('sourcePhase', PHASE_0))


def _finite_or(value: float, fallback: float) -> float:
    return value if isinstance(value, (int, float)) and math.isfinite(value) else fallback


def _fallback_metrics(goal: OptimizationGoal) -> TravelTimeMetrics:
    if goal == OptimizationGoal.MEAN:
        return TravelTimeMetrics(UNREACHABLE_PENALTY, UNREACHABLE_PENALTY, UNREACHABLE_PENALTY, MEAN_FALLBACK_SCORE, 0)
    return TravelTimeMetrics(UNREACHABLE_PENALTY, UNREACHABLE_PENALTY, UNREACHABLE_PENALTY, 0.0, 0)


def compute_metrics(times: Sequence[TravelTime], goal: OptimizationGoal) -> TravelTimeMetrics:
    """Fold measured times into max/average/total/variance.

    Unreachable and invalid entries are skipped. With no measured entry the
    goal fallback is used: the penalty for travel times, and a variance of 0.
    """
    measured = [t.minutes for t in times if t.is_measured]
    if not measured:
        return _fallback_metrics(goal)

    n = len(measured)
    total = sum(measured)
    average = total / n
    if n == 1:
        variance = 0.0
    else:
        variance = sum((t - average) ** 2 for t in measured) / n

    return TravelTimeMetrics(
        max_travel_time=_finite_or(max(measured), UNREACHABLE_PENALTY),
        average_travel_time=_finite_or(average, UNREACHABLE_PENALTY),
        total_travel_time=_finite_or(total, UNREACHABLE_PENALTY),
        variance=_finite_or(variance, MEAN_FALLBACK_SCORE if goal == OptimizationGoal.MEAN else UNREACHABLE_PENALTY),
        reachable_count=n,
    )


def score_for_goal(metrics: TravelTimeMetrics, goal: OptimizationGoal) -> float:
    if goal == OptimizationGoal.MINIMAX:
        return _finite_or(metrics.max_travel_time, UNREACHABLE_PENALTY)
    if goal == OptimizationGoal.MEAN:
        return _finite_or(metrics.variance, MEAN_FALLBACK_SCORE)
    return _finite_or(metrics.total_travel_time, UNREACHABLE_PENALTY)


def score_hypothesis_points(
    points: Sequence[HypothesisPoint],
    matrix: TravelTimeMatrix,
    goal: OptimizationGoal,
    phases: Optional[Sequence[str]] = None,
) -> List[ScoredCandidate]:
    """Score every point against its matrix column and sort ascending by score.

    ``phases`` labels each column (PHASE_0/1/2) for auditing; the sort is
    stable so ties keep generation order.
    """
    goal = parse_enum(OptimizationGoal, goal, 'optimizationGoal')
    if len(points) != len(matrix.destinations):
        raise ValueError(
            f"Point/matrix mismatch: {len(points)} points, {len(matrix.destinations)} destination columns")

    scored: List[ScoredCandidate] = []
    unreachable = 0
    for idx, point in enumerate(points):
        times = tuple(matrix.column(idx))
        metrics = compute_metrics(times, goal)
        if metrics.reachable_count == 0:
            unreachable += 1
        scored.append(ScoredCandidate(
            point=point,
            score=score_for_goal(metrics, goal),
            metrics=metrics,
            travel_times=times,
            source_phase=phases[idx] if phases else PHASE_0,
        ))

    if unreachable:
        logger.warning("%d of %d hypothesis points unreachable from every origin", unreachable, len(points))
    scored.sort(key=lambda c: c.score)
    return scored


def rescore(candidates: Sequence[ScoredCandidate], goal: OptimizationGoal) -> List[ScoredCandidate]:
    """Re-fold stored travel times under ``goal``. No matrix call is made.

    Points nobody can reach sort after every reachable one, whatever their
    fallback score.
    """
    goal = parse_enum(OptimizationGoal, goal, 'optimizationGoal')
    out = []
    for c in candidates:
        metrics = compute_metrics(c.travel_times, goal)
        out.append(replace(c, score=score_for_goal(metrics, goal), metrics=metrics, rank=None))
    out.sort(key=lambda c: (not c.is_valid, c.score))
    return out


def pick_optimal(candidates: Sequence[ScoredCandidate], centroid: Coordinate) -> Optional[ScoredCandidate]:
    """Best valid candidate by max travel time with tie-breaking.

    Ties (within 0.01 min) go to the lower average travel time, then to the
    point nearest the centroid, then to the earlier phase.
    """
    valid = [c for c in candidates if c.is_valid]
    if not valid:
        return None
    best_max = min(c.metrics.max_travel_time for c in valid)
    tied = [c for c in valid if abs(c.metrics.max_travel_time - best_max) < TIE_TOLERANCE_MINUTES]
    if len(tied) == 1:
        return tied[0]

    best_avg = min(c.metrics.average_travel_time for c in tied)
    tied = [c for c in tied if abs(c.metrics.average_travel_time - best_avg) < TIE_TOLERANCE_MINUTES]
    logger.info("Applying tie-breaking rules for %d candidates", len(tied))
    return min(
        tied,
        key=lambda c: (round(haversine_m(c.coordinate, centroid), 3), PHASE_ORDER.get(c.source_phase, 3)),
    )


def improvement_over_baseline(
    baseline_max: float,
    chosen_max: float,
    epsilon_minutes: float = IMPROVEMENT_EPSILON_MINUTES,
) -> Dict:
    """How much the multi-phase winner beats the best Phase 0 point."""
    if epsilon_minutes < 0:
        raise ValueError("Epsilon threshold must be non-negative")
    improvement = baseline_max - chosen_max
    percentage = (improvement / baseline_max) * 100.0 if baseline_max > 0 else 0.0
    return {
        'improvementMinutes': round(_finite_or(improvement, 0.0), 2),
        'improvementPercentage': round(_finite_or(percentage, 0.0), 1),
        'hasImprovement': improvement > 0,
        'isSignificant': improvement >= epsilon_minutes,
    }
