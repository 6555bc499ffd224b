"""Travel time matrices and the per-run orchestration of matrix calls.

A run may call the injected matrix function at most ``MAX_MATRIX_CALLS``
times: once for Phase 0 and Phase 1 together, and once more for Phase 2.
The count lives in a ``CallBudget`` created for each run.
"""

import logging
import math
import concurrent.futures
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Sequence

from .errors import CallBudgetExceededError, MatrixComputationError, RefinementDegradationError
from .geometry import Coordinate
from .hypotheses import HypothesisPoint
from .optimization_config import TravelMode
from .outcomes import PhaseOutcome

logger = logging.getLogger(__name__)


# --- Module-level constants ---
MAX_MATRIX_CALLS = 2
MAX_TRAVEL_TIME_MINUTES = 24 * 60   # anything longer is treated as invalid
PHASE_0 = 'PHASE_0'
PHASE_1 = 'PHASE_1'
PHASE_2 = 'PHASE_2'


class TravelTimeStatus(Enum):
    MEASURED = 'MEASURED'
    UNREACHABLE = 'UNREACHABLE'
    INVALID = 'INVALID'


@dataclass(frozen=True)
class TravelTime:
    status: TravelTimeStatus
    minutes: Optional[float] = None

    @property
    def is_measured(self) -> bool:
        return self.status == TravelTimeStatus.MEASURED


UNREACHABLE = TravelTime(TravelTimeStatus.UNREACHABLE)
INVALID = TravelTime(TravelTimeStatus.INVALID)


def classify_travel_time(value) -> TravelTime:
    """Tag a raw matrix value.

    None, +inf and negative values mean the provider found no route.
    NaN, -inf, non-numbers and anything above 24 hours are invalid.
    """
    if value is None:
        return UNREACHABLE
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return INVALID
    if math.isnan(value):
        return INVALID
    if value == math.inf:
        return UNREACHABLE
    if value == -math.inf:
        return INVALID
    if value < 0:
        return UNREACHABLE
    if value > MAX_TRAVEL_TIME_MINUTES:
        return INVALID
    return TravelTime(TravelTimeStatus.MEASURED, float(value))


@dataclass(frozen=True)
class TravelTimeMatrix:
    """``travel_times[origin][destination]`` in minutes; None marks no route."""
    origins: List[Coordinate]
    destinations: List[Coordinate]
    travel_times: List[List[Optional[float]]]
    travel_mode: TravelMode

    def validate_dimensions(self, expected_origins: int, expected_destinations: int) -> None:
        if len(self.travel_times) != expected_origins:
            raise MatrixComputationError(
                f"Matrix dimension mismatch: expected {expected_origins} origin rows, got {len(self.travel_times)}")
        for i, row in enumerate(self.travel_times):
            if not isinstance(row, (list, tuple)):
                raise MatrixComputationError(f"Invalid matrix row {i}: not a list")
            if len(row) != expected_destinations:
                raise MatrixComputationError(
                    f"Matrix row {i} dimension mismatch: expected {expected_destinations} columns, got {len(row)}")

    def column(self, index: int) -> List[TravelTime]:
        """Tagged travel times from every origin to destination ``index``."""
        return [classify_travel_time(row[index]) for row in self.travel_times]

    def slice_columns(self, start: int, end: int) -> 'TravelTimeMatrix':
        return TravelTimeMatrix(
            origins=list(self.origins),
            destinations=self.destinations[start:end],
            travel_times=[list(row[start:end]) for row in self.travel_times],
            travel_mode=self.travel_mode,
        )

    @classmethod
    def concat_columns(cls, matrices: Sequence['TravelTimeMatrix']) -> 'TravelTimeMatrix':
        """Join matrices that share origins side by side."""
        first = matrices[0]
        rows = [[] for _ in first.travel_times]
        destinations: List[Coordinate] = []
        for m in matrices:
            destinations.extend(m.destinations)
            for i, row in enumerate(m.travel_times):
                rows[i].extend(row)
        return cls(list(first.origins), destinations, rows, first.travel_mode)


MatrixFunction = Callable[[List[Coordinate], List[Coordinate], TravelMode], TravelTimeMatrix]


class CallBudget:
    """Request-scoped counter of matrix calls. Create one per optimization run."""

    def __init__(self, max_calls: int = MAX_MATRIX_CALLS):
        self.max_calls = max_calls
        self.used = 0

    @property
    def remaining(self) -> int:
        return self.max_calls - self.used

    def reserve(self) -> int:
        """Claim one call or raise ``CallBudgetExceededError``. Returns the call number."""
        if self.used >= self.max_calls:
            raise CallBudgetExceededError(self.used, self.max_calls)
        self.used += 1
        return self.used


@dataclass(frozen=True)
class PhaseSlice:
    """Columns ``[start, end)`` of the combined matrix belonging to one phase."""
    phase: str
    start: int
    end: int
    points: List[HypothesisPoint]
    matrix: TravelTimeMatrix


@dataclass(frozen=True)
class Phase01Evaluation:
    points: List[HypothesisPoint]
    matrix: TravelTimeMatrix
    slices: List[PhaseSlice]

    def phase_of(self, column: int) -> str:
        for s in self.slices:
            if s.start <= column < s.end:
                return s.phase
        raise IndexError(f"Unable to determine phase for column {column}")


@dataclass(frozen=True)
class Phase2Evaluation:
    points: List[HypothesisPoint]
    matrix: TravelTimeMatrix
    call_count: int


class MatrixOrchestrator:
    """Groups destinations into matrix calls and assembles the results."""

    def __init__(self, compute_matrix: MatrixFunction, max_workers: int = 4):
        self.compute_matrix = compute_matrix
        self.max_workers = max_workers

    def _call(self, origins: List[Coordinate], points: Sequence[HypothesisPoint],
              travel_mode: TravelMode) -> TravelTimeMatrix:
        destinations = [p.coordinate for p in points]
        matrix = self.compute_matrix(list(origins), destinations, travel_mode)
        if matrix is None:
            raise MatrixComputationError("Matrix provider returned no result")
        matrix.validate_dimensions(len(origins), len(destinations))
        return matrix

    def evaluate_phase01(
        self,
        origins: List[Coordinate],
        anchors: List[HypothesisPoint],
        grid: List[HypothesisPoint],
        travel_mode: TravelMode,
        budget: CallBudget,
    ) -> PhaseOutcome:
        """One call for anchors and grid together. Failure is ``fatal``."""
        if not origins:
            return PhaseOutcome.fatal(MatrixComputationError("No origins provided for matrix evaluation"))
        if not anchors:
            return PhaseOutcome.fatal(MatrixComputationError("No Phase 0 points provided for matrix evaluation"))

        points = list(anchors) + list(grid)
        try:
            call_no = budget.reserve()
            logger.info(
                "Matrix call %d/%d: %d origins x %d destinations (%d anchor, %d grid)",
                call_no, budget.max_calls, len(origins), len(points), len(anchors), len(grid))
            matrix = self._call(origins, points, travel_mode)
        except MatrixComputationError as e:
            logger.error("Phase 0+1 matrix evaluation failed: %s", e)
            return PhaseOutcome.fatal(e)
        except CallBudgetExceededError as e:
            logger.error("Phase 0+1 matrix evaluation refused: %s", e)
            return PhaseOutcome.fatal(e)
        except Exception as e:
            logger.error("Phase 0+1 matrix evaluation failed: %s", e, exc_info=True)
            return PhaseOutcome.fatal(MatrixComputationError(
                f"Travel time matrix calculation failed: {e}",
                user_message='Unable to evaluate travel times. Please check your locations and try again.',
                cause=e,
            ))

        n0 = len(anchors)
        slices = [PhaseSlice(PHASE_0, 0, n0, list(anchors), matrix.slice_columns(0, n0))]
        if grid:
            slices.append(PhaseSlice(PHASE_1, n0, len(points), list(grid), matrix.slice_columns(n0, len(points))))
        return PhaseOutcome.success(Phase01Evaluation(points, matrix, slices))

    def evaluate_phase2(
        self,
        origins: List[Coordinate],
        groups: List[List[HypothesisPoint]],
        travel_mode: TravelMode,
        budget: CallBudget,
    ) -> PhaseOutcome:
        """One call per non-empty group, run concurrently. Failure is ``skipped``.

        Each group claims a call from ``budget`` before it is submitted;
        groups that cannot claim one are dropped.
        """
        groups = [g for g in groups if g]
        if not groups:
            return PhaseOutcome.skipped("No local refinement points to evaluate")

        admitted: List[List[HypothesisPoint]] = []
        for g in groups:
            try:
                budget.reserve()
            except CallBudgetExceededError as e:
                logger.warning("Dropping local grid of %d points: %s", len(g), e)
                continue
            admitted.append(g)
        if not admitted:
            return PhaseOutcome.skipped("Matrix call budget exhausted before local refinement",
                                        RefinementDegradationError("call budget exhausted"))

        results: List[Optional[TravelTimeMatrix]] = [None] * len(admitted)
        with concurrent.futures.ThreadPoolExecutor(max_workers=min(self.max_workers, len(admitted))) as executor:
            futures = {
                executor.submit(self._call, origins, g, travel_mode): idx
                for idx, g in enumerate(admitted)
            }
            for fut in concurrent.futures.as_completed(futures):
                idx = futures[fut]
                try:
                    results[idx] = fut.result()
                except Exception as e:
                    logger.warning("Local grid %d matrix evaluation failed: %s", idx, e)

        ok = [(g, m) for g, m in zip(admitted, results) if m is not None]
        if not ok:
            return PhaseOutcome.skipped(
                "All local grid evaluations failed",
                RefinementDegradationError("All local grid evaluations failed"))

        points = [p for g, _ in ok for p in g]
        matrix = TravelTimeMatrix.concat_columns([m for _, m in ok])
        logger.info("Phase 2 matrix evaluation complete: %d points, %d calls", len(points), len(admitted))
        return PhaseOutcome.success(Phase2Evaluation(points, matrix, len(admitted)))
