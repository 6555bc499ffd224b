"""Multi-phase meeting point optimization.

A run moves through these states:

    GENERATING_PHASE0 -> EVALUATING_PHASE01 -> SCORING_PHASE01
      -> [GENERATING_PHASE2 -> EVALUATING_PHASE2 -> SCORING_PHASE2]
      -> SELECTING -> DONE

Each phase yields a ``PhaseOutcome``. A fatal Phase 0+1 outcome moves the run
to FALLBACK, which answers with the geographic centroid. A skipped or fatal
Phase 2 outcome only drops the refinement candidates.
"""

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence

from .deduplication import deduplicate, select_points_of_interest
from .errors import (
    InputValidationError,
    MatrixComputationError,
    MeetpointError,
    NoValidCandidatesError,
    ReachabilityError,
)
from .geometry import Coordinate, geographic_centroid, validate_coordinate_bounds
from .hypotheses import (
    HypothesisPoint,
    Location,
    generate_for_config,
    local_refinement,
    remove_near_duplicates,
)
from .optimization_config import (
    DEFAULT_BUFFER_TIME_MINUTES,
    DEFAULT_DEDUPLICATION_THRESHOLD_M,
    DEFAULT_TOP_M,
    OptimizationConfig,
    OptimizationGoal,
    RequestSettings,
    TravelMode,
    parse_enum,
    validate_location_count,
    validate_optimization_config,
    validate_request_settings,
)
from .outcomes import OutcomeKind, PhaseOutcome
from .scoring import (
    ScoredCandidate,
    improvement_over_baseline,
    pick_optimal,
    rescore,
    score_hypothesis_points,
)
from .travel_matrix import (
    MAX_TRAVEL_TIME_MINUTES,
    PHASE_0,
    PHASE_2,
    CallBudget,
    MatrixFunction,
    MatrixOrchestrator,
)

logger = logging.getLogger(__name__)

ReachabilityFunction = Callable[[Coordinate, float, TravelMode], List[Coordinate]]


class PipelineState(Enum):
    GENERATING_PHASE0 = 'GENERATING_PHASE0'
    EVALUATING_PHASE01 = 'EVALUATING_PHASE01'
    SCORING_PHASE01 = 'SCORING_PHASE01'
    GENERATING_PHASE2 = 'GENERATING_PHASE2'
    EVALUATING_PHASE2 = 'EVALUATING_PHASE2'
    SCORING_PHASE2 = 'SCORING_PHASE2'
    SELECTING = 'SELECTING'
    FALLBACK = 'FALLBACK'
    DONE = 'DONE'


@dataclass
class OptimizationResult:
    """Outcome of one run: the chosen point and an audit trail of the phases."""
    point_id: str
    coordinate: Coordinate
    max_travel_time: Optional[float]
    average_travel_time: Optional[float]
    optimal_phase: Optional[str]
    degraded: bool
    travel_mode: TravelMode
    goal: OptimizationGoal
    mode: str
    buffer_time_minutes: float
    matrix_calls: int
    candidates_evaluated: int
    points_of_interest: List[ScoredCandidate] = field(default_factory=list)
    improvement: Optional[Dict] = None
    phase_log: List[Dict] = field(default_factory=list)
    states: List[str] = field(default_factory=list)
    config: Optional[OptimizationConfig] = None

    def to_dict(self) -> Dict:
        return {
            'status': 'FALLBACK_CENTROID' if self.degraded else 'OPTIMAL',
            'degraded': self.degraded,
            'optimalPoint': {'id': self.point_id, 'coordinate': self.coordinate.to_dict()},
            'maxTravelTime': self.max_travel_time,
            'averageTravelTime': self.average_travel_time,
            'optimalPhase': self.optimal_phase,
            'travelMode': self.travel_mode.value,
            'optimizationGoal': self.goal.value,
            'optimizationMode': self.mode,
            'optimizationConfig': self.config.to_dict() if self.config else None,
            'bufferTimeMinutes': self.buffer_time_minutes,
            'matrixApiCalls': self.matrix_calls,
            'candidatesEvaluated': self.candidates_evaluated,
            'pointsOfInterest': [p.to_dict() for p in self.points_of_interest],
            'improvement': self.improvement,
            'phases': self.phase_log,
        }


def _phase01_points(locations: Sequence[Location], config: OptimizationConfig):
    """Anchors plus grid cells that do not duplicate an anchor or an earlier cell."""
    anchors, grid = generate_for_config(locations, config)
    if grid:
        kept_ids = {p.id for p in remove_near_duplicates(anchors + grid)}
        grid = [p for p in grid if p.id in kept_ids]
    return anchors, grid


class _RunTrace:
    """Per-run record of visited states and phase outcomes."""

    def __init__(self):
        self.states: List[str] = []
        self.phase_log: List[Dict] = []

    def enter(self, state: PipelineState) -> None:
        self.states.append(state.value)
        logger.debug("Pipeline state -> %s", state.value)

    def record(self, phase: str, outcome: PhaseOutcome) -> None:
        self.phase_log.append({'phase': phase, 'outcome': outcome.kind.value, 'reason': outcome.reason})


class OptimizationPipeline:
    """Sequences generation, matrix evaluation, scoring and selection.

    The pipeline holds no per-request state, so one instance can serve
    concurrent requests. Each ``run_optimization`` call gets its own
    ``CallBudget``.
    """

    def __init__(self, compute_matrix: Optional[MatrixFunction],
                 compute_reachability: Optional[ReachabilityFunction] = None):
        self.orchestrator = MatrixOrchestrator(compute_matrix) if compute_matrix else None
        self.compute_reachability_polygon = compute_reachability

    @property
    def has_matrix_provider(self) -> bool:
        return self.orchestrator is not None

    @property
    def has_reachability_provider(self) -> bool:
        return self.compute_reachability_polygon is not None

    # --- Exposed operations ---
    def generate_hypothesis_points(self, locations: Sequence[Location], config: OptimizationConfig) -> List[HypothesisPoint]:
        """Phase 0 and, if configured, Phase 1 points. Deterministic for identical input."""
        validate_location_count(len(locations))
        validate_optimization_config(config)
        anchors, grid = _phase01_points(locations, config)
        return anchors + grid

    def run_optimization(
        self,
        locations: Sequence[Location],
        travel_mode=TravelMode.DRIVING_CAR,
        config: Optional[OptimizationConfig] = None,
        goal=OptimizationGoal.MINIMAX,
        buffer_time_minutes: float = DEFAULT_BUFFER_TIME_MINUTES,
        deduplication_threshold_m: float = DEFAULT_DEDUPLICATION_THRESHOLD_M,
        top_m: int = DEFAULT_TOP_M,
    ) -> OptimizationResult:
        """Find the fairest meeting point for ``locations``.

        Raises ``InputValidationError``/``ConfigurationError`` before any
        matrix call, and ``NoValidCandidatesError`` when no point is
        reachable. A failed Phase 0+1 matrix call yields a degraded centroid
        result instead of an exception.
        """
        settings = RequestSettings(
            travel_mode=parse_enum(TravelMode, travel_mode, 'travelMode'),
            goal=parse_enum(OptimizationGoal, goal, 'optimizationGoal'),
            buffer_time_minutes=buffer_time_minutes,
            deduplication_threshold_m=deduplication_threshold_m,
            top_m=top_m,
            config=config or OptimizationConfig(),
        )
        validate_request_settings(settings, len(locations))
        if self.orchestrator is None:
            raise MatrixComputationError("No travel time matrix provider configured")

        trace = _RunTrace()
        budget = CallBudget()
        cfg = settings.config
        logger.info(
            "Starting optimization: %d locations, mode=%s, goal=%s, travel_mode=%s",
            len(locations), cfg.mode.value, settings.goal.value, settings.travel_mode.value)

        trace.enter(PipelineState.GENERATING_PHASE0)
        anchors, grid = _phase01_points(locations, cfg)
        origins = [loc.coordinate for loc in locations]
        centroid = geographic_centroid(origins)

        trace.enter(PipelineState.EVALUATING_PHASE01)
        outcome = self.orchestrator.evaluate_phase01(origins, anchors, grid, settings.travel_mode, budget)
        trace.record('PHASE_0_1', outcome)
        if outcome.kind == OutcomeKind.FATAL:
            return self._fallback(centroid, settings, budget, trace, outcome)
        phase01 = outcome.value

        trace.enter(PipelineState.SCORING_PHASE01)
        outcome = self._score_phase01(phase01, settings.goal)
        if outcome.kind == OutcomeKind.FATAL:
            trace.record('SCORING_PHASE_0_1', outcome)
            return self._fallback(centroid, settings, budget, trace, outcome)
        scored = list(outcome.value)

        if cfg.uses_local_refinement:
            outcome = self._run_phase2(origins, phase01.points, scored, settings, budget, trace)
            trace.record('PHASE_2', outcome)
            if outcome.ok:
                scored.extend(outcome.value)
            else:
                logger.warning("Continuing without local refinement: %s", outcome.reason)

        trace.enter(PipelineState.SELECTING)
        result = self._select(scored, centroid, settings, budget, trace)
        trace.enter(PipelineState.DONE)
        result.states = trace.states
        return result

    def rescore_for_goal(self, scored: Sequence[ScoredCandidate], goal) -> List[ScoredCandidate]:
        """Rank existing candidates under another goal without any matrix call."""
        ranked = rescore(scored, parse_enum(OptimizationGoal, goal, 'optimizationGoal'))
        return [replace(c, rank=idx + 1) for idx, c in enumerate(ranked)]

    def compute_reachability(self, center: Coordinate, travel_time_minutes: float, travel_mode) -> List[Coordinate]:
        """Reachability polygon for one chosen point, computed only when asked for."""
        if self.compute_reachability_polygon is None:
            raise ReachabilityError("No reachability provider configured")
        if not validate_coordinate_bounds(center):
            raise InputValidationError("Invalid center coordinate for reachability polygon", field='center')
        if not isinstance(travel_time_minutes, (int, float)) or isinstance(travel_time_minutes, bool) \
                or not 0 < travel_time_minutes <= MAX_TRAVEL_TIME_MINUTES:
            raise InputValidationError(
                f"Invalid travel time: {travel_time_minutes}. Must be between 0 and {MAX_TRAVEL_TIME_MINUTES} minutes",
                field='travelTimeMinutes')
        mode = parse_enum(TravelMode, travel_mode, 'travelMode')
        try:
            polygon = self.compute_reachability_polygon(center, float(travel_time_minutes), mode)
        except MeetpointError:
            raise
        except Exception as e:
            logger.error("Reachability polygon failed: %s", e, exc_info=True)
            raise ReachabilityError(f"Reachability polygon calculation failed: {e}", cause=e)
        if not polygon:
            raise ReachabilityError("Reachability provider returned an empty polygon")
        return polygon

    # --- Phases ---
    def _score_phase01(self, phase01, goal: OptimizationGoal) -> PhaseOutcome:
        scored: List[ScoredCandidate] = []
        try:
            for s in phase01.slices:
                scored.extend(score_hypothesis_points(s.points, s.matrix, goal, [s.phase] * len(s.points)))
        except ValueError as e:
            logger.error("Phase 0+1 scoring failed: %s", e)
            return PhaseOutcome.fatal(e)
        scored.sort(key=lambda c: c.score)
        logger.info("Scored %d Phase 0+1 points", len(scored))
        return PhaseOutcome.success(scored)

    def _run_phase2(
        self,
        origins: List[Coordinate],
        evaluated: List[HypothesisPoint],
        scored: List[ScoredCandidate],
        settings: RequestSettings,
        budget: CallBudget,
        trace: _RunTrace,
    ) -> PhaseOutcome:
        ref_cfg = settings.config.local_refinement_config

        trace.enter(PipelineState.GENERATING_PHASE2)
        seeds = deduplicate([c for c in scored if c.is_valid], settings.deduplication_threshold_m)
        if not seeds:
            return PhaseOutcome.skipped("No reachable Phase 0+1 candidates to refine")
        try:
            points = local_refinement(seeds, ref_cfg)
        except (ValueError, MeetpointError) as e:
            return PhaseOutcome.skipped(f"Local refinement generation failed: {e}", e)

        kept_ids = {p.id for p in remove_near_duplicates(list(evaluated) + points)}
        points = [p for p in points if p.id in kept_ids]
        if not points:
            return PhaseOutcome.skipped("All local refinement points duplicate evaluated points")

        trace.enter(PipelineState.EVALUATING_PHASE2)
        outcome = self.orchestrator.evaluate_phase2(origins, [points], settings.travel_mode, budget)
        if not outcome.ok:
            return outcome
        phase2 = outcome.value

        trace.enter(PipelineState.SCORING_PHASE2)
        try:
            scored2 = score_hypothesis_points(
                phase2.points, phase2.matrix, settings.goal, [PHASE_2] * len(phase2.points))
        except ValueError as e:
            return PhaseOutcome.skipped(f"Local refinement scoring failed: {e}", e)
        logger.info(
            "Phase 2 complete: %d refinement points scored from %d matrix call(s)", len(scored2), phase2.call_count)
        return PhaseOutcome.success(scored2)

    def _select(
        self,
        scored: List[ScoredCandidate],
        centroid: Coordinate,
        settings: RequestSettings,
        budget: CallBudget,
        trace: _RunTrace,
    ) -> OptimizationResult:
        scored.sort(key=lambda c: c.score)
        if settings.goal == OptimizationGoal.MINIMAX:
            winner = pick_optimal(scored, centroid)
        else:
            winner = next((c for c in scored if c.is_valid), None)
        if winner is None:
            logger.error("No valid points of interest: all hypothesis points unreachable")
            raise NoValidCandidatesError(
                "No valid meeting points found",
                user_message='No valid meeting points found. All generated locations may be unreachable '
                             'by the selected travel mode.')

        pois = select_points_of_interest(scored, settings.top_m, settings.deduplication_threshold_m)

        improvement = None
        baseline = pick_optimal([c for c in scored if c.source_phase == PHASE_0], centroid)
        if baseline is not None:
            improvement = improvement_over_baseline(baseline.max_travel_time, winner.max_travel_time)

        logger.info(
            "Optimization complete: %s from %s, max %.1f min, %d candidates, %d matrix calls",
            winner.point.id, winner.source_phase, winner.max_travel_time, len(scored), budget.used)
        return OptimizationResult(
            point_id=winner.point.id,
            coordinate=winner.coordinate,
            max_travel_time=winner.metrics.max_travel_time,
            average_travel_time=winner.metrics.average_travel_time,
            optimal_phase=winner.source_phase,
            degraded=False,
            travel_mode=settings.travel_mode,
            goal=settings.goal,
            mode=settings.config.mode.value,
            buffer_time_minutes=settings.buffer_time_minutes,
            matrix_calls=budget.used,
            candidates_evaluated=len(scored),
            points_of_interest=pois,
            improvement=improvement,
            phase_log=trace.phase_log,
            config=settings.config,
        )

    def _fallback(
        self,
        centroid: Coordinate,
        settings: RequestSettings,
        budget: CallBudget,
        trace: _RunTrace,
        outcome: PhaseOutcome,
    ) -> OptimizationResult:
        trace.enter(PipelineState.FALLBACK)
        logger.warning("Falling back to geographic centroid: %s", outcome.reason)
        trace.enter(PipelineState.DONE)
        return OptimizationResult(
            point_id='geographic_centroid',
            coordinate=centroid,
            max_travel_time=None,
            average_travel_time=None,
            optimal_phase=None,
            degraded=True,
            travel_mode=settings.travel_mode,
            goal=settings.goal,
            mode=settings.config.mode.value,
            buffer_time_minutes=settings.buffer_time_minutes,
            matrix_calls=budget.used,
            candidates_evaluated=0,
            phase_log=trace.phase_log,
            states=trace.states,
            config=settings.config,
        )
