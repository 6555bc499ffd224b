"""
Unit tests for travel time tagging, matrix validation and call orchestration.

Tests:
1. Raw values are tagged measured / unreachable / invalid
2. Matrix dimension checks
3. Column slicing and joining
4. Per-run call budget
5. Phase 0+1 and Phase 2 orchestration outcomes

Run with: python -m pytest meetpoint/tests/test_travel_matrix.py -v
"""

import math

import pytest

from conftest import FakeMatrixProvider, NYC_POINTS
from meetpoint.errors import CallBudgetExceededError, MatrixComputationError, RefinementDegradationError
from meetpoint.geometry import Coordinate
from meetpoint.hypotheses import AlgorithmPhase, HypothesisPoint, HypothesisType
from meetpoint.optimization_config import TravelMode
from meetpoint.outcomes import OutcomeKind
from meetpoint.travel_matrix import (
    INVALID,
    PHASE_0,
    PHASE_1,
    UNREACHABLE,
    CallBudget,
    MatrixOrchestrator,
    TravelTimeMatrix,
    TravelTimeStatus,
    classify_travel_time,
)

ORIGINS = [Coordinate(lat, lng) for lat, lng in NYC_POINTS]


def _points(prefix, n, phase=AlgorithmPhase.ANCHOR):
    return [
        HypothesisPoint(f"{prefix}_{i}", Coordinate(40.7 + i * 0.01, -74.0), HypothesisType.COARSE_GRID_CELL, phase)
        for i in range(n)
    ]


class TestClassifyTravelTime:
    @pytest.mark.parametrize("value", [0, 12.5, 1440])
    def test_measured(self, value):
        t = classify_travel_time(value)
        assert t.status == TravelTimeStatus.MEASURED
        assert t.minutes == float(value)

    @pytest.mark.parametrize("value", [None, math.inf, -1])
    def test_unreachable(self, value):
        assert classify_travel_time(value) == UNREACHABLE

    @pytest.mark.parametrize("value", [math.nan, -math.inf, 1441, '12', True])
    def test_invalid(self, value):
        assert classify_travel_time(value) == INVALID


class TestTravelTimeMatrix:
    def _matrix(self, rows):
        return TravelTimeMatrix(ORIGINS[:len(rows)], [Coordinate(0, i) for i in range(len(rows[0]))], rows,
                                TravelMode.DRIVING_CAR)

    def test_dimension_mismatch_on_rows(self):
        with pytest.raises(MatrixComputationError):
            self._matrix([[1.0, 2.0]]).validate_dimensions(2, 2)

    def test_dimension_mismatch_on_columns(self):
        with pytest.raises(MatrixComputationError) as exc:
            self._matrix([[1.0, 2.0], [3.0]]).validate_dimensions(2, 2)
        assert 'row 1' in str(exc.value)

    def test_column_is_tagged(self):
        column = self._matrix([[1.0, None], [2.0, 5.0]]).column(1)
        assert column[0] == UNREACHABLE
        assert column[1].minutes == 5.0

    def test_slice_and_concat(self):
        m = self._matrix([[1.0, 2.0, 3.0], [4.0, 5.0, 6.0]])
        left, right = m.slice_columns(0, 1), m.slice_columns(1, 3)
        assert right.travel_times == [[2.0, 3.0], [5.0, 6.0]]
        joined = TravelTimeMatrix.concat_columns([left, right])
        assert joined.travel_times == m.travel_times
        assert joined.destinations == m.destinations


class TestCallBudget:
    def test_reserve_until_exhausted(self):
        budget = CallBudget()
        assert budget.reserve() == 1
        assert budget.reserve() == 2
        assert budget.remaining == 0
        with pytest.raises(CallBudgetExceededError) as exc:
            budget.reserve()
        assert exc.value.limit == 2

    def test_budgets_are_independent(self):
        a, b = CallBudget(), CallBudget()
        a.reserve()
        a.reserve()
        assert b.reserve() == 1


class TestEvaluatePhase01:
    def test_one_call_for_anchors_and_grid(self):
        provider = FakeMatrixProvider()
        anchors, grid = _points('a', 3), _points('g', 4, AlgorithmPhase.COARSE_GRID)
        budget = CallBudget()
        outcome = MatrixOrchestrator(provider).evaluate_phase01(ORIGINS, anchors, grid, TravelMode.DRIVING_CAR, budget)

        assert outcome.ok
        assert provider.call_count == 1 and budget.used == 1
        assert len(provider.calls[0][1]) == 7
        evaluation = outcome.value
        assert [s.phase for s in evaluation.slices] == [PHASE_0, PHASE_1]
        assert evaluation.phase_of(2) == PHASE_0 and evaluation.phase_of(3) == PHASE_1

    def test_provider_failure_is_fatal(self):
        provider = FakeMatrixProvider(fail_on_call=1)
        outcome = MatrixOrchestrator(provider).evaluate_phase01(
            ORIGINS, _points('a', 2), [], TravelMode.DRIVING_CAR, CallBudget())
        assert outcome.kind == OutcomeKind.FATAL
        assert isinstance(outcome.error, MatrixComputationError)

    def test_malformed_matrix_is_fatal(self):
        def short_rows(origins, destinations, mode):
            return TravelTimeMatrix(origins, destinations, [[1.0] for _ in origins], mode)

        outcome = MatrixOrchestrator(short_rows).evaluate_phase01(
            ORIGINS, _points('a', 2), [], TravelMode.DRIVING_CAR, CallBudget())
        assert outcome.kind == OutcomeKind.FATAL

    def test_exhausted_budget_is_fatal(self):
        budget = CallBudget(max_calls=0)
        provider = FakeMatrixProvider()
        outcome = MatrixOrchestrator(provider).evaluate_phase01(
            ORIGINS, _points('a', 2), [], TravelMode.DRIVING_CAR, budget)
        assert outcome.kind == OutcomeKind.FATAL
        assert provider.call_count == 0


class TestEvaluatePhase2:
    def test_success(self):
        provider = FakeMatrixProvider()
        outcome = MatrixOrchestrator(provider).evaluate_phase2(
            ORIGINS, [_points('r', 5, AlgorithmPhase.LOCAL_REFINEMENT)], TravelMode.DRIVING_CAR, CallBudget())
        assert outcome.ok
        assert outcome.value.call_count == 1
        assert len(outcome.value.matrix.destinations) == 5

    def test_failure_is_skipped_not_fatal(self):
        provider = FakeMatrixProvider(fail_on_call=1)
        outcome = MatrixOrchestrator(provider).evaluate_phase2(
            ORIGINS, [_points('r', 5)], TravelMode.DRIVING_CAR, CallBudget())
        assert outcome.kind == OutcomeKind.SKIPPED
        assert isinstance(outcome.error, RefinementDegradationError)

    def test_no_budget_left_is_skipped(self):
        budget = CallBudget()
        budget.reserve()
        budget.reserve()
        provider = FakeMatrixProvider()
        outcome = MatrixOrchestrator(provider).evaluate_phase2(ORIGINS, [_points('r', 2)], TravelMode.DRIVING_CAR, budget)
        assert outcome.kind == OutcomeKind.SKIPPED
        assert provider.call_count == 0

    def test_empty_groups_skipped(self):
        outcome = MatrixOrchestrator(FakeMatrixProvider()).evaluate_phase2(
            ORIGINS, [[]], TravelMode.DRIVING_CAR, CallBudget())
        assert outcome.kind == OutcomeKind.SKIPPED
