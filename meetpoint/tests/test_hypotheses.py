"""
Unit tests for hypothesis point generation.

Tests:
1. Baseline anchor counts, ids, order and metadata
2. Baseline rejects invalid input naming the location
3. Coarse grid tagging and size
4. Local refinement tagging from scored candidates
5. Near-duplicate removal keeps the first point

Run with: python -m pytest meetpoint/tests/test_hypotheses.py -v
"""

import math
from collections import namedtuple

import pytest

from conftest import make_locations, NYC_POINTS
from meetpoint.errors import InputValidationError
from meetpoint.geometry import Coordinate
from meetpoint.hypotheses import (
    AlgorithmPhase,
    HypothesisPoint,
    HypothesisType,
    baseline,
    coarse_grid,
    local_refinement,
    remove_near_duplicates,
)
from meetpoint.optimization_config import CoarseGridConfig, LocalRefinementConfig

Seed = namedtuple('Seed', 'coordinate max_travel_time')


class TestBaseline:
    @pytest.mark.parametrize("n", [2, 3, 5, 12])
    def test_counts(self, n):
        """n participants and C(n,2) midpoints plus centroid and median."""
        locations = make_locations([(40 + i * 0.01, -74 + i * 0.02) for i in range(n)])
        points = baseline(locations)
        types = [p.type for p in points]
        assert types.count(HypothesisType.PARTICIPANT_LOCATION) == n
        assert types.count(HypothesisType.PAIRWISE_MIDPOINT) == math.comb(n, 2)
        assert types.count(HypothesisType.GEOGRAPHIC_CENTROID) == 1
        assert types.count(HypothesisType.MEDIAN_COORDINATE) == 1
        assert all(p.phase == AlgorithmPhase.ANCHOR for p in points)

    def test_nyc_scenario_ids_in_order(self, nyc_locations):
        """Centroid, median, 3 participants, 3 midpoints; no anchor is dropped."""
        ids = [p.id for p in baseline(nyc_locations)]
        assert ids == [
            'geographic_centroid', 'median_coordinate',
            'participant_0', 'participant_1', 'participant_2',
            'pairwise_0_1', 'pairwise_0_2', 'pairwise_1_2',
        ]

    def test_participant_metadata(self, nyc_locations):
        points = baseline(nyc_locations)
        participant = next(p for p in points if p.id == 'participant_1')
        pair = next(p for p in points if p.id == 'pairwise_0_2')
        assert participant.participant_ids == ('location_1',)
        assert participant.coordinate == nyc_locations[1].coordinate
        assert pair.participant_ids == ('location_0', 'location_2')

    def test_deterministic(self, nyc_locations):
        assert baseline(nyc_locations) == baseline(nyc_locations)

    def test_empty_rejected(self):
        with pytest.raises(InputValidationError):
            baseline([])

    def test_invalid_location_named_in_message(self):
        locations = make_locations([(40.0, -74.0), (95.0, -74.0)])
        with pytest.raises(InputValidationError) as exc:
            baseline(locations)
        assert 'location 2' in str(exc.value)
        assert exc.value.field == 'locations[1]'


class TestCoarseGrid:
    def test_grid_points_tagged_and_counted(self, nyc_locations):
        points = coarse_grid(nyc_locations, CoarseGridConfig(padding_km=5, grid_resolution=4))
        assert len(points) == 16
        assert points[0].id == 'coarse_grid_0' and points[-1].id == 'coarse_grid_15'
        assert all(p.type == HypothesisType.COARSE_GRID_CELL for p in points)
        assert all(p.phase == AlgorithmPhase.COARSE_GRID for p in points)

    def test_grid_covers_participants(self, nyc_locations):
        points = coarse_grid(nyc_locations, CoarseGridConfig(padding_km=5, grid_resolution=5))
        lats = [p.coordinate.lat for p in points]
        assert min(lats) < min(loc.coordinate.lat for loc in nyc_locations)
        assert max(lats) > max(loc.coordinate.lat for loc in nyc_locations)


class TestLocalRefinementPoints:
    def test_tagged_from_scored_candidates(self):
        seeds = [Seed(Coordinate(40.70, -74.00), 20.0), Seed(Coordinate(40.80, -73.90), 30.0)]
        points = local_refinement(seeds, LocalRefinementConfig(top_k=2, refinement_radius_km=1.0, fine_grid_resolution=2))
        assert len(points) == 8
        assert points[0].id == 'local_refinement_0'
        assert all(p.type == HypothesisType.LOCAL_REFINEMENT_CELL for p in points)
        assert all(p.phase == AlgorithmPhase.LOCAL_REFINEMENT for p in points)


class TestRemoveNearDuplicates:
    def _point(self, pid, lat, lng):
        return HypothesisPoint(pid, Coordinate(lat, lng), HypothesisType.COARSE_GRID_CELL, AlgorithmPhase.COARSE_GRID)

    def test_keeps_first_seen(self):
        points = [self._point('a', 40.0, -74.0), self._point('b', 40.0005, -74.0005), self._point('c', 40.01, -74.0)]
        assert [p.id for p in remove_near_duplicates(points)] == ['a', 'c']

    def test_requires_closeness_on_both_axes(self):
        points = [self._point('a', 40.0, -74.0), self._point('b', 40.0, -74.005)]
        assert len(remove_near_duplicates(points)) == 2
