"""
Unit tests for the geometry primitives.

Tests:
1. Centroid and per-axis median
2. Pairwise midpoint count and ordering
3. Bounding box padding, longitude correction and clamping
4. Grid size, cell centres and bounds
5. Local refinement selection, size bound and merging
6. Coordinate validation

Run with: python -m pytest meetpoint/tests/test_geometry.py -v
"""

import math

import pytest

from meetpoint.geometry import (
    BoundingBox,
    Coordinate,
    bounding_box,
    generate_grid,
    generate_local_refinement,
    geographic_centroid,
    haversine_m,
    median_coordinate,
    pairwise_midpoints,
    validate_coordinate_bounds,
)


class TestCentroidAndMedian:
    def test_centroid_is_arithmetic_mean(self):
        """Centroid averages each axis independently."""
        c = geographic_centroid([Coordinate(0, 0), Coordinate(10, 20), Coordinate(20, 40)])
        assert c == Coordinate(10, 20)

    def test_centroid_requires_input(self):
        with pytest.raises(ValueError):
            geographic_centroid([])

    def test_median_is_per_axis(self):
        """Median of each axis need not be an input point."""
        coords = [Coordinate(1, 30), Coordinate(2, 10), Coordinate(3, 20)]
        assert median_coordinate(coords) == Coordinate(2, 20)

    def test_median_even_count_averages_middle_values(self):
        coords = [Coordinate(0, 0), Coordinate(2, 4), Coordinate(4, 8), Coordinate(6, 12)]
        assert median_coordinate(coords) == Coordinate(3, 6)


class TestPairwiseMidpoints:
    def test_count_is_n_choose_2(self):
        coords = [Coordinate(i, i) for i in range(6)]
        assert len(pairwise_midpoints(coords)) == math.comb(6, 2)

    def test_order_is_i_outer_j_inner(self):
        coords = [Coordinate(0, 0), Coordinate(2, 2), Coordinate(4, 4)]
        pairs = [(i, j) for i, j, _ in pairwise_midpoints(coords)]
        assert pairs == [(0, 1), (0, 2), (1, 2)]

    def test_midpoint_values(self):
        (_, _, mid), = pairwise_midpoints([Coordinate(0, 0), Coordinate(2, 4)])
        assert mid == Coordinate(1, 2)


class TestBoundingBox:
    def test_latitude_padding_uses_111_km_per_degree(self):
        bbox = bounding_box([Coordinate(0, 0), Coordinate(1, 1)], 111.0)
        assert bbox.north == pytest.approx(2.0)
        assert bbox.south == pytest.approx(-1.0)

    def test_longitude_padding_is_corrected_by_latitude(self):
        """At 60 degrees a km spans twice as many degrees of longitude."""
        bbox = bounding_box([Coordinate(60, 10)], 11.1)
        lat_pad = bbox.north - 60
        lng_pad = bbox.east - 10
        assert lng_pad == pytest.approx(2 * lat_pad, rel=1e-6)

    def test_clamped_to_legal_ranges(self):
        bbox = bounding_box([Coordinate(89.9, 179.9), Coordinate(-89.9, -179.9)], 50)
        assert bbox.north == 90 and bbox.south == -90
        assert bbox.east == 180 and bbox.west == -180

    def test_negative_padding_rejected(self):
        with pytest.raises(ValueError):
            bounding_box([Coordinate(0, 0)], -1)


class TestGenerateGrid:
    @pytest.mark.parametrize("resolution", [1, 2, 5, 10])
    def test_returns_resolution_squared_points_inside_box(self, resolution):
        bbox = BoundingBox(north=41.0, south=40.0, east=-73.0, west=-74.0)
        points = generate_grid(bbox, resolution)
        assert len(points) == resolution ** 2
        assert all(bbox.contains(p) for p in points)

    def test_points_are_cell_centres(self):
        bbox = BoundingBox(north=2.0, south=0.0, east=2.0, west=0.0)
        points = generate_grid(bbox, 2)
        assert points == [Coordinate(0.5, 0.5), Coordinate(0.5, 1.5), Coordinate(1.5, 0.5), Coordinate(1.5, 1.5)]

    def test_out_of_range_resolution_rejected(self):
        bbox = BoundingBox(north=1.0, south=0.0, east=1.0, west=0.0)
        with pytest.raises(ValueError):
            generate_grid(bbox, 0)
        with pytest.raises(ValueError):
            generate_grid(bbox, 21)

    def test_missing_bbox_rejected(self):
        with pytest.raises(ValueError):
            generate_grid(None, 3)


class TestLocalRefinement:
    def test_size_bounded_by_k_times_f_squared(self):
        candidates = [(Coordinate(40 + i * 0.2, -74), float(i)) for i in range(5)]
        points = generate_local_refinement(candidates, 3, 2.0, 3)
        assert 0 < len(points) <= 3 * 9

    def test_picks_lowest_max_travel_time(self):
        """Grids are built around the best candidates only."""
        near = (Coordinate(40.0, -74.0), 10.0)
        far = (Coordinate(45.0, -70.0), 50.0)
        points = generate_local_refinement([far, near], 1, 1.0, 2)
        assert all(haversine_m(p, near[0]) < 2000 for p in points)

    def test_overlapping_grids_are_merged(self):
        """Two identical candidates produce one grid's worth of points."""
        c = Coordinate(40.0, -74.0)
        points = generate_local_refinement([(c, 1.0), (c, 1.0)], 2, 1.0, 3)
        assert len(points) == 9

    def test_empty_candidates_rejected(self):
        with pytest.raises(ValueError):
            generate_local_refinement([], 1, 1.0, 3)

    @pytest.mark.parametrize("top_k,radius,fine", [(0, 1.0, 3), (1, 0.05, 3), (1, 1.0, 1), (1, 11.0, 3)])
    def test_out_of_range_parameters_rejected(self, top_k, radius, fine):
        with pytest.raises(ValueError):
            generate_local_refinement([(Coordinate(0, 0), 1.0)], top_k, radius, fine)


class TestValidateCoordinateBounds:
    def test_accepts_legal_values(self):
        assert validate_coordinate_bounds(Coordinate(90, -180))

    @pytest.mark.parametrize("lat,lng", [(91, 0), (0, 181), (float('nan'), 0), (0, float('inf'))])
    def test_rejects_illegal_values(self, lat, lng):
        assert not validate_coordinate_bounds(Coordinate(lat, lng))
