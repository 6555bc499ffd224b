"""Shared fixtures: participant sets and an in-process travel time matrix provider."""

from typing import List, Optional

import pytest

from meetpoint.geometry import Coordinate, haversine_m
from meetpoint.hypotheses import Location
from meetpoint.optimization_config import TravelMode
from meetpoint.travel_matrix import TravelTimeMatrix


NYC_POINTS = [(40.7128, -74.0060), (40.6892, -74.0445), (40.7282, -73.7949)]


def make_locations(points) -> List[Location]:
    return [
        Location(id=f"location_{i}", name=f"Location {i + 1}", coordinate=Coordinate(lat, lng))
        for i, (lat, lng) in enumerate(points)
    ]


class FakeMatrixProvider:
    """Travel time = straight-line km * ``minutes_per_km``. Records every call.

    ``fail_on_call`` makes the given call number (1-based) raise.
    ``unreachable`` is a predicate on destinations that returns None times.
    """

    def __init__(self, minutes_per_km: float = 1.5, fail_on_call: Optional[int] = None, unreachable=None):
        self.minutes_per_km = minutes_per_km
        self.fail_on_call = fail_on_call
        self.unreachable = unreachable
        self.calls = []

    @property
    def call_count(self) -> int:
        return len(self.calls)

    def __call__(self, origins, destinations, travel_mode):
        self.calls.append((list(origins), list(destinations), travel_mode))
        if self.fail_on_call is not None and len(self.calls) == self.fail_on_call:
            raise RuntimeError("matrix service unavailable")
        times = []
        for o in origins:
            row = []
            for d in destinations:
                if self.unreachable and self.unreachable(d):
                    row.append(None)
                else:
                    row.append(haversine_m(o, d) / 1000.0 * self.minutes_per_km)
            times.append(row)
        return TravelTimeMatrix(list(origins), list(destinations), times, travel_mode)


@pytest.fixture
def nyc_locations() -> List[Location]:
    return make_locations(NYC_POINTS)


@pytest.fixture
def fake_matrix() -> FakeMatrixProvider:
    return FakeMatrixProvider()


@pytest.fixture
def driving() -> TravelMode:
    return TravelMode.DRIVING_CAR
