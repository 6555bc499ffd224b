"""Phased hypothesis (candidate meeting point) generation."""

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, List, Sequence, Tuple

from .errors import InputValidationError
from .geometry import (
    Coordinate,
    bounding_box,
    generate_grid,
    generate_local_refinement,
    geographic_centroid,
    median_coordinate,
    pairwise_midpoints,
    validate_coordinate_bounds,
)
from .optimization_config import CoarseGridConfig, LocalRefinementConfig

logger = logging.getLogger(__name__)

NEAR_DUPLICATE_THRESHOLD_DEG = 0.001   # ~100 m


class HypothesisType(Enum):
    GEOGRAPHIC_CENTROID = 'GEOGRAPHIC_CENTROID'
    MEDIAN_COORDINATE = 'MEDIAN_COORDINATE'
    PARTICIPANT_LOCATION = 'PARTICIPANT_LOCATION'
    PAIRWISE_MIDPOINT = 'PAIRWISE_MIDPOINT'
    COARSE_GRID_CELL = 'COARSE_GRID_CELL'
    LOCAL_REFINEMENT_CELL = 'LOCAL_REFINEMENT_CELL'


class AlgorithmPhase(Enum):
    ANCHOR = 'ANCHOR'
    COARSE_GRID = 'COARSE_GRID'
    LOCAL_REFINEMENT = 'LOCAL_REFINEMENT'
    FINAL_OUTPUT = 'FINAL_OUTPUT'


@dataclass(frozen=True)
class Location:
    id: str
    name: str
    coordinate: Coordinate

    @classmethod
    def from_dict(cls, data: Dict, index: int) -> 'Location':
        """Build participant ``index`` from ``{'lat', 'lng', 'name'?}``."""
        return cls(
            id=f"location_{index}",
            name=data.get('name') or f"Location {index + 1}",
            coordinate=Coordinate.from_dict(data),
        )


@dataclass(frozen=True)
class HypothesisPoint:
    """A candidate coordinate. ``participant_ids`` holds one id, a pair, or nothing."""
    id: str
    coordinate: Coordinate
    type: HypothesisType
    phase: AlgorithmPhase
    participant_ids: Tuple[str, ...] = ()

    def with_phase(self, phase: AlgorithmPhase) -> 'HypothesisPoint':
        return replace(self, phase=phase)

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'coordinate': self.coordinate.to_dict(),
            'type': self.type.value,
            'phase': self.phase.value,
            'metadata': {'participant_ids': list(self.participant_ids)} if self.participant_ids else None,
        }


def _check_points(points: Sequence[HypothesisPoint], label: str) -> None:
    invalid = [p for p in points if not validate_coordinate_bounds(p.coordinate)]
    if invalid:
        logger.error(
            "Generated invalid %s points: %s", label,
            ', '.join(f"{p.id}: {p.coordinate.lat}, {p.coordinate.lng}" for p in invalid),
        )
        raise InputValidationError(
            f"Generated invalid {label} points: {', '.join(p.id for p in invalid)}"
        )


def baseline(locations: Sequence[Location]) -> List[HypothesisPoint]:
    """Phase 0 anchors: centroid, median, every participant, every pairwise midpoint."""
    if not locations:
        raise InputValidationError("At least one location is required to generate anchor points", field='locations')
    for idx, loc in enumerate(locations):
        if not validate_coordinate_bounds(loc.coordinate):
            raise InputValidationError(
                f"Invalid coordinates for location {idx + 1} ({loc.name}): "
                f"{loc.coordinate.lat}, {loc.coordinate.lng}. "
                f"Coordinates must be within valid geographic bounds.",
                field=f"locations[{idx}]",
            )

    coords = [loc.coordinate for loc in locations]
    points: List[HypothesisPoint] = [
        HypothesisPoint('geographic_centroid', geographic_centroid(coords),
                        HypothesisType.GEOGRAPHIC_CENTROID, AlgorithmPhase.ANCHOR),
        HypothesisPoint('median_coordinate', median_coordinate(coords),
                        HypothesisType.MEDIAN_COORDINATE, AlgorithmPhase.ANCHOR),
    ]
    for idx, loc in enumerate(locations):
        points.append(HypothesisPoint(
            f"participant_{idx}", loc.coordinate,
            HypothesisType.PARTICIPANT_LOCATION, AlgorithmPhase.ANCHOR, (loc.id,),
        ))
    for i, j, mid in pairwise_midpoints(coords):
        points.append(HypothesisPoint(
            f"pairwise_{i}_{j}", mid,
            HypothesisType.PAIRWISE_MIDPOINT, AlgorithmPhase.ANCHOR,
            (locations[i].id, locations[j].id),
        ))

    _check_points(points, 'anchor')
    logger.info("Generated %d anchor points for %d locations", len(points), len(locations))
    return points


def coarse_grid(locations: Sequence[Location], cfg: CoarseGridConfig) -> List[HypothesisPoint]:
    """Phase 1: uniform grid over the padded bounding box of all participants."""
    if not locations:
        raise InputValidationError("At least one location is required to generate a coarse grid", field='locations')
    bbox = bounding_box([loc.coordinate for loc in locations], cfg.padding_km)
    points = [
        HypothesisPoint(f"coarse_grid_{idx}", c, HypothesisType.COARSE_GRID_CELL, AlgorithmPhase.COARSE_GRID)
        for idx, c in enumerate(generate_grid(bbox, cfg.grid_resolution))
    ]
    _check_points(points, 'coarse grid')
    logger.info(
        "Generated %d coarse grid points (%dx%d, padding %.1fkm)",
        len(points), cfg.grid_resolution, cfg.grid_resolution, cfg.padding_km,
    )
    return points


def local_refinement(candidates: Sequence, cfg: LocalRefinementConfig) -> List[HypothesisPoint]:
    """Phase 2: fine grids around the best scored candidates.

    ``candidates`` are scored candidates exposing ``coordinate`` and
    ``max_travel_time``; they come from the scoring step.
    """
    seeds = [(c.coordinate, c.max_travel_time) for c in candidates]
    coords = generate_local_refinement(seeds, cfg.top_k, cfg.refinement_radius_km, cfg.fine_grid_resolution)
    points = [
        HypothesisPoint(f"local_refinement_{idx}", c,
                        HypothesisType.LOCAL_REFINEMENT_CELL, AlgorithmPhase.LOCAL_REFINEMENT)
        for idx, c in enumerate(coords)
    ]
    _check_points(points, 'local refinement')
    logger.info(
        "Generated %d local refinement points around %d candidates",
        len(points), min(cfg.top_k, len(seeds)),
    )
    return points


def remove_near_duplicates(
    points: Sequence[HypothesisPoint],
    threshold_deg: float = NEAR_DUPLICATE_THRESHOLD_DEG,
) -> List[HypothesisPoint]:
    """Drop points within ``threshold_deg`` of an earlier point on both axes."""
    kept: List[HypothesisPoint] = []
    for p in points:
        if all(
            abs(p.coordinate.lat - k.coordinate.lat) >= threshold_deg
            or abs(p.coordinate.lng - k.coordinate.lng) >= threshold_deg
            for k in kept
        ):
            kept.append(p)
    if len(kept) < len(points):
        logger.info("Removed %d near-duplicate hypothesis points", len(points) - len(kept))
    return kept


def generate_for_config(locations: Sequence[Location], config) -> Tuple[List[HypothesisPoint], List[HypothesisPoint]]:
    """Phase 0 anchors and, when the config enables it, the Phase 1 grid."""
    anchors = baseline(locations)
    grid: List[HypothesisPoint] = []
    if config.uses_coarse_grid:
        grid = coarse_grid(locations, config.coarse_grid_config)
    return anchors, grid

