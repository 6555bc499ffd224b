"""Optimization settings, their limits, and request-boundary validation.

Settings arrive as camelCase JSON and are turned into frozen dataclasses by
``OptimizationConfig.from_dict``. ``validate_optimization_config`` must run
before any matrix call; every error names the offending field and its bound.
"""

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional

from .errors import ConfigurationError, InputValidationError

logger = logging.getLogger(__name__)


# --- Limits ---
MIN_PADDING_KM = 0.0
MAX_PADDING_KM = 50.0
MIN_GRID_RESOLUTION = 2
MAX_GRID_RESOLUTION = 10
MAX_GRID_POINTS = 100
MIN_TOP_K = 1
MAX_TOP_K = 10
MIN_REFINEMENT_RADIUS_KM = 0.5
MAX_REFINEMENT_RADIUS_KM = 10.0
MIN_FINE_GRID_RESOLUTION = 2
MAX_FINE_GRID_RESOLUTION = 5
MAX_REFINEMENT_POINTS = 75
ESTIMATED_BASELINE_POINTS = 20    # conservative Phase 0 estimate for 12 participants
MAX_HYPOTHESIS_POINTS = 200       # destinations per matrix request
WARN_HYPOTHESIS_POINTS = 100

MIN_LOCATIONS = 2
MAX_LOCATIONS = 12
MIN_BUFFER_TIME_MINUTES = 5
MAX_BUFFER_TIME_MINUTES = 60
DEFAULT_BUFFER_TIME_MINUTES = 10
MIN_DEDUPLICATION_THRESHOLD_M = 100.0
MAX_DEDUPLICATION_THRESHOLD_M = 50000.0
DEFAULT_DEDUPLICATION_THRESHOLD_M = 2500.0
MIN_TOP_M = 1
MAX_TOP_M = 50
DEFAULT_TOP_M = 3
MANY_LOCATIONS = 8
MANY_LOCATIONS_MAX_TOP_K = 5


class OptimizationMode(Enum):
    BASELINE = 'BASELINE'
    COARSE_GRID = 'COARSE_GRID'
    FULL_REFINEMENT = 'FULL_REFINEMENT'


class OptimizationGoal(Enum):
    MINIMAX = 'MINIMAX'
    MEAN = 'MEAN'
    MIN = 'MIN'


class TravelMode(Enum):
    DRIVING_CAR = 'DRIVING_CAR'
    CYCLING_REGULAR = 'CYCLING_REGULAR'
    FOOT_WALKING = 'FOOT_WALKING'


@dataclass(frozen=True)
class CoarseGridConfig:
    """Phase 1 grid settings.

    Attributes:
        enabled: Whether the grid is generated at all.
        padding_km: Padding added around the participants' bounding box.
        grid_resolution: Cells per side; the grid has resolution**2 points.
    """
    enabled: bool = True
    padding_km: float = 5.0
    grid_resolution: int = 5

    @property
    def point_count(self) -> int:
        return self.grid_resolution * self.grid_resolution


@dataclass(frozen=True)
class LocalRefinementConfig:
    """Phase 2 refinement settings.

    Attributes:
        enabled: Whether local refinement runs.
        top_k: How many of the best Phase 0+1 candidates get a fine grid.
        refinement_radius_km: Half-width of each fine grid.
        fine_grid_resolution: Cells per side of each fine grid.
    """
    enabled: bool = True
    top_k: int = 3
    refinement_radius_km: float = 2.0
    fine_grid_resolution: int = 3

    @property
    def point_count(self) -> int:
        return self.top_k * self.fine_grid_resolution * self.fine_grid_resolution


@dataclass(frozen=True)
class OptimizationConfig:
    mode: OptimizationMode = OptimizationMode.BASELINE
    coarse_grid_config: Optional[CoarseGridConfig] = None
    local_refinement_config: Optional[LocalRefinementConfig] = None

    @property
    def uses_coarse_grid(self) -> bool:
        return (
            self.mode in (OptimizationMode.COARSE_GRID, OptimizationMode.FULL_REFINEMENT)
            and self.coarse_grid_config is not None
            and self.coarse_grid_config.enabled
        )

    @property
    def uses_local_refinement(self) -> bool:
        return (
            self.mode == OptimizationMode.FULL_REFINEMENT
            and self.local_refinement_config is not None
            and self.local_refinement_config.enabled
        )

    @classmethod
    def for_mode(cls, mode: OptimizationMode) -> 'OptimizationConfig':
        """Config with default sub-configs for ``mode``."""
        if mode == OptimizationMode.BASELINE:
            return cls(mode)
        if mode == OptimizationMode.COARSE_GRID:
            return cls(mode, CoarseGridConfig())
        return cls(mode, CoarseGridConfig(), LocalRefinementConfig())

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> 'OptimizationConfig':
        """Parse the camelCase JSON form. Values are checked later by ``validate_optimization_config``."""
        if not data:
            return DEFAULT_OPTIMIZATION_CONFIG
        if not isinstance(data, dict):
            raise ConfigurationError("optimizationConfig must be an object", field='optimizationConfig')

        mode = parse_enum(OptimizationMode, data.get('mode', 'BASELINE'), 'mode', ConfigurationError)

        coarse = None
        raw_coarse = data.get('coarseGridConfig')
        if raw_coarse is not None:
            if not isinstance(raw_coarse, dict):
                raise ConfigurationError("coarseGridConfig must be an object", field='coarseGridConfig')
            defaults = CoarseGridConfig()
            coarse = CoarseGridConfig(
                enabled=bool(raw_coarse.get('enabled', defaults.enabled)),
                padding_km=raw_coarse.get('paddingKm', defaults.padding_km),
                grid_resolution=raw_coarse.get('gridResolution', defaults.grid_resolution),
            )

        refinement = None
        raw_ref = data.get('localRefinementConfig')
        if raw_ref is not None:
            if not isinstance(raw_ref, dict):
                raise ConfigurationError("localRefinementConfig must be an object", field='localRefinementConfig')
            defaults = LocalRefinementConfig()
            refinement = LocalRefinementConfig(
                enabled=bool(raw_ref.get('enabled', defaults.enabled)),
                top_k=raw_ref.get('topK', defaults.top_k),
                refinement_radius_km=raw_ref.get('refinementRadiusKm', defaults.refinement_radius_km),
                fine_grid_resolution=raw_ref.get('fineGridResolution', defaults.fine_grid_resolution),
            )

        return cls(mode=mode, coarse_grid_config=coarse, local_refinement_config=refinement)

    def to_dict(self) -> Dict:
        out: Dict = {'mode': self.mode.value}
        if self.coarse_grid_config:
            c = self.coarse_grid_config
            out['coarseGridConfig'] = {
                'enabled': c.enabled, 'paddingKm': c.padding_km, 'gridResolution': c.grid_resolution,
            }
        if self.local_refinement_config:
            r = self.local_refinement_config
            out['localRefinementConfig'] = {
                'enabled': r.enabled, 'topK': r.top_k,
                'refinementRadiusKm': r.refinement_radius_km, 'fineGridResolution': r.fine_grid_resolution,
            }
        return out


DEFAULT_OPTIMIZATION_CONFIG = OptimizationConfig()


def parse_enum(enum_cls, value, field_name: str, error_cls=InputValidationError):
    """Look up ``value`` in ``enum_cls`` or raise ``error_cls`` naming the allowed values."""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ', '.join(m.value for m in enum_cls)
        raise error_cls(f"Invalid {field_name}: {value}. Must be one of: {allowed}", field=field_name)


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def validate_coarse_grid_config(cfg: CoarseGridConfig) -> None:
    name = 'coarseGridConfig'
    if not _is_number(cfg.padding_km):
        raise ConfigurationError(
            f"Invalid padding: {cfg.padding_km}. Must be a finite number", field=f"{name}.paddingKm")
    if cfg.padding_km < MIN_PADDING_KM or cfg.padding_km > MAX_PADDING_KM:
        raise ConfigurationError(
            f"Invalid padding: {cfg.padding_km}km. Must be between {MIN_PADDING_KM:g} and {MAX_PADDING_KM:g} kilometers",
            field=f"{name}.paddingKm")
    if not _is_int(cfg.grid_resolution):
        raise ConfigurationError(
            f"Invalid grid resolution: {cfg.grid_resolution}. Must be an integer", field=f"{name}.gridResolution")
    if cfg.grid_resolution < MIN_GRID_RESOLUTION or cfg.grid_resolution > MAX_GRID_RESOLUTION:
        raise ConfigurationError(
            f"Invalid grid resolution: {cfg.grid_resolution}. "
            f"Must be between {MIN_GRID_RESOLUTION} and {MAX_GRID_RESOLUTION}",
            field=f"{name}.gridResolution")
    if cfg.point_count > MAX_GRID_POINTS:
        raise ConfigurationError(
            f"Grid resolution {cfg.grid_resolution}x{cfg.grid_resolution} creates {cfg.point_count} points, "
            f"exceeding maximum of {MAX_GRID_POINTS}",
            field=f"{name}.gridResolution")


def validate_local_refinement_config(cfg: LocalRefinementConfig) -> None:
    name = 'localRefinementConfig'
    if not _is_int(cfg.top_k):
        raise ConfigurationError(f"Invalid topK: {cfg.top_k}. Must be an integer", field=f"{name}.topK")
    if cfg.top_k < MIN_TOP_K or cfg.top_k > MAX_TOP_K:
        raise ConfigurationError(
            f"Invalid topK: {cfg.top_k}. Must be between {MIN_TOP_K} and {MAX_TOP_K}", field=f"{name}.topK")
    if not _is_number(cfg.refinement_radius_km):
        raise ConfigurationError(
            f"Invalid refinement radius: {cfg.refinement_radius_km}. Must be a finite number",
            field=f"{name}.refinementRadiusKm")
    if cfg.refinement_radius_km < MIN_REFINEMENT_RADIUS_KM or cfg.refinement_radius_km > MAX_REFINEMENT_RADIUS_KM:
        raise ConfigurationError(
            f"Invalid refinement radius: {cfg.refinement_radius_km}km. "
            f"Must be between {MIN_REFINEMENT_RADIUS_KM:g} and {MAX_REFINEMENT_RADIUS_KM:g} kilometers",
            field=f"{name}.refinementRadiusKm")
    if not _is_int(cfg.fine_grid_resolution):
        raise ConfigurationError(
            f"Invalid fine grid resolution: {cfg.fine_grid_resolution}. Must be an integer",
            field=f"{name}.fineGridResolution")
    if cfg.fine_grid_resolution < MIN_FINE_GRID_RESOLUTION or cfg.fine_grid_resolution > MAX_FINE_GRID_RESOLUTION:
        raise ConfigurationError(
            f"Invalid fine grid resolution: {cfg.fine_grid_resolution}. "
            f"Must be between {MIN_FINE_GRID_RESOLUTION} and {MAX_FINE_GRID_RESOLUTION}",
            field=f"{name}.fineGridResolution")
    if cfg.point_count > MAX_REFINEMENT_POINTS:
        per = cfg.fine_grid_resolution * cfg.fine_grid_resolution
        raise ConfigurationError(
            f"Local refinement configuration creates {cfg.point_count} points "
            f"({cfg.top_k} candidates x {per} points each), exceeding maximum of {MAX_REFINEMENT_POINTS}",
            field=name)


def estimate_hypothesis_points(config: OptimizationConfig) -> int:
    """Conservative upper estimate of destinations across all phases."""
    total = ESTIMATED_BASELINE_POINTS
    if config.coarse_grid_config and config.coarse_grid_config.enabled:
        total += config.coarse_grid_config.point_count
    if config.local_refinement_config and config.local_refinement_config.enabled:
        total += config.local_refinement_config.point_count
    return total


def validate_optimization_config(config: OptimizationConfig) -> None:
    """Raise ``ConfigurationError`` for any out-of-range field or inconsistent mode."""
    parse_enum(OptimizationMode, config.mode, 'mode', ConfigurationError)

    if config.coarse_grid_config:
        validate_coarse_grid_config(config.coarse_grid_config)
    if config.local_refinement_config:
        validate_local_refinement_config(config.local_refinement_config)

    if config.mode in (OptimizationMode.COARSE_GRID, OptimizationMode.FULL_REFINEMENT):
        if not config.coarse_grid_config:
            raise ConfigurationError(
                f"Coarse grid configuration required for mode: {config.mode.value}", field='coarseGridConfig')
        if not config.coarse_grid_config.enabled:
            raise ConfigurationError(
                f"Coarse grid must be enabled for mode: {config.mode.value}", field='coarseGridConfig.enabled')

    if config.mode == OptimizationMode.FULL_REFINEMENT:
        if not config.local_refinement_config:
            raise ConfigurationError(
                f"Local refinement configuration required for mode: {config.mode.value}",
                field='localRefinementConfig')
        if not config.local_refinement_config.enabled:
            raise ConfigurationError(
                f"Local refinement must be enabled for mode: {config.mode.value}",
                field='localRefinementConfig.enabled')

    total = estimate_hypothesis_points(config)
    if total > MAX_HYPOTHESIS_POINTS:
        raise ConfigurationError(
            f"Configuration would generate approximately {total} hypothesis points, "
            f"exceeding limit of {MAX_HYPOTHESIS_POINTS} destinations per matrix request",
            field='apiUsageConstraints')
    if total > WARN_HYPOTHESIS_POINTS:
        logger.warning(
            "Configuration will generate approximately %d hypothesis points, which may result in slower response times",
            total)


def validate_geographic_constraints(config: OptimizationConfig, location_count: int) -> None:
    """Reject grid modes for two participants and wide refinement for many participants."""
    if location_count < 3 and config.mode != OptimizationMode.BASELINE:
        raise ConfigurationError(
            f"Advanced optimization modes not recommended for {location_count} locations. Use BASELINE mode",
            field='mode')
    if location_count > MANY_LOCATIONS and config.local_refinement_config \
            and config.local_refinement_config.enabled \
            and config.local_refinement_config.top_k > MANY_LOCATIONS_MAX_TOP_K:
        raise ConfigurationError(
            f"TopK value {config.local_refinement_config.top_k} too high for {location_count} locations. "
            f"Must be at most {MANY_LOCATIONS_MAX_TOP_K}",
            field='localRefinementConfig.topK')


@dataclass(frozen=True)
class RequestSettings:
    """Boundary settings of one optimization request besides the algorithm config."""
    travel_mode: TravelMode = TravelMode.DRIVING_CAR
    goal: OptimizationGoal = OptimizationGoal.MINIMAX
    buffer_time_minutes: float = DEFAULT_BUFFER_TIME_MINUTES
    deduplication_threshold_m: float = DEFAULT_DEDUPLICATION_THRESHOLD_M
    top_m: int = DEFAULT_TOP_M
    config: OptimizationConfig = field(default_factory=OptimizationConfig)


def validate_location_count(count: int) -> None:
    if count < MIN_LOCATIONS:
        raise InputValidationError(
            f"At least {MIN_LOCATIONS} locations are required for center calculation", field='locations')
    if count > MAX_LOCATIONS:
        raise InputValidationError(
            f"Maximum {MAX_LOCATIONS} locations supported for center calculation", field='locations')


def validate_request_settings(settings: RequestSettings, location_count: int) -> None:
    """Participant count, buffer time, dedup threshold, result count, then the algorithm config."""
    validate_location_count(location_count)
    parse_enum(TravelMode, settings.travel_mode, 'travelMode')
    parse_enum(OptimizationGoal, settings.goal, 'optimizationGoal')

    if not _is_number(settings.buffer_time_minutes) \
            or not MIN_BUFFER_TIME_MINUTES <= settings.buffer_time_minutes <= MAX_BUFFER_TIME_MINUTES:
        raise InputValidationError(
            f"Buffer time {settings.buffer_time_minutes} is outside valid range "
            f"({MIN_BUFFER_TIME_MINUTES}-{MAX_BUFFER_TIME_MINUTES} minutes)",
            field='bufferTimeMinutes')
    if not _is_number(settings.deduplication_threshold_m) \
            or not MIN_DEDUPLICATION_THRESHOLD_M <= settings.deduplication_threshold_m <= MAX_DEDUPLICATION_THRESHOLD_M:
        raise InputValidationError(
            f"Invalid deduplication threshold: {settings.deduplication_threshold_m}m. "
            f"Must be between {MIN_DEDUPLICATION_THRESHOLD_M:g} and {MAX_DEDUPLICATION_THRESHOLD_M:g} meters",
            field='deduplicationThreshold')
    if not _is_int(settings.top_m) or not MIN_TOP_M <= settings.top_m <= MAX_TOP_M:
        raise InputValidationError(
            f"Invalid topM: {settings.top_m}. Must be between {MIN_TOP_M} and {MAX_TOP_M}", field='topM')

    validate_optimization_config(settings.config)
    validate_geographic_constraints(settings.config, location_count)
