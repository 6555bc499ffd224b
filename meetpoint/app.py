from flask import Flask, request, jsonify, g
from flask_cors import CORS
from dotenv import load_dotenv
import os
import logging
from time import perf_counter
from typing import List, Optional

from .errors import (
    ConfigurationError,
    InputValidationError,
    MatrixComputationError,
    MeetpointError,
    NoValidCandidatesError,
    ReachabilityError,
)
from .geometry import Coordinate
from .hypotheses import Location
from .maps_service import GoogleMapsService
from .optimization_config import (
    DEFAULT_BUFFER_TIME_MINUTES,
    DEFAULT_DEDUPLICATION_THRESHOLD_M,
    DEFAULT_TOP_M,
    OptimizationConfig,
)
from .pipeline import OptimizationPipeline
from .scoring import ScoredCandidate

# Load environment variables
load_dotenv()

# Configure logging
logging.basicConfig(
    level=getattr(logging, os.getenv('LOG_LEVEL', 'INFO').upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(os.getenv('LOG_FILE', 'app.log')),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)

ERROR_STATUS = {
    ConfigurationError: 400,
    InputValidationError: 400,
    NoValidCandidatesError: 422,
    MatrixComputationError: 502,
    ReachabilityError: 502,
}


def _error_response(message: str, status: int, code: str = 'BAD_REQUEST'):
    return jsonify({'success': False, 'error': {'code': code, 'message': message}}), status


def _parse_locations(data) -> List[Location]:
    raw = data.get('locations')
    if not isinstance(raw, list):
        raise InputValidationError("locations must be a list of {lat, lng} objects", field='locations')
    locations = []
    for idx, item in enumerate(raw):
        try:
            locations.append(Location.from_dict(item, idx))
        except (KeyError, TypeError, ValueError, AttributeError):
            raise InputValidationError(
                f"Location {idx + 1} must have numeric lat and lng properties", field=f"locations[{idx}]")
    return locations


def _load_maps_service() -> Optional[GoogleMapsService]:
    api_key = os.getenv('GOOGLE_MAPS_API_KEY')
    logger.info(f"API Key found: {'Yes' if api_key and api_key != 'your_api_key_here' else 'No'}")
    if not api_key or api_key == "your_api_key_here":
        logger.warning("GOOGLE_MAPS_API_KEY not found or not configured in environment variables")
        return None
    try:
        logger.info("Initializing Google Maps service...")
        service = GoogleMapsService(api_key)
        logger.info("Google Maps service initialized successfully")
        return service
    except ValueError as e:
        logger.error(f"Error initializing Google Maps service: {e}")
        return None


def create_app(pipeline: Optional[OptimizationPipeline] = None,
               maps_service: Optional[GoogleMapsService] = None) -> Flask:
    """Build the API. Without an explicit pipeline one is wired to ``maps_service``."""
    app = Flask(__name__)
    CORS(app)  # Enable CORS for all routes

    if pipeline is None:
        pipeline = OptimizationPipeline(
            maps_service.compute_travel_time_matrix if maps_service else None,
            maps_service.compute_reachability_polygon if maps_service else None,
        )

    # Per-request timing: record start time and log duration on completion
    @app.before_request
    def _start_timer():
        g._start_time = perf_counter()

    @app.after_request
    def _log_request_duration(response):
        start = getattr(g, '_start_time', None)
        if start is not None:
            duration_ms = (perf_counter() - start) * 1000.0
            # Include response time header for easy debugging/measurement
            response.headers['X-Process-Time-ms'] = f"{duration_ms:.1f}"
            logger.info(
                "request completed: method=%s path=%s status=%s duration_ms=%.1f remote_addr=%s",
                request.method,
                request.path,
                response.status_code,
                duration_ms,
                request.remote_addr,
            )
        return response

    @app.errorhandler(MeetpointError)
    def _handle_meetpoint_error(error: MeetpointError):
        status = next((s for cls, s in ERROR_STATUS.items() if isinstance(error, cls)), 500)
        if status >= 500:
            logger.error(f"{type(error).__name__}: {error}")
        else:
            logger.warning(f"{type(error).__name__}: {error}")
        body = {'success': False, 'error': error.to_dict()}
        field = getattr(error, 'field', None)
        if field:
            body['error']['field'] = field
        return jsonify(body), status

    @app.errorhandler(404)
    def not_found(error):
        return _error_response('Endpoint not found', 404, 'NOT_FOUND')

    @app.errorhandler(500)
    def internal_error(error):
        return _error_response('Internal server error', 500, 'INTERNAL_ERROR')

    @app.route('/', methods=['GET'])
    def health_check():
        """Health check endpoint"""
        return jsonify({
            'message': 'Fair meeting point API is running!',
            'endpoints': {
                'hypothesis_points': '/api/hypothesis-points',
                'optimize': '/api/optimize',
                'rescore': '/api/rescore',
                'reachability': '/api/reachability',
                'geocode': '/api/geocode',
                'health': '/'
            },
            'maps_configured': maps_service is not None,
            'status': 'healthy'
        })

    @app.route('/api/hypothesis-points', methods=['POST'])
    def hypothesis_points():
        """
        Phase 0 (+ Phase 1) candidate points, no travel time calls
        Expected JSON: {"locations": [{"lat": .., "lng": ..}, ...], "optimizationConfig": {...}}
        """
        data = request.get_json(silent=True)
        if not data:
            return _error_response('JSON data is required', 400)
        locations = _parse_locations(data)
        config = OptimizationConfig.from_dict(data.get('optimizationConfig'))
        points = pipeline.generate_hypothesis_points(locations, config)
        logger.info(f"Generated {len(points)} hypothesis points for {len(locations)} locations")
        return jsonify({
            'success': True,
            'data': {
                'hypothesisPoints': [p.to_dict() for p in points],
                'totalHypothesisPoints': len(points),
            }
        })

    @app.route('/api/optimize', methods=['POST'])
    def optimize():
        """
        Run the multi-phase optimization
        Expected JSON: {
            "locations": [{"lat": 40.71, "lng": -74.00, "name": "A"}, ...],
            "travelMode": "DRIVING_CAR",              // optional
            "optimizationGoal": "MINIMAX",            // optional: MINIMAX | MEAN | MIN
            "optimizationConfig": {"mode": "BASELINE", ...},   // optional
            "bufferTimeMinutes": 10,                  // optional, 5..60
            "deduplicationThreshold": 2500,           // optional, meters
            "topM": 3                                 // optional
        }
        """
        logger.info("=== OPTIMIZE REQUEST ===")
        if not pipeline.has_matrix_provider:
            logger.error("Google Maps API key not configured - cannot optimize")
            return _error_response('Google Maps API key not configured', 500, 'NOT_CONFIGURED')

        data = request.get_json(silent=True)
        if not data:
            return _error_response('JSON data is required', 400)

        locations = _parse_locations(data)
        config = OptimizationConfig.from_dict(data.get('optimizationConfig'))

        _algo_start = perf_counter()
        result = pipeline.run_optimization(
            locations,
            travel_mode=data.get('travelMode', 'DRIVING_CAR'),
            config=config,
            goal=data.get('optimizationGoal', 'MINIMAX'),
            buffer_time_minutes=data.get('bufferTimeMinutes', DEFAULT_BUFFER_TIME_MINUTES),
            deduplication_threshold_m=data.get('deduplicationThreshold', DEFAULT_DEDUPLICATION_THRESHOLD_M),
            top_m=data.get('topM', DEFAULT_TOP_M),
        )
        _compute_ms = (perf_counter() - _algo_start) * 1000.0
        logger.info(
            "Time to optimize = %.1f ms (mode=%s, calls=%d, degraded=%s)",
            _compute_ms, result.mode, result.matrix_calls, result.degraded)

        response = jsonify({'success': True, 'data': result.to_dict()})
        response.headers['X-Compute-Time-ms'] = f"{_compute_ms:.1f}"
        return response

    @app.route('/api/rescore', methods=['POST'])
    def rescore_points():
        """
        Re-rank already scored points under another goal, no travel time calls
        Expected JSON: {"points": [<scored point from /api/optimize>], "optimizationGoal": "MEAN"}
        """
        data = request.get_json(silent=True)
        if not data or not isinstance(data.get('points'), list):
            return _error_response('points must be a list of scored points', 400)
        try:
            scored = [ScoredCandidate.from_dict(p) for p in data['points']]
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise InputValidationError(f"Invalid scored point: {e}", field='points')
        ranked = pipeline.rescore_for_goal(scored, data.get('optimizationGoal', 'MINIMAX'))
        return jsonify({'success': True, 'data': {'rankedPoints': [c.to_dict() for c in ranked]}})

    @app.route('/api/reachability', methods=['POST'])
    def reachability():
        """
        Reachability polygon for one chosen point
        Expected JSON: {"center": {"lat": .., "lng": ..}, "travelTimeMinutes": 25, "travelMode": "DRIVING_CAR"}
        """
        if not pipeline.has_reachability_provider:
            return _error_response('Google Maps API key not configured', 500, 'NOT_CONFIGURED')
        data = request.get_json(silent=True)
        if not data or not isinstance(data.get('center'), dict):
            return _error_response('center with lat and lng is required', 400)
        try:
            center = Coordinate.from_dict(data['center'])
        except (KeyError, TypeError, ValueError):
            raise InputValidationError("center must have numeric lat and lng properties", field='center')
        polygon = pipeline.compute_reachability(
            center,
            data.get('travelTimeMinutes'),
            data.get('travelMode', 'DRIVING_CAR'),
        )
        return jsonify({'success': True, 'data': {'polygon': [c.to_dict() for c in polygon]}})

    @app.route('/api/geocode', methods=['POST'])
    def geocode_address():
        """
        Geocode a single address
        Expected JSON: {"address": "123 Main St, City, State"}
        """
        if not maps_service:
            logger.error("Google Maps API key not configured - cannot geocode")
            return _error_response('Google Maps API key not configured', 500, 'NOT_CONFIGURED')
        data = request.get_json(silent=True)
        if not data or 'address' not in data:
            return _error_response('Address is required', 400)

        result = maps_service.geocode_address(data['address'])
        if result:
            return jsonify({'success': True, 'data': result})
        logger.warning(f"Failed to geocode address: '{data['address']}'")
        return _error_response('Could not geocode the provided address', 404, 'GEOCODING_FAILED')

    return app


maps_service = _load_maps_service()
app = create_app(maps_service=maps_service)
