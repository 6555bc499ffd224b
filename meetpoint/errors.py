"""Exception types raised by the meeting point optimizer.

Every error carries a machine readable ``code`` and a ``user_message`` that the
HTTP layer can return unchanged.
"""

from typing import Optional


class MeetpointError(Exception):
    """Base class for all optimizer errors"""

    code = 'MEETPOINT_ERROR'

    def __init__(self, message: str, user_message: Optional[str] = None, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.user_message = user_message or message
        self.cause = cause

    def to_dict(self):
        return {'code': self.code, 'message': self.user_message}


class ConfigurationError(MeetpointError):
    """Invalid optimization settings, raised before any matrix call"""

    code = 'INVALID_OPTIMIZATION_CONFIG'

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class InputValidationError(MeetpointError):
    """Bad participant list, coordinates or travel mode"""

    code = 'INVALID_INPUT'

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class MatrixComputationError(MeetpointError):
    """The travel time matrix collaborator failed or returned a malformed matrix"""

    code = 'MATRIX_CALCULATION_FAILED'


class RefinementDegradationError(MeetpointError):
    """Local refinement could not run; the pipeline carries on without it"""

    code = 'REFINEMENT_DEGRADED'


class NoValidCandidatesError(MeetpointError):
    """No hypothesis point survived scoring"""

    code = 'NO_VALID_CANDIDATES'


class CallBudgetExceededError(MeetpointError):
    """More matrix calls were requested than the per-run budget allows"""

    code = 'CALL_BUDGET_EXCEEDED'

    def __init__(self, used: int, limit: int):
        super().__init__(
            f"Matrix call budget exhausted: {used} of {limit} calls already made",
            user_message='Too many travel time requests for a single optimization run.',
        )
        self.used = used
        self.limit = limit


class ReachabilityError(MeetpointError):
    """On-demand reachability polygon could not be computed"""

    code = 'REACHABILITY_FAILED'
