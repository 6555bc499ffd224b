"""Tagged phase outcomes that drive the optimization state machine."""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class OutcomeKind(Enum):
    SUCCESS = 'SUCCESS'
    SKIPPED = 'SKIPPED'
    FATAL = 'FATAL'


@dataclass(frozen=True)
class PhaseOutcome:
    kind: OutcomeKind
    value: Any = None
    reason: Optional[str] = None
    error: Optional[BaseException] = None

    @classmethod
    def success(cls, value: Any) -> 'PhaseOutcome':
        return cls(OutcomeKind.SUCCESS, value=value)

    @classmethod
    def skipped(cls, reason: str, error: Optional[BaseException] = None) -> 'PhaseOutcome':
        return cls(OutcomeKind.SKIPPED, reason=reason, error=error)

    @classmethod
    def fatal(cls, error: BaseException) -> 'PhaseOutcome':
        return cls(OutcomeKind.FATAL, reason=str(error), error=error)

    @property
    def ok(self) -> bool:
        return self.kind == OutcomeKind.SUCCESS
