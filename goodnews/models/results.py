"""
Typed result for operations that can succeed outright, succeed through a
fallback, or fail.
"""

from dataclasses import dataclass
from typing import Any, Optional


OK = "ok"
DEGRADED = "degraded"
FAILED = "failed"


@dataclass(frozen=True)
class Outcome:
    status: str
    data: Any = None
    reason: Optional[str] = None
    error: Optional[BaseException] = None

    @classmethod
    def ok(cls, data: Any) -> "Outcome":
        return cls(status=OK, data=data)

    @classmethod
    def degraded(cls, data: Any, reason: str) -> "Outcome":
        return cls(status=DEGRADED, data=data, reason=reason)

    @classmethod
    def failed(cls, error: BaseException, reason: Optional[str] = None) -> "Outcome":
        return cls(status=FAILED, error=error, reason=reason or str(error))

    @property
    def is_ok(self) -> bool:
        return self.status == OK

    @property
    def is_degraded(self) -> bool:
        return self.status == DEGRADED

    @property
    def is_failed(self) -> bool:
        return self.status == FAILED

    def unwrap(self) -> Any:
        """Data for ok/degraded outcomes, re-raises the error for failed ones."""
        if self.is_failed:
            raise self.error
        return self.data

    def unwrap_or(self, default: Any) -> Any:
        return default if self.is_failed else self.data
