"""
Explicit outcomes returned by job handlers.
"""

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class JobResult:
    """Outcome of one handler attempt.

    ``retryable=False`` marks a permanent failure: the job fails terminally
    without spending its remaining attempts.
    """

    ok: bool
    error: str | None = None
    retryable: bool = True
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, **data: Any) -> "JobResult":
        return cls(ok=True, data=data)

    @classmethod
    def failure(cls, error: str, retryable: bool = True) -> "JobResult":
        return cls(ok=False, error=error, retryable=retryable)
