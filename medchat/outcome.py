from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar


T = TypeVar("T")


class OutcomeStatus(str, Enum):
    SUCCESS = "success"
    DEGRADED = "degraded"  # step failed, a usable fallback value was substituted
    FAILED = "failed"      # step failed, value is empty/None


@dataclass
class Outcome(Generic[T]):
    """
    Result of a best-effort step.

    Callers always get a value they can continue with; the status and
    error tell them whether it came from the happy path or a fallback.
    """

    status: OutcomeStatus
    value: T
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == OutcomeStatus.SUCCESS

    @classmethod
    def success(cls, value: T) -> "Outcome[T]":
        return cls(OutcomeStatus.SUCCESS, value)

    @classmethod
    def degraded(cls, value: T, error: Exception | str) -> "Outcome[T]":
        return cls(OutcomeStatus.DEGRADED, value, str(error))

    @classmethod
    def failed(cls, value: T, error: Exception | str) -> "Outcome[T]":
        return cls(OutcomeStatus.FAILED, value, str(error))
