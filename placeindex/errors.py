"""Error taxonomy and batch failure reports."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

__all__ = [
    "PlaceIndexError",
    "DuplicateId",
    "NotFound",
    "InvalidGeometry",
    "TargetAlreadyInitialized",
    "BatchFailure",
    "BatchReport",
]


class PlaceIndexError(Exception):
    """Base class for every error raised by placeindex."""

    def __init__(self, message: str, context: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{self.message} ({context_str})"
        return self.message


class DuplicateId(PlaceIndexError):
    """A place with the same id is already stored."""

    def __init__(self, place_id: int):
        super().__init__("place id already exists", {"id": place_id})
        self.place_id = place_id


class NotFound(PlaceIndexError, KeyError):
    """Unknown id, or an id whose geometry is null where geometry is required."""

    def __init__(self, place_id: Any, reason: str = "unknown place id"):
        super().__init__(reason, {"id": place_id})
        self.place_id = place_id


class InvalidGeometry(PlaceIndexError, ValueError):
    """Geometry could not be parsed or repaired into a polygonal shape."""


class TargetAlreadyInitialized(PlaceIndexError):
    """Extraction target already holds some of the ids being copied."""

    def __init__(self, conflicting: list[int]):
        shown = conflicting[:10]
        super().__init__(
            "extraction target already contains places",
            {"conflicting": shown, "count": len(conflicting)},
        )
        self.conflicting = conflicting


@dataclass(slots=True)
class BatchFailure:
    item: Any
    error_type: str
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"item": self.item, "error": self.error_type, "message": self.message}


@dataclass
class BatchReport:
    """Outcome of a batch operation that continues past per-item failures."""

    operation: str
    succeeded: int = 0
    failures: list[BatchFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def attempted(self) -> int:
        return self.succeeded + len(self.failures)

    def record_success(self, count: int = 1) -> None:
        self.succeeded += count

    def record_failure(self, item: Any, exc: BaseException) -> None:
        self.failures.append(BatchFailure(item, type(exc).__name__, str(exc)))

    def merge(self, other: "BatchReport") -> "BatchReport":
        self.succeeded += other.succeeded
        self.failures.extend(other.failures)
        return self

    def summary(self) -> str:
        return (
            f"{self.operation}: {self.succeeded} succeeded, "
            f"{len(self.failures)} failed"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation": self.operation,
            "succeeded": self.succeeded,
            "failed": len(self.failures),
            "failures": [f.to_dict() for f in self.failures],
        }
