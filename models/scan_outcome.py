from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from models.inspection_item import InspectionItem


class OutcomeType(str, Enum):
    ENTRANCE_STARTED = "entrance_started"
    EXIT_COMPLETED = "exit_completed"
    ALREADY_COMPLETED = "already_completed"
    LIMIT_EXCEEDED = "limit_exceeded"
    QR_MISMATCH = "qr_mismatch"
    RATE_LIMIT = "rate_limit"
    ENTRANCE_ERROR = "entrance_error"
    EXIT_ERROR = "exit_error"
    ERROR = "error"


SUCCESS_TYPES = {OutcomeType.ENTRANCE_STARTED, OutcomeType.EXIT_COMPLETED}


def format_duration(seconds: int) -> str:
    """Format a duration as HH:MM:SS."""
    if seconds < 0:
        return "00:00:00"
    hours, rest = divmod(int(seconds), 3600)
    minutes, secs = divmod(rest, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


@dataclass
class ScanOutcome:
    """Typed result of one scan, consumed by the presentation layer.

    Attributes:
        type: Outcome kind.
        message: Human-readable message for the operator.
        item: Affected inspection item, if any.
        scan_type: `entry`, `exit` or `unknown`.
        duration_seconds: Set on `exit_completed`.
        next_expected: Expected kind of the next scan of this code.
        expected_code / actual_code: Set on `qr_mismatch`.
        active_count: Active items of the session, where known.
        overdue: True when an exit completed an item past the step timeout.
    """

    type: OutcomeType
    message: str
    item: Optional[InspectionItem] = None
    scan_type: str = "unknown"
    duration_seconds: Optional[int] = None
    next_expected: Optional[str] = None
    expected_code: Optional[str] = None
    actual_code: Optional[str] = None
    active_count: Optional[int] = None
    overdue: bool = False

    @property
    def success(self) -> bool:
        return self.type in SUCCESS_TYPES

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "success": self.success,
            "type": self.type.value,
            "message": self.message,
            "scan_type": self.scan_type,
            "item": self.item.to_dict() if self.item else None,
        }
        optional = {
            "duration_seconds": self.duration_seconds,
            "next_expected": self.next_expected,
            "expected_code": self.expected_code,
            "actual_code": self.actual_code,
            "active_count": self.active_count,
        }
        data.update({key: value for key, value in optional.items() if value is not None})
        if self.overdue:
            data["overdue"] = True
        return data
