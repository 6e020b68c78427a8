from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, Optional

from utils.exceptions import ValidationError


class ItemStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ABORTED = "aborted"


class AuditAction(str, Enum):
    CREATED = "created"
    COMPLETED = "completed"
    ABORTED = "aborted"


@dataclass
class InspectionItem:
    """In-memory representation of a row in the inspection_items table.

    Attributes:
        id: Primary key (None for new records).
        session_id: Owning worker session.
        code: Scanned code identifying the inspected piece.
        start_scan_ref: Reference to the raw scan row that opened the item.
        end_scan_ref: Reference to the raw scan row that closed it (None while active).
        start_time: Unix timestamp of the entry scan.
        end_time: Unix timestamp of completion or abort (None while active).
        completed: True iff the item was closed by a matching exit scan.
        status: One of active, completed, aborted.
        priority: 1 normal, 2 high, 3 critical.
        quality_rating: Optional 1-5 rating recorded on exit.
        defects_found: Whether defects were found on exit.
        defect_description: Required when defects_found is set.
        rework_required: Set on exit when defects were found and rework is allowed.
        notes: Free text; abort reasons are appended here.
        updated_at: Unix timestamp of the last write.
    """

    id: Optional[int]
    session_id: int
    code: str
    start_time: float
    start_scan_ref: Optional[str] = None
    end_scan_ref: Optional[str] = None
    end_time: Optional[float] = None
    completed: bool = False
    status: ItemStatus = ItemStatus.ACTIVE
    priority: int = 1
    quality_rating: Optional[int] = None
    defects_found: bool = False
    defect_description: Optional[str] = None
    rework_required: bool = False
    notes: Optional[str] = None
    updated_at: Optional[float] = None

    @property
    def is_active(self) -> bool:
        return self.status == ItemStatus.ACTIVE

    def duration_seconds(self, now: Optional[float] = None) -> int:
        """Whole seconds between start and end (or `now` while still active)."""
        end = self.end_time if self.end_time is not None else now
        if end is None:
            return 0
        return max(0, int(end - self.start_time))

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass
class QualityData:
    """Optional quality findings recorded with an exit scan."""

    rating: Optional[int] = None
    defects_found: bool = False
    defect_description: Optional[str] = None
    notes: Optional[str] = None

    def validate(self) -> "QualityData":
        if self.rating is not None and not 1 <= self.rating <= 5:
            raise ValidationError("Quality rating must be between 1 and 5.")
        description = (self.defect_description or "").strip() or None
        if self.defects_found and description is None:
            raise ValidationError("A defect description is required when defects were found.")
        if not self.defects_found and description is not None:
            raise ValidationError("A defect description is only allowed when defects were found.")
        self.defect_description = description
        return self


@dataclass
class AuditEvent:
    """Append-only record of one item transition."""

    id: Optional[int]
    item_id: int
    action: AuditAction
    payload: Dict[str, Any]
    created_at: float
