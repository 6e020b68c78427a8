from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import Request

from controllers.errors import to_http_exception
from models.inspection_item import QualityData
from services.scan_pipeline import ScanPipeline
from utils.exceptions import ValidationError


async def submit_scan(
    request: Request,
    session_id: int,
    code: str,
    scan_record_id: str,
    quality: Optional[QualityData] = None,
    priority: Optional[int] = None,
) -> Dict[str, Any]:
    """Feed a decoded scan through the pipeline and return its outcome.

    Args:
        request: FastAPI Request object (used to access app.state.scan_pipeline).
        session_id: Session the scan belongs to.
        code: Decoded code as reported by the scanner.
        scan_record_id: Reference to the persisted raw scan row.
        quality: Optional quality findings for an exit scan.
        priority: Optional priority for an entry scan.

    Returns:
        The outcome dict, or {"status": "ignored", "reason": ...} when the
        scan was suppressed as a duplicate.
    """
    if quality is not None:
        try:
            quality.validate()
        except ValidationError as exc:
            raise to_http_exception(exc) from exc

    pipeline: ScanPipeline = request.app.state.scan_pipeline
    outcome, suppressed = await pipeline.process(session_id, code, scan_record_id, quality, priority)
    if outcome is None:
        return {"status": "ignored", "reason": suppressed}
    return outcome.to_dict()
