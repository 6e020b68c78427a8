"""Scan ingestion: validation, duplicate suppression, then the session manager."""

from __future__ import annotations

import logging
from typing import Optional, Tuple

from models.inspection_item import QualityData
from models.scan_outcome import OutcomeType, ScanOutcome
from services.scan_guard import ScanGuard
from services.session_manager import SessionManager
from utils.code_validation import validate_code
from utils.exceptions import QCError, SessionError, ValidationError

LOGGER = logging.getLogger(__name__)


class ScanPipeline:
    """Entry point for decoded scans.

    Precondition failures and unexpected errors become the `error` outcome;
    nothing is raised to the caller. Suppressed duplicates produce no
    outcome at all.
    """

    def __init__(self, manager: SessionManager, guard: ScanGuard) -> None:
        self.manager = manager
        self.guard = guard

    async def submit_scan(
        self,
        session_id: int,
        decoded_code: str,
        scan_record_id: str,
        quality: Optional[QualityData] = None,
        priority: Optional[int] = None,
    ) -> Optional[ScanOutcome]:
        """Process one scan; returns None when it was suppressed as a duplicate."""
        outcome, _ = await self.process(session_id, decoded_code, scan_record_id, quality, priority)
        return outcome

    async def process(
        self,
        session_id: int,
        decoded_code: str,
        scan_record_id: str,
        quality: Optional[QualityData] = None,
        priority: Optional[int] = None,
    ) -> Tuple[Optional[ScanOutcome], Optional[str]]:
        """Process one scan.

        Returns:
            (outcome, None) for a processed scan, or (None, reason) when the
            scan was suppressed as a duplicate.
        """
        try:
            code = validate_code(decoded_code)
        except ValidationError as exc:
            LOGGER.info("Rejected malformed code for session %s: %s", session_id, exc)
            return ScanOutcome(type=OutcomeType.ERROR, message=str(exc)), None

        with self.guard.claim(code) as suppressed:
            if suppressed is not None:
                return None, suppressed
            try:
                outcome = await self.manager.submit_scan(
                    session_id, code, str(scan_record_id), quality=quality, priority=priority
                )
            except (SessionError, ValidationError) as exc:
                LOGGER.info("Scan of %s for session %s rejected: %s", code, session_id, exc)
                outcome = ScanOutcome(type=OutcomeType.ERROR, message=str(exc), actual_code=code)
            except QCError as exc:
                LOGGER.error("Scan of %s for session %s failed: %s", code, session_id, exc)
                outcome = ScanOutcome(type=OutcomeType.ERROR, message=str(exc), actual_code=code)
            except Exception:
                LOGGER.exception("Unexpected failure processing %s for session %s", code, session_id)
                outcome = ScanOutcome(
                    type=OutcomeType.ERROR,
                    message="Scan could not be processed; please scan again.",
                    actual_code=code,
                )
        return outcome, None
