"""Translate inspection-core exceptions into HTTP errors."""

from __future__ import annotations

from fastapi import HTTPException

from utils.exceptions import (
	BulkAbortError,
	DuplicateSessionError,
	ItemNotFoundError,
	QCError,
	SessionError,
	SessionNotFoundError,
	StoreError,
	ValidationError,
)


def to_http_exception(exc: QCError) -> HTTPException:
	"""Map a QCError to the matching HTTP status."""
	if isinstance(exc, (SessionNotFoundError, ItemNotFoundError)):
		return HTTPException(status_code=404, detail=str(exc))
	if isinstance(exc, DuplicateSessionError):
		return HTTPException(
			status_code=409,
			detail={"message": str(exc), "worker_id": exc.worker_id, "session_id": exc.session_id},
		)
	if isinstance(exc, SessionError):
		return HTTPException(status_code=409, detail=str(exc))
	if isinstance(exc, ValidationError):
		return HTTPException(status_code=400, detail=str(exc))
	if isinstance(exc, (BulkAbortError, StoreError)):
		return HTTPException(status_code=503, detail=str(exc))
	return HTTPException(status_code=500, detail=str(exc))
