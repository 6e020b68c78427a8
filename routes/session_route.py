"""FastAPI routes for worker sessions and their scans."""

from typing import Optional, Union

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from controllers.scan_controller import submit_scan
from controllers.session_controller import badge_login, end_session, get_overview, restart_session, start_session
from models.inspection_item import QualityData

router = APIRouter(prefix="/sessions")


class WorkerPayload(BaseModel):
	worker_id: str


class EndPayload(BaseModel):
	worker_id: Optional[str] = None


class QualityPayload(BaseModel):
	rating: Optional[int] = None
	defects_found: bool = False
	defect_description: Optional[str] = None
	notes: Optional[str] = None


class ScanPayload(BaseModel):
	code: str
	scan_record_id: Union[str, int]
	quality: Optional[QualityPayload] = None
	priority: Optional[int] = None


@router.post("")
async def start_session_route(request: Request, payload: WorkerPayload):
	try:
		return await start_session(request, payload.worker_id)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))


@router.post("/badge")
async def badge_route(request: Request, payload: WorkerPayload):
	"""Badge recognised: restart the worker's session or open a new one."""
	try:
		return await badge_login(request, payload.worker_id)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))


@router.get("/{session_id}")
async def overview_route(request: Request, session_id: int):
	try:
		return await get_overview(request, session_id)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))


@router.post("/{session_id}/restart")
async def restart_route(request: Request, session_id: int, payload: WorkerPayload):
	try:
		return await restart_session(request, session_id, payload.worker_id)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))


@router.post("/{session_id}/end")
async def end_route(request: Request, session_id: int, payload: Optional[EndPayload] = None):
	try:
		return await end_session(request, session_id, payload.worker_id if payload else None)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))


@router.post("/{session_id}/scans")
async def scan_route(request: Request, session_id: int, payload: ScanPayload):
	"""Submit a decoded scan for the session."""
	quality = None
	if payload.quality is not None:
		quality = QualityData(
			rating=payload.quality.rating,
			defects_found=payload.quality.defects_found,
			defect_description=payload.quality.defect_description,
			notes=payload.quality.notes,
		)
	try:
		return await submit_scan(
			request, session_id, payload.code, str(payload.scan_record_id), quality, payload.priority
		)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))
