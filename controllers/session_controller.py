"""Session lifecycle handlers for the inspection API."""

from __future__ import annotations

from typing import Any, Dict

from fastapi import Request

from controllers.errors import to_http_exception
from services.session_manager import SessionManager
from utils.exceptions import QCError


def _manager(request: Request) -> SessionManager:
	return request.app.state.session_manager


async def start_session(request: Request, worker_id: str) -> Dict[str, Any]:
	"""Create a new session for the worker."""
	try:
		session = await _manager(request).create_session(worker_id)
	except QCError as exc:
		raise to_http_exception(exc) from exc
	return {"session": session.to_dict(), "restarted": False}


async def badge_login(request: Request, worker_id: str) -> Dict[str, Any]:
	"""Restart the worker's active session, or create one if there is none."""
	try:
		session, restarted = await _manager(request).open_or_restart(worker_id)
	except QCError as exc:
		raise to_http_exception(exc) from exc
	return {"session": session.to_dict(), "restarted": restarted}


async def get_overview(request: Request, session_id: int) -> Dict[str, Any]:
	try:
		return await _manager(request).get_overview(session_id)
	except QCError as exc:
		raise to_http_exception(exc) from exc


async def restart_session(request: Request, session_id: int, worker_id: str) -> Dict[str, Any]:
	try:
		aborted = await _manager(request).restart_session(session_id, worker_id)
	except QCError as exc:
		raise to_http_exception(exc) from exc
	return {"session_id": session_id, "restarted": True, "aborted_items": aborted}


async def end_session(request: Request, session_id: int, worker_id: str | None = None) -> Dict[str, Any]:
	"""End a session; ending an already-ended session succeeds with nothing aborted."""
	try:
		aborted = await _manager(request).end_session(session_id, worker_id)
	except QCError as exc:
		raise to_http_exception(exc) from exc
	return {"session_id": session_id, "active": False, "aborted_items": aborted}
