from __future__ import annotations

from typing import Any, Dict

from fastapi import Request

from controllers.errors import to_http_exception
from dal.inspection_dal import InspectionItemDAL
from services.session_manager import SessionManager
from utils.exceptions import QCError


async def get_item(request: Request, item_id: int) -> Dict[str, Any]:
    """Return an inspection item with its audit trail."""
    manager: SessionManager = request.app.state.session_manager
    items: InspectionItemDAL = request.app.state.inspection_dal
    try:
        item = await manager.get_item(item_id)
    except QCError as exc:
        raise to_http_exception(exc) from exc
    events = await items.list_audit(item_id)
    return {
        "item": item.to_dict(),
        "audit": [
            {"id": e.id, "action": e.action.value, "payload": e.payload, "created_at": e.created_at}
            for e in events
        ],
    }


async def abort_item(request: Request, item_id: int, reason: str) -> Dict[str, Any]:
    """Abort one active item; `aborted` is False when it was not active."""
    manager: SessionManager = request.app.state.session_manager
    try:
        aborted = await manager.abort_item(item_id, reason)
    except QCError as exc:
        raise to_http_exception(exc) from exc
    return {"item_id": item_id, "aborted": aborted is not None, "item": aborted.to_dict() if aborted else None}
