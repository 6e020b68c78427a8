from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from controllers.item_controller import abort_item, get_item

router = APIRouter()


class AbortPayload(BaseModel):
	reason: str = "Aborted by operator"


@router.get("/items/{item_id}")
async def get_item_route(request: Request, item_id: int):
	"""Return the inspection item and its audit events."""
	try:
		return await get_item(request, item_id)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))


@router.post("/items/{item_id}/abort")
async def abort_item_route(request: Request, item_id: int, payload: AbortPayload):
	try:
		return await abort_item(request, item_id, payload.reason)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))
