from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request

from .config import get_settings
from .models import ReminderPreviewRequest, ReminderPreviewResponse, SchedulerStatusResponse
from .scheduler import ReminderScheduler
from .store import StoreError

_settings = get_settings()
router = APIRouter(prefix=f"{_settings.api_prefix}/reminders", tags=["reminders"])


def _require_scheduler(request: Request) -> ReminderScheduler:
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise HTTPException(503, "reminder scheduler not attached")
    return scheduler


@router.get("/status", response_model=SchedulerStatusResponse)
def get_scheduler_status(request: Request) -> SchedulerStatusResponse:
    return _require_scheduler(request).status()


@router.post("/preview", response_model=ReminderPreviewResponse)
async def preview_reminders(request: Request, payload: ReminderPreviewRequest | None = None) -> ReminderPreviewResponse:
    scheduler = _require_scheduler(request)
    body = payload or ReminderPreviewRequest()
    try:
        return await scheduler.preview(body.now_override, user_id=body.user_id, force=body.force)
    except StoreError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
