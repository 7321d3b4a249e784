from __future__ import annotations

import logging

from fastapi import FastAPI

from .api import router
from .config import get_settings
from .scheduler import ReminderScheduler

logger = logging.getLogger(__name__)


def create_app(scheduler: ReminderScheduler | None = None) -> FastAPI:
    settings = get_settings()
    if scheduler is None:
        logger.warning("health api started without a reminder scheduler; reminder endpoints will return 503")

    app = FastAPI(title=settings.app_name, version="0.1.0")
    app.state.scheduler = scheduler
    app.include_router(router)
    return app
