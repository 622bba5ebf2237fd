from pathlib import Path
from typing import Optional

from fastapi import FastAPI, Form
from fastapi.responses import HTMLResponse, JSONResponse

import db
from app.services.call_scheduler import get_call_scheduler
from app.types.scheduling import InvalidDelayError
from app.utils.log import configure_logging, get_logger
from config import settings

FORM_PATH = Path(__file__).resolve().parent / "app" / "assets" / "schedule_form.html"

logger = get_logger(__name__)

app = FastAPI(title="Call Scheduler")


@app.on_event("startup")
async def startup_event():
    configure_logging()
    logger.info(
        "app_started",
        backend=settings.SCHEDULE_BACKEND,
        entity_id=settings.SCHEDULER_ENTITY_ID,
    )
    # Tables are managed via Alembic migrations


@app.on_event("shutdown")
async def shutdown_event():
    if settings.SCHEDULE_BACKEND == "postgres":
        await db.dispose_engine()


# --------------------------------------------
# Endpoints
# --------------------------------------------
@app.get("/", response_class=HTMLResponse)
async def schedule_form():
    return HTMLResponse(FORM_PATH.read_text(encoding="utf-8"))


@app.post("/schedule")
async def schedule_call(delay: Optional[str] = Form(None)):
    scheduler = get_call_scheduler()
    try:
        accepted = await scheduler.schedule(delay)
    except InvalidDelayError as exc:
        logger.info("schedule_rejected", delay=delay)
        return JSONResponse({"message": str(exc)}, status_code=400)
    return accepted.to_json_dict()


@app.get("/status")
async def call_status():
    report = await get_call_scheduler().get_status()
    return report.to_json_dict()


@app.get("/health")
async def health():
    return {"status": "ok"}
