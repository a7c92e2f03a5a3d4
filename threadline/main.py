import asyncio
import os

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from threadline.config import settings
from threadline.database import SessionLocal
from threadline.logging_config import get_logger, setup_logging
from threadline.routers import admin, automation, webhook
from threadline.services.errors import ConfigurationError
from threadline.services.job_queue import build_job_queue
from threadline.services.outbox_service import process_outbox_batch

setup_logging(settings.log_level)

logger = get_logger("main")

app = FastAPI(
    title="Threadline API",
    description="Idempotent delivery and conversation threading for a messaging CRM",
    version="0.1.0",
)

app.include_router(webhook.router)
app.include_router(admin.router)
app.include_router(automation.router)

app.state.job_queue = build_job_queue(settings)

outbox_logger = get_logger("outbox_worker")
_outbox_worker_task: asyncio.Task | None = None


def _is_outbox_worker_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return settings.outbox_worker_enabled and app.state.job_queue.name == "outbox"


def _run_outbox_once() -> dict:
    db = SessionLocal()
    try:
        return process_outbox_batch(db, limit=settings.outbox_process_limit)
    finally:
        db.close()


async def _outbox_worker_loop() -> None:
    interval_seconds = max(settings.outbox_worker_interval_seconds, 0.1)
    while True:
        try:
            await asyncio.sleep(interval_seconds)
            await asyncio.to_thread(_run_outbox_once)
        except asyncio.CancelledError:
            break
        except Exception as exc:
            outbox_logger.error(
                "Outbox worker loop failed",
                extra={"context": {"error": str(exc)}},
            )


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError):
    logger.error(f"Configuration error: {exc}", extra={"context": {"path": request.url.path}})
    return JSONResponse(status_code=503, content={"success": False, "error": str(exc)})


@app.on_event("startup")
async def start_outbox_worker() -> None:
    global _outbox_worker_task
    logger.info("Job queue ready", extra={"context": {"backend": app.state.job_queue.name}})
    if not _is_outbox_worker_enabled():
        return
    if _outbox_worker_task is None or _outbox_worker_task.done():
        _outbox_worker_task = asyncio.create_task(_outbox_worker_loop())
        outbox_logger.info("Outbox worker started")


@app.on_event("shutdown")
async def stop_outbox_worker() -> None:
    global _outbox_worker_task
    if _outbox_worker_task is None:
        return
    _outbox_worker_task.cancel()
    try:
        await _outbox_worker_task
    except asyncio.CancelledError:
        pass
    _outbox_worker_task = None


@app.get("/health")
async def health():
    return {"status": "ok", "job_queue": app.state.job_queue.name}
