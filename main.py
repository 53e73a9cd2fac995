from __future__ import annotations

import logging
import os

from apscheduler.schedulers.background import BackgroundScheduler
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from database import SessionLocal, init_db
from errors import AppError, RateLimitError
from routers.auth import router as auth_router
from routers.chat import router as chat_router
from routers.otp import router as otp_router
from utils.chat_session import SlowModeStore
from utils.chat_storage import ChatStorage
from utils.kv_store import build_kv_store
from utils.otp_service import OtpService
from utils.otp_store import OtpStore
from utils.user_directory import UserDirectory


logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("campus")

app = FastAPI(title="Unified Campus Backend")

# Create tables (simple projects; for production use migrations).
init_db()

app.include_router(otp_router)
app.include_router(auth_router, prefix="/api")
app.include_router(chat_router, prefix="/api")


@app.exception_handler(AppError)
async def _app_error(request: Request, exc: AppError):
    body = {"error": exc.message}
    headers = None
    if isinstance(exc, RateLimitError):
        body["retry_after"] = exc.retry_after
        headers = {"Retry-After": str(exc.retry_after)}
    return JSONResponse(status_code=exc.status_code, content=body, headers=headers)


@app.exception_handler(RequestValidationError)
async def _validation_error(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = "Invalid request"
    if errors:
        first = errors[0]
        field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = f"{field}: {first.get('msg')}" if field else str(first.get("msg"))
    return JSONResponse(status_code=400, content={"error": message})


@app.exception_handler(Exception)
async def _unhandled(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal Server Error"})


def _build_services() -> None:
    otp_store = OtpStore(SessionLocal)
    otp_service = OtpService(otp_store, SessionLocal)
    kv = build_kv_store(SessionLocal)

    app.state.otp_store = otp_store
    app.state.otp_service = otp_service
    app.state.users = UserDirectory(SessionLocal, is_email_verified=otp_service.is_verified)
    app.state.kv = kv
    app.state.chat_storage = ChatStorage(kv)
    app.state.slow_modes = SlowModeStore(kv)


def _cleanup_expired_otps() -> int:
    """Drop OTP rows whose window has passed."""
    deleted = app.state.otp_store.purge_expired()
    if deleted:
        logger.info("Purged %s expired OTP records", deleted)
    return deleted


@app.on_event("startup")
def _startup():
    _build_services()
    if os.getenv("ENABLE_SCHEDULER", "1").lower() in {"0", "false", "no"}:
        return
    sched = BackgroundScheduler(timezone=os.getenv("TZ", "UTC"))
    sched.add_job(_cleanup_expired_otps, "interval", minutes=30, id="cleanup_expired_otps", replace_existing=True)
    sched.start()
    app.state._scheduler = sched


@app.on_event("shutdown")
def _shutdown():
    sched = getattr(app.state, "_scheduler", None)
    if sched:
        sched.shutdown(wait=False)
        app.state._scheduler = None
    storage = getattr(app.state, "chat_storage", None)
    if storage:
        storage.close()
    kv = getattr(app.state, "kv", None)
    if kv:
        kv.close()


@app.get("/")
def root():
    return {"status": "Backend running"}
