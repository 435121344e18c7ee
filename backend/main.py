import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from backend import config
from backend.routers.admin import router as admin_router
from backend.routers.attendance import SCAN_PATH, invalid_scan_response
from backend.routers.attendance import router as attendance_router
from backend.routers.auth import router as auth_router
from backend.routers.core import router as core_router
from backend.routers.exams import router as exams_router
from backend.routers.notifications import router as notifications_router
from backend.routers.scanner import router as scanner_router
from backend.routers.students import router as students_router
from backend.routers.users import router as users_router
from backend.services.device_commands import DeviceCommandQueue, DeviceStatusRegistry
from backend.services.notifications import NotificationHub
from backend.services.stats_cache import TTLCache
from database.db import create_tables
from database.stores import StoreError

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    create_tables()
    app.state.stats_cache = TTLCache(config.STATS_CACHE_TTL_SECONDS)
    app.state.notifications = NotificationHub(config.NOTIFICATION_HISTORY_SIZE)
    app.state.device_commands = DeviceCommandQueue(config.DEVICE_COMMAND_TTL_SECONDS)
    app.state.device_statuses = DeviceStatusRegistry(
        config.DEVICE_COMMAND_TTL_SECONDS,
        forget_after_seconds=config.DEVICE_STATUS_RETENTION_SECONDS,
    )
    logger.info("Database ready at %s (timezone %s)", config.DB_PATH, config.TIMEZONE.key)
    yield


app = FastAPI(title="Exam Scan API", lifespan=lifespan)

# -----------------------------
# CORS (dashboard dev server)
# -----------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ALLOW_ORIGINS,
    allow_credentials=config.CORS_ALLOW_CREDENTIALS,
    allow_methods=config.CORS_ALLOW_METHODS,
    allow_headers=config.CORS_ALLOW_HEADERS,
)


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    logger.exception("Store failure on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(
        status_code=503,
        content={
            "success": False,
            "outcome": "ERROR",
            "reason": None,
            "message": "Attendance store unavailable. Please retry.",
            "data": None,
        },
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    # scanners get the same INVALID body for bad types as for bad values
    if request.url.path == SCAN_PATH:
        errors = exc.errors()
        first = errors[0] if errors else {}
        field = ".".join(str(part) for part in first.get("loc", ())[1:]) or "body"
        return invalid_scan_response(f"{field}: {first.get('msg', 'invalid value')}")
    return await request_validation_exception_handler(request, exc)


app.include_router(core_router)
app.include_router(auth_router)
app.include_router(users_router)
app.include_router(students_router)
app.include_router(exams_router)
app.include_router(attendance_router)
app.include_router(admin_router)
app.include_router(scanner_router)
app.include_router(notifications_router)
