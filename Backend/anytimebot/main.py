import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .core.config import get_settings
from .core.db import Base, engine
from .core.responses import ErrorCodes, error_code_for_status, error_response
from .routes_analytics import router as analytics_router
from .routes_availability import router as availability_router
from .routes_billing import router as billing_router
from .routes_booking_pages import public_router as public_pages_router
from .routes_booking_pages import router as booking_pages_router
from .routes_bookings import router as bookings_router
from .routes_bot import router as bot_router
from .routes_briefings import router as briefings_router
from .routes_calendar import router as calendar_router
from .routes_cron import router as cron_router
from .routes_event_types import router as event_types_router
from .routes_routing import router as routing_router
from .routes_teams import router as teams_router
from .routes_users import router as users_router
from .routes_video import router as video_router
from .routes_whatsapp import router as whatsapp_router
from .usage_tracker import QuotaExceededError


settings = get_settings()
logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="AnytimeBot Backend")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ────────────────────────────────────────────────────────────────
# Error envelope
# ────────────────────────────────────────────────────────────────

@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=error_response(error_code_for_status(exc.status_code), str(exc.detail)),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=error_response(
            ErrorCodes.VALIDATION_ERROR,
            "Invalid request",
            details={"errors": [{"loc": list(e["loc"]), "msg": e["msg"]} for e in exc.errors()]},
        ),
    )


@app.exception_handler(QuotaExceededError)
async def quota_exception_handler(request: Request, exc: QuotaExceededError):
    return JSONResponse(
        status_code=status.HTTP_403_FORBIDDEN,
        content=error_response(ErrorCodes.QUOTA_EXCEEDED, exc.reason),
    )


# ────────────────────────────────────────────────────────────────
# Routers
# ────────────────────────────────────────────────────────────────

app.include_router(users_router)
app.include_router(booking_pages_router)
app.include_router(public_pages_router)
app.include_router(availability_router)
app.include_router(event_types_router)
app.include_router(bookings_router)
app.include_router(teams_router)
app.include_router(routing_router)
app.include_router(bot_router)
app.include_router(whatsapp_router)
app.include_router(video_router)
app.include_router(calendar_router)
app.include_router(billing_router)
app.include_router(cron_router)
app.include_router(briefings_router)
app.include_router(analytics_router)


@app.on_event("startup")
async def on_startup():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables ensured")


@app.get("/health")
async def healthcheck():
    return {"ok": True}
