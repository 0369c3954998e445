from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
import logging
import os
import time

from . import __version__
from .api import (
    admin_router,
    auth_router,
    emergency_router,
    patient_router,
    requester_router,
    user_router,
)
from .config import get_settings
from .database import init_schema, reset_engine, utcnow
from .errors import HealthGateError
from .monitoring.metrics import metrics_router, request_duration


class AddTraceIdFilter(logging.Filter):
    def filter(self, record):
        if not hasattr(record, "trace_id"):
            record.trace_id = "system"
        return True


logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s - %(name)s - %(levelname)s - trace_id=%(trace_id)s - %(message)s",
)
for _handler in logging.getLogger().handlers:
    _handler.addFilter(AddTraceIdFilter())
logger = logging.getLogger("healthgate.main")

app = FastAPI(
    title="HealthGate",
    version=__version__,
    docs_url=None,
    redoc_url=None,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o for o in os.getenv("ALLOWED_ORIGINS", "").split(",") if o],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth_router)
app.include_router(user_router)
app.include_router(patient_router)
app.include_router(requester_router)
app.include_router(emergency_router)
app.include_router(admin_router)
app.include_router(metrics_router)


@app.middleware("http")
async def record_duration(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    route = request.scope.get("route")
    request_duration.labels(
        method=request.method,
        endpoint=getattr(route, "path", "unmatched"),
        status=str(response.status_code),
    ).observe(time.perf_counter() - started)
    return response


@app.exception_handler(HealthGateError)
async def healthgate_error_handler(request: Request, exc: HealthGateError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.code, "message": str(exc)},
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(p) for p in first.get("loc", ())[1:])
    message = f"{field}: {first.get('msg')}" if field else "Invalid request"
    return JSONResponse(
        status_code=400,
        content={"error": "validation_error", "message": message},
    )


@app.exception_handler(SQLAlchemyError)
async def storage_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.error("Storage failure on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=500,
        content={"error": "storage_error", "message": "Storage operation failed"},
    )


@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "timestamp": utcnow().isoformat(),
        "version": __version__,
    }


@app.on_event("startup")
async def startup_event():
    logger.info("HealthGate starting")
    settings = get_settings()
    if settings.db_init or os.getenv("PYTEST_CURRENT_TEST"):
        await init_schema()
        logger.info("Database schema ensured")
    if not settings.admin_credentials:
        logger.warning("ADMIN_CREDENTIALS is empty; no account will be created as admin")


@app.on_event("shutdown")
async def shutdown_event():
    await reset_engine()
    logger.info("HealthGate stopped")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "healthgate.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        log_level=os.getenv("LOG_LEVEL", "INFO").lower(),
    )
