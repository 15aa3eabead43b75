import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .api import automation as automation_api
from .config import INSTALL_DEFAULTS, LOG_LEVEL
from .errors import AdmissionRejected, CircuitOpenError, EvaluationCoreError, NotFoundError, ValidationError
from .metrics import metrics_response, request_latency_seconds
from .services import get_services

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    services = await get_services()
    if INSTALL_DEFAULTS:
        await services.workflows.install_default_workflows()
        await services.scheduler.install_default_schedules()
    await services.start()
    try:
        yield
    finally:
        await services.shutdown()


app = FastAPI(title="Evaluation Automation Control Plane", lifespan=lifespan)

app.include_router(automation_api.router)


def _error(status: int, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status, content={"detail": str(exc), "error": exc.__class__.__name__})


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return _error(404, exc)


@app.exception_handler(ValidationError)
async def validation_handler(request: Request, exc: ValidationError):
    return _error(422, exc)


@app.exception_handler(AdmissionRejected)
async def admission_handler(request: Request, exc: AdmissionRejected):
    return _error(429, exc)


@app.exception_handler(CircuitOpenError)
async def circuit_open_handler(request: Request, exc: CircuitOpenError):
    return _error(503, exc)


@app.exception_handler(EvaluationCoreError)
async def core_error_handler(request: Request, exc: EvaluationCoreError):
    logger.error("request %s %s failed: %s", request.method, request.url.path, exc)
    return _error(500, exc)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    start = time.time()
    try:
        response = await call_next(request)
        return response
    finally:
        request_latency_seconds.observe(time.time() - start)


@app.get("/healthz")
async def healthz():
    return {"status": "ok"}


@app.get("/readyz")
async def readyz():
    services = await get_services()
    try:
        await services.redis.ping()
    except Exception as exc:
        logger.warning("job store not reachable: %s", exc)
        return JSONResponse(status_code=503, content={"ready": False, "detail": str(exc)})
    return {"ready": True}


@app.get("/metrics")
async def metrics():
    return metrics_response()
