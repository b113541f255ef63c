import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.responses import Response

from .api import payments as payments_api
from .config import SERVICE_VERSION, configure_logging
from .engine import RedisExecutionEngine
from .errors import EngineError, InvalidPaymentRequest, NotFound
from .metrics import error_count, metrics_response, request_latency_seconds
from .redis_helper import get_redis
from .schemas import HealthResponse

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    owned = None
    if getattr(app.state, "engine", None) is None:
        owned = RedisExecutionEngine(await get_redis())
        app.state.engine = owned
    try:
        yield
    finally:
        if owned is not None:
            await owned.close()
            app.state.engine = None


app = FastAPI(title="Payhook Payment Notifications", lifespan=lifespan)

app.include_router(payments_api.router)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    start = time.time()
    try:
        response = await call_next(request)
        logger.info("%s %s -> %s (%.1fms)", request.method, request.url.path,
                    response.status_code, (time.time() - start) * 1000)
        return response
    finally:
        request_latency_seconds.observe(time.time() - start)


@app.middleware("http")
async def cors_middleware(request: Request, call_next):
    if request.method == "OPTIONS":
        return Response(status_code=200, headers=CORS_HEADERS)
    response = await call_next(request)
    response.headers.update(CORS_HEADERS)
    return response


@app.exception_handler(RequestValidationError)
async def invalid_body_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"detail": "Invalid request body"})


@app.exception_handler(InvalidPaymentRequest)
async def invalid_payment_handler(request: Request, exc: InvalidPaymentRequest):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(NotFound)
async def not_found_handler(request: Request, exc: NotFound):
    return JSONResponse(status_code=404, content={"detail": "Payment not found"})


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError):
    error_count.inc()
    logger.error("engine failure on %s %s: %s", request.method, request.url.path, exc, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Payment operation failed"})


@app.get("/health", response_model=HealthResponse)
async def health():
    return HealthResponse(status="ok", version=SERVICE_VERSION)


@app.get("/metrics")
async def metrics():
    return metrics_response()
