"""
Hardline Purchasing — FastAPI ASGI Entry Point
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from purchasing.api.v1.router import api_router
from purchasing.config import get_settings
from purchasing.core.exceptions import ConflictError, PurchasingError
from purchasing.core.responses import error_response
from purchasing.db.session import engine

settings = get_settings()

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan — dispose the DB pool on shutdown."""
    logger.info("Hardline Purchasing starting (%s)", settings.ENVIRONMENT)
    yield
    await engine.dispose()


app = FastAPI(
    title="Hardline Purchasing",
    description="Purchase order lifecycle, receiving and payment reconciliation",
    version="0.1.0",
    docs_url="/api/v1/docs",
    redoc_url="/api/v1/redoc",
    openapi_url="/api/v1/openapi.json",
    lifespan=lifespan,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix="/api/v1")


@app.exception_handler(PurchasingError)
async def purchasing_error_handler(request: Request, exc: PurchasingError):
    logger.info("%s %s rejected (%s): %s", request.method, request.url.path, exc.code, exc.message)
    meta = None
    if isinstance(exc, ConflictError) and exc.current_version is not None:
        meta = {"expected_version": exc.expected_version, "current_version": exc.current_version}
    return JSONResponse(
        status_code=exc.status_code,
        content=error_response(exc.code, exc.message, exc.field_errors, meta),
    )


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    field_errors = [
        {"field": ".".join(str(part) for part in err["loc"] if part != "body"), "message": err["msg"]}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=error_response("validation_error", "Request validation failed", field_errors),
    )


@app.get("/health")
async def health():
    """Health check for load balancers and Docker."""
    return {"status": "ok", "service": "hardline-purchasing"}
