from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import structlog

from evalharness.config import get_settings
from evalharness.exceptions import EvalHarnessError
from evalharness.log_setup import configure_logging
from evalharness.models.base import init_db
from evalharness.api import evaluation

settings = get_settings()
configure_logging(settings.log_level)
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: initialize database tables
    await init_db()
    yield


app = FastAPI(
    title="Assistant Evaluation Harness API",
    description="Runs the curated question battery against the assistant and scores its answers",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(EvalHarnessError)
async def eval_harness_error_handler(request: Request, exc: EvalHarnessError):
    if exc.status_code >= 500:
        logger.error("eval.api.error", path=request.url.path, error=exc.message)
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.message})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = "; ".join(
        f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg')}" for err in exc.errors()
    )
    return JSONResponse(status_code=422, content={"success": False, "error": errors or "Invalid request"})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("eval.api.unhandled", path=request.url.path)
    return JSONResponse(status_code=500, content={"success": False, "error": str(exc)})


app.include_router(evaluation.router, prefix="/eval", tags=["evaluation"])


@app.get("/health")
async def health_check():
    return {"status": "healthy"}
