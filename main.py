from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Depends
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session

import logging
import time

import config
from db import Base, SessionLocal, engine
from dependencies import get_db
from errors import CheckoutError, InvariantViolation
from notifications import DbNotificationSink
from overdue import OverdueSweeper
from routers import ALL_ROUTERS

import orm  # noqa: F401  registers tables on Base.metadata

# -----------------------
# Logging
# -----------------------
logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger("app")

Base.metadata.create_all(bind=engine)


@asynccontextmanager
async def lifespan(app: FastAPI):
    sweeper = None
    if config.OVERDUE_SWEEP_SECONDS > 0:
        sweeper = OverdueSweeper(SessionLocal, app.state.notifier, config.OVERDUE_SWEEP_SECONDS)
        sweeper.start()
        logger.info("overdue sweeper started interval=%ss", config.OVERDUE_SWEEP_SECONDS)
    try:
        yield
    finally:
        if sweeper is not None:
            sweeper.stop()


app = FastAPI(title="Inventory Checkout API", lifespan=lifespan)
app.state.notifier = DbNotificationSink(SessionLocal)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ALLOW_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.time()
    response = await call_next(request)
    elapsed_ms = int((time.time() - start) * 1000)
    logger.info(
        "method=%s path=%s status=%s elapsed_ms=%s",
        request.method,
        request.url.path,
        response.status_code,
        elapsed_ms,
    )
    return response


# -----------------------
# Errors
# -----------------------
@app.exception_handler(CheckoutError)
async def checkout_error_handler(request: Request, exc: CheckoutError):
    if isinstance(exc, InvariantViolation):
        logger.critical("invariant violation path=%s detail=%s", request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={
            "detail": "Invalid request",
            "error": "ValidationError",
            "errors": jsonable_encoder(exc.errors()),
        },
    )


@app.get("/")
def root():
    return {"message": "Inventory Checkout API", "docs": "/docs", "health": "/healthz"}


@app.get("/healthz")
def healthz(db: Session = Depends(get_db)):
    db.execute(text("SELECT 1"))
    return {"status": "ok"}


for r in ALL_ROUTERS:
    app.include_router(r)
