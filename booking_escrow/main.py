import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm.exc import StaleDataError

# Import all models to ensure they're registered with SQLAlchemy Base
# This is needed for relationships between models in different files
from . import (
    models,  # noqa: F401
    models_payment,  # noqa: F401
)
from .database import Base, engine
from .domain.bookings.router import router as bookings_router
from .domain.payments.router import router as payments_router
from .domain.payouts.router import router as payouts_router
from .domain.providers.router import router as providers_router
from .domain.webhooks.router import router as webhooks_router
from .errors import EscrowError, GatewayError, StaleState

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Reduce verbosity of third-party libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Application starting up...")
    try:
        Base.metadata.create_all(bind=engine, checkfirst=True)
        logger.info("Database tables created successfully")
    except Exception as e:
        # Ignore "already exists" errors from race conditions between workers
        error_msg = str(e)
        if "already exists" in error_msg or "duplicate key" in error_msg:
            logger.info("Database tables already exist (created by another worker)")
        else:
            logger.error(f"Failed to create database tables: {e}")
            raise

    yield
    logger.info("Application shutting down...")


app = FastAPI(title="Booking Escrow API", version="1.0.0", lifespan=lifespan)


@app.exception_handler(EscrowError)
async def escrow_exception_handler(request: Request, exc: EscrowError):
    """Typed error body for every escrow failure; gateway detail stays in the logs"""
    if isinstance(exc, GatewayError):
        logger.error(f"❌ Gateway error on {request.url.path}: {exc.code} {exc.message}")
    else:
        logger.warning(f"⚠️ {exc.code} on {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.http_status,
        content={"error": exc.code, "detail": exc.public_message},
    )


@app.exception_handler(StaleDataError)
async def stale_data_exception_handler(request: Request, exc: StaleDataError):
    logger.warning(f"⚠️ Concurrent update on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=409,
        content={"error": StaleState.code, "detail": "The record changed concurrently, retry the request"},
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning(f"Validation error for {request.url.path}: {exc.errors()}")
    return JSONResponse(
        status_code=422, content={"error": "VALIDATION_ERROR", "detail": jsonable_encoder(exc.errors())}
    )


# CORS Configuration
ALLOWED_ORIGINS = os.getenv(
    "ALLOWED_ORIGINS",
    "http://localhost:5173,http://localhost:3000",
).split(",")

logger.info(f"CORS allowed origins: {ALLOWED_ORIGINS}")

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "OPTIONS"],
    allow_headers=["*"],
)

# Routes
app.include_router(bookings_router)
app.include_router(payments_router)
app.include_router(payouts_router)
app.include_router(providers_router)
app.include_router(webhooks_router)


@app.get("/")
def root():
    return {"message": "Booking Escrow API is running"}


@app.get("/health")
def health():
    return {"status": "healthy"}
