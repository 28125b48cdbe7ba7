# apps/backend/academy/main.py
from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from auth import auth_router
from database import init_db

from . import qpay
from .errors import AcademyError
from .routers import admin_router, courses_router, payments_router, user_router

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

APP_VERSION = os.getenv("APP_VERSION", "0.1.0")
CORS_ORIGINS = [
    o.strip()
    for o in os.getenv(
        "CORS_ORIGINS",
        "https://winacademy.mn,https://www.winacademy.mn,http://localhost:3000",
    ).split(",")
    if o.strip()
]


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_db()
    client = qpay.init_client()
    logger.info("startup", extra={"version": APP_VERSION, "qpay_client": type(client).__name__})
    yield


app = FastAPI(
    title="Win Academy API",
    version=APP_VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(AcademyError)
async def academy_error_handler(_: Request, exc: AcademyError):
    if exc.status_code >= 500:
        logger.error("request.failed", extra={"error": exc.message, **exc.context})
    return JSONResponse({"detail": exc.message}, status_code=exc.status_code)


@app.exception_handler(ValueError)
async def value_error_handler(_: Request, exc: ValueError):
    return JSONResponse({"detail": str(exc)}, status_code=400)


# everything under /api
app.include_router(auth_router, prefix="/api")
app.include_router(courses_router, prefix="/api")
app.include_router(user_router, prefix="/api")
app.include_router(payments_router, prefix="/api")
app.include_router(admin_router, prefix="/api")


# =========================================================
# Health / Version
# =========================================================
@app.get("/", response_class=PlainTextResponse)
def root():
    return "win-academy-api OK"


@app.get("/health")
def health():
    return {"status": "healthy"}


@app.get("/version")
def version():
    return {"version": APP_VERSION}
