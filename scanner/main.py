import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from database.db import StorageUnavailableError, create_tables
from scanner.config import (
    CORS_ALLOW_CREDENTIALS,
    CORS_ALLOW_HEADERS,
    CORS_ALLOW_METHODS,
    CORS_ALLOW_ORIGINS,
)
from scanner.logging_setup import setup_logging
from scanner.routers import admin, auth, connectivity, core, scan, students, sync
from scanner.runtime import get_runtime
from scanner.services.sync import request_cancel

setup_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title="Scanbook API")


# -----------------------------
# CORS (scanner UI)
# -----------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_credentials=CORS_ALLOW_CREDENTIALS,
    allow_methods=CORS_ALLOW_METHODS,
    allow_headers=CORS_ALLOW_HEADERS,
)


# -----------------------------
# Startup / Shutdown
# -----------------------------
@app.on_event("startup")
def _startup():
    result = create_tables()
    if not result["ok"]:
        logger.error("Local journal could not be opened: %s", result["error"])
    get_runtime()


@app.on_event("shutdown")
def _shutdown():
    request_cancel()


@app.exception_handler(StorageUnavailableError)
async def _storage_unavailable(_request: Request, exc: StorageUnavailableError):
    logger.error("%s", exc)
    return JSONResponse(status_code=503, content={"detail": "Local journal unavailable."})


app.include_router(core.router)
app.include_router(auth.router)
app.include_router(scan.router)
app.include_router(sync.router)
app.include_router(students.router)
app.include_router(connectivity.router)
app.include_router(admin.router)
