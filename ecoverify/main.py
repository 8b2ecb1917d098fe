"""
Main FastAPI application for EcoVerify
"""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from contextlib import asynccontextmanager
import logging
import os

from ecoverify.config import settings
from ecoverify.api import system, actions, users, points
from ecoverify.db.database import init_db
from ecoverify.exceptions import ValidationFailure, IntegrityFailure, EcoVerifyError

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.APP_DEBUG else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    # Startup
    logger.info("Starting EcoVerify service...")
    try:
        init_db()
        logger.info("Database schema ready")
    except Exception as e:
        logger.error(f"Error initializing database: {e}")

    yield

    # Shutdown
    logger.info("Shutting down EcoVerify service...")


app = FastAPI(
    title="EcoVerify",
    description="Recycling action verification, trust, fraud and reward engine",
    version="1.0.0",
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ValidationFailure)
async def validation_failure_handler(request: Request, exc: ValidationFailure):
    return JSONResponse(
        status_code=400,
        content={
            "detail": exc.reason,
            "stage": exc.stage,
            "suggestions": exc.suggestions,
        }
    )


@app.exception_handler(IntegrityFailure)
async def integrity_failure_handler(request: Request, exc: IntegrityFailure):
    logger.error(f"Integrity failure on {request.url.path}: {exc}")
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(EcoVerifyError)
async def engine_error_handler(request: Request, exc: EcoVerifyError):
    logger.error(f"Unhandled engine error on {request.url.path}: {exc}")
    return JSONResponse(status_code=500, content={"detail": "Internal error"})


# Include routers
app.include_router(system.router, tags=["System"])
app.include_router(actions.router, prefix="/actions", tags=["Actions"])
app.include_router(users.router, prefix="/users", tags=["Users"])
app.include_router(points.router, prefix="/points", tags=["Recycling Points"])

# Stored images are fetched back by URL (AI classification, clients)
os.makedirs(settings.IMAGE_STORE_PATH, exist_ok=True)
app.mount("/images", StaticFiles(directory=settings.IMAGE_STORE_PATH), name="images")


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "service": "EcoVerify",
        "version": "1.0.0",
        "status": "running"
    }
