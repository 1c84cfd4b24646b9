from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import logging

from .api.deps import get_router
from .api.v1.endpoints import qc, results, rules
from .config import get_settings
from .database import get_engine, init_db

settings = get_settings()

# Configure logging
logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting up {settings.app_name}...")
    init_db(get_engine())
    yield
    logger.info(f"Shutting down {settings.app_name}...")
    get_router().shutdown(wait=True)

app = FastAPI(
    title=settings.app_name,
    description="Laboratory result validation, Westgard QC monitoring and auto-verification",
    version=settings.app_version,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(results.router, prefix="/api/v1")
app.include_router(qc.router, prefix="/api/v1")
app.include_router(rules.router, prefix="/api/v1")

@app.get("/")
async def root():
    return {
        "project": settings.app_name,
        "status": "operational",
        "description": "Laboratory result validation, Westgard QC monitoring and auto-verification"
    }

@app.get("/health")
async def health_check():
    return {"status": "healthy"}

@app.get("/api/v1/status")
async def api_status():
    return {
        "api_version": "v1",
        "status": "operational",
        "endpoints_available": True
    }
