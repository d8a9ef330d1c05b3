"""
Lab Result Ingestion Service - Main FastAPI Application.

Routes are organized in modular files under backend/api/:
- labs.py: Lab upload, progress polling, results, search
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from backend.core.config import get_settings
from backend.core.database import create_db_and_tables

from backend.api.labs import router as labs_router

settings = get_settings()

app = FastAPI(
    title="Lab Result Ingestion Service",
    description="Lab report ingestion: text extraction, biomarker parsing and progress tracking",
    version="1.0.0"
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def on_startup():
    """Initialize database tables."""
    create_db_and_tables()


# All routes are prefixed with /api/v1
app.include_router(labs_router, prefix="/api/v1")


@app.get("/health")
def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": "1.0.0"}
