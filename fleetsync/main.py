from fastapi import FastAPI
from .config import config, setup_logging
from .db import init_db
from .api.endpoints import router as api_router

logger = setup_logging()

# Create FastAPI app
app = FastAPI(
    title="Fleet Telematics Sync",
    description="Telematics ingestion and driver / department risk scoring",
    version="1.0.0",
    debug=config.debug
)

# Include API routes
app.include_router(api_router, prefix="/api")


@app.on_event("startup")
async def startup():
    """Initialize database on startup."""
    init_db()


@app.get("/")
async def root():
    """Service banner."""
    return {"message": "Fleet Telematics Sync", "sync": "/api/sync", "runs": "/api/sync/runs"}


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}
