import logging
from fastapi import FastAPI
from .config import config
from .db import init_db
from .api.endpoints import router as api_router

logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="FleetLink Correlation Service",
    description="Driver attribution and trip to delivery correlation",
    version="2.0.0",
    debug=config.debug
)

# Include API routes
app.include_router(api_router, prefix="/api")

@app.on_event("startup")
async def startup():
    """Initialize database on startup."""
    init_db()
    logger.info("FleetLink started (algorithm %s)", config.get_correlation_settings().algorithm_version)

@app.get("/")
async def root():
    """Root endpoint."""
    return {"message": "FleetLink Correlation Service", "docs": "/docs"}

@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "algorithm_version": config.get_correlation_settings().algorithm_version}
