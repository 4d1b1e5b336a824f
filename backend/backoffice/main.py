"""
Main FastAPI Application
"""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import logging

from backoffice.core.config import settings
from backoffice.core.database import init_db, seed_defaults, SessionLocal
from backoffice.core.submission_guard import SubmissionGuardMiddleware
from backoffice.api.v1 import auth, agencies, cards, cash, expenses, exchange, notifications

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    # Startup
    logger.info("Starting up...")
    init_db()

    # Seed country limits, vault and central tills
    db = SessionLocal()
    try:
        seed_defaults(db)
        db.commit()
    finally:
        db.close()

    logger.info("Database initialized and reference data seeded")

    yield

    # Shutdown
    logger.info("Shutting down...")


# Create app
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Duplicate submission guard (must be after CORS)
app.add_middleware(SubmissionGuardMiddleware)


# Exception handlers
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception on {request.method} {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "An unexpected error occurred. Nothing was saved, please retry."}
    )


# Health check
@app.get("/health")
async def health_check():
    return {"status": "healthy", "version": settings.APP_VERSION}


# Include routers
app.include_router(auth.router, prefix="/api/v1")
app.include_router(agencies.router, prefix="/api/v1")
app.include_router(cards.router, prefix="/api/v1")
app.include_router(cash.router, prefix="/api/v1")
app.include_router(expenses.router, prefix="/api/v1")
app.include_router(exchange.router, prefix="/api/v1")
app.include_router(notifications.router, prefix="/api/v1")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
