from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
import uuid
from contextlib import asynccontextmanager
from database import database
from routes import webhooks, billing, sales, admin_billing

import os
import logging
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def _log_billing_config():
    """Log which Kiwify integrations are configured (never the secrets)."""
    if not (os.environ.get("KIWIFY_WEBHOOK_TOKEN") or "").strip():
        logger.warning("KIWIFY_WEBHOOK_TOKEN is not set. Webhook signatures will not be verified.")
    if not (os.environ.get("KIWIFY_API_KEY") or "").strip():
        logger.warning("KIWIFY_API_KEY is not set. Cancel requests will not reach Kiwify.")
    from services.plan_catalog import get_checkout_url
    for plan in ("starter", "pro", "business"):
        logger.info("Kiwify checkout plan=%s url=%s", plan, get_checkout_url(plan) or "(direct update)")


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting Tenant Financial State API")
    if os.environ.get("PYTEST_RUNNING"):
        logger.info("PYTEST_RUNNING set - skipping MongoDB connection")
        yield
        return

    await database.connect()
    _log_billing_config()

    yield

    # Shutdown
    logger.info("Shutting down Tenant Financial State API")
    await database.close()

# Create FastAPI app
app = FastAPI(
    title="Tenant Financial State API",
    description="Kiwify billing reconciliation and sales metrics per tenant",
    version="1.0.0",
    lifespan=lifespan
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(webhooks.router)
app.include_router(billing.router)
app.include_router(sales.router)
app.include_router(admin_billing.router)

# Health check
@app.get("/api/health")
async def health_check():
    return {
        "status": "healthy",
        "environment": os.getenv("ENVIRONMENT", "development")
    }

# Validation error handler: log request_id + full errors (loc path)
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    request_id = str(uuid.uuid4())
    errors = exc.errors()
    logger.warning(
        "Request validation failed request_id=%s path=%s errors=%s",
        request_id,
        request.url.path,
        [(e.get("loc"), e.get("msg"), e.get("type")) for e in errors],
    )
    return JSONResponse(
        status_code=422,
        content={"detail": [(e.get("loc"), e.get("msg")) for e in errors], "request_id": request_id},
    )


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server:app",
        host="0.0.0.0",
        port=8001,
        reload=os.getenv("ENVIRONMENT") == "development"
    )
