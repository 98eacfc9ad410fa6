import logging
import os
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from .config import FRONTEND_URL, SCHEDULING
from .domain.billing.router import router as billing_router
from .domain.billing.stripe_service import stripe_billing_service
from .domain.billing.webhooks import router as stripe_webhooks_router
from .redis_client import get_redis_client, redis_configured

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Reduce verbosity of third-party libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("stripe").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Application starting up...")
    logger.info(
        f"Scheduler: horizon={SCHEDULING.horizon_days}d max_phases={SCHEDULING.max_schedule_phases} "
        f"proration={SCHEDULING.proration_behavior}"
    )
    if not stripe_billing_service.is_available():
        logger.warning("⚠️ Stripe client unavailable - billing endpoints will answer 503")

    if redis_configured():
        try:
            get_redis_client()  # Connection test
            logger.info("Redis connection established")
        except Exception as e:
            logger.warning(f"Redis connection failed - webhook de-duplication falls back to memory: {e}")

    yield
    logger.info("Application shutting down...")


app = FastAPI(title="Pickup Billing API", version="1.0.0", lifespan=lifespan)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    try:
        response = await call_next(request)
        return response
    except Exception as e:
        logger.error(f"{request.method} {request.url.path} - Error: {str(e)}")
        raise


# CORS Configuration
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", f"{FRONTEND_URL},http://localhost:3000").split(",")

logger.info(f"CORS allowed origins: {ALLOWED_ORIGINS}")

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

# Routes
app.include_router(billing_router)
app.include_router(stripe_webhooks_router)


@app.get("/")
def root():
    return {"message": "Pickup Billing API is running"}


@app.get("/health")
def health():
    return {"status": "healthy", "stripe": stripe_billing_service.is_available()}


@app.get("/health/redis")
async def redis_health_check():
    """Check Redis connectivity for monitoring"""
    if not redis_configured():
        return {"status": "disabled", "redis": {"connected": False}}
    try:
        redis_client = get_redis_client()

        start_time = time.time()
        redis_client.ping()
        response_time = (time.time() - start_time) * 1000

        return {
            "status": "healthy",
            "redis": {"connected": True, "response_time_ms": round(response_time, 2)},
        }
    except Exception as e:
        return {"status": "unhealthy", "redis": {"connected": False, "error": str(e)}}
