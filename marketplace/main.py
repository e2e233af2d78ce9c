import asyncio
from datetime import datetime

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo import ASCENDING

from shared.cache import build_cache
from shared.logging_config import setup_logging, RequestLoggingMiddleware
from shared.security_config import setup_rate_limiting, SecurityHeadersMiddleware
from shared.utils import AppException, ErrorResponse, HealthResponse, get_db_client, settings

from marketplace.gateway import PaymentGateway
from marketplace.routers import commissions, escrow, payments, products
from marketplace.tasks import run_sweep_loop

# Setup Logging
logger = setup_logging("marketplace-service")

app = FastAPI(title="Marketplace Payments Service")

# Security Setup
setup_rate_limiting(app)
app.add_middleware(SecurityHeadersMiddleware)

# Middleware
app.add_middleware(RequestLoggingMiddleware, service_name="marketplace-service")

# CORS Configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(payments.router)
app.include_router(escrow.router)
app.include_router(commissions.router)
app.include_router(products.router)


@app.exception_handler(AppException)
async def app_exception_handler(request: Request, exc: AppException):
    body = ErrorResponse(error=exc.error_type, details=exc.detail)
    return JSONResponse(status_code=exc.status_code, content=body.model_dump(), headers=exc.headers)


async def ensure_indexes(db):
    await db.payments.create_index("payment_intent_id")
    await db.payments.create_index("charge_id")
    await db.payments.create_index([("user_id", ASCENDING), ("created_at", ASCENDING)])
    await db.payments.create_index(
        "idempotency_key", unique=True, partialFilterExpression={"idempotency_key": {"$type": "string"}}
    )
    # at most one succeeded payment per single-order checkout
    await db.payments.create_index(
        "order_id",
        unique=True,
        name="order_id_succeeded_unique",
        partialFilterExpression={"status": "succeeded", "order_id": {"$type": "string"}},
    )
    await db.payments.create_index([("status", ASCENDING), ("expires_at", ASCENDING)])
    await db.orders.create_index(
        "materialization_key", unique=True, partialFilterExpression={"materialization_key": {"$type": "string"}}
    )
    await db.orders.create_index("customer_id")
    await db.orders.create_index([("vendor_id", ASCENDING), ("escrow_status", ASCENDING)])
    await db.commissions.create_index("order_id", unique=True)
    await db.commissions.create_index([("vendor_id", ASCENDING), ("status", ASCENDING)])
    await db.audit_logs.create_index("resource_id")


@app.on_event("startup")
async def startup():
    if getattr(app, "mongodb", None) is None:
        app.mongodb_client = get_db_client()
        app.mongodb = app.mongodb_client[settings.DATABASE_NAME]
        await ensure_indexes(app.mongodb)
    if getattr(app, "gateway", None) is None:
        app.gateway = PaymentGateway()
    if getattr(app, "cache", None) is None:
        app.cache = build_cache(settings.REDIS_URL)
    app.sweep_task = None
    if settings.SWEEP_ENABLED:
        app.sweep_task = asyncio.create_task(run_sweep_loop(app.mongodb))


@app.on_event("shutdown")
async def shutdown():
    if getattr(app, "sweep_task", None):
        app.sweep_task.cancel()
    if getattr(app, "gateway", None) is not None:
        await app.gateway.close()
    if hasattr(app.cache, "close"):
        await app.cache.close()
    if getattr(app, "mongodb_client", None) is not None:
        app.mongodb_client.close()


@app.get("/health", response_model=HealthResponse)
async def health_check():
    db_status = "unhealthy"

    # Check DB
    try:
        await app.mongodb.command("ping")
        db_status = "connected"
    except Exception:
        db_status = "disconnected"

    if db_status != "connected":
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service Unhealthy"
        )

    return HealthResponse(
        service="marketplace-service",
        status="healthy",
        timestamp=datetime.utcnow(),
        version="1.0.0",
        database=db_status,
        dependencies={"cache": app.cache.__class__.__name__},
    )
