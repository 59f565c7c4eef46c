import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.routing import APIRoute
from sqlalchemy import text

from order_service.config import get_settings
from order_service.database import Base, SessionLocal, engine
from order_service.errors import DuplicateTransactionError, GatewayError, OrderServiceError
from order_service.gateways import PayPalGateway, StripeGateway
from order_service.logging_config import RequestLoggingMiddleware, setup_logging
from order_service.routes import ROUTE_TABLE, router

settings = get_settings()
logger = setup_logging(settings.service_name, settings.log_level)


def build_gateways(settings) -> dict:
    """Construct one client per configured provider; unconfigured ones are left out."""
    gateways = {}
    if settings.stripe_secret_key:
        gateways["stripe"] = StripeGateway(settings.stripe_secret_key, timeout=settings.gateway_timeout)
    else:
        logger.warning("STRIPE_SECRET_KEY not set, credit card payments disabled")

    if settings.paypal_client_id and settings.paypal_client_secret:
        gateways["paypal"] = PayPalGateway(
            settings.paypal_client_id,
            settings.paypal_client_secret,
            settings.paypal_base_url,
            timeout=settings.gateway_timeout,
        )
    else:
        logger.warning("PayPal credentials not set, PayPal payments disabled")
    return gateways


def _bound_routes(routes, bound):
    for route in routes:
        if isinstance(route, APIRoute):
            for method in route.methods:
                bound[(method, route.path)] = route.endpoint
        elif isinstance(getattr(route, "routes", None), list):
            _bound_routes(route.routes, bound)
    return bound


def check_routes(router: APIRouter, route_table=ROUTE_TABLE):
    bound = _bound_routes(router.routes, {})

    missing = []
    for method, path, name in route_table:
        endpoint = bound.get((method, path))
        if endpoint is None or not callable(endpoint) or endpoint.__name__ != name:
            missing.append(f"{method} {path} -> {name}")
    if missing:
        raise RuntimeError(f"Routes without a bound handler: {', '.join(missing)}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    Base.metadata.create_all(bind=engine)
    app.state.gateways = build_gateways(settings)
    yield
    paypal = app.state.gateways.get("paypal")
    if paypal is not None:
        paypal.close()


app = FastAPI(title="Order Reconciliation Service", lifespan=lifespan)

app.add_middleware(RequestLoggingMiddleware, service_name=settings.service_name)
app.include_router(router)
check_routes(router)


def _error(status_code: int, message: str, code: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"status": "error", "error": message, "code": code})


@app.exception_handler(OrderServiceError)
async def order_service_error_handler(request: Request, exc: OrderServiceError):
    if isinstance(exc, DuplicateTransactionError):
        return JSONResponse(status_code=200, content={"status": "success"})
    if isinstance(exc, GatewayError):
        logger.error(
            "Gateway error: %s (upstream status %s)", exc.message, exc.upstream_status,
            extra={"request_id": getattr(request.state, "request_id", None)},
        )
    return _error(exc.status_code, exc.message, exc.code)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if errors:
        first = errors[0]
        field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = f"{field}: {first.get('msg')}" if field else first.get("msg")
    else:
        message = "Invalid request"
    return _error(400, message, "validation_error")


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error", extra={"request_id": getattr(request.state, "request_id", None)})
    return _error(500, "An unexpected error occurred", "internal_error")


@app.get("/health")
def health_check():
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        db_status = "connected"
    except Exception:
        db_status = "disconnected"
    finally:
        db.close()

    if db_status != "connected":
        raise HTTPException(status_code=503, detail="Service Unhealthy")

    return {
        "service": settings.service_name,
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "database": db_status,
        "gateways": sorted(getattr(app.state, "gateways", {}) or {}),
    }
